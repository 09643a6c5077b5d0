#!/usr/bin/env python
import argparse
import asyncio
import json
import sys

from agentbox.demo import WEBHOOK_PATH
from agentbox.errors import GatewayError
from agentbox.integrations.agentmail import AgentMailClient


async def list_webhooks(client: AgentMailClient) -> None:
    webhooks = await client.list_webhooks()
    if not webhooks:
        print("No webhooks registered")
        return
    for webhook in webhooks:
        print(json.dumps(webhook, indent=2, default=str))


async def register(client: AgentMailClient, base_url: str, inbox_ids) -> None:
    url = f"{base_url.rstrip('/')}{WEBHOOK_PATH}"
    for inbox_id in inbox_ids or [None]:
        result = await client.register_webhook(inbox_id, url)
        state = "already registered" if result.get("already_registered") else "registered"
        print(f"{url} {state} for {inbox_id or 'all inboxes'}")


async def main(args: argparse.Namespace) -> int:
    client = AgentMailClient()
    try:
        if args.command == "list":
            await list_webhooks(client)
        else:
            await register(client, args.base_url, args.inbox)
    except GatewayError as exc:
        print(f"AgentMail request failed: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Inspect or register AgentMail webhooks for the demo.")
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("list", help="List registered webhooks")
    register_parser = subparsers.add_parser("register", help="Point message.received events at this deployment")
    register_parser.add_argument("base_url", help="Public base URL, e.g. https://agentbox.example.com")
    register_parser.add_argument(
        "--inbox",
        action="append",
        help="Inbox id to scope the webhook to; repeat for several. Defaults to all inboxes.",
    )
    sys.exit(asyncio.run(main(parser.parse_args())))
