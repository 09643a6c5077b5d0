import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from agentbox.agents.fit_scoring import BuyerProfile, SellerCriteria

logger = logging.getLogger("agent.registry")

SELLER = "seller"
BUYER = "buyer"
ROLES = (SELLER, BUYER)

DEFAULT_CONFIG_DIR = Path(__file__).resolve().parent / "configs"


@dataclass
class PersonaConfig:
    role: str
    name: str
    display_name: str
    instructions: str
    username_prefix: str
    opening_subject: str = ""
    opening_prompt: str = ""
    criteria: Dict[str, Any] = field(default_factory=dict)
    profile: Dict[str, Any] = field(default_factory=dict)
    path: Optional[Path] = None


def _load_yaml(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


class PersonaRegistry:
    """Loads the seller and buyer persona files (``<role>.yaml``) from a config directory."""

    def __init__(self, config_dir: Optional[Path] = None):
        configured = os.getenv("AGENT_CONFIG_DIR")
        self.config_dir = config_dir or (Path(configured) if configured else DEFAULT_CONFIG_DIR)
        self.personas: Dict[str, PersonaConfig] = {}

    def load(self) -> None:
        self.personas.clear()
        if not self.config_dir.exists():
            logger.warning("Agent config directory %s does not exist", self.config_dir)
            return
        for file in sorted(self.config_dir.glob("*.yaml")):
            data = _load_yaml(file)
            role = data.get("role")
            if role not in ROLES:
                logger.error("Invalid persona config %s: unknown role %r", file, role)
                continue
            try:
                persona = PersonaConfig(
                    role=role,
                    name=data["name"],
                    display_name=data.get("display_name", data["name"]),
                    instructions=data.get("instructions", ""),
                    username_prefix=data.get("username_prefix", role),
                    opening_subject=data.get("opening_subject", ""),
                    opening_prompt=data.get("opening_prompt", ""),
                    criteria=data.get("criteria") or {},
                    profile=data.get("profile") or {},
                    path=file,
                )
            except KeyError as exc:
                logger.error("Invalid persona config %s: missing %s", file, exc)
                continue
            self.personas[role] = persona
            logger.info("Loaded persona %s (%s)", persona.name, role)

    def get(self, role: str) -> PersonaConfig:
        if not self.personas:
            self.load()
        persona = self.personas.get(role)
        if not persona:
            raise KeyError(f"Persona '{role}' not configured")
        return persona

    def get_config(self, role: str) -> Optional[Dict[str, Any]]:
        try:
            persona = self.get(role)
        except KeyError:
            return None
        return {
            "role": persona.role,
            "name": persona.name,
            "display_name": persona.display_name,
            "instructions": persona.instructions,
            "opening_subject": persona.opening_subject,
            "criteria": persona.criteria,
            "profile": persona.profile,
        }

    def seller_criteria(self) -> SellerCriteria:
        return SellerCriteria.from_dict(self.get(SELLER).criteria)

    def buyer_profile(self) -> BuyerProfile:
        return BuyerProfile.from_dict(self.get(BUYER).profile)


registry = PersonaRegistry()
