"""Role-specific prompt construction for the seller and buyer personas."""

from typing import Optional

from agentbox.agents.fit_scoring import CLARIFY, DECLINE, PROPOSE_MEETING, FitScore

_BUYER_GUIDANCE = {
    DECLINE: "The fit is poor. Politely decline and, if useful, point them to other resources.",
    CLARIFY: "The fit is uncertain. Ask 1-2 specific clarifying questions about the missing signals.",
    PROPOSE_MEETING: "The fit is strong. Express interest and ask the seller to propose meeting times.",
}


def _format_fit(fit: FitScore) -> str:
    matched = [signal.name for signal in fit.signals if signal.matched]
    unmatched = [signal.name for signal in fit.signals if not signal.matched]
    lines = [
        f"Fit score: {fit.overall_score}/100",
        f"Recommendation: {fit.recommendation}",
        f"Matched signals: {', '.join(matched) or 'none'}",
        f"Weak signals: {', '.join(unmatched) or 'none'}",
    ]
    if fit.missing_info:
        lines.append(f"Missing information: {', '.join(fit.missing_info)}")
    lines.append(_BUYER_GUIDANCE[fit.recommendation])
    return "\n".join(lines)


def opening_prompt(instruction: str, buyer_address: str) -> str:
    return f"{instruction.strip()}\n\nThe email will be sent to {buyer_address}. Return only the email body."


def reply_prompt(
    role: str,
    sender: str,
    subject: str,
    body: str,
    *,
    fit: Optional[FitScore] = None,
    propose_times: bool = False,
) -> str:
    """Build the prompt for answering an inbound email.

    ``body`` should already have quoted history removed. The buyer prompt
    embeds the fit evaluation; the seller prompt asks for three concrete
    meeting slots once the buyer has signalled interest.
    """
    prompt = (
        "You received an email:\n"
        f"From: {sender}\n"
        f"Subject: {subject}\n"
        f"Body: {body or '(empty)'}\n\n"
    )
    if role == "buyer" and fit is not None:
        prompt += f"Your fit evaluation of this seller:\n{_format_fit(fit)}\n\n"
    if role == "seller" and propose_times:
        prompt += (
            "The buyer wants to meet. Offer exactly 3 specific time slots labelled A, B and C "
            "within the next two weeks, with time zone, and ask them to pick one.\n\n"
        )
    prompt += "Generate an appropriate response based on your role and instructions. Return only the email body."
    return prompt
