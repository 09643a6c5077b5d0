"""Buyer-side qualification scoring across eight weighted fit signals."""

import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

import yaml

INDUSTRY = "Industry Match"
COMPANY_SIZE = "Company Size"
GEOGRAPHY = "Geographic Match"
NEED_INTENT = "Need Intent"
TIMING = "Timing"
BUDGET = "Budget Range"
AUTHORITY = "Authority"
STACK = "Stack Compatibility"

SIGNAL_NAMES = (INDUSTRY, COMPANY_SIZE, GEOGRAPHY, NEED_INTENT, TIMING, BUDGET, AUTHORITY, STACK)

DEFAULT_WEIGHTS: Dict[str, float] = {
    INDUSTRY: 20,
    COMPANY_SIZE: 15,
    GEOGRAPHY: 10,
    NEED_INTENT: 15,
    TIMING: 10,
    BUDGET: 15,
    AUTHORITY: 10,
    STACK: 5,
}

INTENT_PHRASES = ("looking for", "need", "interested in", "want to", "seeking", "help us")
URGENCY_WORDS = ("asap", "soon")
URGENT_TIMING_LABELS = ("q1", "immediate")
DECISION_MAKER_LABELS = ("decision", "director", "vp", "c-level")

PROPOSE_MEETING = "propose_meeting"
CLARIFY = "clarify"
DECLINE = "decline"


@dataclass
class ScoringConfig:
    weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    meeting_threshold: int = 75
    clarify_threshold: int = 50
    match_threshold: float = 0.7

    def __post_init__(self) -> None:
        missing = [name for name in SIGNAL_NAMES if name not in self.weights]
        if missing:
            raise ValueError(f"Scoring weights missing signals: {', '.join(missing)}")
        unknown = sorted(set(self.weights) - set(SIGNAL_NAMES))
        if unknown:
            raise ValueError(f"Unknown scoring signals: {', '.join(unknown)}")
        if any(weight < 0 for weight in self.weights.values()):
            raise ValueError("Scoring weights must be non-negative")
        if not math.isclose(sum(self.weights.values()), 100.0):
            raise ValueError("Scoring weights must sum to 100")
        if not 0 <= self.clarify_threshold <= self.meeting_threshold <= 100:
            raise ValueError("Thresholds must satisfy 0 <= clarify <= meeting <= 100")


@dataclass
class SellerCriteria:
    target_industries: List[str]
    company_size_min: int
    company_size_max: int
    target_geographies: List[str]
    budget_min: float
    budget_max: float
    required_tech_stack: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.company_size_min > self.company_size_max:
            raise ValueError("Company size range must have min <= max")
        if self.budget_min > self.budget_max:
            raise ValueError("Budget range must have min <= max")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SellerCriteria":
        size = data.get("company_size") or {}
        budget = data.get("budget_range") or {}
        return cls(
            target_industries=list(data.get("target_industries") or []),
            company_size_min=int(size.get("min", 0)),
            company_size_max=int(size.get("max", 0)),
            target_geographies=list(data.get("target_geographies") or []),
            budget_min=float(budget.get("min", 0)),
            budget_max=float(budget.get("max", 0)),
            required_tech_stack=list(data.get("required_tech_stack") or []),
        )


@dataclass
class BuyerProfile:
    industry: str
    company_size: int
    location: str
    budget: Optional[float] = None
    tech_stack: List[str] = field(default_factory=list)
    timing: Optional[str] = None
    authority: Optional[str] = None

    def __post_init__(self) -> None:
        if self.company_size <= 0:
            raise ValueError("Company size must be positive")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BuyerProfile":
        budget = data.get("budget")
        return cls(
            industry=str(data.get("industry") or ""),
            company_size=int(data.get("company_size") or 0),
            location=str(data.get("location") or ""),
            budget=float(budget) if budget is not None else None,
            tech_stack=list(data.get("tech_stack") or []),
            timing=data.get("timing") or None,
            authority=data.get("authority") or None,
        )


@dataclass
class FitSignal:
    name: str
    weight: float
    value: float
    matched: bool

    @property
    def points(self) -> float:
        return self.weight * self.value


@dataclass
class FitScore:
    overall_score: int
    signals: List[FitSignal]
    recommendation: str
    missing_info: List[str]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "overall_score": self.overall_score,
            "signals": [
                {
                    "name": signal.name,
                    "weight": signal.weight,
                    "value": signal.value,
                    "matched": signal.matched,
                    "points": round(signal.points, 2),
                }
                for signal in self.signals
            ],
            "recommendation": self.recommendation,
            "missing_info": list(self.missing_info),
        }


def load_scoring_config(path: Optional[Path] = None) -> ScoringConfig:
    """Read weights and thresholds from YAML, or return the defaults.

    The file may set ``weights`` (a full table keyed by signal name),
    ``meeting_threshold``, ``clarify_threshold`` and ``match_threshold``.
    """
    if path is None:
        configured = os.getenv("FIT_SCORING_CONFIG")
        if not configured:
            return ScoringConfig()
        path = Path(configured)
    with path.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    defaults = ScoringConfig()
    return ScoringConfig(
        weights={str(k): float(v) for k, v in (data.get("weights") or defaults.weights).items()},
        meeting_threshold=int(data.get("meeting_threshold", defaults.meeting_threshold)),
        clarify_threshold=int(data.get("clarify_threshold", defaults.clarify_threshold)),
        match_threshold=float(data.get("match_threshold", defaults.match_threshold)),
    )


def _contains_any(haystack: Optional[str], needles: Iterable[str]) -> bool:
    if not haystack:
        return False
    lowered = haystack.lower()
    return any(needle.lower() in lowered for needle in needles if needle)


def _stack_overlaps(required: Sequence[str], stack: Sequence[str]) -> bool:
    return any(_contains_any(item, [tech]) for tech in required for item in stack)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _signal_values(criteria: SellerCriteria, profile: BuyerProfile, email_text: str) -> Dict[str, float]:
    text = email_text or ""

    if _contains_any(profile.timing, URGENT_TIMING_LABELS) or _contains_any(text, URGENCY_WORDS):
        timing = 1.0
    elif profile.timing:
        timing = 0.7
    else:
        timing = 0.3

    if profile.budget is None:
        budget = 0.5
    elif criteria.budget_min <= profile.budget <= criteria.budget_max:
        budget = 1.0
    else:
        budget = 0.3

    if not criteria.required_tech_stack:
        stack = 0.5
    elif _stack_overlaps(criteria.required_tech_stack, profile.tech_stack):
        stack = 1.0
    else:
        stack = 0.3

    return {
        INDUSTRY: 1.0 if _contains_any(profile.industry, criteria.target_industries) else 0.0,
        COMPANY_SIZE: 1.0 if criteria.company_size_min <= profile.company_size <= criteria.company_size_max else 0.0,
        GEOGRAPHY: 1.0 if _contains_any(profile.location, criteria.target_geographies) else 0.0,
        NEED_INTENT: 1.0 if _contains_any(text, INTENT_PHRASES) else 0.5,
        TIMING: timing,
        BUDGET: budget,
        AUTHORITY: 1.0 if _contains_any(profile.authority, DECISION_MAKER_LABELS) else 0.5,
        STACK: stack,
    }


def recommend(overall_score: int, config: ScoringConfig) -> str:
    if overall_score >= config.meeting_threshold:
        return PROPOSE_MEETING
    if overall_score >= config.clarify_threshold:
        return CLARIFY
    return DECLINE


def missing_info(criteria: SellerCriteria, profile: BuyerProfile) -> List[str]:
    missing = []
    if profile.budget is None:
        missing.append("budget")
    if not profile.timing:
        missing.append("timing")
    if not profile.authority:
        missing.append("authority")
    if criteria.required_tech_stack and not profile.tech_stack:
        missing.append("tech stack")
    return missing


def score(
    criteria: SellerCriteria,
    profile: BuyerProfile,
    email_text: str,
    config: Optional[ScoringConfig] = None,
) -> FitScore:
    """Score how well a buyer fits the seller's targeting criteria.

    Args:
        criteria: Seller's target industries, size, geographies, budget and stack.
        profile: Buyer company attributes; optional fields count as unknown.
        email_text: Inbound email scanned case-insensitively for intent and urgency.
        config: Weight table and recommendation thresholds.

    Returns:
        FitScore: Integer score in [0, 100], per-signal breakdown,
        recommendation and the buyer fields that are still unknown.
    """
    config = config or ScoringConfig()
    values = _signal_values(criteria, profile, email_text)
    signals = [
        FitSignal(
            name=name,
            weight=config.weights[name],
            value=values[name],
            matched=values[name] >= config.match_threshold,
        )
        for name in SIGNAL_NAMES
    ]
    total_weight = sum(signal.weight for signal in signals)
    weighted = sum(signal.points for signal in signals)
    overall = _round_half_up(100 * weighted / total_weight)
    overall = max(0, min(100, overall))
    return FitScore(
        overall_score=overall,
        signals=signals,
        recommendation=recommend(overall, config),
        missing_info=missing_info(criteria, profile),
    )
