from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from agentbox.db import as_utc


class InboundMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    inbox_id: str
    message_id: str
    thread_id: Optional[str] = None
    from_: str = Field(default="", alias="from")
    to: Union[List[str], str] = Field(default_factory=list)
    subject: str = ""
    text: Optional[str] = None
    html: Optional[str] = None
    created_at: Optional[datetime] = None
    timestamp: Optional[datetime] = None

    @field_validator("created_at", "timestamp")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    @property
    def sent_at(self) -> Optional[datetime]:
        return self.created_at or self.timestamp


class MessageSummary(BaseModel):
    """One entry of an inbox message listing."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    message_id: str
    labels: Optional[List[str]] = None
    from_: Optional[str] = Field(default=None, alias="from")
    to: Union[List[str], str, None] = None
    subject: Optional[str] = None
    preview: Optional[str] = None
    created_at: Optional[datetime] = None
    timestamp: Optional[datetime] = None

    @field_validator("created_at", "timestamp")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    @property
    def sent_at(self) -> Optional[datetime]:
        return self.created_at or self.timestamp


class WebhookEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Optional[str] = None
    event_type: Optional[str] = None
    event_id: Optional[str] = None
    message: Optional[InboundMessage] = None


class DemoInitializeOut(BaseModel):
    seller: EmailStr
    buyer: EmailStr


class SellerCriteriaIn(BaseModel):
    target_industries: List[str]
    company_size_min: int
    company_size_max: int
    target_geographies: List[str]
    budget_min: float
    budget_max: float
    required_tech_stack: List[str] = Field(default_factory=list)


class BuyerProfileIn(BaseModel):
    industry: str
    company_size: int
    location: str
    budget: Optional[float] = None
    tech_stack: List[str] = Field(default_factory=list)
    timing: Optional[str] = None
    authority: Optional[str] = None


class FitScoreIn(BaseModel):
    email_text: str = ""
    seller_criteria: Optional[SellerCriteriaIn] = None
    buyer_profile: Optional[BuyerProfileIn] = None


class ResearchIn(BaseModel):
    company_name: str
    company_domain: Optional[str] = None


class SessionOut(BaseModel):
    id: str
    seller: str
    buyer: str
    exchange_count: int
    max_exchanges: int
    phase: str
    status: str
    last_recommendation: Optional[str] = None
    created_at: datetime


class ConversationOut(BaseModel):
    initialized: bool
    messages: List[Dict[str, Any]] = Field(default_factory=list)
    seller: Optional[str] = None
    buyer: Optional[str] = None
