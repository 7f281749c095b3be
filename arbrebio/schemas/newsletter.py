from datetime import datetime
from typing import Annotated, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, BeforeValidator, ConfigDict, EmailStr, Field, StrictBool, field_validator

from arbrebio.models.newsletter_subscriber import SubscriberStatus
from arbrebio.utils.text import is_valid_name


def _normalize_email(value):
    if isinstance(value, str):
        value = value.strip().lower()
        if len(value) > 100:
            raise ValueError("Email address too long")
    return value


NormalizedEmail = Annotated[EmailStr, BeforeValidator(_normalize_email)]


class NewsletterSubscribeRequest(BaseModel):
    email: NormalizedEmail
    full_name: Optional[str] = Field(None, max_length=100)
    source: str = Field("website", max_length=50)
    consent: StrictBool

    @field_validator("full_name")
    @classmethod
    def name_characters(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not is_valid_name(v):
            raise ValueError("Name contains invalid characters")
        return v or None

    @field_validator("consent")
    @classmethod
    def consent_given(cls, v: bool) -> bool:
        if v is not True:
            raise ValueError("You must accept the privacy policy")
        return v


class NewsletterResponse(BaseModel):
    success: bool
    message: str


class NewsletterSendRequest(BaseModel):
    subject: str = Field(..., min_length=3)
    content: str = Field(..., min_length=10)
    admin_token: str = Field(..., alias="adminToken", min_length=10)
    test_mode: bool = Field(False, alias="testMode")

    model_config = ConfigDict(populate_by_name=True)


class DispatchReportRead(BaseModel):
    sent: int
    failed: int
    skipped: int
    failed_recipients: list[str] = Field(alias="failedRecipients")

    model_config = ConfigDict(populate_by_name=True)


class NewsletterSendResponse(BaseModel):
    success: bool
    message: str
    count: Optional[int] = None
    test_mode: bool = Field(False, alias="testMode")
    report: Optional[DispatchReportRead] = None

    model_config = ConfigDict(populate_by_name=True)


class NewsletterAdminRequest(BaseModel):
    action: Literal["list", "delete", "export", "stats"]
    admin_token: str = Field(..., alias="adminToken", min_length=10)
    email: Optional[NormalizedEmail] = None
    id: Optional[UUID] = None

    model_config = ConfigDict(populate_by_name=True)


class NewsletterSubscriberRead(BaseModel):
    id: UUID
    email: str
    full_name: Optional[str]
    source: str
    confirmed: bool
    status: SubscriberStatus
    created_at: datetime
    confirmed_at: Optional[datetime]
    unsubscribed_at: Optional[datetime]

    model_config = {"from_attributes": True}


class RecentSubscriberRead(BaseModel):
    email: str
    full_name: Optional[str]
    source: str
    created_at: datetime

    model_config = {"from_attributes": True}


class NewsletterStats(BaseModel):
    total: int
    confirmed: int
    unsubscribed: int
    pending: int
    conversion_rate: int = Field(serialization_alias="conversionRate")
    by_status: dict[str, int] = Field(serialization_alias="byStatus")
    source_breakdown: dict[str, int] = Field(serialization_alias="sourceBreakdown")
    recent_subscribers: list[RecentSubscriberRead] = Field(serialization_alias="recentSubscribers")
    last_updated: datetime = Field(serialization_alias="lastUpdated")
