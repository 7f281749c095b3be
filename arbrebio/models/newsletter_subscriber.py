import enum
import secrets
import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Enum as SQLEnum, Index, String
from sqlalchemy.dialects.postgresql import UUID

from arbrebio.database import Base


class SubscriberStatus(str, enum.Enum):
    """Lifecycle states of a newsletter subscriber."""
    PENDING = "pending"
    ACTIVE = "active"
    UNSUBSCRIBED = "unsubscribed"


def issue_confirmation_token() -> str:
    """Return a fresh, unguessable single-use confirmation token."""
    return secrets.token_urlsafe(32)


class NewsletterSubscriber(Base):
    __tablename__ = "newsletter_subscribers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True, nullable=False, index=True)
    full_name = Column(String(100), nullable=True)
    source = Column(String(50), nullable=False, default="website")

    # Non-null only while status is pending
    confirmation_token = Column(String(64), unique=True, nullable=True)
    confirmed = Column(Boolean, nullable=False, default=False)
    status = Column(
        SQLEnum(SubscriberStatus, values_callable=lambda x: [e.value for e in x], native_enum=False, length=20),
        nullable=False,
        default=SubscriberStatus.PENDING,
    )

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    unsubscribed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_newsletter_subscribers_status_confirmed", "status", "confirmed"),
    )

    @property
    def is_active(self) -> bool:
        return self.confirmed and self.status == SubscriberStatus.ACTIVE
