"""Newsletter subscriber lifecycle on top of the subscriber store.

State machine per address::

    (none) --subscribe--> pending --confirm--> active
    pending/unsubscribed --subscribe--> pending (new token)
    any --unsubscribe--> unsubscribed

``confirmation_token`` is only set while a record is pending.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from arbrebio.config import get_settings
from arbrebio.errors import ValidationFailed
from arbrebio.models.newsletter_subscriber import (
    NewsletterSubscriber,
    SubscriberStatus,
    issue_confirmation_token,
)
from arbrebio.schemas.newsletter import NewsletterSubscribeRequest
from arbrebio.services.email_service import _redact_email
from arbrebio.services.tokens import verify_unsubscribe_token
from arbrebio.utils.export import create_csv_writer, generate_subscriber_csv_row, SUBSCRIBER_CSV_HEADER
from arbrebio.utils.text import sanitize_input

logger = logging.getLogger(__name__)


class SubscribeResult(str, Enum):
    CREATED = "created"
    RESUBSCRIBED = "resubscribed"
    ALREADY_SUBSCRIBED = "already_subscribed"


@dataclass
class SubscribeOutcome:
    subscriber: NewsletterSubscriber
    result: SubscribeResult

    @property
    def needs_confirmation(self) -> bool:
        return self.result != SubscribeResult.ALREADY_SUBSCRIBED


@dataclass
class UnsubscribeOutcome:
    subscriber: NewsletterSubscriber
    changed: bool


async def get_by_email(db: AsyncSession, email: str) -> Optional[NewsletterSubscriber]:
    result = await db.execute(
        select(NewsletterSubscriber).where(NewsletterSubscriber.email == email.strip().lower())
    )
    return result.scalars().first()


def _reset_to_pending(subscriber: NewsletterSubscriber, full_name: Optional[str], source: str) -> None:
    subscriber.full_name = full_name
    subscriber.source = source
    subscriber.status = SubscriberStatus.PENDING
    subscriber.confirmed = False
    subscriber.confirmation_token = issue_confirmation_token()
    subscriber.unsubscribed_at = None


async def subscribe(db: AsyncSession, data: NewsletterSubscribeRequest) -> SubscribeOutcome:
    """Create or re-arm a pending subscription for ``data.email``.

    Already confirmed, active subscribers are left untouched.
    """
    email = sanitize_input(data.email, 100).lower()
    full_name = sanitize_input(data.full_name, 100) or None
    source = sanitize_input(data.source, 50) or get_settings().newsletter_default_source

    existing = await get_by_email(db, email)
    if existing is not None:
        return await _resubscribe(db, existing, full_name, source)

    subscriber = NewsletterSubscriber(
        email=email,
        full_name=full_name,
        source=source,
        status=SubscriberStatus.PENDING,
        confirmed=False,
        confirmation_token=issue_confirmation_token(),
    )
    db.add(subscriber)
    try:
        await db.flush()
    except IntegrityError:
        # A concurrent request inserted the same address first
        await db.rollback()
        existing = await get_by_email(db, email)
        if existing is None:
            raise
        logger.info(f"Concurrent newsletter signup for {_redact_email(email)}, updating existing record")
        return await _resubscribe(db, existing, full_name, source)

    logger.info(f"New newsletter subscriber {_redact_email(email)} from source={source}")
    return SubscribeOutcome(subscriber, SubscribeResult.CREATED)


async def _resubscribe(
    db: AsyncSession,
    subscriber: NewsletterSubscriber,
    full_name: Optional[str],
    source: str,
) -> SubscribeOutcome:
    if subscriber.is_active:
        return SubscribeOutcome(subscriber, SubscribeResult.ALREADY_SUBSCRIBED)

    previous = subscriber.status
    _reset_to_pending(subscriber, full_name, source)
    await db.flush()
    logger.info(f"Newsletter subscription re-issued for {_redact_email(subscriber.email)} (was {previous.value})")
    return SubscribeOutcome(subscriber, SubscribeResult.RESUBSCRIBED)


async def confirm(db: AsyncSession, token: str) -> Optional[NewsletterSubscriber]:
    """Consume a confirmation token in a single UPDATE.

    Returns the activated subscriber, or None if no pending record holds the
    token (unknown, already used, or superseded by a newer one).
    """
    result = await db.execute(
        update(NewsletterSubscriber)
        .where(NewsletterSubscriber.confirmation_token == token)
        .values(
            confirmed=True,
            status=SubscriberStatus.ACTIVE,
            confirmation_token=None,
            confirmed_at=datetime.now(timezone.utc),
        )
        .returning(NewsletterSubscriber)
    )
    subscriber = result.scalars().first()
    if subscriber is not None:
        logger.info(f"Newsletter subscription confirmed for {_redact_email(subscriber.email)}")
    return subscriber


async def unsubscribe(db: AsyncSession, email: str, token: str) -> Optional[UnsubscribeOutcome]:
    """Unsubscribe the address if ``token`` is its signed unsubscribe token.

    Raises ValidationFailed for a token that does not belong to ``email``.
    Returns None when no record exists for the address.
    """
    email = email.strip().lower()
    if not verify_unsubscribe_token(email, token):
        logger.warning(f"Rejected unsubscribe with bad token for {_redact_email(email)}")
        raise ValidationFailed("Invalid unsubscribe link")

    subscriber = await get_by_email(db, email)
    if subscriber is None:
        return None

    if subscriber.status == SubscriberStatus.UNSUBSCRIBED:
        return UnsubscribeOutcome(subscriber, changed=False)

    subscriber.status = SubscriberStatus.UNSUBSCRIBED
    subscriber.confirmation_token = None
    subscriber.unsubscribed_at = datetime.now(timezone.utc)
    await db.flush()
    logger.info(f"Newsletter unsubscribe for {_redact_email(email)}")
    return UnsubscribeOutcome(subscriber, changed=True)


# Administrative queries

def _active_filter():
    return (
        NewsletterSubscriber.confirmed.is_(True),
        NewsletterSubscriber.status == SubscriberStatus.ACTIVE,
    )


async def list_subscribers(db: AsyncSession) -> list[NewsletterSubscriber]:
    result = await db.execute(
        select(NewsletterSubscriber).order_by(NewsletterSubscriber.created_at.desc())
    )
    return list(result.scalars().all())


async def active_subscribers(db: AsyncSession) -> list[NewsletterSubscriber]:
    """Confirmed, active subscribers, newest first."""
    result = await db.execute(
        select(NewsletterSubscriber)
        .where(*_active_filter())
        .order_by(NewsletterSubscriber.created_at.desc())
    )
    return list(result.scalars().all())


async def delete_subscriber(
    db: AsyncSession,
    subscriber_id: Optional[UUID] = None,
    email: Optional[str] = None,
) -> int:
    """Hard-delete by id (preferred) or email. Returns the number of rows removed."""
    if subscriber_id is None and not email:
        raise ValidationFailed("Either email or id must be provided")

    stmt = delete(NewsletterSubscriber)
    if subscriber_id is not None:
        stmt = stmt.where(NewsletterSubscriber.id == subscriber_id)
    else:
        stmt = stmt.where(NewsletterSubscriber.email == email.strip().lower())

    result = await db.execute(stmt)
    deleted = result.rowcount or 0
    if deleted:
        logger.info(f"Deleted {deleted} newsletter subscriber(s) by {'id' if subscriber_id else 'email'}")
    return deleted


def build_export_csv(subscribers: list[NewsletterSubscriber]) -> str:
    writer, output = create_csv_writer()
    writer.writerow(SUBSCRIBER_CSV_HEADER)
    for subscriber in subscribers:
        writer.writerow(generate_subscriber_csv_row(subscriber))
    return output.getvalue()


async def compute_stats(db: AsyncSession) -> dict:
    """Aggregate subscriber counts by status and by source tag."""
    status_rows = await db.execute(
        select(NewsletterSubscriber.status, NewsletterSubscriber.confirmed, func.count())
        .group_by(NewsletterSubscriber.status, NewsletterSubscriber.confirmed)
    )

    by_status = {status.value: 0 for status in SubscriberStatus}
    total = confirmed = pending = 0
    for status, is_confirmed, count in status_rows.all():
        total += count
        by_status[SubscriberStatus(status).value] += count
        if is_confirmed and status == SubscriberStatus.ACTIVE:
            confirmed += count
        elif not is_confirmed and status == SubscriberStatus.PENDING:
            pending += count

    source_rows = await db.execute(
        select(NewsletterSubscriber.source, func.count())
        .where(*_active_filter())
        .group_by(NewsletterSubscriber.source)
    )
    source_breakdown: dict[str, int] = {}
    for source, count in source_rows.all():
        key = source or "unknown"
        source_breakdown[key] = source_breakdown.get(key, 0) + count

    recent = await db.execute(
        select(NewsletterSubscriber)
        .where(*_active_filter())
        .order_by(NewsletterSubscriber.created_at.desc())
        .limit(5)
    )

    return {
        "total": total,
        "confirmed": confirmed,
        "unsubscribed": by_status[SubscriberStatus.UNSUBSCRIBED.value],
        "pending": pending,
        "conversion_rate": round(confirmed / total * 100) if total else 0,
        "by_status": by_status,
        "source_breakdown": source_breakdown,
        "recent_subscribers": list(recent.scalars().all()),
        "last_updated": datetime.now(timezone.utc),
    }
