import asyncio
import logging
from typing import Coroutine, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from arbrebio.config import get_settings
from arbrebio.database import get_db
from arbrebio.errors import (
    ApiError,
    EmailDeliveryError,
    EmailServiceUnavailable,
    NotFound,
    ValidationFailed,
    success_response,
)
from arbrebio.schemas.newsletter import (
    DispatchReportRead,
    NewsletterAdminRequest,
    NewsletterResponse,
    NewsletterSendRequest,
    NewsletterSendResponse,
    NewsletterStats,
    NewsletterSubscribeRequest,
    NewsletterSubscriberRead,
    RecentSubscriberRead,
)
from arbrebio.services import newsletter_service
from arbrebio.services.email_service import email_service, _redact_email
from arbrebio.services.newsletter_dispatch import NewsletterDispatcher, get_dispatcher
from arbrebio.services.rate_limiter import rate_limit_forms
from arbrebio.services.tokens import authenticate_admin, generate_unsubscribe_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/newsletter", tags=["newsletter"])

# Strong references so pending email tasks are not garbage collected
_background_tasks: set[asyncio.Task] = set()


async def _run_quietly(coro: Coroutine, description: str) -> None:
    try:
        await coro
    except Exception as e:
        logger.error(f"Background email '{description}' failed: {type(e).__name__}: {e}")


def _send_in_background(coro: Coroutine, description: str) -> None:
    """Fire-and-forget an email; the HTTP response never waits on it."""
    try:
        task = asyncio.create_task(_run_quietly(coro, description))
    except RuntimeError:
        coro.close()
        logger.warning(f"Could not create background task for {description}")
        return
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


@router.post("/subscribe", response_model=NewsletterResponse, dependencies=[Depends(rate_limit_forms)])
async def subscribe(data: NewsletterSubscribeRequest, db: AsyncSession = Depends(get_db)):
    """Start (or restart) double opt-in for an address. No authentication required."""
    try:
        outcome = await newsletter_service.subscribe(db, data)
        # The record must be durable before the confirmation link goes out
        await db.commit()
    except SQLAlchemyError as e:
        logger.error(f"Failed to subscribe {_redact_email(data.email)}: {type(e).__name__}: {e}")
        raise ApiError("Failed to process subscription")

    if not outcome.needs_confirmation:
        return NewsletterResponse(success=True, message="You are already subscribed to our newsletter")

    subscriber = outcome.subscriber
    _send_in_background(email_service.send_confirmation(subscriber), "newsletter confirmation")
    if outcome.result == newsletter_service.SubscribeResult.CREATED:
        _send_in_background(email_service.notify_admin_new_subscriber(subscriber), "new subscriber notice")

    return NewsletterResponse(success=True, message="Please check your email to confirm your subscription")


@router.get("/confirm", response_model=NewsletterResponse)
async def confirm(token: Optional[str] = Query(None), db: AsyncSession = Depends(get_db)):
    """Activate the subscription holding ``token``."""
    if not token:
        raise ValidationFailed("Invalid confirmation link")

    subscriber = await newsletter_service.confirm(db, token)
    if subscriber is None:
        raise ValidationFailed("Invalid or expired confirmation link")
    await db.commit()

    unsubscribe_link = email_service.build_link(
        "newsletter/unsubscribe",
        email=subscriber.email,
        token=generate_unsubscribe_token(subscriber.email),
    )
    _send_in_background(email_service.send_welcome(subscriber, unsubscribe_link), "newsletter welcome")

    return NewsletterResponse(success=True, message="Subscription confirmed successfully")


@router.get("/unsubscribe", response_model=NewsletterResponse)
async def unsubscribe(
    email: Optional[str] = Query(None),
    token: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """Unsubscribe via the signed link included in every newsletter email."""
    if not email or not token:
        raise ValidationFailed("Invalid unsubscribe link")

    outcome = await newsletter_service.unsubscribe(db, email, token)
    if outcome is None:
        raise ValidationFailed("Invalid unsubscribe request")

    if outcome.changed:
        await db.commit()
        _send_in_background(email_service.notify_admin_unsubscribe(outcome.subscriber), "unsubscribe notice")

    return NewsletterResponse(success=True, message="Successfully unsubscribed")


async def _send_issue(
    data: NewsletterSendRequest,
    db: AsyncSession,
    dispatcher: NewsletterDispatcher,
) -> NewsletterSendResponse:
    key_id = authenticate_admin(data.admin_token)

    if not email_service.is_configured():
        raise EmailServiceUnavailable("Email service is not configured")

    if data.test_mode:
        if not await dispatcher.send_test(data.subject, data.content):
            raise EmailDeliveryError("Failed to send test email")
        logger.info(f"Test newsletter '{data.subject}' sent to admin by key={key_id}")
        return NewsletterSendResponse(success=True, message="Test email sent to admin", test_mode=True)

    subscribers = await newsletter_service.active_subscribers(db)
    if not subscribers:
        raise NotFound("No confirmed subscribers found")

    logger.info(f"Newsletter '{data.subject}' dispatch to {len(subscribers)} subscribers started by key={key_id}")
    report = await dispatcher.dispatch(subscribers, data.subject, data.content)

    if report.failed:
        message = f"Newsletter sent to {report.sent} of {report.attempted} subscribers; {report.failed} failed"
    else:
        message = f"Newsletter sent to {report.sent} subscribers"

    return NewsletterSendResponse(
        success=report.failed == 0,
        message=message,
        count=report.sent,
        report=DispatchReportRead(
            sent=report.sent,
            failed=report.failed,
            skipped=report.skipped,
            failed_recipients=report.failed_recipients,
        ),
    )


@router.post("/send", response_model=NewsletterSendResponse, response_model_exclude_none=True)
async def send_newsletter(
    data: NewsletterSendRequest,
    db: AsyncSession = Depends(get_db),
    dispatcher: NewsletterDispatcher = Depends(get_dispatcher),
):
    """Send an issue to all confirmed subscribers."""
    return await _send_issue(data, db, dispatcher)


@router.post("/bulk-send", response_model=NewsletterSendResponse, response_model_exclude_none=True)
async def bulk_send_newsletter(
    data: NewsletterSendRequest,
    db: AsyncSession = Depends(get_db),
    dispatcher: NewsletterDispatcher = Depends(get_dispatcher),
):
    """Send an issue in rate-limited batches; ``testMode`` sends to the admin only."""
    return await _send_issue(data, db, dispatcher)


# Admin actions

def _stats_payload(stats: dict) -> dict:
    recent = [RecentSubscriberRead.model_validate(s) for s in stats["recent_subscribers"]]
    return NewsletterStats(**{**stats, "recent_subscribers": recent}).model_dump(mode="json", by_alias=True)


async def _export(db: AsyncSession) -> JSONResponse:
    if not email_service.is_configured():
        raise EmailServiceUnavailable("Email service is not configured")

    subscribers = await newsletter_service.active_subscribers(db)
    if not subscribers:
        raise NotFound("No subscribers found")

    csv_content = newsletter_service.build_export_csv(subscribers)
    if not await email_service.send_export(csv_content, len(subscribers)):
        raise EmailDeliveryError("Failed to send export email")

    return success_response(
        f"Exported {len(subscribers)} subscribers and sent to {get_settings().admin_email}",
        count=len(subscribers),
    )


@router.get("/stats")
async def stats(token: Optional[str] = Query(None), db: AsyncSession = Depends(get_db)):
    """Subscriber counts by status and source. Admin key required."""
    authenticate_admin(token)
    payload = _stats_payload(await newsletter_service.compute_stats(db))
    response = success_response("Newsletter statistics", data=payload)
    response.headers["Cache-Control"] = f"max-age={get_settings().stats_cache_max_age}"
    return response


@router.get("/export")
async def export(token: Optional[str] = Query(None), db: AsyncSession = Depends(get_db)):
    """Email the confirmed subscriber list to the admin mailbox as CSV."""
    authenticate_admin(token)
    return await _export(db)


@router.post("/admin")
async def admin_action(data: NewsletterAdminRequest, db: AsyncSession = Depends(get_db)):
    key_id = authenticate_admin(data.admin_token)
    logger.info(f"Newsletter admin action={data.action} by key={key_id}")

    if data.action == "list":
        subscribers = await newsletter_service.list_subscribers(db)
        return success_response(
            f"{len(subscribers)} subscribers",
            data=[
                NewsletterSubscriberRead.model_validate(s).model_dump(mode="json")
                for s in subscribers
            ],
        )

    if data.action == "delete":
        deleted = await newsletter_service.delete_subscriber(db, subscriber_id=data.id, email=data.email)
        if not deleted:
            raise NotFound("Subscriber not found")
        await db.commit()
        return success_response("Subscriber deleted successfully")

    if data.action == "export":
        return await _export(db)

    payload = _stats_payload(await newsletter_service.compute_stats(db))
    return success_response("Newsletter statistics", data=payload)
