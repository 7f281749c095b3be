"""Batched delivery of a newsletter issue to confirmed subscribers.

Recipients are sent in fixed-size batches with a pause between batches to
stay under the email provider's rate limits. Each recipient's outcome is
recorded; one failed address does not stop the rest of the run.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, Iterator, Optional, Sequence, TypeVar

from arbrebio.config import get_settings
from arbrebio.services.email_service import EmailService, _redact_email, email_service
from arbrebio.services.tokens import generate_unsubscribe_token

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Recipient:
    email: str
    full_name: Optional[str] = None


@dataclass
class DispatchReport:
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    failed_recipients: list[str] = field(default_factory=list)
    admin_copy_sent: bool = False

    @property
    def attempted(self) -> int:
        return self.sent + self.failed


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    if size < 1:
        raise ValueError("batch size must be positive")
    for start in range(0, len(items), size):
        yield items[start:start + size]


class NewsletterDispatcher:
    def __init__(
        self,
        email: EmailService,
        batch_size: int = 50,
        batch_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._email = email
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self._sleep = sleep

    async def send_test(self, subject: str, content: str) -> bool:
        """Send the issue to the admin mailbox only."""
        return await self._email.send_newsletter_copy(subject, content, prefix="[TEST]")

    def _unique_recipients(self, recipients: Iterable, report: DispatchReport) -> list[Recipient]:
        seen: set[str] = set()
        unique: list[Recipient] = []
        for item in recipients:
            address = (item.email or "").strip().lower()
            if not address or address in seen:
                report.skipped += 1
                continue
            seen.add(address)
            unique.append(Recipient(email=address, full_name=item.full_name))
        return unique

    async def _send_one(self, recipient: Recipient, subject: str, content: str) -> bool:
        unsubscribe_link = self._email.build_link(
            "newsletter/unsubscribe",
            email=recipient.email,
            token=generate_unsubscribe_token(recipient.email),
        )
        return await self._email.send_newsletter(
            recipient.email,
            recipient.full_name,
            subject,
            content,
            unsubscribe_link=unsubscribe_link,
        )

    async def dispatch(self, recipients: Iterable, subject: str, content: str) -> DispatchReport:
        """Send ``subject``/``content`` to every recipient, then copy the admin.

        ``recipients`` are objects with ``email`` and ``full_name`` attributes.
        """
        report = DispatchReport()
        unique = self._unique_recipients(recipients, report)
        batches = list(chunked(unique, self.batch_size))

        for index, batch in enumerate(batches):
            if index:
                await self._sleep(self.batch_delay)

            outcomes = await asyncio.gather(
                *(self._send_one(recipient, subject, content) for recipient in batch),
                return_exceptions=True,
            )
            for recipient, outcome in zip(batch, outcomes):
                if outcome is True:
                    report.sent += 1
                    continue
                report.failed += 1
                report.failed_recipients.append(recipient.email)
                if isinstance(outcome, Exception):
                    logger.error(
                        f"Newsletter delivery to {_redact_email(recipient.email)} raised "
                        f"{type(outcome).__name__}: {outcome}"
                    )
                elif isinstance(outcome, BaseException):
                    raise outcome

            logger.info(
                f"Newsletter batch {index + 1}/{len(batches)} done: "
                f"{report.sent} sent, {report.failed} failed so far"
            )

        report.admin_copy_sent = await self._email.send_newsletter_copy(subject, content, prefix="[COPY]")
        if not report.admin_copy_sent:
            logger.warning("Newsletter admin copy was not delivered")

        logger.info(
            f"Newsletter '{subject}' dispatched: sent={report.sent} failed={report.failed} skipped={report.skipped}"
        )
        return report


def get_dispatcher() -> NewsletterDispatcher:
    """FastAPI dependency building a dispatcher from settings."""
    settings = get_settings()
    return NewsletterDispatcher(
        email_service,
        batch_size=settings.newsletter_batch_size,
        batch_delay=settings.newsletter_batch_delay_seconds,
    )
