import logging

from fastapi import APIRouter, Depends, Request

from arbrebio.errors import EmailDeliveryError, EmailServiceUnavailable, success_response
from arbrebio.schemas.contact import ContactRequest, QuoteRequest
from arbrebio.services.email_service import email_service, _redact_email
from arbrebio.services.rate_limiter import client_ip, rate_limit_forms
from arbrebio.utils.text import sanitize_input

logger = logging.getLogger(__name__)

router = APIRouter(tags=["contact"], dependencies=[Depends(rate_limit_forms)])


def _sanitized(form: dict, limits: dict[str, int]) -> dict:
    cleaned = dict(form)
    for field, max_length in limits.items():
        if isinstance(cleaned.get(field), str):
            cleaned[field] = sanitize_input(cleaned[field], max_length)
    return cleaned


@router.post("/contact")
async def submit_contact(data: ContactRequest, request: Request):
    """Forward a contact form to the admin mailbox and acknowledge the visitor."""
    if not email_service.is_configured():
        raise EmailServiceUnavailable()

    form = _sanitized(
        data.model_dump(by_alias=True),
        {"firstName": 50, "lastName": 50, "email": 100, "phone": 20, "interest": 100, "message": 1000},
    )

    if not await email_service.send_contact_notification(form, client_ip(request)):
        raise EmailDeliveryError()
    logger.info(f"Contact form from {_redact_email(form['email'])} about '{form['interest']}' forwarded")

    if not await email_service.send_contact_auto_reply(form["email"], form["firstName"]):
        logger.warning(f"Contact auto-reply to {_redact_email(form['email'])} was not delivered")

    return success_response("Message sent successfully")


@router.post("/quote")
async def submit_quote(data: QuoteRequest):
    """Forward a quote request to the sales mailbox and acknowledge the visitor."""
    if not email_service.is_configured():
        raise EmailServiceUnavailable()

    form = _sanitized(
        data.model_dump(by_alias=True),
        {
            "firstName": 50, "lastName": 50, "email": 100, "phone": 20,
            "location": 100, "timeline": 100, "requirements": 500, "productType": 100,
        },
    )

    if not await email_service.send_quote_notification(form):
        raise EmailDeliveryError()
    logger.info(f"{form['quoteType']} quote request from {_redact_email(form['email'])} forwarded")

    if not await email_service.send_quote_auto_reply(form["email"], form["firstName"], form["quoteType"]):
        logger.warning(f"Quote auto-reply to {_redact_email(form['email'])} was not delivered")

    return success_response("Quote request sent successfully")
