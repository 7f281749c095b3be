import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy import delete, select
from sqlalchemy.exc import OperationalError
from unittest.mock import AsyncMock, patch

from arbrebio.main import app
from arbrebio.database import AsyncSessionLocal, init_db
from arbrebio.models.newsletter_subscriber import NewsletterSubscriber, SubscriberStatus
from arbrebio.schemas.newsletter import NewsletterSubscribeRequest
from arbrebio.services import newsletter_service
from arbrebio.services.email_service import email_service


async def _fresh_store():
    await init_db()
    async with AsyncSessionLocal() as session:
        await session.execute(delete(NewsletterSubscriber))
        await session.commit()


async def _load(email: str):
    async with AsyncSessionLocal() as session:
        result = await session.execute(select(NewsletterSubscriber).where(NewsletterSubscriber.email == email))
        return result.scalars().all()


def _mock_emails():
    """Patch the lifecycle emails on the shared email service."""
    return (
        patch.object(email_service, "send_confirmation", new=AsyncMock(return_value=True)),
        patch.object(email_service, "notify_admin_new_subscriber", new=AsyncMock(return_value=True)),
        patch.object(email_service, "send_welcome", new=AsyncMock(return_value=True)),
    )


@pytest.mark.asyncio
async def test_subscribe_creates_pending_record_and_sends_confirmation():
    await _fresh_store()
    confirmation, admin_notice, _ = _mock_emails()

    with confirmation as send_confirmation, admin_notice as notify_admin:
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.post(
                "/api/newsletter/subscribe",
                json={"email": "  New.Reader@Example.com ", "full_name": "Awa Diallo", "consent": True},
            )

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "message": "Please check your email to confirm your subscription",
    }

    records = await _load("new.reader@example.com")
    assert len(records) == 1
    record = records[0]
    assert record.status == SubscriberStatus.PENDING
    assert record.confirmed is False
    assert record.confirmation_token
    assert record.source == "website"

    send_confirmation.assert_called_once()
    notify_admin.assert_called_once()


@pytest.mark.asyncio
async def test_confirm_activates_and_clears_token():
    await _fresh_store()
    confirmation, admin_notice, welcome = _mock_emails()

    with confirmation, admin_notice, welcome as send_welcome:
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            await client.post(
                "/api/newsletter/subscribe",
                json={"email": "grower@example.com", "consent": True},
            )
            token = (await _load("grower@example.com"))[0].confirmation_token

            response = await client.get("/api/newsletter/confirm", params={"token": token})
            assert response.status_code == 200
            assert response.json() == {"success": True, "message": "Subscription confirmed successfully"}

            # Tokens are single use
            replay = await client.get("/api/newsletter/confirm", params={"token": token})
            assert replay.status_code == 400
            assert replay.json()["message"] == "Invalid or expired confirmation link"

    record = (await _load("grower@example.com"))[0]
    assert record.status == SubscriberStatus.ACTIVE
    assert record.confirmed is True
    assert record.confirmation_token is None
    assert record.confirmed_at is not None

    send_welcome.assert_called_once()
    unsubscribe_link = send_welcome.call_args.args[1]
    assert "newsletter/unsubscribe?email=grower%40example.com&token=" in unsubscribe_link


@pytest.mark.asyncio
async def test_confirm_without_token_is_rejected():
    await init_db()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        missing = await client.get("/api/newsletter/confirm")
        unknown = await client.get("/api/newsletter/confirm", params={"token": "not-a-real-token"})

    assert missing.status_code == 400
    assert missing.json()["message"] == "Invalid confirmation link"
    assert unknown.status_code == 400
    assert unknown.json()["message"] == "Invalid or expired confirmation link"


@pytest.mark.asyncio
async def test_consent_must_be_true():
    await _fresh_store()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        refused = await client.post(
            "/api/newsletter/subscribe",
            json={"email": "noconsent@example.com", "consent": False},
        )
        missing = await client.post(
            "/api/newsletter/subscribe",
            json={"email": "noconsent@example.com"},
        )

    assert refused.status_code == 400
    body = refused.json()
    assert body["success"] is False
    assert body["message"] == "You must accept the privacy policy"
    assert missing.status_code == 400
    assert await _load("noconsent@example.com") == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {"email": "not-an-email", "consent": True},
        {"email": "reader@example.com", "full_name": "R2-D2 <script>", "consent": True},
        {"email": "a" * 95 + "@example.com", "consent": True},
    ],
)
async def test_invalid_subscribe_payloads_return_400(payload):
    await init_db()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.post("/api/newsletter/subscribe", json=payload)

    assert response.status_code == 400
    assert response.json()["success"] is False


@pytest.mark.asyncio
async def test_double_subscribe_keeps_one_record_and_rotates_token():
    await _fresh_store()
    confirmation, admin_notice, _ = _mock_emails()

    with confirmation as send_confirmation, admin_notice as notify_admin:
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            await client.post("/api/newsletter/subscribe", json={"email": "twice@example.com", "consent": True})
            first_token = (await _load("twice@example.com"))[0].confirmation_token

            response = await client.post(
                "/api/newsletter/subscribe",
                json={"email": "TWICE@example.com", "consent": True, "source": "footer"},
            )

    assert response.status_code == 200
    records = await _load("twice@example.com")
    assert len(records) == 1
    assert records[0].status == SubscriberStatus.PENDING
    assert records[0].confirmation_token != first_token
    assert records[0].source == "footer"

    assert send_confirmation.call_count == 2
    notify_admin.assert_called_once()


@pytest.mark.asyncio
async def test_active_subscriber_is_not_emailed_again():
    await _fresh_store()
    async with AsyncSessionLocal() as session:
        session.add(NewsletterSubscriber(
            email="loyal@example.com",
            status=SubscriberStatus.ACTIVE,
            confirmed=True,
            confirmation_token=None,
        ))
        await session.commit()

    confirmation, admin_notice, _ = _mock_emails()
    with confirmation as send_confirmation, admin_notice as notify_admin:
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.post(
                "/api/newsletter/subscribe",
                json={"email": "loyal@example.com", "consent": True},
            )

    assert response.status_code == 200
    assert response.json()["message"] == "You are already subscribed to our newsletter"
    send_confirmation.assert_not_called()
    notify_admin.assert_not_called()
    assert (await _load("loyal@example.com"))[0].status == SubscriberStatus.ACTIVE


@pytest.mark.asyncio
async def test_unsubscribed_address_can_subscribe_again():
    await _fresh_store()
    async with AsyncSessionLocal() as session:
        session.add(NewsletterSubscriber(
            email="returning@example.com",
            status=SubscriberStatus.UNSUBSCRIBED,
            confirmed=True,
            confirmation_token=None,
        ))
        await session.commit()

    confirmation, admin_notice, _ = _mock_emails()
    with confirmation as send_confirmation, admin_notice:
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.post(
                "/api/newsletter/subscribe",
                json={"email": "returning@example.com", "consent": True},
            )

    assert response.status_code == 200
    record = (await _load("returning@example.com"))[0]
    assert record.status == SubscriberStatus.PENDING
    assert record.confirmed is False
    assert record.unsubscribed_at is None
    send_confirmation.assert_called_once()


@pytest.mark.asyncio
async def test_subscribe_succeeds_when_email_disabled():
    await _fresh_store()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.post(
            "/api/newsletter/subscribe",
            json={"email": "offline@example.com", "consent": True},
        )

    assert response.status_code == 200
    assert len(await _load("offline@example.com")) == 1


@pytest.mark.asyncio
async def test_subscribe_is_rate_limited_per_ip():
    await _fresh_store()
    confirmation, admin_notice, _ = _mock_emails()

    with confirmation, admin_notice:
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            statuses = []
            for i in range(11):
                response = await client.post(
                    "/api/newsletter/subscribe",
                    json={"email": f"burst{i}@example.com", "consent": True},
                    headers={"X-Forwarded-For": "198.51.100.23"},
                )
                statuses.append(response.status_code)

    assert statuses[:10] == [200] * 10
    assert statuses[10] == 429
    assert await _load("burst10@example.com") == []


@pytest.mark.asyncio
async def test_store_failure_returns_500_envelope():
    await init_db()

    with patch(
        "arbrebio.api.newsletter.newsletter_service.subscribe",
        new=AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("database is locked"))),
    ):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.post(
                "/api/newsletter/subscribe",
                json={"email": "broken@example.com", "consent": True},
            )

    assert response.status_code == 500
    assert response.json() == {
        "success": False,
        "message": "Failed to process subscription",
        "code": "INTERNAL_ERROR",
    }


@pytest.mark.asyncio
async def test_concurrent_insert_falls_back_to_existing_record():
    await _fresh_store()
    async with AsyncSessionLocal() as session:
        session.add(NewsletterSubscriber(
            email="racer@example.com",
            status=SubscriberStatus.PENDING,
            confirmed=False,
            confirmation_token="token-from-the-other-request",
        ))
        await session.commit()

    real_lookup = newsletter_service.get_by_email
    misses = [None]

    async def get_by_email(db, email):
        # The first lookup misses, as if the other request had not committed yet
        if misses:
            return misses.pop()
        return await real_lookup(db, email)

    lookup = AsyncMock(side_effect=get_by_email)

    with patch.object(newsletter_service, "get_by_email", new=lookup):
        async with AsyncSessionLocal() as session:
            outcome = await newsletter_service.subscribe(
                session, NewsletterSubscribeRequest(email="racer@example.com", consent=True),
            )
            await session.commit()

    assert outcome.result == newsletter_service.SubscribeResult.RESUBSCRIBED
    assert lookup.await_count == 2

    records = await _load("racer@example.com")
    assert len(records) == 1
    assert records[0].status == SubscriberStatus.PENDING
    assert records[0].confirmation_token != "token-from-the-other-request"
