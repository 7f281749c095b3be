import pytest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

from arbrebio.services.newsletter_dispatch import NewsletterDispatcher, chunked


def _fake_email(fail_for=(), raise_for=()):
    email = MagicMock()
    email.build_link.side_effect = lambda path, **params: f"https://arbrebio.com/{path}?email={params['email']}"

    async def send_newsletter(to, name, subject, content, unsubscribe_link=None):
        if to in raise_for:
            raise RuntimeError("provider exploded")
        return to not in fail_for

    email.send_newsletter = AsyncMock(side_effect=send_newsletter)
    email.send_newsletter_copy = AsyncMock(return_value=True)
    return email


def _recipients(count, domain="example.com"):
    return [SimpleNamespace(email=f"reader{i}@{domain}", full_name=f"Reader {i}") for i in range(count)]


def test_chunked_splits_in_order():
    assert [list(batch) for batch in chunked([1, 2, 3, 4, 5], 2)] == [[1, 2], [3, 4], [5]]


def test_chunked_rejects_non_positive_size():
    with pytest.raises(ValueError):
        list(chunked([1], 0))


@pytest.mark.asyncio
async def test_dispatch_sends_in_batches_with_delay():
    email = _fake_email()
    sleep = AsyncMock()
    dispatcher = NewsletterDispatcher(email, batch_size=50, batch_delay=1.0, sleep=sleep)

    report = await dispatcher.dispatch(_recipients(120), "Harvest news", "<p>Season update</p>")

    assert report.sent == 120
    assert report.failed == 0
    assert email.send_newsletter.await_count == 120
    # 3 batches, a pause between each pair
    assert sleep.await_count == 2
    sleep.assert_awaited_with(1.0)


@pytest.mark.asyncio
async def test_each_email_carries_its_own_unsubscribe_link():
    email = _fake_email()
    dispatcher = NewsletterDispatcher(email, sleep=AsyncMock())

    await dispatcher.dispatch(_recipients(2), "Harvest news", "<p>Season update</p>")

    links = {c.args[0]: c.kwargs["unsubscribe_link"] for c in email.send_newsletter.await_args_list}
    assert links["reader0@example.com"].endswith("email=reader0@example.com")
    assert links["reader1@example.com"].endswith("email=reader1@example.com")


@pytest.mark.asyncio
async def test_failures_are_reported_and_do_not_stop_the_run():
    email = _fake_email(fail_for={"reader1@example.com"}, raise_for={"reader3@example.com"})
    dispatcher = NewsletterDispatcher(email, batch_size=2, sleep=AsyncMock())

    report = await dispatcher.dispatch(_recipients(5), "Harvest news", "<p>Season update</p>")

    assert report.sent == 3
    assert report.failed == 2
    assert report.attempted == 5
    assert report.failed_recipients == ["reader1@example.com", "reader3@example.com"]


@pytest.mark.asyncio
async def test_duplicates_and_blanks_are_skipped():
    email = _fake_email()
    dispatcher = NewsletterDispatcher(email, sleep=AsyncMock())
    recipients = [
        SimpleNamespace(email="a@example.com", full_name=None),
        SimpleNamespace(email="A@example.com ", full_name=None),
        SimpleNamespace(email="", full_name=None),
        SimpleNamespace(email="b@example.com", full_name=None),
    ]

    report = await dispatcher.dispatch(recipients, "Harvest news", "<p>Season update</p>")

    assert report.sent == 2
    assert report.skipped == 2


@pytest.mark.asyncio
async def test_admin_copy_sent_after_run():
    email = _fake_email()
    dispatcher = NewsletterDispatcher(email, sleep=AsyncMock())

    report = await dispatcher.dispatch(_recipients(1), "Harvest news", "<p>Season update</p>")

    assert report.admin_copy_sent is True
    email.send_newsletter_copy.assert_awaited_once_with("Harvest news", "<p>Season update</p>", prefix="[COPY]")


@pytest.mark.asyncio
async def test_send_test_only_targets_admin():
    email = _fake_email()
    dispatcher = NewsletterDispatcher(email, sleep=AsyncMock())

    assert await dispatcher.send_test("Harvest news", "<p>Season update</p>") is True

    email.send_newsletter_copy.assert_awaited_once_with("Harvest news", "<p>Season update</p>", prefix="[TEST]")
    email.send_newsletter.assert_not_awaited()
