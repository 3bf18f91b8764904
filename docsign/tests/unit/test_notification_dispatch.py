from __future__ import annotations

from datetime import datetime, timezone

import httpx
import pytest

from docsign.core.config import get_settings
from docsign.persistence.db import SessionLocal
from docsign.persistence.repos import notifications as notifications_repo
from docsign.services.notifications import dispatcher as dispatcher_module
from docsign.services.notifications import (
    NotificationDispatcher,
    NotificationEvent,
    NotificationRequest,
    reminder_bucket,
    retry_backoff_ms,
    set_dispatcher,
)
from docsign.workers.notification_worker import deliver_notification


async def _no_sleep(_: float) -> None:
    return None


class FlakyTransport:
    def __init__(self, failures: list[Exception]) -> None:
        self.failures = list(failures)
        self.delivered: list[str] = []
        self.calls = 0

    async def __call__(self, notification) -> None:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        self.delivered.append(notification.id)


class FakeQueue:
    def __init__(self) -> None:
        self.jobs: list[tuple] = []

    async def enqueue_job(self, name: str, *args, **kwargs) -> None:
        self.jobs.append((name, args, kwargs))


def _http_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "http://hooks.test/notify")
    return httpx.HTTPStatusError(f"status {status}", request=request, response=httpx.Response(status, request=request))


def _request(**overrides) -> NotificationRequest:
    values = {
        "document_id": "doc-1",
        "event": NotificationEvent.SIGNATURE_REQUEST,
        "recipient": "signer0@example.test",
        "signer_id": "s0",
        "payload": {"title": "Service agreement"},
    }
    values.update(overrides)
    return NotificationRequest(**values)


async def _attempt_outcomes(notification_id: str) -> list[str]:
    async with SessionLocal() as session:
        return [attempt.outcome for attempt in await notifications_repo.list_attempts(session, notification_id)]


@pytest.mark.asyncio
async def test_enqueue_is_idempotent_per_key() -> None:
    transport = FlakyTransport([])
    dispatcher = NotificationDispatcher(transport=transport, mode="inline", sleep=_no_sleep)

    first = await dispatcher.enqueue(_request())
    second = await dispatcher.enqueue(_request(payload={"title": "changed"}))
    assert second.id == first.id
    assert first.status == "delivered"
    assert transport.delivered == [first.id]

    other_signer = await dispatcher.enqueue(_request(signer_id="s1", recipient="signer1@example.test"))
    assert other_signer.id != first.id
    assert transport.calls == 2


@pytest.mark.asyncio
async def test_transient_failures_retry_until_delivered() -> None:
    transport = FlakyTransport([RuntimeError("smtp down"), _http_error(503)])
    dispatcher = NotificationDispatcher(transport=transport, mode="inline", max_attempts=5, sleep=_no_sleep)

    row = await dispatcher.enqueue(_request())
    assert row.status == "delivered"
    assert row.attempts == 3
    assert row.last_error is None
    assert await _attempt_outcomes(row.id) == ["failure", "failure", "success"]


@pytest.mark.asyncio
async def test_attempts_are_bounded_and_client_errors_are_terminal() -> None:
    exhausted = NotificationDispatcher(
        transport=FlakyTransport([RuntimeError("down")] * 5), mode="inline", max_attempts=3, sleep=_no_sleep
    )
    row = await exhausted.enqueue(_request())
    assert row.status == "failed"
    assert row.attempts == 3
    assert row.last_error == "down"

    rejected = NotificationDispatcher(transport=FlakyTransport([_http_error(400)]), mode="inline", sleep=_no_sleep)
    row = await rejected.enqueue(_request(event=NotificationEvent.DOCUMENT_VOIDED))
    assert row.status == "failed"
    assert row.attempts == 1

    throttled_transport = FlakyTransport([_http_error(429)])
    throttled = NotificationDispatcher(transport=throttled_transport, mode="inline", sleep=_no_sleep)
    row = await throttled.enqueue(_request(event=NotificationEvent.DOCUMENT_COMPLETED))
    assert row.status == "delivered"
    assert throttled_transport.calls == 2


@pytest.mark.asyncio
async def test_queue_mode_publishes_and_worker_delivers(monkeypatch) -> None:
    queue = FakeQueue()

    async def fake_pool():
        return queue

    monkeypatch.setattr(dispatcher_module, "get_queue_pool", fake_pool)
    transport = FlakyTransport([RuntimeError("blip")])
    dispatcher = NotificationDispatcher(transport=transport, mode="queue", sleep=_no_sleep)
    set_dispatcher(dispatcher)

    row = await dispatcher.enqueue(_request())
    assert row.status == "queued"
    assert queue.jobs == [("deliver_notification", (row.id,), {"_queue_name": "notifications", "_defer_by": None})]

    # The first attempt fails and is republished; the retry lands.
    assert await deliver_notification({}, row.id) == "retrying"
    assert len(queue.jobs) == 2
    assert await deliver_notification({}, row.id) == "delivered"
    assert await deliver_notification({}, row.id) == "skipped"


@pytest.mark.asyncio
async def test_dispatch_due_recovers_unpublished_rows(monkeypatch) -> None:
    async def broken_pool():
        raise ConnectionError("redis unavailable")

    monkeypatch.setattr(dispatcher_module, "get_queue_pool", broken_pool)
    queued = NotificationDispatcher(transport=FlakyTransport([]), mode="queue", sleep=_no_sleep)
    row = await queued.enqueue(_request())
    assert row.status == "queued"

    transport = FlakyTransport([])
    sweeper = NotificationDispatcher(transport=transport, mode="inline", sleep=_no_sleep)
    assert await sweeper.dispatch_due() == 1
    assert transport.delivered == [row.id]
    assert await sweeper.dispatch_due() == 0


def test_reminder_buckets_collapse_within_interval() -> None:
    morning = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)
    evening = datetime(2026, 3, 10, 21, 0, tzinfo=timezone.utc)
    next_day = datetime(2026, 3, 11, 9, 0, tzinfo=timezone.utc)
    assert reminder_bucket(morning, 86400) == reminder_bucket(evening, 86400)
    assert reminder_bucket(morning, 86400) != reminder_bucket(next_day, 86400)

    reminder = _request(event=NotificationEvent.SIGNATURE_REMINDER, bucket=reminder_bucket(morning, 86400))
    assert reminder.idempotency_key == f"doc-1:s0:signature_reminder:{reminder_bucket(morning, 86400)}"
    assert _request(signer_id=None).idempotency_key == "doc-1:-:signature_request"


def test_retry_backoff_grows_with_deterministic_jitter(monkeypatch) -> None:
    monkeypatch.setenv("NOTIFY_BACKOFF_MS", "1000")
    get_settings.cache_clear()
    try:
        first = retry_backoff_ms(notification_id="n-1", attempt_no=1)
        second = retry_backoff_ms(notification_id="n-1", attempt_no=2)
        assert 1000 <= first < 1250
        assert 2000 <= second < 2250
        assert retry_backoff_ms(notification_id="n-1", attempt_no=1) == first
    finally:
        monkeypatch.setenv("NOTIFY_BACKOFF_MS", "0")
        get_settings.cache_clear()
