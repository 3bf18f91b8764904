from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import hashlib
import logging
from typing import Any, Awaitable, Callable
from uuid import uuid4

from arq import create_pool
from arq.connections import RedisSettings
import httpx
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docsign.core.config import get_settings
from docsign.domain.models import Notification, NotificationAttempt, utc_now
from docsign.persistence.db import SessionLocal
from docsign.persistence.repos import notifications as notifications_repo
from docsign.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

Transport = Callable[[Notification], Awaitable[None]]

_NON_TERMINAL_HTTP_4XX = {408, 429}
_queue_pool = None
_queue_pool_loop = None
_queue_lock = asyncio.Lock()


class NotificationEvent:
    SIGNATURE_REQUEST = "signature_request"
    SIGNATURE_REMINDER = "signature_reminder"
    DOCUMENT_SIGNED = "document_signed"
    DOCUMENT_COMPLETED = "document_completed"
    DOCUMENT_DECLINED = "document_declined"
    DOCUMENT_VOIDED = "document_voided"
    DOCUMENT_EXPIRED = "document_expired"


@dataclass(frozen=True)
class NotificationRequest:
    document_id: str
    event: str
    recipient: str
    signer_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    # Distinguishes repeated sends of the same event, e.g. one reminder per interval.
    bucket: str | None = None

    @property
    def idempotency_key(self) -> str:
        parts = [self.document_id, self.signer_id or "-", self.event]
        if self.bucket:
            parts.append(self.bucket)
        return ":".join(parts)


def retry_backoff_ms(*, notification_id: str, attempt_no: int) -> int:
    # Exponential backoff with deterministic jitter so retries of many rows do not align.
    base = max(0, int(get_settings().notify_backoff_ms))
    if base == 0:
        return 0
    backoff = base * (2 ** max(0, attempt_no - 1))
    digest = hashlib.sha256(f"{notification_id}:{attempt_no}".encode("utf-8")).hexdigest()
    return backoff + int(digest[:8], 16) % max(1, base // 4)


def reminder_bucket(now: datetime, interval_s: int) -> str:
    # Stable bucket boundary so a reminder sweep collapses to one send per interval.
    interval = max(1, int(interval_s))
    epoch = int(now.timestamp())
    return str(epoch - epoch % interval)


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status >= 500 or status in _NON_TERMINAL_HTTP_4XX
    return True


async def log_transport(notification: Notification) -> None:
    logger.info(
        "notification_sent id=%s event=%s recipient=%s document_id=%s",
        notification.id,
        notification.event,
        notification.recipient,
        notification.document_id,
    )


async def webhook_transport(notification: Notification) -> None:
    settings = get_settings()
    if not settings.notify_webhook_url:
        raise RuntimeError("notify_webhook_url is not configured")
    body = {
        "id": notification.id,
        "event": notification.event,
        "recipient": notification.recipient,
        "documentId": notification.document_id,
        "signerId": notification.signer_id,
        "payload": notification.payload_json,
    }
    async with httpx.AsyncClient(timeout=10.0) as client:
        response = await client.post(
            settings.notify_webhook_url,
            json=body,
            headers={"X-Notification-Id": notification.id, "X-Notification-Event": notification.event},
        )
        response.raise_for_status()


def default_transport() -> Transport:
    return webhook_transport if get_settings().notify_transport == "webhook" else log_transport


async def get_queue_pool():
    # Cache the arq pool per event loop to avoid reconnect churn in API and worker code paths.
    global _queue_pool, _queue_pool_loop
    current_loop = asyncio.get_running_loop()
    if _queue_pool is not None and _queue_pool_loop is not current_loop:
        _queue_pool = None
    async with _queue_lock:
        if _queue_pool is None:
            settings = get_settings()
            _queue_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.notify_queue_name,
            )
            _queue_pool_loop = current_loop
    return _queue_pool


class NotificationDispatcher:
    """Durable, idempotent notification delivery with at-least-once semantics.

    ``enqueue`` records the notification once per idempotency key and hands it
    to the arq queue (or delivers it immediately in inline mode). Every
    delivery attempt is recorded; transient failures retry with exponential
    backoff up to ``notify_max_attempts``.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        transport: Transport | None = None,
        mode: str | None = None,
        max_attempts: int | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory or SessionLocal
        self._transport = transport or default_transport()
        self._mode = mode or settings.notify_execution_mode
        self._max_attempts = max(1, int(max_attempts or settings.notify_max_attempts))
        self._sleep = sleep
        self._clock = clock or utc_now

    @property
    def mode(self) -> str:
        return self._mode

    async def enqueue(self, request: NotificationRequest) -> Notification:
        now = self._clock()
        key = request.idempotency_key
        async with self._session_factory() as session:
            existing = await notifications_repo.get_by_key(session, key)
            if existing is not None:
                logger.debug("notification_duplicate key=%s", key)
                return existing
            row = Notification(
                id=str(uuid4()),
                idempotency_key=key,
                document_id=request.document_id,
                signer_id=request.signer_id,
                event=request.event,
                recipient=request.recipient,
                payload_json=request.payload,
                status="queued",
                attempts=0,
                next_attempt_at=now,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                # A concurrent enqueue with the same key won.
                await session.rollback()
                existing = await notifications_repo.get_by_key(session, key)
                if existing is None:
                    raise
                return existing
        increment_counter("notifications_enqueued_total")
        if self._mode == "inline":
            return await self.deliver_inline(row.id) or row
        await self._publish(row.id)
        return row

    async def _publish(self, notification_id: str, *, defer_ms: int = 0) -> bool:
        settings = get_settings()
        try:
            pool = await get_queue_pool()
            await pool.enqueue_job(
                "deliver_notification",
                notification_id,
                _queue_name=settings.notify_queue_name,
                _defer_by=timedelta(milliseconds=defer_ms) if defer_ms > 0 else None,
            )
            return True
        except Exception as exc:  # noqa: BLE001 - the due-row sweep republishes rows the queue never saw.
            logger.warning("notification_publish_failed id=%s", notification_id, exc_info=exc)
            increment_counter("notifications_publish_failed_total")
            return False

    async def deliver(self, notification_id: str, *, respect_schedule: bool = True) -> Notification | None:
        """Run one delivery attempt; returns None when the row is not ready."""
        now = self._clock()
        async with self._session_factory() as session:
            row = await notifications_repo.claim_ready(
                session, notification_id, now=now if respect_schedule else None
            )
            if row is None:
                await session.rollback()
                return None
            row.status = "delivering"
            row.updated_at = now
            await session.commit()

            attempt_no = row.attempts + 1
            try:
                await self._transport(row)
            except Exception as exc:  # noqa: BLE001 - delivery failures only change notification state.
                finished = self._clock()
                session.add(
                    NotificationAttempt(
                        notification_id=row.id, attempt_no=attempt_no, outcome="failure", error=str(exc), created_at=finished
                    )
                )
                row.attempts = attempt_no
                row.last_error = str(exc)
                row.updated_at = finished
                if not _is_retryable(exc) or attempt_no >= self._max_attempts:
                    row.status = "failed"
                    increment_counter("notifications_failed_total")
                    logger.warning(
                        "notification_failed id=%s event=%s attempts=%s", row.id, row.event, attempt_no
                    )
                else:
                    delay_ms = retry_backoff_ms(notification_id=row.id, attempt_no=attempt_no)
                    row.status = "retrying"
                    row.next_attempt_at = finished + timedelta(milliseconds=delay_ms)
                    increment_counter("notifications_retried_total")
                    logger.info(
                        "notification_retry_scheduled id=%s attempt=%s delay_ms=%s", row.id, attempt_no, delay_ms
                    )
                await session.commit()
                if row.status == "retrying" and self._mode != "inline":
                    await self._publish(row.id, defer_ms=retry_backoff_ms(notification_id=row.id, attempt_no=attempt_no))
                return row

            finished = self._clock()
            session.add(
                NotificationAttempt(notification_id=row.id, attempt_no=attempt_no, outcome="success", created_at=finished)
            )
            row.attempts = attempt_no
            row.status = "delivered"
            row.delivered_at = finished
            row.updated_at = finished
            row.last_error = None
            await session.commit()
            increment_counter("notifications_delivered_total")
            return row

    async def deliver_inline(self, notification_id: str) -> Notification | None:
        row: Notification | None = None
        for _ in range(self._max_attempts):
            row = await self.deliver(notification_id, respect_schedule=False)
            if row is None or row.status in ("delivered", "failed"):
                break
            await self._sleep(retry_backoff_ms(notification_id=row.id, attempt_no=row.attempts) / 1000.0)
        return row

    async def dispatch_due(self, *, limit: int = 100) -> int:
        # Republish rows whose retry is due; recovers from queue outages.
        async with self._session_factory() as session:
            due = [row.id for row in await notifications_repo.list_due(session, now=self._clock(), limit=limit)]
        for notification_id in due:
            if self._mode == "inline":
                await self.deliver_inline(notification_id)
            else:
                await self._publish(notification_id)
        return len(due)


_dispatcher: NotificationDispatcher | None = None


def get_dispatcher() -> NotificationDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = NotificationDispatcher()
    return _dispatcher


def set_dispatcher(dispatcher: NotificationDispatcher | None) -> None:
    global _dispatcher
    _dispatcher = dispatcher
