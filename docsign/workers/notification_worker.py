from __future__ import annotations

import asyncio
from datetime import datetime
import logging

from arq.connections import RedisSettings

from docsign.core.config import get_settings
from docsign.core.logging import configure_logging
from docsign.domain.models import utc_now
from docsign.persistence.db import SessionLocal
from docsign.services.notifications import get_dispatcher
from docsign.services.signing.coordinator import get_signing_coordinator
from docsign.services.trust.service import get_trust_service


logger = logging.getLogger(__name__)


async def deliver_notification(ctx, notification_id: str) -> str:
    # Consume queued notification ids and run one delivery attempt.
    row = await get_dispatcher().deliver(notification_id)
    return row.status if row is not None else "skipped"


async def run_sweep(last_trust_refresh: datetime | None = None) -> datetime | None:
    """One scheduler pass; returns the time of the last successful trust-list refresh."""
    settings = get_settings()
    coordinator = get_signing_coordinator()
    await get_dispatcher().dispatch_due(limit=max(1, int(settings.scheduler_batch_size)))
    await coordinator.expire_due_documents()
    await coordinator.send_reminders()
    trust = get_trust_service()
    if settings.trust_list_urls() and trust.refresh_due(last_trust_refresh):
        async with SessionLocal() as session:
            await trust.refresh(session)
        return utc_now()
    return last_trust_refresh


async def _scheduler_loop() -> None:
    # Sweeps keep retries, reminders and expiry moving even when API traffic is idle.
    interval_s = max(1, int(get_settings().scheduler_poll_interval_s))
    last_trust_refresh: datetime | None = None
    while True:
        try:
            last_trust_refresh = await run_sweep(last_trust_refresh)
        except Exception:  # noqa: BLE001 - keep scheduler alive while surfacing failures in worker logs.
            logger.exception("scheduler_sweep_failed")
        await asyncio.sleep(interval_s)


async def _startup(ctx) -> None:
    configure_logging()
    async with SessionLocal() as session:
        loaded = await get_trust_service().load_snapshots(session)
    logger.info("worker_started trust_snapshots=%s", loaded)
    ctx["scheduler_task"] = asyncio.create_task(_scheduler_loop())


async def _shutdown(ctx) -> None:
    task = ctx.get("scheduler_task")
    if task:
        task.cancel()


class WorkerSettings:
    # Keep worker settings as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.notify_queue_name
    max_tries = max(1, int(settings.notify_max_attempts))
    functions = [deliver_notification]
    on_startup = _startup
    on_shutdown = _shutdown
