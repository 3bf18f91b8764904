from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from docsign.core.errors import AuditAppendFailed, ConflictingUpdate
from docsign.domain.models import AuditEntry, Document
from docsign.persistence.db import SessionLocal
from docsign.persistence.repos import audit as audit_repo
from docsign.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["authorization", "token", "secret", "password", "private_key", "credential"]
_REDACTED_VALUE = "[REDACTED]"
_MIN_STEP = timedelta(microseconds=1)
_BEST_EFFORT_ATTEMPTS = 3

# Views and downloads are operational; everything else is legal evidence.
_OPERATIONAL_ACTIONS = {"document_downloaded", "signatures_validated"}


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_details(value: Any) -> Any:
    # Recursively scrub credential-like keys while preserving structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_details(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_details(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def get_request_context(request: Request | None) -> dict[str, str | None]:
    # Extract request identifiers and client hints without persisting credentials.
    if request is None:
        return {"request_id": None, "ip_address": None, "user_agent": None}
    request_id = request.headers.get("X-Request-Id")
    ip_address = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent")
    return {"request_id": request_id, "ip_address": ip_address, "user_agent": user_agent}


def retention_for(action: str) -> str:
    return "operational" if action in _OPERATIONAL_ACTIONS else "legal"


async def append(
    session: AsyncSession,
    *,
    document_id: str,
    action: str,
    actor_id: str | None,
    details: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> AuditEntry:
    """Append an entry inside the caller's transaction.

    Callers must have taken the document write lock (the guarded version bump)
    first so that the next sequence number is read under that lock. The entry
    commits or rolls back together with the primary write.
    """
    now = now or datetime.now(timezone.utc)
    try:
        last = await audit_repo.get_last_entry(session, document_id)
        sequence = 0 if last is None else last.sequence + 1
        timestamp = now
        if last is not None and timestamp <= last.timestamp:
            # Keep timestamps strictly increasing even when clocks collide.
            timestamp = last.timestamp + _MIN_STEP
        entry = AuditEntry(
            document_id=document_id,
            sequence=sequence,
            action=action,
            actor_id=actor_id,
            timestamp=timestamp,
            details=sanitize_details(details or {}),
            retention=retention_for(action),
        )
        session.add(entry)
        await session.flush()
    except IntegrityError as exc:
        # Another writer claimed the same sequence.
        raise ConflictingUpdate(
            f"audit sequence conflict for document {document_id}", reason="audit_sequence_conflict"
        ) from exc
    except SQLAlchemyError as exc:
        logger.error("audit_append_failed document_id=%s action=%s", document_id, action, exc_info=exc)
        increment_counter("audit_append_failures_total")
        raise AuditAppendFailed(f"audit append failed for {action}") from exc
    return entry


async def append_best_effort(
    *,
    document_id: str,
    action: str,
    actor_id: str | None,
    details: dict[str, Any] | None = None,
) -> AuditEntry | None:
    # Used for non-security-relevant reads; failures are logged, never raised.
    for attempt in range(1, _BEST_EFFORT_ATTEMPTS + 1):
        async with SessionLocal() as session:
            try:
                # Serialize with aggregate writers on backends that support row locks.
                await session.execute(
                    select(Document.id).where(Document.id == document_id).with_for_update()
                )
                entry = await append(
                    session,
                    document_id=document_id,
                    action=action,
                    actor_id=actor_id,
                    details=details,
                )
                await session.commit()
                return entry
            except ConflictingUpdate:
                await session.rollback()
                if attempt == _BEST_EFFORT_ATTEMPTS:
                    break
            except (AuditAppendFailed, SQLAlchemyError) as exc:
                await session.rollback()
                logger.warning(
                    "audit_best_effort_failed document_id=%s action=%s", document_id, action, exc_info=exc
                )
                return None
    logger.warning("audit_best_effort_conflict document_id=%s action=%s", document_id, action)
    return None


async def read(
    session: AsyncSession,
    document_id: str,
    *,
    from_sequence: int | None = None,
    to_sequence: int | None = None,
) -> list[AuditEntry]:
    return await audit_repo.list_entries(
        session, document_id, from_sequence=from_sequence, to_sequence=to_sequence
    )
