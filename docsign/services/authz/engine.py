from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import time
from typing import Any, Callable, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docsign.core.config import get_settings
from docsign.domain.models import ObjectAttribute, RelationshipTuple
from docsign.persistence.db import SessionLocal
from docsign.persistence.repos import authz as authz_repo
from docsign.services.authz.evaluator import (
    PredicateInvalidError,
    evaluate_condition,
)
from docsign.services.authz.model import (
    BUILTIN_PREDICATES,
    PERMISSION_RELATIONS,
    RELATION_RULES,
    Computed,
    Direct,
    FromParent,
    parse_object_ref,
    parse_userset,
)
from docsign.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_MAX_DEPTH = 8

REASON_GRANTED = "granted"
REASON_MISSING_RELATIONSHIP = "missing_relationship"
REASON_UNKNOWN_PERMISSION = "unknown_permission"
REASON_UNAVAILABLE = "authorization_unavailable"


@dataclass(frozen=True)
class AuthzDecision:
    allowed: bool
    reason: str
    # Relation that granted the permission, for audit details.
    granted_by: str | None = None
    # "state" when a lifecycle predicate failed, "policy" for access predicates.
    failed_kind: str | None = None
    trace: list[dict[str, Any]] = field(default_factory=list)

    @property
    def decision(self) -> str:
        return "allow" if self.allowed else "deny"


@dataclass(frozen=True)
class AuthzRequest:
    subject: str
    permission: str
    object_id: str
    object_type: str = "document"
    environment: dict[str, Any] | None = None


class AuthorizationEngine:
    """Relationship tuples (ReBAC) combined with attribute predicates (ABAC).

    A permission is allowed only when some relation grants it and every
    predicate registered for (object_type, permission) holds. Relationship
    checks are cached briefly; predicates always run against fresh attributes.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        cache_ttl_s: int | None = None,
        clock: Callable[[], datetime] | None = None,
        monotonic: Callable[[], float] | None = None,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._cache_ttl_s = get_settings().authz_cache_ttl_s if cache_ttl_s is None else cache_ttl_s
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._monotonic = monotonic or time.monotonic
        self._cache: dict[tuple[str, str, str, str], tuple[float, str | None]] = {}

    async def authorize(
        self,
        subject: str,
        permission: str,
        object_id: str,
        object_type: str = "document",
        *,
        environment: dict[str, Any] | None = None,
        session: AsyncSession | None = None,
    ) -> AuthzDecision:
        relations = PERMISSION_RELATIONS.get(object_type, {}).get(permission)
        if not relations:
            return AuthzDecision(False, REASON_UNKNOWN_PERMISSION)
        now = self._clock()
        try:
            if session is not None:
                return await self._authorize(
                    session, subject, permission, object_id, object_type, relations, now, environment
                )
            async with self._session_factory() as own_session:
                return await self._authorize(
                    own_session, subject, permission, object_id, object_type, relations, now, environment
                )
        except (SQLAlchemyError, OSError) as exc:
            # Store outages deny; callers translate this reason into a retryable error.
            logger.warning(
                "authz_store_unavailable subject=%s permission=%s object=%s:%s",
                subject,
                permission,
                object_type,
                object_id,
                exc_info=exc,
            )
            increment_counter("authz_unavailable_total")
            return AuthzDecision(False, REASON_UNAVAILABLE)

    async def _authorize(
        self,
        session: AsyncSession,
        subject: str,
        permission: str,
        object_id: str,
        object_type: str,
        relations: tuple[str, ...],
        now: datetime,
        environment: dict[str, Any] | None,
    ) -> AuthzDecision:
        granted_by = await self._granting_relation(session, subject, permission, object_id, object_type, relations, now)
        if granted_by is None:
            increment_counter("authz_denied_total")
            return AuthzDecision(False, REASON_MISSING_RELATIONSHIP)

        attributes = await authz_repo.get_attributes(session, object_type=object_type, object_id=object_id)
        context = {
            "object": attributes,
            "environment": self._environment(now, environment),
            "subject": {"id": subject},
        }
        trace: list[dict[str, Any]] = [{"relation": granted_by}]
        for predicate in BUILTIN_PREDICATES.get((object_type, permission), ()):
            ok = self._evaluate(predicate.condition, context)
            trace.append({"predicate": predicate.name, "result": ok})
            if not ok:
                return AuthzDecision(
                    False,
                    f"attribute_predicate_failed:{predicate.name}",
                    granted_by=granted_by,
                    failed_kind=predicate.kind,
                    trace=trace,
                )
        for stored in await authz_repo.list_predicates(session, permission=permission, object_type=object_type):
            ok = self._evaluate(stored.condition_json, context)
            trace.append({"predicate": stored.id, "result": ok})
            if not ok:
                return AuthzDecision(False, stored.reason, granted_by=granted_by, failed_kind="policy", trace=trace)
        return AuthzDecision(True, REASON_GRANTED, granted_by=granted_by, trace=trace)

    def _evaluate(self, condition: Any, context: dict[str, Any]) -> bool:
        try:
            return evaluate_condition(condition, context)
        except PredicateInvalidError as exc:
            # Malformed predicates fail closed.
            logger.error("authz_predicate_invalid message=%s", exc.message)
            return False

    def _environment(self, now: datetime, environment: dict[str, Any] | None) -> dict[str, Any]:
        env = {"now": now.isoformat(), "time_of_day": now.strftime("%H:%M:%S")}
        env.update(environment or {})
        return env

    async def _granting_relation(
        self,
        session: AsyncSession,
        subject: str,
        permission: str,
        object_id: str,
        object_type: str,
        relations: tuple[str, ...],
        now: datetime,
    ) -> str | None:
        key = (subject, permission, object_type, object_id)
        cached = self._cache.get(key)
        if cached is not None and self._monotonic() - cached[0] < self._cache_ttl_s:
            return cached[1]
        granted: str | None = None
        for relation in relations:
            if await self.check(session, subject, relation, object_type, object_id, now=now):
                granted = relation
                break
        if self._cache_ttl_s > 0:
            self._cache[key] = (self._monotonic(), granted)
        return granted

    async def check(
        self,
        session: AsyncSession,
        subject: str,
        relation: str,
        object_type: str,
        object_id: str,
        *,
        now: datetime | None = None,
        depth: int = 0,
        visited: set[tuple[str, str, str]] | None = None,
    ) -> bool:
        # Reachability over the relation rules; cycles and runaway depth stop the walk.
        now = now or self._clock()
        visited = visited if visited is not None else set()
        node = (object_type, object_id, relation)
        if depth > _MAX_DEPTH or node in visited:
            return False
        visited.add(node)
        if object_type == "user" and relation == "self":
            return subject == object_id
        for rule in RELATION_RULES.get((object_type, relation), (Direct(),)):
            if isinstance(rule, Direct):
                tuples = await authz_repo.find_tuples(
                    session, object_type=object_type, object_id=object_id, relation=relation, now=now
                )
                for item in tuples:
                    if item.subject == subject:
                        return True
                    userset = parse_userset(item.subject)
                    if userset and await self.check(
                        session, subject, userset[2], userset[0], userset[1], now=now, depth=depth + 1, visited=visited
                    ):
                        return True
            elif isinstance(rule, Computed):
                if await self.check(
                    session, subject, rule.relation, object_type, object_id, now=now, depth=depth + 1, visited=visited
                ):
                    return True
            elif isinstance(rule, FromParent):
                parents = await authz_repo.find_tuples(
                    session, object_type=object_type, object_id=object_id, relation=rule.parent_relation, now=now
                )
                for item in parents:
                    parent = parse_object_ref(item.subject)
                    if parent and await self.check(
                        session, subject, rule.relation, parent[0], parent[1], now=now, depth=depth + 1, visited=visited
                    ):
                        return True
        return False

    async def batch_authorize(self, requests: Iterable[AuthzRequest]) -> list[AuthzDecision]:
        decisions: list[AuthzDecision] = []
        async with self._session_factory() as session:
            for request in requests:
                decisions.append(
                    await self.authorize(
                        request.subject,
                        request.permission,
                        request.object_id,
                        request.object_type,
                        environment=request.environment,
                        session=session,
                    )
                )
        return decisions

    async def list_relationships(self, subject: str) -> list[dict[str, Any]]:
        async with self._session_factory() as session:
            rows = await authz_repo.list_tuples_for_subject(session, subject=subject, now=self._clock())
        return [
            {
                "subject": row.subject,
                "relation": row.relation,
                "object_type": row.object_type,
                "object_id": row.object_id,
                "expires_at": row.expires_at.isoformat() if row.expires_at else None,
            }
            for row in rows
        ]

    async def list_objects_of_type(self, subject: str, permission: str, object_type: str) -> list[str]:
        # Candidates come from direct tuples and from organizations the subject belongs to.
        now = self._clock()
        async with self._session_factory() as session:
            own = await authz_repo.list_tuples_for_subject(session, subject=subject, now=now)
            candidates = {row.object_id for row in own if row.object_type == object_type}
            org_refs = [
                f"organization:{row.object_id}"
                for row in own
                if row.object_type == "organization" and row.relation in {"admin", "member"}
            ]
            usersets = [
                f"organization:{row.object_id}#{row.relation}" for row in own if row.object_type == "organization"
            ]
            for row in await authz_repo.list_tuples_for_subjects(session, subjects=org_refs + usersets, now=now):
                if row.object_type == object_type:
                    candidates.add(row.object_id)
            allowed: list[str] = []
            for object_id in sorted(candidates):
                decision = await self.authorize(subject, permission, object_id, object_type, session=session)
                if decision.allowed:
                    allowed.append(object_id)
        return allowed

    async def write_tuple(
        self,
        session: AsyncSession,
        *,
        subject: str,
        relation: str,
        object_type: str,
        object_id: str,
        expires_at: datetime | None = None,
    ) -> RelationshipTuple:
        # Joins the caller's transaction; the unique constraint serializes writers per tuple.
        existing = await authz_repo.get_tuple(
            session, subject=subject, relation=relation, object_type=object_type, object_id=object_id
        )
        if existing is not None:
            existing.expires_at = expires_at
            row = existing
        else:
            row = RelationshipTuple(
                subject=subject,
                relation=relation,
                object_type=object_type,
                object_id=object_id,
                expires_at=expires_at,
                created_at=self._clock(),
            )
            session.add(row)
            await session.flush()
        self.invalidate(object_type, object_id)
        return row

    async def delete_tuple(
        self,
        session: AsyncSession,
        *,
        subject: str,
        relation: str,
        object_type: str,
        object_id: str,
    ) -> bool:
        removed = await authz_repo.delete_tuple(
            session, subject=subject, relation=relation, object_type=object_type, object_id=object_id
        )
        self.invalidate(object_type, object_id)
        return removed > 0

    async def set_attributes(
        self,
        session: AsyncSession,
        *,
        object_type: str,
        object_id: str,
        attributes: dict[str, Any],
    ) -> None:
        # Keep ABAC attributes in step with the aggregate inside the same transaction.
        now = self._clock()
        for key, value in attributes.items():
            if isinstance(value, datetime):
                value = value.isoformat()
            await session.merge(
                ObjectAttribute(object_type=object_type, object_id=object_id, key=key, value=value, updated_at=now)
            )

    def invalidate(self, object_type: str | None = None, object_id: str | None = None) -> None:
        if object_type is None:
            self._cache.clear()
            return
        for key in [k for k in self._cache if k[2] == object_type and (object_id is None or k[3] == object_id)]:
            self._cache.pop(key, None)
        if object_type == "organization":
            # Organization changes ripple to every child object.
            self._cache.clear()


_engine: AuthorizationEngine | None = None


def get_authorization_engine() -> AuthorizationEngine:
    global _engine
    if _engine is None:
        _engine = AuthorizationEngine()
    return _engine
