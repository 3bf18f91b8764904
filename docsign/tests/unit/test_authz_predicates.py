from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from docsign.domain.models import AccessPredicate
from docsign.persistence.db import SessionLocal
from docsign.services.authz.engine import AuthorizationEngine, AuthzRequest
from docsign.services.authz.evaluator import (
    PredicateInvalidError,
    PredicateTooComplexError,
    evaluate_condition,
    validate_condition,
)


def test_evaluator_truth_table() -> None:
    context = {
        "object": {"status": "out_for_signature", "sensitivity": "high", "tags": ["hr", "legal"]},
        "environment": {"ip_address": "10.1.2.3", "now": "2026-03-10T10:00:00+00:00"},
        "subject": {"id": "alice@example.test"},
    }
    cases = [
        ({"eq": [{"var": "object.status"}, "out_for_signature"]}, True),
        ({"ne": [{"var": "object.status"}, "draft"]}, True),
        ({"in": [{"var": "object.status"}, ["draft", "out_for_signature"]]}, True),
        ({"not_in": [{"var": "object.sensitivity"}, ["normal"]]}, True),
        ({"gt": [{"var": "environment.now"}, "2026-03-01T00:00:00+00:00"]}, True),
        ({"lte": [3, 2]}, False),
        ({"contains": [{"var": "object.tags"}, "legal"]}, True),
        ({"not_contains": [{"var": "object.tags"}, "finance"]}, True),
        ({"ends_with": [{"var": "subject.id"}, "@example.test"]}, True),
        ({"regex": [{"var": "subject.id"}, "^alice@"]}, True),
        ({"ip_in_cidr": [{"var": "environment.ip_address"}, ["10.0.0.0/8"]]}, True),
        ({"ip_in_cidr": [{"var": "environment.ip_address"}, "192.168.0.0/16"]}, False),
        ({"time_between": [{"var": "environment.now"}, {"start": "09:00", "end": "17:00"}]}, True),
        ({"time_between": ["23:30", {"start": "22:00", "end": "06:00"}]}, True),
        ({"date_between": ["2026-03-10", {"start": "2026-03-01", "end": "2026-03-31"}]}, True),
        ({"not": {"eq": [{"var": "object.missing"}, "x"]}}, True),
        (
            {
                "any": [
                    {"eq": [{"var": "object.status"}, "voided"]},
                    {"all": [{"eq": [{"var": "object.sensitivity"}, "high"]}, {"contains": [{"var": "object.tags"}, "hr"]}]},
                ]
            },
            True,
        ),
    ]
    for condition, expected in cases:
        assert evaluate_condition(condition, context) is expected, condition


def test_evaluator_rejects_unknown_operator_and_deep_trees() -> None:
    with pytest.raises(PredicateInvalidError):
        evaluate_condition({"xor": [1, 2]}, {})
    with pytest.raises(PredicateInvalidError):
        validate_condition({"regex": [{"var": "subject.id"}, "("]}, max_depth=4)
    nested = {"eq": [1, 1]}
    for _ in range(6):
        nested = {"not": nested}
    with pytest.raises(PredicateTooComplexError):
        validate_condition(nested, max_depth=4)


async def _grant(engine: AuthorizationEngine, **attrs) -> None:
    async with SessionLocal() as session:
        await engine.write_tuple(session, **attrs)
        await session.commit()


async def _set_attributes(engine: AuthorizationEngine, object_type: str, object_id: str, attributes: dict) -> None:
    async with SessionLocal() as session:
        await engine.set_attributes(session, object_type=object_type, object_id=object_id, attributes=attributes)
        await session.commit()


@pytest.mark.asyncio
async def test_owner_tuple_grants_document_permissions() -> None:
    # Editors are computed from owners; viewers from editors.
    engine = AuthorizationEngine(cache_ttl_s=0)
    await _grant(engine, subject="alice", relation="owner", object_type="document", object_id="doc-a")

    for permission in ("document:read", "document:update", "document:send", "document:audit"):
        decision = await engine.authorize("alice", permission, "doc-a")
        assert decision.allowed, permission
        assert decision.reason == "granted"

    denied = await engine.authorize("mallory", "document:read", "doc-a")
    assert not denied.allowed
    assert denied.reason == "missing_relationship"

    unknown = await engine.authorize("alice", "document:teleport", "doc-a")
    assert unknown.reason == "unknown_permission"


@pytest.mark.asyncio
async def test_organization_admin_inherits_document_ownership() -> None:
    engine = AuthorizationEngine(cache_ttl_s=0)
    await _grant(engine, subject="organization:acme", relation="parent", object_type="document", object_id="doc-org")
    await _grant(engine, subject="bob", relation="admin", object_type="organization", object_id="acme")
    await _grant(engine, subject="carol", relation="member", object_type="organization", object_id="acme")

    assert (await engine.authorize("bob", "document:void", "doc-org")).allowed
    carol_read = await engine.authorize("carol", "document:read", "doc-org")
    assert carol_read.allowed
    assert not (await engine.authorize("carol", "document:void", "doc-org")).allowed
    assert (await engine.authorize("carol", "document:create", "acme", "organization")).allowed
    assert (await engine.authorize("dave", "document:create", "dave", "user")).allowed
    assert not (await engine.authorize("dave", "document:create", "erin", "user")).allowed

    assert await engine.list_objects_of_type("bob", "document:read", "document") == ["doc-org"]


@pytest.mark.asyncio
async def test_builtin_sign_predicates_follow_document_state() -> None:
    engine = AuthorizationEngine(cache_ttl_s=0)
    await _grant(engine, subject="signer@example.test", relation="signer", object_type="document", object_id="doc-s")
    future = datetime.now(timezone.utc) + timedelta(days=1)
    await _set_attributes(engine, "document", "doc-s", {"status": "out_for_signature", "expires_at": future})

    allowed = await engine.authorize("signer@example.test", "document:sign", "doc-s")
    assert allowed.allowed
    assert allowed.granted_by == "signer"

    await _set_attributes(engine, "document", "doc-s", {"status": "completed"})
    blocked = await engine.authorize("signer@example.test", "document:sign", "doc-s")
    assert not blocked.allowed
    assert blocked.reason == "attribute_predicate_failed:document_signable"
    assert blocked.failed_kind == "state"

    past = datetime.now(timezone.utc) - timedelta(minutes=5)
    await _set_attributes(engine, "document", "doc-s", {"status": "out_for_signature", "expires_at": past})
    expired = await engine.authorize("signer@example.test", "document:sign", "doc-s")
    assert expired.reason == "attribute_predicate_failed:document_not_expired"


@pytest.mark.asyncio
async def test_stored_predicate_denies_with_its_reason() -> None:
    # Policy predicates combine with relationships: both must hold.
    engine = AuthorizationEngine(cache_ttl_s=0)
    await _grant(engine, subject="alice", relation="owner", object_type="document", object_id="doc-p")
    await _set_attributes(engine, "document", "doc-p", {"sensitivity": "high"})
    async with SessionLocal() as session:
        session.add(
            AccessPredicate(
                id="p-office-network",
                permission="document:download",
                object_type="document",
                condition_json={
                    "any": [
                        {"ne": [{"var": "object.sensitivity"}, "high"]},
                        {"ip_in_cidr": [{"var": "environment.ip_address"}, "10.0.0.0/8"]},
                    ]
                },
                reason="office_network_required",
            )
        )
        await session.commit()

    outside = await engine.authorize("alice", "document:download", "doc-p", environment={"ip_address": "203.0.113.9"})
    assert not outside.allowed
    assert outside.reason == "office_network_required"
    assert outside.failed_kind == "policy"

    inside, other = await engine.batch_authorize(
        [
            AuthzRequest("alice", "document:download", "doc-p", environment={"ip_address": "10.4.0.1"}),
            AuthzRequest("alice", "document:read", "doc-p"),
        ]
    )
    assert inside.allowed
    assert other.allowed


@pytest.mark.asyncio
async def test_deleted_tuple_revokes_access_and_lists_relationships() -> None:
    engine = AuthorizationEngine(cache_ttl_s=300)
    await _grant(engine, subject="alice", relation="viewer", object_type="document", object_id="doc-v")
    assert (await engine.authorize("alice", "document:read", "doc-v")).allowed
    relationships = await engine.list_relationships("alice")
    assert relationships == [
        {"subject": "alice", "relation": "viewer", "object_type": "document", "object_id": "doc-v", "expires_at": None}
    ]

    async with SessionLocal() as session:
        assert await engine.delete_tuple(
            session, subject="alice", relation="viewer", object_type="document", object_id="doc-v"
        )
        await session.commit()
    # Writes invalidate the decision cache for the object.
    assert not (await engine.authorize("alice", "document:read", "doc-v")).allowed
