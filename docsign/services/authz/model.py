from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Direct:
    """Granted by a stored tuple (subject, relation, object)."""


@dataclass(frozen=True)
class Computed:
    """Granted when the subject holds another relation on the same object."""

    relation: str


@dataclass(frozen=True)
class FromParent:
    """Granted through a parent object, e.g. admins of a document's organization."""

    parent_relation: str
    relation: str


@dataclass(frozen=True)
class BuiltinPredicate:
    name: str
    condition: dict
    # "state" predicates describe the object's lifecycle; "policy" predicates describe access rules.
    kind: str = "state"


OBJECT_TYPES = ("document", "organization", "signer-slot", "user")

# Relation rewrite rules per (object_type, relation).
RELATION_RULES: dict[tuple[str, str], tuple[object, ...]] = {
    ("document", "owner"): (Direct(), FromParent("parent", "admin")),
    ("document", "editor"): (Direct(), Computed("owner")),
    ("document", "signer"): (Direct(),),
    ("document", "viewer"): (
        Direct(),
        Computed("editor"),
        Computed("signer"),
        FromParent("parent", "member"),
    ),
    ("organization", "admin"): (Direct(),),
    ("organization", "member"): (Direct(), Computed("admin")),
    ("signer-slot", "assignee"): (Direct(),),
}

# Relations that grant each permission per object type.
PERMISSION_RELATIONS: dict[str, dict[str, tuple[str, ...]]] = {
    "document": {
        "document:read": ("owner", "viewer"),
        "document:update": ("owner", "editor"),
        "document:send": ("owner",),
        "document:sign": ("owner", "signer"),
        "document:void": ("owner",),
        "document:audit": ("owner",),
        "document:download": ("owner", "viewer"),
        "document:validate": ("owner", "viewer"),
        "document:share": ("owner",),
    },
    "organization": {
        "document:create": ("member",),
        "organization:manage": ("admin",),
    },
    "signer-slot": {
        "document:sign": ("assignee",),
    },
    "user": {
        "document:create": ("self",),
    },
}

_NOT_EXPIRED = {
    "any": [
        {"eq": [{"var": "object.expires_at"}, None]},
        {"gt": [{"var": "object.expires_at"}, {"var": "environment.now"}]},
    ]
}

BUILTIN_PREDICATES: dict[tuple[str, str], tuple[BuiltinPredicate, ...]] = {
    ("document", "document:sign"): (
        BuiltinPredicate(
            "document_signable",
            {"in": [{"var": "object.status"}, ["out_for_signature", "draft"]]},
        ),
        BuiltinPredicate("document_not_expired", _NOT_EXPIRED),
    ),
    ("signer-slot", "document:sign"): (
        BuiltinPredicate(
            "signer_can_act",
            {"in": [{"var": "object.status"}, ["pending", "viewed", "signed"]]},
        ),
    ),
}


def parse_userset(subject: str) -> tuple[str, str, str] | None:
    # "organization:acme#member" -> ("organization", "acme", "member")
    if "#" not in subject or ":" not in subject:
        return None
    ref, relation = subject.split("#", 1)
    object_type, object_id = ref.split(":", 1)
    if not object_type or not object_id or not relation:
        return None
    return object_type, object_id, relation


def parse_object_ref(subject: str) -> tuple[str, str] | None:
    # "organization:acme" -> ("organization", "acme")
    if ":" not in subject or "#" in subject:
        return None
    object_type, object_id = subject.split(":", 1)
    if object_type not in OBJECT_TYPES or not object_id:
        return None
    return object_type, object_id


def slot_id(document_id: str, signer_id: str) -> str:
    return f"{document_id}/{signer_id}"
