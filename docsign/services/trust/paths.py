from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
import hashlib
from typing import Iterable

from cryptography import x509
from cryptography.exceptions import InvalidSignature

from docsign.services.crypto import cms as cms_utils


@dataclass(frozen=True)
class PathResult:
    # End entity first, anchor last.
    path: list[bytes]
    anchor: bytes | None
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.anchor is not None and not self.errors


def fingerprint(der: bytes) -> str:
    return hashlib.sha256(der).hexdigest()


def _is_ca(cert: x509.Certificate) -> tuple[bool, int | None]:
    try:
        constraints = cert.extensions.get_extension_for_class(x509.BasicConstraints).value
    except x509.ExtensionNotFound:
        return False, None
    return constraints.ca, constraints.path_length


def _issued_by(child: x509.Certificate, issuer: x509.Certificate) -> bool:
    if child.issuer != issuer.subject:
        return False
    try:
        child.verify_directly_issued_by(issuer)
    except (ValueError, TypeError, InvalidSignature):
        return False
    return True


def build_path(
    end_entity: bytes,
    *,
    anchors: Iterable[bytes],
    intermediates: Iterable[bytes] = (),
) -> PathResult:
    """Shortest chain from ``end_entity`` to any anchor.

    Breadth-first over candidate issuers; a certificate already on the
    current path (by fingerprint) is never revisited, so cross-signed loops
    terminate. Intermediate CAs must assert basicConstraints cA and respect
    pathLenConstraint.
    """
    anchor_ders = {fingerprint(der): der for der in anchors}
    pool: dict[str, bytes] = dict(anchor_ders)
    for der in intermediates:
        pool.setdefault(fingerprint(der), der)
    loaded = {fp: cms_utils.load_certificate(der) for fp, der in pool.items()}
    leaf = cms_utils.load_certificate(end_entity)
    leaf_fp = fingerprint(end_entity)
    if leaf_fp in anchor_ders:
        return PathResult([end_entity], end_entity)

    queue: deque[list[str]] = deque([[leaf_fp]])
    certs = dict(loaded)
    certs[leaf_fp] = leaf
    ders = dict(pool)
    ders[leaf_fp] = end_entity
    saw_issuer_name = False
    saw_cycle = False
    while queue:
        chain = queue.popleft()
        current = certs[chain[-1]]
        for fp, candidate in loaded.items():
            if candidate.subject != current.issuer:
                continue
            saw_issuer_name = True
            if fp in chain:
                saw_cycle = True
                continue
            if not _issued_by(current, candidate):
                continue
            is_ca, path_length = _is_ca(candidate)
            if not is_ca:
                continue
            # Number of intermediate CAs below this issuer on the path.
            below = len(chain) - 1
            if path_length is not None and below > path_length:
                continue
            extended = chain + [fp]
            if fp in anchor_ders:
                return PathResult([ders[item] for item in extended], ders[fp])
            queue.append(extended)
    errors = ["no_certificate_chain_found"]
    if not saw_issuer_name:
        errors.append("issuer_not_found")
    if saw_cycle:
        errors.append("cycle_detected")
    return PathResult([end_entity], None, errors)
