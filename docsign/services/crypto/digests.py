from __future__ import annotations

import hashlib

from cryptography.hazmat.primitives import hashes

from docsign.core.errors import CryptoConstraintFailure, ValidationFailed


# Algorithms accepted for new signatures.
SIGNING_ALGORITHMS = ("sha256", "sha384", "sha512")
# Still computable so existing signatures can be assessed, never used to sign.
DEPRECATED_ALGORITHMS = frozenset({"sha1", "md5"})

_HASHES: dict[str, type[hashes.HashAlgorithm]] = {
    "sha256": hashes.SHA256,
    "sha384": hashes.SHA384,
    "sha512": hashes.SHA512,
    "sha1": hashes.SHA1,
    "md5": hashes.MD5,
}

# XML Signature algorithm identifiers per digest.
XML_DIGEST_URIS = {
    "sha256": "http://www.w3.org/2001/04/xmlenc#sha256",
    "sha384": "http://www.w3.org/2001/04/xmldsig-more#sha384",
    "sha512": "http://www.w3.org/2001/04/xmlenc#sha512",
    "sha1": "http://www.w3.org/2000/09/xmldsig#sha1",
}


def normalize(name: str | None) -> str:
    # "SHA-256", "sha_256" and "sha256" all name the same algorithm.
    if not name:
        raise ValidationFailed("digest algorithm is required", reason="digest_algorithm_missing")
    value = name.strip().lower().replace("-", "").replace("_", "")
    if value not in _HASHES:
        raise ValidationFailed(f"unsupported digest algorithm: {name}", reason="digest_algorithm_unsupported")
    return value


def is_deprecated(name: str) -> bool:
    return normalize(name) in DEPRECATED_ALGORITHMS


def require_signing_algorithm(name: str | None) -> str:
    value = normalize(name)
    if value in DEPRECATED_ALGORITHMS:
        raise CryptoConstraintFailure(
            f"digest algorithm {value} is deprecated for signing", reason="deprecated_digest_algorithm"
        )
    return value


def hash_algorithm(name: str) -> hashes.HashAlgorithm:
    return _HASHES[normalize(name)]()


def digest(data: bytes, name: str) -> bytes:
    return hashlib.new(normalize(name), data).digest()
