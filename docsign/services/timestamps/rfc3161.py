from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from asn1crypto import algos, cms, core, tsp

from docsign.core.errors import CryptoFailure, InvalidTimestampResponse, ValidationFailed
from docsign.services.crypto import cms as cms_utils
from docsign.services.crypto import digests


CONTENT_TYPE_QUERY = "application/timestamp-query"
CONTENT_TYPE_REPLY = "application/timestamp-reply"

_GRANTED = {"granted", "granted_with_mods"}


class TimeStampReply(core.Sequence):
    """RFC 3161 TimeStampResp with the token optional, as rejections omit it."""

    _fields = [
        ("status", tsp.PKIStatusInfo),
        ("time_stamp_token", cms.ContentInfo, {"optional": True}),
    ]


@dataclass(frozen=True)
class TimestampToken:
    der: bytes
    gen_time: datetime
    nonce: int | None
    hash_algorithm: str
    hashed_message: bytes
    serial_number: int
    policy: str | None
    tsa_certificate_der: bytes
    authority: str | None = None


def build_request(digest: bytes, hash_algorithm: str, nonce: int) -> bytes:
    # certReq=true so the reply embeds the authority certificate.
    request = tsp.TimeStampReq(
        {
            "version": "v1",
            "message_imprint": tsp.MessageImprint(
                {
                    "hash_algorithm": algos.DigestAlgorithm({"algorithm": digests.normalize(hash_algorithm)}),
                    "hashed_message": digest,
                }
            ),
            "nonce": nonce,
            "cert_req": True,
        }
    )
    return request.dump()


def parse_token(der: bytes) -> tuple[TimestampToken, cms_utils.SignerView, bytes]:
    """Decode a TimeStampToken into (token, signer view, TSTInfo DER)."""
    try:
        content_info = cms_utils.load_content_info(der)
        view = cms_utils.signer_view(content_info)
        encap = view.signed_data["encap_content_info"]
        if encap["content_type"].native != "tst_info":
            raise InvalidTimestampResponse("token does not carry TSTInfo", reason="not_tst_info")
        tst_info = encap["content"].parsed
        tst_der = tst_info.dump()
        imprint = tst_info["message_imprint"]
        token = TimestampToken(
            der=der,
            gen_time=tst_info["gen_time"].native,
            nonce=tst_info["nonce"].native,
            hash_algorithm=imprint["hash_algorithm"]["algorithm"].native,
            hashed_message=imprint["hashed_message"].native,
            serial_number=tst_info["serial_number"].native,
            policy=tst_info["policy"].native,
            tsa_certificate_der=view.certificate_der,
        )
    except InvalidTimestampResponse:
        raise
    except (CryptoFailure, ValueError, TypeError, KeyError) as exc:
        raise InvalidTimestampResponse("malformed timestamp token", reason="token_malformed") from exc
    return token, view, tst_der


def token_signature_valid(view: cms_utils.SignerView, tst_der: bytes) -> bool:
    # The signed messageDigest must cover the TSTInfo and the signature must verify.
    if view.message_digest is None:
        return False
    try:
        expected = digests.digest(tst_der, view.digest_algorithm)
    except ValidationFailed:
        return False
    return expected == view.message_digest and cms_utils.verify_signer(view)


def parse_response(
    body: bytes,
    *,
    expected_digest: bytes,
    expected_nonce: int,
    hash_algorithm: str,
) -> TimestampToken:
    try:
        response = TimeStampReply.load(body)
        status = response["status"]["status"].native
        token_info = response["time_stamp_token"]
        token_der = token_info.dump() if token_info.native is not None else None
    except (ValueError, TypeError) as exc:
        raise InvalidTimestampResponse("malformed timestamp reply", reason="reply_malformed") from exc
    if status not in _GRANTED:
        raise InvalidTimestampResponse(f"timestamp request rejected: {status}", reason="rejected")
    if not token_der:
        raise InvalidTimestampResponse("timestamp reply carries no token", reason="token_missing")
    token, view, tst_der = parse_token(token_der)
    if token.nonce != expected_nonce:
        raise InvalidTimestampResponse("timestamp nonce mismatch", reason="nonce_mismatch")
    if token.hashed_message != expected_digest or token.hash_algorithm != digests.normalize(hash_algorithm):
        raise InvalidTimestampResponse("timestamp imprint mismatch", reason="imprint_mismatch")
    if not token_signature_valid(view, tst_der):
        raise InvalidTimestampResponse("timestamp token signature invalid", reason="signature_invalid")
    return token
