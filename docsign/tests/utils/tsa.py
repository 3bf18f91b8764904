from __future__ import annotations

from datetime import datetime, timedelta, timezone
import hashlib
import itertools

from asn1crypto import algos, cms, tsp
import httpx

from docsign.services.crypto import cms as cms_utils
from docsign.services.timestamps.rfc3161 import CONTENT_TYPE_REPLY, TimeStampReply
from docsign.tests.utils.pki import Issued


_serials = itertools.count(1000)


def build_token(
    authority: Issued,
    digest: bytes,
    *,
    hash_algorithm: str = "sha256",
    nonce: int | None = None,
    gen_time: datetime | None = None,
) -> cms.ContentInfo:
    """RFC 3161 TimeStampToken signed by ``authority``."""
    gen_time = gen_time or datetime.now(timezone.utc)
    fields = {
        "version": "v1",
        "policy": "1.3.6.1.4.1.99999.1",
        "message_imprint": tsp.MessageImprint(
            {"hash_algorithm": algos.DigestAlgorithm({"algorithm": hash_algorithm}), "hashed_message": digest}
        ),
        "serial_number": next(_serials),
        "gen_time": gen_time,
    }
    if nonce is not None:
        fields["nonce"] = nonce
    tst_info = tsp.TSTInfo(fields)
    signed_attrs = cms_utils.build_signed_attributes(
        message_digest=hashlib.sha256(tst_info.dump()).digest(),
        digest_algorithm="sha256",
        signing_time=gen_time,
        signer_certificate_der=authority.der,
        content_type="tst_info",
    )
    signature = cms_utils.sign_bytes(authority.key, signed_attrs.dump(), "sha256")
    return cms_utils.assemble_signed_data(
        signed_attrs=signed_attrs,
        signature=signature,
        signer_certificate_der=authority.der,
        digest_algorithm="sha256",
        content_type="tst_info",
        content=tst_info,
    )


def build_reply(token: cms.ContentInfo | None, *, status: str = "granted") -> bytes:
    fields = {"status": tsp.PKIStatusInfo({"status": status})}
    if token is not None:
        fields["time_stamp_token"] = token
    return TimeStampReply(fields).dump()


class FakeTsa:
    """In-process timestamp authority for httpx.MockTransport.

    ``statuses`` scripts HTTP status codes for the first calls; once they
    are used up every request is granted.
    """

    def __init__(
        self,
        authority: Issued,
        *,
        statuses: list[int] | None = None,
        nonce_offset: int = 0,
        gen_time_offset: timedelta = timedelta(0),
        reject: bool = False,
    ) -> None:
        self.authority = authority
        self.statuses = list(statuses or [])
        self.nonce_offset = nonce_offset
        self.gen_time_offset = gen_time_offset
        self.reject = reject
        self.calls = 0
        self.granted = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        if self.statuses:
            status = self.statuses.pop(0)
            if status != 200:
                return httpx.Response(status)
        if self.reject:
            return httpx.Response(200, content=build_reply(None, status="rejection"))
        query = tsp.TimeStampReq.load(request.content)
        imprint = query["message_imprint"]
        token = build_token(
            self.authority,
            imprint["hashed_message"].native,
            hash_algorithm=imprint["hash_algorithm"]["algorithm"].native,
            nonce=query["nonce"].native + self.nonce_offset,
            gen_time=datetime.now(timezone.utc) + self.gen_time_offset,
        )
        self.granted += 1
        return httpx.Response(200, content=build_reply(token), headers={"Content-Type": CONTENT_TYPE_REPLY})


def tsa_transport(routes: dict[str, FakeTsa]) -> httpx.MockTransport:
    # Routes by host so several authorities can share one transport.
    def handler(request: httpx.Request) -> httpx.Response:
        fake = routes.get(request.url.host)
        if fake is None:
            return httpx.Response(404)
        return fake(request)

    return httpx.MockTransport(handler)
