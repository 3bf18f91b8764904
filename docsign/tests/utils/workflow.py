from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import parse_qs, urlparse

from docsign.domain.models import Document
from docsign.services.signing.coordinator import SigningCoordinator


OWNER = "owner-1"


def token_from_url(url: str) -> str:
    return parse_qs(urlparse(url).query)["t"][0]


@dataclass
class SentDocument:
    document: Document
    signer_ids: list[str]
    # signer id -> signing link token, for the signers invited at send time.
    tokens: dict[str, str]


async def draft_document(
    coordinator: SigningCoordinator,
    *,
    signers: int = 2,
    owner: str = OWNER,
    title: str = "Service agreement",
    file_bytes: bytes | None = None,
    **options,
) -> tuple[Document, list[str]]:
    # Draft with one signature field per signer, ready to send.
    document = await coordinator.create_document(
        owner, title=title, file_bytes=file_bytes or b"agreement body " + title.encode("utf-8"), **options
    )
    signer_ids: list[str] = []
    for index in range(signers):
        signer = await coordinator.add_signer(
            owner,
            document.id,
            email=f"signer{index}@example.test",
            name=f"Signer {index}",
            signer_id=f"s{index}",
        )
        await coordinator.add_field(owner, document.id, signer_id=signer.id, field_type="signature", x=10, y=20)
        signer_ids.append(signer.id)
    return document, signer_ids


async def sent_document(coordinator: SigningCoordinator, *, signers: int = 2, owner: str = OWNER, **options) -> SentDocument:
    document, signer_ids = await draft_document(coordinator, signers=signers, owner=owner, **options)
    urls = await coordinator.send(owner, document.id)
    return SentDocument(
        document=document,
        signer_ids=signer_ids,
        tokens={signer_id: token_from_url(url) for signer_id, url in urls.items()},
    )
