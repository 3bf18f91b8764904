from __future__ import annotations

import os
import tempfile

# Point settings at a throwaway SQLite database before any docsign module builds the engine.
_TEST_ROOT = tempfile.mkdtemp(prefix="docsign-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_ROOT}/test.db")
os.environ.setdefault("OBJECT_STORE_ROOT", os.path.join(_TEST_ROOT, "objects"))
os.environ.setdefault("NOTIFY_EXECUTION_MODE", "inline")
os.environ.setdefault("NOTIFY_BACKOFF_MS", "0")
os.environ.setdefault("AUTHZ_CACHE_TTL_S", "0")
os.environ.setdefault("TSA_BACKOFF_S", "0")

import pytest
from sqlalchemy import delete

from docsign.domain.models import Base, Notification
from docsign.persistence.db import SessionLocal, create_schema, engine
from docsign.services.authz.engine import get_authorization_engine
from docsign.services.notifications.dispatcher import NotificationDispatcher, set_dispatcher
from docsign.services.signatures.engine import SignatureEngine, set_signature_engine
from docsign.services.signatures.keys import register_key, unregister_key
from docsign.services.signing.coordinator import SigningCoordinator, set_signing_coordinator
from docsign.services.storage import LocalObjectStore, set_object_store
from docsign.services.timestamps.authorities import TimestampAuthority
from docsign.services.timestamps.client import TimestampClient, set_timestamp_client
from docsign.services.trust.revocation import RevocationChecker
from docsign.services.trust.service import TrustService, set_trust_service
from docsign.tests.utils.pki import TestPki, default_pki
from docsign.tests.utils.tsa import FakeTsa, tsa_transport


async def _no_sleep(_: float) -> None:
    return None


class RecordingTransport:
    """Notification transport that keeps every delivered row."""

    def __init__(self) -> None:
        self.sent: list[Notification] = []

    async def __call__(self, notification: Notification) -> None:
        self.sent.append(notification)

    def events(self, event: str | None = None) -> list[Notification]:
        return [item for item in self.sent if event is None or item.event == event]


@pytest.fixture(autouse=True)
async def database() -> None:
    # Fresh tables per test; the engine is disposed so connections never outlive their loop.
    await create_schema()
    yield
    async with SessionLocal() as session:
        for table in reversed(Base.metadata.sorted_tables):
            await session.execute(delete(table))
        await session.commit()
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_singletons(tmp_path) -> None:
    # Process-wide services are rebuilt per test so state never leaks between them.
    set_object_store(LocalObjectStore(tmp_path / "objects"))
    get_authorization_engine().invalidate()
    yield
    set_signing_coordinator(None)
    set_dispatcher(None)
    set_signature_engine(None)
    set_timestamp_client(None)
    set_trust_service(None)
    set_object_store(None)


@pytest.fixture
def pki() -> TestPki:
    return default_pki()


@pytest.fixture
def trust_service(pki: TestPki) -> TrustService:
    service = TrustService(revocation=RevocationChecker(pki.revocation_source()), anchors=[pki.root.der])
    set_trust_service(service)
    return service


@pytest.fixture
def fake_tsa(pki: TestPki) -> FakeTsa:
    return FakeTsa(pki.tsa)


@pytest.fixture
def timestamp_client(fake_tsa: FakeTsa, trust_service: TrustService) -> TimestampClient:
    client = TimestampClient(
        [TimestampAuthority(name="primary", url="http://tsa-primary.test/tsr")],
        transport=tsa_transport({"tsa-primary.test": fake_tsa}),
        sleep=_no_sleep,
        backoff_s=0,
        chain_validator=trust_service.validate_timestamp_authority,
    )
    set_timestamp_client(client)
    return client


@pytest.fixture
def signature_engine(trust_service: TrustService, timestamp_client: TimestampClient) -> SignatureEngine:
    engine_ = SignatureEngine(trust=trust_service, timestamps=timestamp_client)
    set_signature_engine(engine_)
    return engine_


@pytest.fixture
def signing_key(pki: TestPki):
    handle = pki.signer.handle("platform")
    register_key(handle)
    yield handle
    unregister_key("platform")


@pytest.fixture
def notifications() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def dispatcher(notifications: RecordingTransport) -> NotificationDispatcher:
    dispatcher_ = NotificationDispatcher(transport=notifications, mode="inline", sleep=_no_sleep)
    set_dispatcher(dispatcher_)
    return dispatcher_


@pytest.fixture
def coordinator(signature_engine: SignatureEngine, dispatcher: NotificationDispatcher, signing_key) -> SigningCoordinator:
    coordinator_ = SigningCoordinator(engine=signature_engine, dispatcher=dispatcher)
    set_signing_coordinator(coordinator_)
    return coordinator_
