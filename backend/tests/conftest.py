"""
BeanGate Backend: Test Configuration (conftest.py)
====================================================

What:  Shared pytest fixtures for the whole suite.
How:   Services run against a throwaway SQLite database (aiosqlite) in the
       test's tmp_path, and the vision backends are replaced by FakeBackend,
       which scripts replies while going through the real BackendClient flow
       (data URL split, normalizer, NotIdentified handling).

Fixture Hierarchy (all function-scoped):
    settings ─┬─ db_engine ── session_factory ─┬─ ledger
              │                                └─ credential_store ─┐
              ├─ fake_backends ── registry ─────────────────────────┤
              └─ image_store ── stored_image                        │
                                                    orchestrator ◀──┘
                                                    app ── test_client
"""

import os
import tempfile

# Environment for the module-level Settings() BEFORE any beangate import.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./beangate_test.db"
os.environ["API_KEY_ENCRYPTION_SECRET"] = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
os.environ["OPENAI_API_KEY"] = "sk-platform-test-key-not-real-0000000000000000"
os.environ["STORAGE_ROOT"] = tempfile.mkdtemp(prefix="beangate_test_")
os.environ["LOG_LEVEL"] = "WARNING"

import asyncio
from typing import List, Optional, Union

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from beangate.config import Settings
from beangate.database import Base, build_engine, build_session_factory
from beangate.exceptions import BeanGateError, UpstreamFailureError
from beangate.models.analysis import BeanAnalysis  # noqa: F401
from beangate.models.credential import ProviderCredential, ProviderPreference  # noqa: F401
from beangate.models.usage import UsageCounter  # noqa: F401
from beangate.providers.base import BackendClient
from beangate.providers.identity import ProviderIdentity
from beangate.providers.registry import ProviderRegistry
from beangate.services.analysis_service import AnalysisOrchestrator
from beangate.services.credential_store import CredentialStore
from beangate.services.credential_vault import CredentialVault
from beangate.services.image_store import FileImageStore
from beangate.services.quota_ledger import QuotaLedger

TEST_SECRET = os.environ["API_KEY_ENCRYPTION_SECRET"]
PLATFORM_KEY = os.environ["OPENAI_API_KEY"]

OPENAI_KEY = "sk-" + "a" * 45
CLAUDE_KEY = "sk-ant-" + "b" * 90
GEMINI_KEY = "AIza" + "c" * 35

IDENTIFIED_REPLY = """```json
{
  "identified": true,
  "confidence": 0.92,
  "brandName": "Onyx Coffee Lab",
  "coffeeName": "Monarch",
  "beanType": "Arabica",
  "possibleOrigin": "Ethiopia, Colombia",
  "roastLevel": "Medium-Dark Roast",
  "roastLevelConfidence": 0.8,
  "observations": ["Valve on the front", "Roast date visible"],
  "tastingNotes": ["Dark chocolate", "Molasses"],
  "flavorProfile": "Rich and syrupy",
  "weight": "12oz",
  "suggestedBrewMethods": ["Espresso"],
  "brewParameters": {
    "espresso": {"dose": 18, "yield": 36, "ratio": "1:2", "pullTime": {"min": 27, "max": 32}},
    "pourOver": {"dose": 20, "waterAmount": 320, "bloomTime": 45}
  },
  "tastingNotesLikely": [],
  "warnings": []
}
```"""

NOT_IDENTIFIED_REPLY = '{"identified": false, "confidence": 0.1, "warnings": ["No packaging visible"]}'


class FakeBackend(BackendClient):
    """
    Scripted stand-in for a vision backend.

    `replies` is consumed in order; a string is returned as the backend's raw
    text, an exception instance is raised from the request hook. When the
    script runs out, IDENTIFIED_REPLY is returned.
    """

    def __init__(
        self,
        identity: ProviderIdentity,
        display_name: str,
        key_prefix: str,
        min_key_length: int,
        model: str = "fake-vision-1",
    ):
        super().__init__(model=model)
        self.identity = identity
        self.display_name = display_name
        self.key_prefix = key_prefix
        self.min_key_length = min_key_length
        self.replies: List[Union[str, Exception]] = []
        self.calls: List[dict] = []
        self.ping_ok = True
        self.delay: float = 0.0

    async def _request_analysis(self, image_data_url, mime_type, payload, credential):
        self.calls.append({"mime_type": mime_type, "credential": credential})
        if self.delay:
            await asyncio.sleep(self.delay)
        reply = self.replies.pop(0) if self.replies else IDENTIFIED_REPLY
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def _ping(self, credential: str) -> None:
        if not self.ping_ok:
            raise ConnectionError("rejected")

    def _translate_error(self, error: Exception) -> BeanGateError:
        return UpstreamFailureError(context={"provider": self.identity.value})


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/beangate.db",
        api_key_encryption_secret=TEST_SECRET,
        free_tier_provider="OPENAI",
        openai_api_key=PLATFORM_KEY,
        anonymous_daily_limit=3,
        authenticated_daily_limit=10,
        analysis_timeout_seconds=5,
        storage_root=str(tmp_path / "images"),
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest_asyncio.fixture
async def db_engine(settings):
    engine = build_engine(settings.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault(TEST_SECRET)


@pytest.fixture
def fake_backends():
    return {
        ProviderIdentity.OPENAI: FakeBackend(ProviderIdentity.OPENAI, "OpenAI GPT-4o", "sk-", 40, "gpt-4o"),
        ProviderIdentity.CLAUDE: FakeBackend(ProviderIdentity.CLAUDE, "Claude Sonnet 4", "sk-ant-", 90),
        ProviderIdentity.GEMINI: FakeBackend(ProviderIdentity.GEMINI, "Gemini 2.5 Flash", "AIza", 35),
    }


@pytest.fixture
def registry(settings, fake_backends) -> ProviderRegistry:
    return ProviderRegistry(settings, backends=fake_backends)


@pytest.fixture
def ledger(session_factory, settings) -> QuotaLedger:
    return QuotaLedger(session_factory, settings)


@pytest.fixture
def credential_store(session_factory, vault, registry) -> CredentialStore:
    return CredentialStore(session_factory, vault, registry)


@pytest.fixture
def image_store(settings) -> FileImageStore:
    return FileImageStore(settings.storage_root, settings.max_file_size)


@pytest.fixture
def sample_image_bytes() -> bytes:
    """Smallest technically valid JPEG: SOI + JFIF header + EOI."""
    return (
        b'\xff\xd8\xff\xe0\x00\x10JFIF\x00\x01\x01\x00\x00\x01\x00\x01\x00\x00'
        b'\xff\xd9'
    )


@pytest_asyncio.fixture
async def stored_image(image_store, sample_image_bytes) -> str:
    return await image_store.store("bag.jpg", sample_image_bytes)


@pytest.fixture
def orchestrator(settings, registry, credential_store, ledger, image_store, session_factory):
    return AnalysisOrchestrator(
        settings=settings,
        registry=registry,
        credentials=credential_store,
        ledger=ledger,
        images=image_store,
        session_factory=session_factory,
    )


@pytest.fixture
def app(db_engine, registry, ledger, credential_store, image_store, orchestrator):
    """
    Application with the test components on app.state. httpx's ASGITransport
    does not run the lifespan, so nothing touches the real database URL.
    """
    from beangate.main import create_app

    application = create_app()
    application.state.engine = db_engine
    application.state.registry = registry
    application.state.ledger = ledger
    application.state.credential_store = credential_store
    application.state.image_store = image_store
    application.state.orchestrator = orchestrator
    return application


@pytest_asyncio.fixture
async def test_client(app):
    transport = ASGITransport(app=app, client=("203.0.113.7", 5555))
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def user_headers(user_id: Optional[str] = "user-1") -> dict:
    return {"X-User-Id": user_id} if user_id else {}
