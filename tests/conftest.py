"""
Shared test fixtures for the BotanicMD test suite.
"""

import asyncio
import json
from types import SimpleNamespace

import pytest
import structlog
from fastapi.testclient import TestClient

from botanicmd.models.auth import AuthUser
from botanicmd.models.plant import PlantRecord

JPEG_BYTES = b"\xff\xd8\xff\xe0\x00\x10JFIF" + b"\x00" * 64


@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set required environment variables for tests so Settings can be instantiated."""
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-fake-key-for-testing")
    # Disable LangSmith tracing in tests
    monkeypatch.setenv("LANGCHAIN_TRACING_V2", "false")


@pytest.fixture(autouse=True)
def _configure_structlog_for_tests():
    """Configure structlog for tests using a simple, deterministic setup."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(0),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


@pytest.fixture
def client() -> TestClient:
    """FastAPI TestClient wrapping the main application."""
    # Clear the lru_cache so settings pick up test env vars
    from botanicmd.config import get_settings

    get_settings.cache_clear()

    from botanicmd.main import app

    return TestClient(app)


class FakeAuthBackend:
    """In-process AuthBackend: a persisted session plus a manual event source."""

    def __init__(self, user: AuthUser | None = None) -> None:
        self.user = user
        self.callbacks: list = []
        self.exchange_error: Exception | None = None
        self.exchanged_codes: list[str] = []
        self.adopted_tokens: list[tuple[str, str]] = []
        self.signed_out = False
        self._lookup_gate: asyncio.Event | None = None

    def hold_lookup(self) -> None:
        """Make get_session block until release_lookup()."""
        self._lookup_gate = asyncio.Event()

    def release_lookup(self) -> None:
        if self._lookup_gate is not None:
            self._lookup_gate.set()

    def emit(self, event: str, user: AuthUser | None) -> None:
        for callback in list(self.callbacks):
            callback(event, user)

    async def get_session(self) -> AuthUser | None:
        if self._lookup_gate is not None:
            await self._lookup_gate.wait()
        return self.user

    def subscribe(self, callback):
        self.callbacks.append(callback)

        def _unsubscribe() -> None:
            if callback in self.callbacks:
                self.callbacks.remove(callback)

        return _unsubscribe

    async def exchange_code(self, code: str) -> AuthUser | None:
        self.exchanged_codes.append(code)
        if self.exchange_error is not None:
            raise self.exchange_error
        return self.user

    async def set_session(self, access_token: str, refresh_token: str) -> AuthUser | None:
        self.adopted_tokens.append((access_token, refresh_token))
        return self.user

    async def sign_out(self) -> None:
        self.signed_out = True
        self.user = None


@pytest.fixture
def make_auth_backend():
    """Factory for FakeAuthBackend instances."""
    return FakeAuthBackend


@pytest.fixture
def user() -> AuthUser:
    return AuthUser(id="user-1", email="ana@example.com", name="Ana")


@pytest.fixture
def jpeg_bytes() -> bytes:
    return JPEG_BYTES


def _plant_payload(common_name: str, scientific_name: str) -> dict:
    return {
        "commonName": common_name,
        "scientificName": scientific_name,
        "description": f"{common_name} is a widely cultivated ornamental plant.",
        "funFact": "Its leaves develop holes as the plant matures.",
        "toxicity": "Toxic to cats and dogs if ingested.",
        "propagation": "Stem cuttings with at least one node.",
        "wateringFrequencyDays": 7,
        "care": {
            "water": "Water when the top 5 cm of soil are dry.",
            "light": "Bright, indirect light.",
            "soil": "Chunky, well-draining aroid mix.",
            "temperature": "18-29 C",
        },
        "health": {
            "isHealthy": False,
            "diagnosis": "Early signs of overwatering.",
            "symptoms": ["Yellowing lower leaves", "Soft stems"],
            "treatment": ["Let the soil dry out", "Check roots for rot"],
        },
        "medicinal": {
            "isMedicinal": False,
            "benefits": "None known.",
            "usage": "Not applicable.",
        },
    }


@pytest.fixture
def plant_payload() -> dict:
    """Model-shaped (camelCase) plant record for Monstera deliciosa."""
    return _plant_payload("Monstera", "Monstera deliciosa")


@pytest.fixture
def make_plant_record():
    """Factory for PlantRecord instances with realistic content."""

    def _make(common_name: str = "Monstera", scientific_name: str = "Monstera deliciosa") -> PlantRecord:
        return PlantRecord.model_validate(_plant_payload(common_name, scientific_name))

    return _make


@pytest.fixture
def plant_record(make_plant_record) -> PlantRecord:
    return make_plant_record()


@pytest.fixture
def make_completion():
    """Factory for chat.completions.create return values."""

    def _make(content: str | dict | None) -> SimpleNamespace:
        if isinstance(content, dict):
            content = json.dumps(content)
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])

    return _make
