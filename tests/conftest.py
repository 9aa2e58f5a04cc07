"""Shared fixtures and test doubles for the gateway tests."""

from __future__ import annotations

import asyncio

import pytest
from starlette.testclient import TestClient

from aigate.auth import Identity, TokenVerifier, VerificationError
from aigate.backend import EchoBackend, InferenceBackend, InferenceResult
from aigate.config import AuthConfig, GatewayConfig
from aigate.ratelimit import BucketStore, TokenBucketLimiter
from aigate.server import create_app

VALID_TOKEN = "valid-token"
OTHER_TOKEN = "other-token"
AUTH = {"Authorization": f"Bearer {VALID_TOKEN}"}


class FakeClock:
    """Manually advanced stand-in for ``time.monotonic``."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingVerifier(TokenVerifier):
    """Token -> subject verifier that counts how often it is used."""

    def __init__(self, tokens: dict[str, str] | None = None, delay: float = 0.0) -> None:
        self.tokens = tokens if tokens is not None else {VALID_TOKEN: "user-1", OTHER_TOKEN: "user-2"}
        self.delay = delay
        self.initialize_calls = 0
        self.verify_calls = 0

    async def initialize(self) -> None:
        self.initialize_calls += 1

    async def verify(self, token: str) -> Identity:
        self.verify_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if token not in self.tokens:
            raise VerificationError("unknown token")
        return Identity(subject=self.tokens[token], claims={"sub": self.tokens[token]})


class RecordingBackend(EchoBackend):
    def __init__(self) -> None:
        super().__init__()
        self.calls: list[tuple[str, object]] = []

    async def invoke(self, kind, request) -> InferenceResult:
        self.calls.append((kind, request))
        return await super().invoke(kind, request)


class FailingBackend(InferenceBackend):
    """Raises an error carrying internal detail that must never leak."""

    name = "failing"

    async def invoke(self, kind, request) -> InferenceResult:
        raise RuntimeError("db password is hunter2")

    async def stream(self, kind, request):
        raise RuntimeError("db password is hunter2")
        yield  # pragma: no cover


class MidStreamFailingBackend(InferenceBackend):
    name = "midstream"

    async def invoke(self, kind, request) -> InferenceResult:
        raise NotImplementedError

    async def stream(self, kind, request):
        yield "partial "
        yield "output"
        raise RuntimeError("connection reset by model server")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return TokenBucketLimiter(BucketStore(), clock=clock)


@pytest.fixture
def verifier():
    return RecordingVerifier()


@pytest.fixture
def backend():
    return RecordingBackend()


@pytest.fixture
def gateway_config():
    return GatewayConfig(auth=AuthConfig(mode="static", tokens={VALID_TOKEN: "user-1"}))


@pytest.fixture
def make_client(gateway_config, verifier, backend, limiter):
    """Build a TestClient; keyword overrides replace the default collaborators."""

    def _make(**overrides) -> TestClient:
        app = create_app(
            overrides.get("config", gateway_config),
            verifier=overrides.get("verifier", verifier),
            backend=overrides.get("backend", backend),
            limiter=overrides.get("limiter", limiter),
        )
        return TestClient(app, raise_server_exceptions=False)

    return _make


@pytest.fixture
def client(make_client):
    return make_client()
