"""
Pytest configuration and fixtures for the test suite.
"""
import os
import sys

import httpx
import pytest

# Add src directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from genai_gateway.config import GatewayConfig
from genai_gateway.cooldown_manager import CooldownTracker
from genai_gateway.credential_pool import CredentialPool
from genai_gateway.dispatcher import RequestDispatcher
from genai_gateway.failure_logger import configure_failure_logger


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "asyncio: mark test as an async test")


class FakeClock:
    """Manually advanced clock for cooldown tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def http_error(status_code: int, body=None, headers=None) -> httpx.HTTPStatusError:
    """Build the exception httpx raises for a non-2xx upstream response."""
    request = httpx.Request("POST", "https://upstream.test/v1beta/models/m:generateContent")
    if isinstance(body, dict):
        response = httpx.Response(status_code, json=body, headers=headers, request=request)
    else:
        response = httpx.Response(status_code, text=body or "", headers=headers, request=request)
    return httpx.HTTPStatusError(
        f"HTTP {status_code}", request=request, response=response
    )


def rate_limit_error(retry_delay: str = None) -> httpx.HTTPStatusError:
    error = {
        "code": 429,
        "message": "Resource has been exhausted (e.g. check quota).",
        "status": "RESOURCE_EXHAUSTED",
    }
    if retry_delay:
        error["details"] = [
            {
                "@type": "type.googleapis.com/google.rpc.RetryInfo",
                "retryDelay": retry_delay,
            }
        ]
    return http_error(429, {"error": error})


def invalid_key_error() -> httpx.HTTPStatusError:
    return http_error(
        400,
        {
            "error": {
                "code": 400,
                "message": "API key not valid. Please pass a valid API key.",
                "status": "INVALID_ARGUMENT",
            }
        },
    )


class FakeUpstream:
    """
    Upstream stand-in keyed by credential name.

    `outcomes` maps a credential name to a list of results consumed in
    order; an Exception entry is raised, anything else is returned. A
    credential with no scripted outcome (or an exhausted list) succeeds.
    """

    def __init__(self, outcomes=None, default=None):
        self.outcomes = {name: list(items) for name, items in (outcomes or {}).items()}
        self.default = default if default is not None else {"text": "ok"}
        self.calls = []

    async def call(self, credential, envelope):
        self.calls.append(credential.name)
        queue = self.outcomes.get(credential.name)
        if queue:
            outcome = queue.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return dict(self.default)


def make_pool(*secrets, base_name: str = "GOOGLE_GENAI_TOKEN") -> CredentialPool:
    """A pool of numbered credentials: GOOGLE_GENAI_TOKEN_1..N."""
    env = {f"{base_name}_{i}": secret for i, secret in enumerate(secrets, start=1)}
    pool = CredentialPool(env, base_name=base_name)
    pool.initialize()
    return pool


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cooldowns(clock):
    return CooldownTracker(clock=clock)


@pytest.fixture
def config():
    return GatewayConfig()


@pytest.fixture
def make_dispatcher(cooldowns, config):
    def _make(pool, upstream, **overrides):
        cfg = GatewayConfig(**overrides) if overrides else config
        return RequestDispatcher(pool, cooldowns, upstream, cfg)

    return _make


@pytest.fixture(autouse=True)
def isolated_failure_log(tmp_path):
    """Keep failure records out of the working directory."""
    configure_failure_logger(tmp_path / "logs")
    yield
    configure_failure_logger(None)
