"""Shared fixtures: settings, fake clocks and mock HTTP transports."""

import json
import random
from typing import Callable, Dict, List

import httpx
import pytest

from resilient_storage.circuit_breaker import CircuitBreaker
from resilient_storage.credentials import CredentialProvider
from resilient_storage.env import Settings
from resilient_storage.models import CircuitBreakerConfig, RetryConfig
from resilient_storage.retry_policy import RetryPolicy
from resilient_storage.security import RequestSigner
from resilient_storage.storage_services import R2Backend, SupabaseStorageBackend

R2_HOST = "acct123.r2.cloudflarestorage.com"
SUPABASE_URL = "https://project.supabase.co"


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Zero-delay replacement for asyncio.sleep that remembers every delay."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class Router:
    """
    Dispatches mock requests by host and records every call.

    Handlers receive the httpx.Request and return an httpx.Response (or raise).
    """

    def __init__(self):
        self.handlers: Dict[str, Callable] = {}
        self.requests: List[httpx.Request] = []

    def on(self, host: str, handler: Callable) -> None:
        self.handlers[host] = handler

    def calls_to(self, host: str) -> List[httpx.Request]:
        return [request for request in self.requests if request.url.host == host]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.handlers.get(request.url.host)
        if handler is None:
            return httpx.Response(404, text=f"no handler for {request.url.host}")
        result = handler(request)
        if hasattr(result, "__await__"):
            result = await result
        return result


def supabase_upload_ok(request: httpx.Request) -> httpx.Response:
    key = request.url.path.split("/storage/v1/object/", 1)[-1]
    return httpx.Response(200, json={"Key": key})


def always(status: int, body: str = "") -> Callable:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, text=body)
    return handler


@pytest.fixture
def settings():
    """Local settings with complete R2 credentials and a configured fallback."""
    return Settings(
        _env_file=None,
        environment="local",
        r2_account_id="acct123",
        r2_access_key_id="AKIDEXAMPLE0123456789",
        r2_secret_access_key="wJalrXUtnFEMI/K7MDENG/bPxRfiCYEXAMPLEKEY",
        r2_bucket_name="foodshare",
        r2_public_url="https://cdn.example.com",
        supabase_url=SUPABASE_URL,
        supabase_service_role_key="service-role-key-0123456789",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def router():
    return Router()


@pytest.fixture
def http_client(router):
    return httpx.AsyncClient(transport=httpx.MockTransport(router))


@pytest.fixture
def retry_config():
    return RetryConfig(max_retries=2, base_delay_ms=10, max_delay_ms=100, timeout_ms=1000)


@pytest.fixture
def breaker(clock):
    return CircuitBreaker(CircuitBreakerConfig(failure_threshold=3, reset_timeout_ms=1000), clock=clock)


@pytest.fixture
def retry_policy():
    return RetryPolicy(random.Random(7))


@pytest.fixture
def primary(settings, http_client):
    provider = CredentialProvider(settings, http_client=http_client)
    return R2Backend(provider, RequestSigner(), http_client)


@pytest.fixture
def secondary(http_client):
    return SupabaseStorageBackend(SUPABASE_URL, "service-role-key-0123456789", http_client)


def json_body(request: httpx.Request):
    return json.loads(request.content.decode("utf-8"))
