"""Shared test fixtures for the branch-autoprotector test suite.

Outbound GitHub calls go through ``httpx.MockTransport`` backed by
``FakeGitHub``, which serves the two App authentication endpoints itself and
answers every other request from a scripted list. Time is controlled with
``FakeClock`` and a recording sleep, so retry and renewal tests are
deterministic and never actually wait.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from autoprotector.core.config import Settings
from autoprotector.github.client import GitHubClient, build_http_client
from autoprotector.github.retry import RetryPolicy
from autoprotector.github.tokens import InstallationTokenCache

ORGANIZATION = "example-org"
INSTALLATION_ID = 42
APP_ID = "12345"
WEBHOOK_SECRET = "s3cr3t"

INSTALLATION_PATH = f"/orgs/{ORGANIZATION}/installation"
ACCESS_TOKENS_PATH = f"/app/installations/{INSTALLATION_ID}/access_tokens"


def _generate_test_private_key() -> rsa.RSAPrivateKey:
    """Generate a valid RSA private key for testing."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


TEST_PRIVATE_KEY = _generate_test_private_key()
TEST_PRIVATE_KEY_PEM = TEST_PRIVATE_KEY.private_bytes(
    serialization.Encoding.PEM,
    serialization.PrivateFormat.TraditionalOpenSSL,
    serialization.NoEncryption(),
).decode()


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeGitHub:
    """Scripted stand-in for the GitHub REST API."""

    def __init__(self, clock: FakeClock, token_lifetime: timedelta = timedelta(hours=1)):
        self.clock = clock
        self.token_lifetime = token_lifetime
        # Scripted answers for API calls: httpx.Response or an exception to raise
        self.responses: list[Union[httpx.Response, Exception]] = []
        # Scripted answers for the token endpoint, consumed before issuing tokens
        self.exchange_responses: list[Union[httpx.Response, Exception]] = []
        self.exchange_delay = 0.0
        self.requests: list[httpx.Request] = []
        self.exchange_count = 0
        self.installation_lookups = 0

    @property
    def api_requests(self) -> list[httpx.Request]:
        return [
            r for r in self.requests
            if r.url.path not in (INSTALLATION_PATH, ACCESS_TOKENS_PATH)
        ]

    @property
    def exchange_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == ACCESS_TOKENS_PATH]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == INSTALLATION_PATH:
            self.installation_lookups += 1
            return httpx.Response(200, json={"id": INSTALLATION_ID, "app_id": 12345})

        if path == ACCESS_TOKENS_PATH:
            if self.exchange_delay:
                await asyncio.sleep(self.exchange_delay)
            if self.exchange_responses:
                return self._answer(self.exchange_responses.pop(0))
            self.exchange_count += 1
            expires_at = self.clock() + self.token_lifetime
            return httpx.Response(
                201,
                json={
                    "token": f"ghs_token{self.exchange_count}",
                    "expires_at": expires_at.strftime("%Y-%m-%dT%H:%M:%SZ"),
                    "permissions": {"administration": "write", "issues": "write"},
                },
            )

        if not self.responses:
            raise AssertionError(f"unexpected request {request.method} {request.url}")
        return self._answer(self.responses.pop(0))

    @staticmethod
    def _answer(item: Union[httpx.Response, Exception]) -> httpx.Response:
        if isinstance(item, Exception):
            raise item
        return item

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class RecordingSleep:
    """Replacement for asyncio.sleep that records delays instead of waiting."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)

    @property
    def total(self) -> float:
        return sum(self.delays)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_github(clock) -> FakeGitHub:
    return FakeGitHub(clock)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def settings(tmp_path) -> Settings:
    key_path = tmp_path / "private-key.pem"
    key_path.write_text(TEST_PRIVATE_KEY_PEM)
    return Settings(
        github_organization=ORGANIZATION,
        github_app_id=APP_ID,
        github_private_key_path=key_path,
        github_webhook_secret=WEBHOOK_SECRET,
        retry_max_attempts=4,
        retry_base_delay_seconds=1.0,
        retry_max_delay_seconds=60.0,
    )


@pytest.fixture
async def http(settings, fake_github):
    async with build_http_client(settings, fake_github.transport()) as client:
        yield client


@pytest.fixture
def token_cache(http, clock) -> InstallationTokenCache:
    return InstallationTokenCache(
        http,
        app_id=APP_ID,
        private_key=TEST_PRIVATE_KEY,
        organization=ORGANIZATION,
        refresh_margin=60,
        clock=clock,
    )


@pytest.fixture
def github_client(http, token_cache, sleep) -> GitHubClient:
    """Client with jitter disabled so backoff delays are exact."""
    policy = RetryPolicy(max_attempts=4, base_delay=1.0, max_delay=60.0, jitter=False)
    return GitHubClient(http, token_cache, policy=policy, sleep=sleep)
