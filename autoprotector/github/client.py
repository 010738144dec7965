"""GitHub API client for installation-scoped operations.

Uses httpx for async HTTP calls. Every call is authenticated with the
organization's installation access token, which the client obtains and
renews through ``InstallationTokenCache``.

Failure handling per attempt:
- 401/403: the token was probably revoked; invalidate it and retry once
- 429, 5xx and network errors: back off and retry up to the policy's budget
- other 4xx: raised immediately

Retries re-send the request unchanged. That is safe for reads and for
GitHub's idempotent writes (PUT branch protection, PATCH); callers issuing
non-idempotent POSTs own any deduplication.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx

from autoprotector import __version__
from autoprotector.core.config import Settings
from autoprotector.github.auth import load_private_key, load_private_key_file
from autoprotector.github.errors import (
    AuthorizationError,
    ClientRequestError,
    CredentialExchangeError,
    RequestFailedError,
    ResponseDecodeError,
)
from autoprotector.github.retry import (
    Outcome,
    RetryPolicy,
    RetryState,
    RetryStateMachine,
    classify_status,
    retry_after_delay,
)
from autoprotector.github.tokens import AccessToken, InstallationTokenCache

logger = logging.getLogger(__name__)

USER_AGENT = f"branch-autoprotector/{__version__}"
GITHUB_API_VERSION = "2022-11-28"


@dataclass(frozen=True)
class GitHubRequest:
    """An outbound API call. ``path`` is relative to the API base URL."""

    method: str
    path: str
    json: Any = None
    params: Optional[dict[str, Any]] = None


def build_http_client(
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """Create the shared HTTP client with GitHub's recommended headers.

    Redirects are followed; GitHub answers 301 for renamed or transferred
    repositories.
    """
    return httpx.AsyncClient(
        base_url=settings.github_api_base_url,
        timeout=httpx.Timeout(settings.request_timeout_seconds),
        headers={
            # GitHub requires a User-Agent on every request
            "User-Agent": USER_AGENT,
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
        },
        follow_redirects=True,
        transport=transport,
    )


class GitHubClient:
    """Installation-authenticated GitHub REST client with bounded retries.

    Safe to share between concurrently running tasks; the only shared
    mutable state is the token cache, which synchronizes itself.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        tokens: InstallationTokenCache,
        *,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        owns_http: bool = False,
    ):
        self._http = http
        self._tokens = tokens
        self._policy = policy or RetryPolicy()
        self._sleep = sleep
        self._owns_http = owns_http

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "GitHubClient":
        """Build a client from validated settings.

        Reads the private key right away, so an unusable key surfaces as
        ``PrivateKeyError`` at startup rather than on the first request.
        """
        if settings.github_private_key_path is not None:
            private_key = load_private_key_file(settings.github_private_key_path)
        else:
            private_key = load_private_key(settings.github_private_key.get_secret_value())

        http = build_http_client(settings, transport)
        tokens = InstallationTokenCache(
            http,
            app_id=settings.github_app_id,
            private_key=private_key,
            organization=settings.github_organization,
            refresh_margin=settings.token_refresh_margin_seconds,
            clock_skew=settings.jwt_clock_skew_seconds,
            jwt_lifetime=settings.jwt_lifetime_seconds,
            timeout=settings.token_exchange_timeout_seconds,
        )
        policy = RetryPolicy(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
        )
        return cls(http, tokens, policy=policy, owns_http=True)

    @property
    def tokens(self) -> InstallationTokenCache:
        return self._tokens

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def authenticate(self) -> None:
        """Obtain the first installation token eagerly."""
        await self._tokens.acquire()

    async def execute(self, request: GitHubRequest) -> httpx.Response:
        """Send ``request`` with the installation token attached.

        Returns the first successful response.

        Raises:
            AuthorizationError: the request was rejected as unauthorized
                again after renewing the token.
            ClientRequestError: GitHub answered with a non-retryable 4xx.
            RequestFailedError: transient failures used up the retry budget.
            CredentialExchangeError: the token exchange failed permanently.
        """
        machine = RetryStateMachine(self._policy)
        renewed_after_rejection = False

        while True:
            hint: Optional[float] = None
            last_status: Optional[int] = None
            last_error: Optional[BaseException] = None

            try:
                token = await self._tokens.acquire()
            except CredentialExchangeError as exc:
                if not exc.transient:
                    machine.transition(RetryState.FAILED)
                    raise
                last_error, last_status, reason = exc, exc.status_code, "token exchange failed"
            else:
                try:
                    response = await self._send(request, token)
                except httpx.TransportError as exc:
                    last_error, reason = exc, type(exc).__name__
                else:
                    outcome = classify_status(response.status_code, response.headers)

                    if outcome is Outcome.SUCCESS:
                        machine.transition(RetryState.SUCCEEDED)
                        return response

                    if outcome is Outcome.UNAUTHORIZED:
                        if renewed_after_rejection:
                            machine.transition(RetryState.FAILED)
                            raise AuthorizationError(
                                f"GitHub rejected {request.method} {request.path} with a fresh "
                                "installation access token",
                                status_code=response.status_code,
                                body=response.text,
                                url=str(response.url),
                            )
                        renewed_after_rejection = True
                        self._tokens.invalidate(token)
                        machine.transition(RetryState.ATTEMPTING)
                        continue

                    if outcome is Outcome.FATAL:
                        machine.transition(RetryState.FAILED)
                        raise ClientRequestError(
                            f"received GitHub API client error for {request.method} {request.path}",
                            status_code=response.status_code,
                            body=response.text,
                            url=str(response.url),
                        )

                    last_status, reason = response.status_code, f"status {response.status_code}"
                    hint = retry_after_delay(response.headers)

            if not machine.back_off():
                logger.error(
                    "GitHub API request %s %s failed after %d attempts (%s)",
                    request.method,
                    request.path,
                    machine.attempt,
                    reason,
                )
                raise RequestFailedError(
                    f"{request.method} {request.path} failed after {machine.attempt} attempts: {reason}",
                    attempts=machine.attempt,
                    last_status=last_status,
                ) from last_error

            delay = self._policy.backoff(machine.attempt, hint)
            logger.warning(
                "Retrying GitHub API request %s %s after %s (attempt %d of %d, waiting %.2fs)",
                request.method,
                request.path,
                reason,
                machine.attempt,
                self._policy.max_attempts,
                delay,
            )
            await self._sleep(delay)
            machine.resume()

    async def _send(self, request: GitHubRequest, token: AccessToken) -> httpx.Response:
        return await self._http.request(
            request.method,
            request.path,
            json=request.json,
            params=request.params,
            headers={"Authorization": f"Bearer {token.token}"},
        )

    async def request(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: Optional[dict[str, Any]] = None,
    ) -> Any:
        """Execute a call and decode its JSON body.

        Empty bodies (204, most PUT/DELETE endpoints) decode to ``{}``.
        """
        response = await self.execute(GitHubRequest(method, path, json=json, params=params))
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise ResponseDecodeError(
                f"could not decode GitHub API response body for {method} {path}"
            ) from exc

    async def get(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        return await self.request("GET", path, params=params)

    async def head(self, path: str) -> Any:
        return await self.request("HEAD", path)

    async def delete(self, path: str) -> Any:
        return await self.request("DELETE", path)

    async def post(self, path: str, json: Any = None) -> Any:
        return await self.request("POST", path, json=json)

    async def put(self, path: str, json: Any = None) -> Any:
        return await self.request("PUT", path, json=json)

    async def patch(self, path: str, json: Any = None) -> Any:
        return await self.request("PATCH", path, json=json)
