"""Installation access token cache.

Installation tokens are scoped to one organization's installation of the
App and expire after an hour. The cache hands out the current token without
any locking or I/O while it is comfortably valid, and renews it once it gets
within ``refresh_margin`` of its expiry. Renewal is
single-flight: the first caller to find the token stale starts one renewal
task and every caller that arrives while it runs awaits that same task, so
they all share its token or its ``CredentialExchangeError``.

A token is only ever stored after a complete, successful exchange, so a
timed-out or cancelled renewal leaves the previous state untouched.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Union

import httpx
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey
from pydantic import ValidationError

from autoprotector.github.auth import (
    DEFAULT_CLOCK_SKEW_SECONDS,
    DEFAULT_JWT_LIFETIME_SECONDS,
    create_app_jwt,
)
from autoprotector.github.errors import CredentialExchangeError
from autoprotector.github.schemas import InstallationResponse, InstallationTokenResponse

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_MARGIN_SECONDS = 60
DEFAULT_EXCHANGE_TIMEOUT_SECONDS = 30.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AccessToken:
    """An installation access token and its absolute expiry."""

    token: str = field(repr=False)
    expires_at: datetime

    def remaining(self, now: datetime) -> timedelta:
        return self.expires_at - now

    def __str__(self) -> str:
        return self.token


class InstallationTokenCache:
    """Caches the installation access token of a single organization."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        app_id: Union[str, int],
        private_key: RSAPrivateKey,
        organization: str,
        refresh_margin: float = DEFAULT_REFRESH_MARGIN_SECONDS,
        clock_skew: int = DEFAULT_CLOCK_SKEW_SECONDS,
        jwt_lifetime: int = DEFAULT_JWT_LIFETIME_SECONDS,
        timeout: float = DEFAULT_EXCHANGE_TIMEOUT_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if not organization:
            raise ValueError("GitHub organization not configured")
        if refresh_margin < 0:
            raise ValueError(f"refresh margin must not be negative, got {refresh_margin}")

        self._http = http
        self._app_id = app_id
        self._private_key = private_key
        self._organization = organization
        self._refresh_margin = timedelta(seconds=refresh_margin)
        self._clock_skew = clock_skew
        self._jwt_lifetime = jwt_lifetime
        self._timeout = timeout
        self._clock = clock or _utcnow

        self._renewal: Optional[asyncio.Task] = None
        self._token: Optional[AccessToken] = None
        self._installation_id: Optional[int] = None

    @property
    def organization(self) -> str:
        return self._organization

    @property
    def installation_id(self) -> Optional[int]:
        return self._installation_id

    def _is_fresh(self, token: Optional[AccessToken]) -> bool:
        return token is not None and token.remaining(self._clock()) > self._refresh_margin

    async def acquire(self) -> AccessToken:
        """Return a token that stays valid for at least ``refresh_margin``."""
        token = self._token
        if self._is_fresh(token):
            return token

        renewal = self._renewal
        if renewal is None or renewal.done():
            renewal = asyncio.ensure_future(self._renew())
            renewal.add_done_callback(self._renewal_finished)
            self._renewal = renewal

        # A cancelled caller must not cancel the renewal the others await
        return await asyncio.shield(renewal)

    async def _renew(self) -> AccessToken:
        try:
            token = await asyncio.wait_for(self._exchange(), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise CredentialExchangeError(
                f"installation token exchange timed out after {self._timeout}s",
                transient=True,
            ) from exc

        self._token = token
        return token

    def _renewal_finished(self, renewal: asyncio.Task) -> None:
        if self._renewal is renewal:
            self._renewal = None
        # Mark a failure as retrieved even when every waiter was cancelled
        if not renewal.cancelled():
            renewal.exception()

    def invalidate(self, stale: Optional[AccessToken] = None) -> None:
        """Force the next ``acquire()`` to renew.

        With ``stale`` given, the cache is only cleared if it still holds that
        token; a burst of rejections caused by one revoked token then leads
        to a single renewal.
        """
        if stale is not None and self._token != stale:
            return
        if self._token is not None:
            logger.info(
                "Installation access token for organization %s possibly revoked, "
                "will request a fresh one",
                self._organization,
            )
        self._token = None

    async def _exchange(self) -> AccessToken:
        # A fresh JWT per exchange; it is never reused for a later renewal
        app_jwt = create_app_jwt(
            self._app_id,
            self._private_key,
            now=self._clock(),
            clock_skew=self._clock_skew,
            lifetime=self._jwt_lifetime,
        )

        if self._installation_id is None:
            data = await self._call("GET", f"orgs/{self._organization}/installation", app_jwt)
            self._installation_id = self._parse(InstallationResponse, data).id
            logger.info(
                "Resolved GitHub App installation %d for organization %s",
                self._installation_id,
                self._organization,
            )

        logger.info(
            "Requesting GitHub App installation access token for organization %s",
            self._organization,
        )
        data = await self._call(
            "POST", f"app/installations/{self._installation_id}/access_tokens", app_jwt
        )
        parsed = self._parse(InstallationTokenResponse, data)

        expires_at = parsed.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)

        logger.info(
            "Obtained installation access token for organization %s (expires %s)",
            self._organization,
            expires_at.isoformat(),
        )
        return AccessToken(token=parsed.token, expires_at=expires_at)

    async def _call(self, method: str, path: str, app_jwt: str) -> object:
        try:
            response = await self._http.request(
                method, path, headers={"Authorization": f"Bearer {app_jwt}"}
            )
        except httpx.TransportError as exc:
            raise CredentialExchangeError(
                f"could not reach GitHub for {method} {path}: {exc!r}",
                transient=True,
            ) from exc

        if response.is_error:
            status_code = response.status_code
            raise CredentialExchangeError(
                f"GitHub rejected {method} {path} (status code {status_code}): {response.text}",
                status_code=status_code,
                transient=status_code == 429 or status_code >= 500,
            )

        try:
            return response.json()
        except ValueError as exc:
            raise CredentialExchangeError(
                f"could not decode GitHub response for {method} {path}",
                status_code=response.status_code,
            ) from exc

    @staticmethod
    def _parse(model, data):
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            raise CredentialExchangeError(
                f"unexpected GitHub response shape for {model.__name__}: {exc}"
            ) from exc
