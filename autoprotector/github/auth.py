"""GitHub App authentication.

Handles private key loading and JWT generation for GitHub App auth.
The JWT is only ever used once, to exchange it for an installation access
token (see ``autoprotector.github.tokens``).

GitHub App auth flow:
1. Generate a JWT signed with the App's private key
2. Exchange the JWT for a short-lived installation access token
3. Use the installation token for API calls scoped to that installation
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Union

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey

from autoprotector.github.errors import PrivateKeyError

# GitHub rejects App JWTs whose exp lies more than 10 minutes in the future.
MAX_JWT_LIFETIME_SECONDS = 600

DEFAULT_CLOCK_SKEW_SECONDS = 60
DEFAULT_JWT_LIFETIME_SECONDS = 540


def load_private_key(pem: Union[str, bytes]) -> RSAPrivateKey:
    """Parse a PEM-encoded RSA private key.

    Raises:
        PrivateKeyError: if the PEM is malformed or not an RSA key. GitHub
            only accepts RS256 for App JWTs.
    """
    if isinstance(pem, str):
        pem = pem.encode("utf-8")
    if not pem.strip():
        raise PrivateKeyError("GitHub App private key is empty")

    try:
        key = serialization.load_pem_private_key(pem, password=None)
    except (ValueError, TypeError) as exc:
        raise PrivateKeyError("could not parse GitHub App private key") from exc

    if not isinstance(key, RSAPrivateKey):
        raise PrivateKeyError(
            f"GitHub App private key must be RSA, got {type(key).__name__}"
        )
    return key


def load_private_key_file(path: Union[str, Path]) -> RSAPrivateKey:
    """Read and parse the App's private key from a ``.pem`` file."""
    try:
        pem = Path(path).read_bytes()
    except OSError as exc:
        raise PrivateKeyError(f"could not read GitHub App private key file {path}") from exc
    return load_private_key(pem)


def create_app_jwt(
    app_id: Union[str, int],
    private_key: RSAPrivateKey,
    *,
    now: Optional[datetime] = None,
    clock_skew: int = DEFAULT_CLOCK_SKEW_SECONDS,
    lifetime: int = DEFAULT_JWT_LIFETIME_SECONDS,
) -> str:
    """Create a JWT for authenticating as the GitHub App.

    ``iat`` is backdated by ``clock_skew`` seconds to tolerate drift between
    our clock and GitHub's; ``exp`` is ``now + lifetime``.
    """
    if not str(app_id):
        raise ValueError("GitHub App ID not configured")
    if not 0 < lifetime <= MAX_JWT_LIFETIME_SECONDS:
        raise ValueError(
            f"JWT lifetime must be within (0, {MAX_JWT_LIFETIME_SECONDS}] seconds, got {lifetime}"
        )
    if clock_skew < 0:
        raise ValueError(f"clock skew must not be negative, got {clock_skew}")

    if now is None:
        now = datetime.now(timezone.utc)

    payload = {
        "iat": int((now - timedelta(seconds=clock_skew)).timestamp()),
        "exp": int((now + timedelta(seconds=lifetime)).timestamp()),
        "iss": str(app_id),
    }

    return jwt.encode(payload, private_key, algorithm="RS256")
