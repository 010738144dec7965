"""GitHub webhook signature verification.

The webhook secret is shared between GitHub and our app; it must never be
logged or exposed. The signature is checked over the raw body exactly as
received, before any JSON decoding, because re-serializing the payload can
change its bytes.

Signature verification uses HMAC-SHA256 as specified by GitHub:
https://docs.github.com/en/webhooks/using-webhooks/validating-webhook-deliveries
"""

import hashlib
import hmac
import json
import logging
from typing import AsyncIterator, Optional, Union

from fastapi import Depends, Header, HTTPException, Request, status
from pydantic import SecretStr

from autoprotector.core.config import Settings, get_settings
from autoprotector.core.logging import bind_delivery_id, reset_delivery_id
from autoprotector.github.errors import MalformedSignatureError
from autoprotector.github.schemas import WebhookDelivery

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Hub-Signature-256"
SIGNATURE_PREFIX = "sha256="
_DIGEST_LENGTH = hashlib.sha256().digest_size * 2
_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")


def _secret_bytes(secret: Union[str, SecretStr, None]) -> bytes:
    if isinstance(secret, SecretStr):
        secret = secret.get_secret_value()
    return (secret or "").encode("utf-8")


def parse_signature_header(signature_header: Optional[str]) -> str:
    """Extract the hex digest from an ``X-Hub-Signature-256`` value.

    Raises:
        MalformedSignatureError: if the header is missing, uses another
            algorithm, or the digest is not 64 hex characters.
    """
    if not signature_header:
        raise MalformedSignatureError("missing payload signature")
    if not signature_header.startswith(SIGNATURE_PREFIX):
        raise MalformedSignatureError(f"payload signature must start with {SIGNATURE_PREFIX!r}")

    digest = signature_header[len(SIGNATURE_PREFIX):]
    if len(digest) != _DIGEST_LENGTH or not _HEX_DIGITS.issuperset(digest):
        raise MalformedSignatureError(
            f"payload signature must be {_DIGEST_LENGTH} hexadecimal characters"
        )
    return digest.lower()


def sign_payload(payload_body: bytes, secret: Union[str, SecretStr]) -> str:
    """Compute the ``X-Hub-Signature-256`` value GitHub would send."""
    digest = hmac.new(_secret_bytes(secret), payload_body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_webhook_signature(
    payload_body: bytes,
    signature_header: Optional[str],
    secret: Union[str, SecretStr, None],
) -> bool:
    """Verify that a webhook payload was signed by GitHub.

    Args:
        payload_body: Raw request body bytes.
        signature_header: Value of the X-Hub-Signature-256 header.
        secret: The App's webhook secret.

    Returns:
        True if the signature is valid, False otherwise. An unset secret
        rejects every delivery.

    Raises:
        MalformedSignatureError: if the header is not ``sha256=<hex digest>``.
    """
    key = _secret_bytes(secret)
    if not key:
        logger.error("No webhook secret configured, rejecting webhook delivery")
        return False

    received_signature = parse_signature_header(signature_header)
    expected_signature = hmac.new(key, payload_body, hashlib.sha256).hexdigest()

    # Constant-time comparison to prevent timing attacks
    if hmac.compare_digest(expected_signature, received_signature):
        logger.debug("Verified webhook payload signature")
        return True

    logger.warning("Received webhook payload with invalid signature")
    return False


async def verified_webhook_payload(
    request: Request,
    x_hub_signature_256: Optional[str] = Header(default=None),
    x_github_event: str = Header(default=""),
    x_github_delivery: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> AsyncIterator[WebhookDelivery]:
    """FastAPI dependency that only yields deliveries with a valid signature.

    Responds 401 when the signature is missing, malformed or wrong, and 400
    when a correctly signed body is not a JSON object. The route handler that
    declares this dependency is never invoked for a rejected delivery.

    The delivery ID is bound into the logging context for the rest of the
    request and unbound once the handler is done.
    """
    token = bind_delivery_id(x_github_delivery or "")
    try:
        yield await _read_verified_delivery(
            request,
            x_hub_signature_256,
            x_github_event,
            x_github_delivery,
            settings.github_webhook_secret,
        )
    finally:
        reset_delivery_id(token)


async def _read_verified_delivery(
    request: Request,
    signature_header: Optional[str],
    event: str,
    delivery_id: Optional[str],
    secret: SecretStr,
) -> WebhookDelivery:
    body = await request.body()

    try:
        verified = verify_webhook_signature(body, signature_header, secret)
    except MalformedSignatureError as exc:
        logger.warning("Rejected webhook delivery: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Malformed webhook signature",
        ) from exc

    if not verified:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature",
        )

    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook payload is not valid JSON",
        ) from exc

    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook payload must be a JSON object",
        )

    return WebhookDelivery(event=event, delivery_id=delivery_id, payload=payload)
