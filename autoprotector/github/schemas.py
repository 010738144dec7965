"""Pydantic schemas for GitHub API payloads."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel


class InstallationResponse(BaseModel):
    """GET /orgs/{org}/installation. Only the installation ID is needed."""

    id: int


class InstallationTokenResponse(BaseModel):
    """POST /app/installations/{id}/access_tokens."""

    token: str
    expires_at: datetime


class WebhookDelivery(BaseModel):
    """A webhook delivery whose signature has been verified."""

    event: str
    delivery_id: Optional[str] = None
    payload: dict[str, Any]
