"""GitHub App integration.

Public API:
    GitHubClient, GitHubRequest: installation-authenticated REST calls
    InstallationTokenCache, AccessToken: token exchange and renewal
    create_app_jwt, load_private_key, load_private_key_file
    verify_webhook_signature, verified_webhook_payload
"""

from autoprotector.github.auth import create_app_jwt, load_private_key, load_private_key_file
from autoprotector.github.client import GitHubClient, GitHubRequest
from autoprotector.github.errors import (
    AuthorizationError,
    ClientRequestError,
    CredentialExchangeError,
    GitHubAppError,
    MalformedSignatureError,
    PrivateKeyError,
    RequestFailedError,
    ResponseDecodeError,
)
from autoprotector.github.tokens import AccessToken, InstallationTokenCache
from autoprotector.github.webhooks import verified_webhook_payload, verify_webhook_signature
