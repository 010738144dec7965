"""Error taxonomy for the GitHub App integration.

Transient conditions (network failures, 429, 5xx) are retried inside the
client. Everything raised from here reaches the caller; nothing is turned
into an empty success.
"""

from typing import Optional


class GitHubAppError(Exception):
    """Base class for all GitHub App integration errors."""


class PrivateKeyError(GitHubAppError):
    """The GitHub App private key could not be read or parsed.

    Fatal at startup; there is nothing to retry.
    """


class CredentialExchangeError(GitHubAppError):
    """Exchanging the App JWT for an installation access token failed."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        transient: bool = False,
    ):
        self.status_code = status_code
        self.transient = transient
        super().__init__(message)


class MalformedSignatureError(GitHubAppError):
    """The signature header is missing or not in ``sha256=<hex>`` form."""


class HTTPStatusFailure(GitHubAppError):
    """A GitHub API call ended with an unwanted HTTP status."""

    def __init__(self, message: str, status_code: int, body: str = "", url: str = ""):
        self.status_code = status_code
        self.body = body
        self.url = url
        super().__init__(f"{message} (status code {status_code}): {body}")


class AuthorizationError(HTTPStatusFailure):
    """The installation token was rejected twice in a row (401/403)."""


class ClientRequestError(HTTPStatusFailure):
    """GitHub rejected the request with a non-retryable 4xx status."""


class ResponseDecodeError(GitHubAppError):
    """A successful GitHub response body was not valid JSON."""


class RequestFailedError(GitHubAppError):
    """Transient failures used up the retry budget.

    The last underlying failure is chained as ``__cause__`` when it was an
    exception; ``last_status`` holds the last HTTP status seen, if any.
    """

    def __init__(self, message: str, attempts: int, last_status: Optional[int] = None):
        self.attempts = attempts
        self.last_status = last_status
        super().__init__(message)
