"""Summary: Error taxonomy for mailharvest.

Importance: Lets the HTTP layer map failures to status codes without inspecting messages.
Alternatives: Raise ValueError/RuntimeError everywhere and translate by string matching.
"""

from __future__ import annotations


class MailHarvestError(Exception):
    """Base class for all mailharvest errors."""

    kind = "error"


class NotFoundError(MailHarvestError):
    """Summary: Raised when an account or message does not exist.

    Importance: Keeps "no such record" distinct from storage failures.
    Alternatives: Return None from every service call.
    """

    kind = "not_found"


class ValidationError(MailHarvestError):
    """Raised for malformed caller input such as bad ids or unknown providers."""

    kind = "validation_error"


class InvalidStateError(MailHarvestError):
    """Raised when an OAuth state is unknown, already used, or expired."""

    kind = "invalid_state"


class AuthError(MailHarvestError):
    """Summary: Raised when a provider rejects a code, token, or identity.

    Importance: Carries the provider and HTTP status for logging and 401 mapping.
    Alternatives: Surface raw HTTP errors to callers.
    """

    kind = "auth_error"

    def __init__(self, message: str, provider: str | None = None, status: int | None = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.status = status


class UpstreamError(MailHarvestError):
    """Summary: Raised when a provider API or the LLM endpoint fails.

    Importance: Separates third-party failures from local bugs and storage errors.
    Alternatives: Let urllib exceptions propagate unchanged.
    """

    kind = "upstream_error"

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class HttpStatusError(UpstreamError):
    """Raised by the HTTP client for non-2xx responses."""

    def __init__(self, url: str, status: int, body: str) -> None:
        super().__init__(f"{url} returned HTTP {status}: {body[:200]}", status=status)
        self.url = url
        self.body = body


class MalformedResponseError(UpstreamError):
    """Raised when an upstream payload does not match the expected shape."""

    kind = "malformed_response"


class DeadlineExceededError(UpstreamError):
    """Raised when the caller's deadline expires before an outbound call completes."""

    kind = "deadline_exceeded"


class StorageError(MailHarvestError):
    """Raised when the persistence layer fails."""

    kind = "storage_error"


class DuplicateRecordError(StorageError):
    """Raised when a write would violate a unique key."""

    kind = "duplicate_record"
