"""Exception taxonomy for the marketplace sync pipeline."""

from typing import Iterable, Optional


class MarketSyncError(Exception):
    """Base exception for marketplace sync errors."""
    pass


class ConfigurationFault(MarketSyncError):
    """Required configuration is missing or invalid. Never retried."""

    def __init__(self, missing: Iterable[str], message: Optional[str] = None):
        self.missing = list(missing)
        super().__init__(message or f"Missing Amazon configuration: {', '.join(self.missing)}")


class AuthError(MarketSyncError):
    """LWA token exchange failed."""
    pass


class SignatureError(MarketSyncError):
    """Request could not be signed from the given inputs."""
    pass


class RemoteRequestError(MarketSyncError):
    """Non-success response from the SP-API."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class RemoteAuthError(RemoteRequestError):
    """Authentication/authorization error (401, 403)."""
    pass


class RemoteRateLimitError(RemoteRequestError):
    """Rate limit exceeded (429)."""

    def __init__(self, message: str, retry_after: Optional[int] = None, body: str = ""):
        super().__init__(message, status_code=429, body=body)
        self.retry_after = retry_after


class RemoteServerError(RemoteRequestError):
    """Server error (5xx)."""
    pass


class ReportFailed(MarketSyncError):
    """Report reached a terminal failure status."""

    def __init__(self, status: str, message: Optional[str] = None):
        self.status = status
        super().__init__(message or f"Report failed ({status}).")


class PollTimeout(MarketSyncError):
    """Report still processing after the attempt budget was spent."""

    def __init__(self, attempts: int, status: str):
        self.attempts = attempts
        self.status = status
        super().__init__(f"Report not ready after {attempts} attempts (status {status}).")


class InvalidTransition(MarketSyncError):
    """Attempted to move a report job out of a terminal status."""
    pass


class DocumentFetchError(MarketSyncError):
    """Report document download or decompression failed."""
    pass


class ParseError(MarketSyncError):
    """Report body is empty or malformed."""
    pass


class ClassificationWarning(UserWarning):
    """A financial entry was bucketed by the sign heuristic. Collected, never raised."""
    pass
