"""Errors raised while talking to the handover backend."""

from typing import Optional


class SyncError(Exception):
    """Base class for sync failures. All subclasses are non-fatal to the scheduler."""
    kind = "sync"


class NetworkError(SyncError):
    """Connection failure, DNS error or timeout."""
    kind = "network"


class HttpError(SyncError):
    """Backend answered with a non-2xx status."""
    kind = "http"

    def __init__(self, status_code: int, message: str = "", response_text: Optional[str] = None):
        super().__init__(message or f"HTTP {status_code}")
        self.status_code = status_code
        self.response_text = response_text


class ApplicationError(SyncError):
    """Backend answered 2xx but reported success=false or an unreadable body."""
    kind = "application"
