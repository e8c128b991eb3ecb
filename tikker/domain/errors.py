"""
Error taxonomy shared by the gateway, the cache synchronizer and the session.

Every failure is recoverable by a later user action; nothing here is fatal.
"""

from typing import Any, Optional


class TikkerError(Exception):
    """Base class for all errors raised by the tracking engine"""


class ConfigurationError(TikkerError):
    """The connection profile is incomplete. Needs user correction, not a retry."""


class ServerConnectionError(TikkerError):
    """
    One of the connect-time checks (version, config, identity) failed.

    Retry by calling connect again.
    """

    def __init__(self, stage: str, cause: Optional[Exception] = None):
        self.stage = stage
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Connection failed during {stage} check{detail}")


class ApiError(TikkerError):
    """
    Non-2xx answer from the server, or a transport failure (code 0).
    """

    def __init__(self, code: int, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details if details is not None else {}

    @property
    def is_transport(self) -> bool:
        return self.code == 0

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.code < 500

    @property
    def is_retryable(self) -> bool:
        """Transport failures and 5xx responses may succeed on a later attempt"""
        return self.is_transport or self.code >= 500

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class ValidationError(TikkerError):
    """A local precondition failed. Never retried automatically."""
