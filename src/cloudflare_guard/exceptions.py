"""
Exception classes for the Cloudflare guard.

All exceptions inherit from GuardError and provide structured
error information with codes, messages, and optional details.
"""

from typing import Optional


class GuardError(Exception):
    """Base exception for all guard errors."""

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[dict] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"

    def to_dict(self) -> dict:
        """Convert exception to dictionary for serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConfigError(GuardError):
    """Raised when static configuration is malformed (bad CIDR, bad duration)."""

    pass


class FetchError(GuardError):
    """Raised when the IP list could not be fetched or was invalid."""

    pass
