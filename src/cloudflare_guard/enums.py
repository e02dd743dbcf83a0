"""
Enumeration types for the Cloudflare guard.

These enums provide type-safe constants for log levels, fetch error codes
and request filter decisions.
"""

from enum import Enum


class LogLevel(Enum):
    """Logging severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"

    @property
    def severity(self) -> int:
        """Numeric rank used for threshold filtering."""
        return _SEVERITY[self]


_SEVERITY = {
    LogLevel.DEBUG: 10,
    LogLevel.INFO: 20,
    LogLevel.WARN: 30,
    LogLevel.ERROR: 40,
}


class ConfigErrorCode(Enum):
    """Error codes for configuration failures."""

    INVALID_CIDR = "invalid_cidr"
    INVALID_DURATION = "invalid_duration"
    INVALID_ENDPOINT = "invalid_endpoint"
    INVALID_FILE = "invalid_file"
    INVALID_VALUE = "invalid_value"


class FetchErrorCode(Enum):
    """Error codes for IP list fetch failures."""

    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    HTTP_STATUS = "http_status"
    PARSE_ERROR = "parse_error"
    API_ERROR = "api_error"
    INVALID_RESPONSE = "invalid_response"
    INVALID_CIDR = "invalid_cidr"
    CANCELLED = "cancelled"


class Decision(Enum):
    """Outcome of filtering a single request."""

    FORWARD = "forward"
    BAD_REQUEST = "bad_request"
    FORBIDDEN = "forbidden"
    SERVER_ERROR = "server_error"

    @property
    def status_code(self) -> int:
        """HTTP status code for a rejected request (200 when forwarded)."""
        return _STATUS_CODES[self]


_STATUS_CODES = {
    Decision.FORWARD: 200,
    Decision.BAD_REQUEST: 400,
    Decision.FORBIDDEN: 403,
    Decision.SERVER_ERROR: 500,
}
