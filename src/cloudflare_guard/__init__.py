"""
Cloudflare Guard - admit HTTP traffic only from trusted IP ranges.

This package provides IP range checkers backed by a static list or by the
periodically refreshed Cloudflare IP list, a request filter that rewrites
the forwarded-for header from the CF-Connecting-IP header, and an ASGI
middleware wrapping both.
"""

__version__ = "0.1.0"
__author__ = "Cloudflare Guard Team"

from cloudflare_guard.exceptions import (
    GuardError,
    ConfigError,
    FetchError,
)
from cloudflare_guard.enums import (
    LogLevel,
    ConfigErrorCode,
    FetchErrorCode,
    Decision,
)
from cloudflare_guard.cidr import (
    CIDRSet,
    parse_cidr,
    parse_ip,
)
from cloudflare_guard.config import (
    GuardConfig,
    LoggingConfig,
    parse_duration,
    load_config_from_file,
    load_config_from_env,
    save_config_to_file,
)
from cloudflare_guard.audit_logger import (
    AuditLogger,
    LogEntry,
)
from cloudflare_guard.cloudflare_client import (
    CloudflareClient,
    CloudflareIPsResponse,
    CloudflareAPIError,
    IPListFetcher,
)
from cloudflare_guard.ip_checker import (
    IPChecker,
    StaticIPChecker,
    CloudflareIPChecker,
    RefreshState,
    MIN_REFRESH_SECONDS,
    resolve_refresh_interval,
)
from cloudflare_guard.guard import (
    TrustGuard,
    FilterResult,
    create_guard,
)
from cloudflare_guard.middleware import (
    CloudflareGuardMiddleware,
)
from cloudflare_guard.cli import (
    main as cli_main,
    create_parser,
)

__all__ = [
    # Exceptions
    "GuardError",
    "ConfigError",
    "FetchError",
    # Enums
    "LogLevel",
    "ConfigErrorCode",
    "FetchErrorCode",
    "Decision",
    # CIDR
    "CIDRSet",
    "parse_cidr",
    "parse_ip",
    # Configuration
    "GuardConfig",
    "LoggingConfig",
    "parse_duration",
    "load_config_from_file",
    "load_config_from_env",
    "save_config_to_file",
    # Audit Logger
    "AuditLogger",
    "LogEntry",
    # Cloudflare Client
    "CloudflareClient",
    "CloudflareIPsResponse",
    "CloudflareAPIError",
    "IPListFetcher",
    # IP Checkers
    "IPChecker",
    "StaticIPChecker",
    "CloudflareIPChecker",
    "RefreshState",
    "MIN_REFRESH_SECONDS",
    "resolve_refresh_interval",
    # Guard
    "TrustGuard",
    "FilterResult",
    "create_guard",
    # Middleware
    "CloudflareGuardMiddleware",
    # CLI
    "cli_main",
    "create_parser",
]
