"""
Request filter core.

TrustGuard turns a client address and request headers into a Decision:
forward (optionally with the forwarded-for header rewritten), or reject
as bad request, forbidden, or server error. create_guard builds a guard
from GuardConfig, choosing the static or the refreshing checker.
"""

import time
from dataclasses import dataclass, field
from typing import Optional, Sequence

from .audit_logger import AuditLogger
from .cidr import parse_ip
from .cloudflare_client import CloudflareClient, IPListFetcher
from .config import (
    DEFAULT_CLIENT_IP_HEADER,
    DEFAULT_FORWARDED_FOR_HEADER,
    GuardConfig,
    parse_duration,
)
from .enums import Decision
from .exceptions import FetchError
from .ip_checker import (
    Clock,
    CloudflareIPChecker,
    IPChecker,
    StaticIPChecker,
    resolve_refresh_interval,
)

Header = tuple[str, str]


@dataclass
class FilterResult:
    """Outcome of filtering one request."""

    decision: Decision
    headers: list[Header] = field(default_factory=list)
    reason: Optional[str] = None
    error: Optional[FetchError] = None

    @property
    def allowed(self) -> bool:
        return self.decision is Decision.FORWARD


class TrustGuard:
    """
    Admits requests from trusted addresses only.

    Mapping:
    - client address missing or unparsable -> BAD_REQUEST
    - checker fails with FetchError -> SERVER_ERROR
    - address not trusted -> FORBIDDEN
    - rewrite enabled but client IP header missing -> BAD_REQUEST
    - otherwise FORWARD
    """

    COMPONENT = "guard"

    def __init__(
        self,
        checker: IPChecker,
        overwrite_forwarded_for: bool = True,
        client_ip_header: str = DEFAULT_CLIENT_IP_HEADER,
        forwarded_for_header: str = DEFAULT_FORWARDED_FOR_HEADER,
        logger: Optional[AuditLogger] = None,
    ) -> None:
        self._checker = checker
        self._overwrite_forwarded_for = overwrite_forwarded_for
        self._client_ip_header = client_ip_header
        self._forwarded_for_header = forwarded_for_header
        self._logger = logger

    @property
    def checker(self) -> IPChecker:
        return self._checker

    @property
    def overwrite_forwarded_for(self) -> bool:
        return self._overwrite_forwarded_for

    async def evaluate(
        self,
        client_ip: Optional[str],
        headers: Sequence[Header] = (),
    ) -> FilterResult:
        """
        Decide what to do with a request.

        Args:
            client_ip: Address of the directly connected peer
            headers: Request headers as (name, value) pairs

        Returns:
            FilterResult with the decision and the headers to forward
        """
        if not client_ip:
            return FilterResult(Decision.BAD_REQUEST, reason="missing client address")

        try:
            address = parse_ip(client_ip)
        except ValueError:
            return FilterResult(Decision.BAD_REQUEST, reason=f"invalid client address: {client_ip!r}")

        try:
            trusted = await self._checker.check_ip(address)
        except FetchError as e:
            if self._logger:
                self._logger.log_error(
                    self.COMPONENT,
                    "Trust check failed",
                    error=e,
                    additional_data={"client_ip": client_ip},
                )
            return FilterResult(Decision.SERVER_ERROR, reason=e.message, error=e)

        if not trusted:
            if self._logger:
                self._logger.debug(self.COMPONENT, "Rejected untrusted address", {"client_ip": client_ip})
            return FilterResult(Decision.FORBIDDEN, reason="untrusted address")

        forwarded = list(headers)
        if self._overwrite_forwarded_for:
            rewritten = self.rewrite_forwarded_for(forwarded)
            if rewritten is None:
                return FilterResult(
                    Decision.BAD_REQUEST,
                    reason=f"missing {self._client_ip_header} header",
                )
            forwarded = rewritten

        return FilterResult(Decision.FORWARD, headers=forwarded)

    async def aclose(self) -> None:
        """Release resources held by the checker."""
        close = getattr(self._checker, "aclose", None)
        if close is not None:
            await close()

    def rewrite_forwarded_for(self, headers: Sequence[Header]) -> Optional[list[Header]]:
        """
        Replace every forwarded-for header with the client IP header value.

        Returns:
            The new header list, or None if the client IP header is absent
        """
        source = self._client_ip_header.lower()
        target = self._forwarded_for_header.lower()

        client_ip = None
        for name, value in headers:
            if name.lower() == source and value.strip():
                client_ip = value.strip()
                break
        if client_ip is None:
            return None

        result = [(name, value) for name, value in headers if name.lower() != target]
        result.append((self._forwarded_for_header, client_ip))
        return result


async def create_guard(
    config: GuardConfig,
    fetcher: Optional[IPListFetcher] = None,
    clock: Optional[Clock] = None,
    logger: Optional[AuditLogger] = None,
) -> TrustGuard:
    """
    Build a guard from configuration.

    Non-empty trusted_cidrs selects the static checker and the refresh
    settings are ignored. Otherwise the refresh interval is parsed and
    clamped, and the initial IP list fetch is performed.

    Args:
        config: Guard options
        fetcher: IP list source (defaults to a CloudflareClient, which the
            guard owns and closes in aclose)
        clock: Time source for the refreshing checker
        logger: Optional audit logger

    Raises:
        ConfigError: If a CIDR or the refresh interval is malformed
        FetchError: If the initial IP list fetch fails
    """
    checker: IPChecker
    if config.uses_static_ranges:
        checker = StaticIPChecker.from_strings(config.trusted_cidrs)
    else:
        interval = resolve_refresh_interval(parse_duration(config.refresh_interval))
        owned_client = None
        if fetcher is None:
            fetcher = owned_client = CloudflareClient(
                endpoint=config.ips_endpoint,
                timeout=config.fetch_timeout,
            )
        try:
            checker = await CloudflareIPChecker.create(
                fetcher,
                interval,
                clock=clock or time.monotonic,
                logger=logger,
                owns_fetcher=owned_client is not None,
            )
        except FetchError:
            if owned_client is not None:
                await owned_client.close()
            raise

    return TrustGuard(
        checker,
        overwrite_forwarded_for=config.overwrite_forwarded_for,
        client_ip_header=config.client_ip_header,
        forwarded_for_header=config.forwarded_for_header,
        logger=logger,
    )
