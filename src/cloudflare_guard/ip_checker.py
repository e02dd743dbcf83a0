"""
IP checkers answering "is this address trusted?".

Two implementations share the IPChecker protocol:
- StaticIPChecker: fixed ranges from configuration, no I/O
- CloudflareIPChecker: ranges fetched from the Cloudflare IP list and
  refreshed once they are older than the refresh interval

The refreshing checker keeps its ranges and refresh timestamp in one
immutable RefreshState. A refresh builds the complete new CIDRSet first
and then replaces the state reference in a single assignment, so a
concurrent reader sees either the old or the new ranges in full.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Protocol, Union

from .audit_logger import AuditLogger
from .cidr import CIDRSet, IPAddress
from .cloudflare_client import IPListFetcher
from .enums import ConfigErrorCode, FetchErrorCode
from .exceptions import ConfigError, FetchError

# Minimum refresh interval, and the retry delay after a failed refresh
MIN_REFRESH_SECONDS = 5 * 60.0

Clock = Callable[[], float]


def resolve_refresh_interval(seconds: float) -> float:
    """
    Apply the refresh interval policy.

    Zero or negative disables refreshing after the initial fetch;
    positive values below the minimum are raised to the minimum.
    """
    if seconds <= 0:
        return 0.0
    if seconds < MIN_REFRESH_SECONDS:
        return MIN_REFRESH_SECONDS
    return float(seconds)


class IPChecker(Protocol):
    """Decides whether a client address is trusted."""

    async def check_ip(self, ip: Union[str, IPAddress]) -> bool:
        ...


class StaticIPChecker:
    """Checker over a fixed set of ranges. Never fails at check time."""

    def __init__(self, cidrs: CIDRSet) -> None:
        self._cidrs = cidrs

    @classmethod
    def from_strings(cls, values: Iterable[str]) -> "StaticIPChecker":
        """
        Build a checker from CIDR strings.

        Raises:
            ConfigError: If any entry is not a valid CIDR
        """
        try:
            return cls(CIDRSet.from_strings(values))
        except ValueError as e:
            raise ConfigError(
                code=ConfigErrorCode.INVALID_CIDR.value,
                message=f"invalid CIDR: {e}",
            ) from e

    @property
    def cidrs(self) -> CIDRSet:
        return self._cidrs

    async def check_ip(self, ip: Union[str, IPAddress]) -> bool:
        return self._cidrs.contains(ip)


@dataclass(frozen=True)
class RefreshState:
    """
    Snapshot of the refreshing checker.

    last_refresh is the time of the last refresh attempt as seen by the
    staleness check. After a failed attempt it is set so that the next
    attempt happens MIN_REFRESH_SECONDS later; error then holds that
    attempt's failure.
    """

    cidrs: CIDRSet
    last_refresh: float
    error: Optional[FetchError] = None


class CloudflareIPChecker:
    """
    Checker over ranges fetched from the Cloudflare IP list.

    Once the ranges are older than the refresh interval, the next
    check_ip call refreshes them before answering. If that refresh fails
    the call fails with FetchError; a failed trust check is never treated
    as trusted. Retries after a failure are spaced MIN_REFRESH_SECONDS
    apart.

    Use CloudflareIPChecker.create() to get an instance with the
    mandatory initial fetch done.
    """

    COMPONENT = "ip_checker"

    def __init__(
        self,
        fetcher: IPListFetcher,
        refresh_interval: float,
        clock: Clock = time.monotonic,
        logger: Optional[AuditLogger] = None,
        owns_fetcher: bool = False,
    ) -> None:
        """
        Initialize the checker without fetching.

        Args:
            fetcher: Source of fresh ranges
            refresh_interval: Seconds between refreshes, 0 disables refreshing
            clock: Returns the current time in seconds
            logger: Optional audit logger
            owns_fetcher: Close the fetcher in aclose()
        """
        self._fetcher = fetcher
        self._owns_fetcher = owns_fetcher
        self._refresh_interval = refresh_interval
        self._clock = clock
        self._logger = logger
        self._state = RefreshState(cidrs=CIDRSet(), last_refresh=float("-inf"))
        self._refresh_lock = asyncio.Lock()

    @classmethod
    async def create(
        cls,
        fetcher: IPListFetcher,
        refresh_interval: float,
        clock: Clock = time.monotonic,
        logger: Optional[AuditLogger] = None,
        timeout: Optional[float] = None,
        owns_fetcher: bool = False,
    ) -> "CloudflareIPChecker":
        """
        Create a checker and perform the initial fetch.

        Raises:
            FetchError: If the initial fetch fails
        """
        checker = cls(
            fetcher,
            refresh_interval,
            clock=clock,
            logger=logger,
            owns_fetcher=owns_fetcher,
        )
        await checker.refresh(timeout=timeout)
        return checker

    @property
    def refresh_interval(self) -> float:
        return self._refresh_interval

    @property
    def cidrs(self) -> CIDRSet:
        return self._state.cidrs

    @property
    def last_refresh(self) -> float:
        return self._state.last_refresh

    @property
    def last_error(self) -> Optional[FetchError]:
        return self._state.error

    def is_stale(self, state: Optional[RefreshState] = None) -> bool:
        """Check whether the given (or current) state needs a refresh."""
        if self._refresh_interval <= 0:
            return False
        state = state or self._state
        return self._clock() - state.last_refresh > self._refresh_interval

    async def check_ip(
        self,
        ip: Union[str, IPAddress],
        timeout: Optional[float] = None,
    ) -> bool:
        """
        Check an address, refreshing first if the ranges are stale.

        Args:
            ip: The client address
            timeout: Optional bound in seconds on a triggered refresh

        Raises:
            FetchError: If a triggered refresh fails
        """
        state = self._state
        if self.is_stale(state):
            state = await self._refresh_if_unchanged(state, timeout)
        return state.cidrs.contains(ip)

    async def refresh(self, timeout: Optional[float] = None) -> CIDRSet:
        """
        Fetch the ranges now, regardless of staleness.

        Raises:
            FetchError: If the fetch fails; held ranges are kept
        """
        async with self._refresh_lock:
            return (await self._do_refresh(timeout)).cidrs

    async def _refresh_if_unchanged(
        self,
        observed: RefreshState,
        timeout: Optional[float],
    ) -> RefreshState:
        # At most one refresh runs at a time; a caller that waited on
        # another caller's refresh takes that outcome.
        async with self._refresh_lock:
            current = self._state
            if current is not observed:
                if current.error is not None:
                    raise FetchError(
                        code=current.error.code,
                        message=current.error.message,
                        details=current.error.details,
                    )
                if not self.is_stale(current):
                    return current
            return await self._do_refresh(timeout)

    async def _do_refresh(self, timeout: Optional[float]) -> RefreshState:
        previous = self._state
        try:
            if timeout is None:
                cidrs = await self._fetcher.fetch_ips()
            else:
                cidrs = await asyncio.wait_for(self._fetcher.fetch_ips(), timeout)
        except FetchError as e:
            self._record_failure(previous, e)
            raise
        except asyncio.TimeoutError as e:
            error = FetchError(
                code=FetchErrorCode.TIMEOUT.value,
                message=f"IP list refresh timed out after {timeout}s",
            )
            self._record_failure(previous, error)
            raise error from e
        except asyncio.CancelledError:
            self._record_failure(previous, FetchError(
                code=FetchErrorCode.CANCELLED.value,
                message="IP list refresh cancelled",
            ))
            raise
        except Exception as e:
            error = FetchError(
                code=FetchErrorCode.NETWORK_ERROR.value,
                message=f"Unexpected error refreshing IP list: {e}",
            )
            self._record_failure(previous, error)
            raise error from e

        state = RefreshState(cidrs=cidrs, last_refresh=self._clock())
        self._state = state

        if self._logger:
            self._logger.info(
                self.COMPONENT,
                "Refreshed trusted IP ranges",
                {"ranges": len(cidrs), "refresh_interval": self._refresh_interval},
            )
        return state

    async def aclose(self) -> None:
        """Close the fetcher if this checker owns it."""
        if not self._owns_fetcher:
            return
        close = getattr(self._fetcher, "close", None)
        if close is not None:
            await close()

    def _record_failure(self, previous: RefreshState, error: FetchError) -> None:
        # Keep the previous ranges; schedule the next attempt MIN_REFRESH_SECONDS out
        retry_base = self._clock() + (MIN_REFRESH_SECONDS - self._refresh_interval)
        self._state = RefreshState(
            cidrs=previous.cidrs,
            last_refresh=retry_base,
            error=error,
        )

        if self._logger:
            self._logger.log_error(
                self.COMPONENT,
                "Failed to refresh Cloudflare IPs",
                error=error,
                additional_data={"retry_in_seconds": MIN_REFRESH_SECONDS},
            )
