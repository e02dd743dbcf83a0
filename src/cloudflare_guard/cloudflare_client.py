"""
Cloudflare IP list client.

This module provides an async client for the Cloudflare IP list API
with TLS enforcement, and parsing of the API response envelope into a
CIDRSet. Every failure surfaces as a FetchError; a partially parsed
range list is never returned.

Endpoint: GET https://api.cloudflare.com/client/v4/ips
Response: {"success": bool, "errors": [{"code": int, "message": str}],
           "result": {"ipv4_cidrs": [...], "ipv6_cidrs": [...]} | null,
           "messages": [...]}
"""

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable
from urllib.parse import urlparse

import httpx

from .cidr import CIDRSet
from .config import DEFAULT_IPS_ENDPOINT
from .enums import ConfigErrorCode, FetchErrorCode
from .exceptions import ConfigError, FetchError


@runtime_checkable
class IPListFetcher(Protocol):
    """Anything that can produce a fresh set of trusted ranges."""

    async def fetch_ips(self) -> CIDRSet:
        ...


@dataclass
class CloudflareAPIError:
    """A single entry of the response's error list."""

    code: int
    message: str

    def __str__(self) -> str:
        return f"Error {self.code}: {self.message}"


@dataclass
class CloudflareIPsResponse:
    """The parsed IP list response envelope."""

    success: bool
    errors: list[CloudflareAPIError] = field(default_factory=list)
    ipv4_cidrs: Optional[list[str]] = None
    ipv6_cidrs: Optional[list[str]] = None
    has_result: bool = False

    @classmethod
    def from_json(cls, data: Any) -> "CloudflareIPsResponse":
        """
        Parse the decoded JSON body.

        Only the defined fields are read; messages, etag and any other
        keys are ignored.

        Raises:
            FetchError: If the body does not have the envelope shape
        """
        if not isinstance(data, dict):
            raise FetchError(
                code=FetchErrorCode.PARSE_ERROR.value,
                message="response body is not a JSON object",
            )

        errors = []
        raw_errors = data.get("errors") or []
        if isinstance(raw_errors, list):
            for raw in raw_errors:
                if isinstance(raw, dict):
                    errors.append(CloudflareAPIError(
                        code=raw.get("code", 0),
                        message=str(raw.get("message", "")),
                    ))

        result = data.get("result")
        if not isinstance(result, dict):
            return cls(success=data.get("success") is True, errors=errors)

        ipv4 = result.get("ipv4_cidrs") or []
        ipv6 = result.get("ipv6_cidrs") or []
        if not isinstance(ipv4, list) or not isinstance(ipv6, list):
            raise FetchError(
                code=FetchErrorCode.PARSE_ERROR.value,
                message="ipv4_cidrs and ipv6_cidrs must be lists",
            )

        return cls(
            success=data.get("success") is True,
            errors=errors,
            ipv4_cidrs=ipv4,
            ipv6_cidrs=ipv6,
            has_result=True,
        )

    def to_cidr_set(self) -> CIDRSet:
        """
        Convert the response into ranges.

        IPv4 entries are parsed first, then IPv6 entries; the first
        malformed entry aborts the whole conversion.

        Raises:
            FetchError: If the response reports failure or holds a bad CIDR
        """
        if not self.success or not self.has_result:
            if self.errors:
                first = self.errors[0]
                raise FetchError(
                    code=FetchErrorCode.API_ERROR.value,
                    message=str(first),
                    details={"api_code": first.code, "api_message": first.message},
                )
            raise FetchError(
                code=FetchErrorCode.INVALID_RESPONSE.value,
                message="invalid response",
            )

        try:
            return CIDRSet.from_strings(list(self.ipv4_cidrs or []) + list(self.ipv6_cidrs or []))
        except ValueError as e:
            raise FetchError(
                code=FetchErrorCode.INVALID_CIDR.value,
                message=str(e),
            ) from e


class CloudflareClient:
    """
    Async client for the Cloudflare IP list API.

    Usage:
        async with CloudflareClient() as client:
            cidrs = await client.fetch_ips()
    """

    def __init__(
        self,
        endpoint: str = DEFAULT_IPS_ENDPOINT,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            endpoint: IP list URL; must use HTTPS
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)

        Raises:
            ConfigError: If the endpoint does not use HTTPS
        """
        self._validate_endpoint_url(endpoint)
        self._endpoint = endpoint
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def endpoint(self) -> str:
        return self._endpoint

    async def __aenter__(self) -> "CloudflareClient":
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @staticmethod
    def _validate_endpoint_url(endpoint: str) -> None:
        parsed = urlparse(endpoint)
        if parsed.scheme.lower() != "https" or not parsed.netloc:
            raise ConfigError(
                code=ConfigErrorCode.INVALID_ENDPOINT.value,
                message=f"IP list endpoint must use HTTPS: {endpoint}",
                details={"endpoint": endpoint, "scheme": parsed.scheme},
            )

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                verify=True,  # TLS certificate verification enforced
                timeout=httpx.Timeout(self._timeout),
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def fetch_ips(self) -> CIDRSet:
        """
        Fetch and parse the current IP list.

        Returns:
            The complete set of ranges from the response

        Raises:
            FetchError: On transport failure, non-2xx status, malformed
                body, an error payload, or a malformed CIDR
        """
        client = self._ensure_client()

        try:
            response = await client.get(
                self._endpoint,
                headers={"Accept": "application/json"},
            )
        except httpx.TimeoutException as e:
            raise FetchError(
                code=FetchErrorCode.TIMEOUT.value,
                message=f"IP list request timed out after {self._timeout}s",
                details={"endpoint": self._endpoint},
            ) from e
        except httpx.HTTPError as e:
            raise FetchError(
                code=FetchErrorCode.NETWORK_ERROR.value,
                message=f"Connection error: {e}",
                details={"endpoint": self._endpoint},
            ) from e

        if not 200 <= response.status_code <= 299:
            raise FetchError(
                code=FetchErrorCode.HTTP_STATUS.value,
                message=f"invalid response: {response.status_code} {response.reason_phrase}".rstrip(),
                details={"endpoint": self._endpoint, "status_code": response.status_code},
            )

        try:
            data = response.json()
        except ValueError as e:
            raise FetchError(
                code=FetchErrorCode.PARSE_ERROR.value,
                message=f"Failed to parse IP list response: {e}",
                details={"endpoint": self._endpoint},
            ) from e

        return CloudflareIPsResponse.from_json(data).to_cidr_set()

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
