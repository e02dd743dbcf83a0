"""
CIDR range parsing and membership testing.

A CIDRSet is an immutable, ordered collection of IPv4 and IPv6 networks.
Membership is existential: an address is contained if any range holds it.
Sets are never mutated; refreshing code builds a new set and swaps it in.
"""

import re
from dataclasses import dataclass
from ipaddress import (
    IPv4Address,
    IPv4Network,
    IPv6Address,
    IPv6Network,
    ip_address,
    ip_network,
)
from typing import Iterable, Iterator, Union

IPAddress = Union[IPv4Address, IPv6Address]
IPNetwork = Union[IPv4Network, IPv6Network]

_PREFIX_RE = re.compile(r"[0-9]+")
_ADDRESS_RE = re.compile(r"[0-9A-Fa-f.:]+")


def parse_cidr(text: str) -> IPNetwork:
    """
    Parse a CIDR string of either address family.

    The prefix length is mandatory and must be a decimal number; netmask
    forms, zones and surrounding whitespace are rejected. Host bits are
    masked off, so "10.1.2.3/8" yields 10.0.0.0/8.

    Raises:
        ValueError: If the string is not a valid CIDR
    """
    if not isinstance(text, str):
        raise ValueError(f"CIDR must be a string, got {type(text).__name__}")
    address, sep, prefix = text.partition("/")
    if not sep:
        raise ValueError(f"missing prefix length: {text!r}")
    if not _PREFIX_RE.fullmatch(prefix):
        raise ValueError(f"prefix length must be a decimal number: {text!r}")
    if not _ADDRESS_RE.fullmatch(address):
        raise ValueError(f"invalid address: {text!r}")
    return ip_network(text, strict=False)


def parse_ip(text: str) -> IPAddress:
    """
    Parse a single IP address, normalizing IPv4-mapped IPv6 to IPv4.

    Raises:
        ValueError: If the string is not a valid address
    """
    if not isinstance(text, str):
        raise ValueError(f"IP must be a string, got {type(text).__name__}")
    addr = ip_address(text.strip())
    return _normalize(addr)


def _normalize(addr: IPAddress) -> IPAddress:
    if isinstance(addr, IPv6Address) and addr.ipv4_mapped is not None:
        return addr.ipv4_mapped
    return addr


@dataclass(frozen=True)
class CIDRSet:
    """Immutable ordered set of trusted ranges."""

    networks: tuple[IPNetwork, ...] = ()

    @classmethod
    def from_strings(cls, values: Iterable[str]) -> "CIDRSet":
        """
        Build a set from CIDR strings, failing on the first malformed entry.

        Raises:
            ValueError: Naming the first entry that does not parse
        """
        networks = []
        for value in values:
            try:
                networks.append(parse_cidr(value))
            except ValueError as e:
                raise ValueError(f"invalid CIDR {value!r}: {e}") from e
        return cls(tuple(networks))

    def contains(self, ip: Union[str, IPAddress]) -> bool:
        """
        Check whether any range contains the address.

        IPv4 ranges never match IPv6 addresses and vice versa; an
        IPv4-mapped IPv6 address is treated as its IPv4 form.
        """
        addr = parse_ip(ip) if isinstance(ip, str) else _normalize(ip)
        for network in self.networks:
            if network.version == addr.version and addr in network:
                return True
        return False

    def __contains__(self, ip: object) -> bool:
        if not isinstance(ip, (str, IPv4Address, IPv6Address)):
            return False
        return self.contains(ip)

    def __iter__(self) -> Iterator[IPNetwork]:
        return iter(self.networks)

    def __len__(self) -> int:
        return len(self.networks)

    def to_strings(self) -> list[str]:
        """Render the ranges back to CIDR strings, in order."""
        return [str(network) for network in self.networks]
