"""IPv4 helpers and the UDP address value used across the package."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from typing import Union

IpLike = Union[int, str, bytes, ipaddress.IPv4Address]
NetworkLike = Union[str, ipaddress.IPv4Network]

_PRIVATE_NETWORKS = (
    ipaddress.IPv4Network("10.0.0.0/8"),
    ipaddress.IPv4Network("172.16.0.0/12"),
    ipaddress.IPv4Network("192.168.0.0/16"),
)


def _to_address(ip: IpLike) -> ipaddress.IPv4Address:
    if isinstance(ip, ipaddress.IPv4Address):
        return ip
    if isinstance(ip, ipaddress.IPv6Address):
        mapped = ip.ipv4_mapped
        if mapped is None:
            raise ValueError(f"not an IPv4 address: {ip}")
        return mapped
    if isinstance(ip, int):
        if not 0 <= ip <= 0xFFFFFFFF:
            raise ValueError(f"IPv4 integer out of range: {ip}")
        return ipaddress.IPv4Address(ip)
    if isinstance(ip, bytes):
        if len(ip) == 4:
            return ipaddress.IPv4Address(ip)
        if len(ip) == 16:
            return _to_address(ipaddress.IPv6Address(ip))
        raise ValueError(f"invalid IP byte length: {len(ip)}")
    parsed = ipaddress.ip_address(ip)
    return _to_address(parsed)


def ip2int(ip: IpLike) -> int:
    """Convert an IPv4 address to its big-endian integer value."""
    return int(_to_address(ip))


def int2ip(value: int) -> ipaddress.IPv4Address:
    """Convert a 32-bit integer to an IPv4 address."""
    return _to_address(value)


def network_contains(network: NetworkLike, ip: IpLike) -> bool:
    """True if ip lies within network."""
    net = network if isinstance(network, ipaddress.IPv4Network) else ipaddress.IPv4Network(
        network, strict=False
    )
    return _to_address(ip) in net


def private_ip(ip: IpLike) -> bool:
    """True if ip is in one of the RFC 1918 private ranges."""
    address = _to_address(ip)
    return any(address in net for net in _PRIVATE_NETWORKS)


@dataclass(frozen=True)
class UdpAddr:
    """An IPv4 address and UDP port."""

    ip: int
    port: int

    def __post_init__(self) -> None:
        if not 0 <= self.ip <= 0xFFFFFFFF:
            raise ValueError(f"IPv4 integer out of range: {self.ip}")
        if not 0 <= self.port <= 0xFFFF:
            raise ValueError(f"port out of range: {self.port}")

    @classmethod
    def from_string(cls, text: str) -> "UdpAddr":
        """Parse "a.b.c.d:port"."""
        host, sep, port = text.rpartition(":")
        if not sep or not host:
            raise ValueError(f"missing port in address: {text!r}")
        try:
            port_number = int(port)
        except ValueError:
            raise ValueError(f"invalid port in address: {text!r}") from None
        return cls(ip2int(host), port_number)

    @property
    def address(self) -> ipaddress.IPv4Address:
        return int2ip(self.ip)

    def __str__(self) -> str:
        return f"{self.address}:{self.port}"