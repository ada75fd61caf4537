"""Tables of known hosts, keyed by VPN address and by local session index."""

from __future__ import annotations

import base64
import ipaddress
import json
import logging
import threading
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from .netutil import UdpAddr, int2ip, network_contains, private_ip

logger = logging.getLogger(__name__)

PROMOTE_EVERY = 1000
MAX_REMOTES = 10
MAX_CACHED_PACKETS = 100
ROAMING_SUPPRESS_SECONDS = 2

NetworkLike = Union[str, ipaddress.IPv4Network]
PacketCallback = Callable[..., Any]


class HostNotFoundError(LookupError):
    """Raised when a host or index is not present in a host map."""


def _as_network(network: NetworkLike) -> ipaddress.IPv4Network:
    if isinstance(network, ipaddress.IPv4Network):
        return network
    return ipaddress.IPv4Network(network, strict=False)


def _addr_text(addr: Optional[UdpAddr]) -> Optional[str]:
    return None if addr is None else str(addr)


@dataclass
class HostInfoDest:
    """One candidate underlay address for a host."""

    addr: UdpAddr
    active: bool = False
    probe_counter: int = 0

    def _as_dict(self) -> dict[str, Any]:
        return {
            "active": self.active,
            "address": str(self.addr),
            "probe_count": self.probe_counter,
        }

    def to_json(self) -> str:
        return json.dumps(self._as_dict(), sort_keys=True, separators=(",", ":"))


@dataclass
class CachedPacket:
    """A packet held back until the tunnel to its host is ready."""

    message_type: int
    subtype: int
    callback: PacketCallback
    packet: bytes


@dataclass
class HostInfo:
    """Everything known about one peer: its addresses and tunnel state."""

    host_id: int = 0
    remote: Optional[UdpAddr] = None
    remotes: list[HostInfoDest] = field(default_factory=list)
    promote_counter: int = 0
    connection_state: Any = None
    handshake_start: Optional[float] = None
    handshake_ready: bool = False
    handshake_counter: int = 0
    handshake_complete: bool = False
    handshake_packet: dict[int, bytes] = field(default_factory=dict)
    packet_store: list[CachedPacket] = field(default_factory=list)
    remote_index_id: int = 0
    local_index_id: int = 0
    recv_error: int = 0
    last_roam: Optional[float] = None
    last_roam_remote: Optional[UdpAddr] = None

    def add_remote(self, addr: UdpAddr) -> UdpAddr:
        """Add addr as a candidate remote unless known; return the stored address."""
        for dest in self.remotes:
            if dest.addr == addr:
                return dest.addr
        if len(self.remotes) > MAX_REMOTES:
            self.remotes = self.remotes[-MAX_REMOTES:]
        self.remotes.append(HostInfoDest(addr))
        return addr

    def set_remote(self, addr: UdpAddr) -> None:
        self.remote = self.add_remote(addr)

    def clear_remotes(self) -> None:
        self.remote = None
        self.remotes = []

    def best_remote(
        self, preferred_ranges: Sequence[NetworkLike]
    ) -> tuple[Optional[UdpAddr], bool]:
        """Pick the best remote; the flag says whether it lies in a preferred range."""
        best: Optional[UdpAddr] = None
        for dest in self.remotes:
            ip = dest.addr.ip
            if any(network_contains(_as_network(n), ip) for n in preferred_ranges):
                return dest.addr, True
            if best is None or not private_ip(ip):
                best = dest.addr
        return best, False

    def force_promote_best(self, preferred_ranges: Sequence[NetworkLike]) -> None:
        best, _ = self.best_remote(preferred_ranges)
        if best is not None:
            self.remote = best

    def rotate_remote(self) -> None:
        """Move the current remote to the next one in the candidate list."""
        if not self.remotes:
            return
        if self.remote is None:
            self.remote = self.remotes[0].addr
            return
        for current, following in zip(self.remotes, self.remotes[1:]):
            if current.addr == self.remote:
                self.remote = following.addr
                return
        self.remote = self.remotes[0].addr

    def cache_packet(
        self, message_type: int, subtype: int, packet: bytes, callback: PacketCallback
    ) -> bool:
        """Hold a packet for later delivery; False if the store is full."""
        if len(self.packet_store) < MAX_CACHED_PACKETS:
            self.packet_store.append(CachedPacket(message_type, subtype, callback, bytes(packet)))
            logger.debug(
                "Packet store",
                extra={"vpnIp": str(int2ip(self.host_id)), "length": len(self.packet_store),
                       "stored": True},
            )
            return True
        logger.debug(
            "Packet store",
            extra={"vpnIp": str(int2ip(self.host_id)), "length": len(self.packet_store),
                   "stored": False},
        )
        return False

    def remote_addrs(self) -> list[UdpAddr]:
        return [dest.addr for dest in self.remotes]

    def recv_error_exceeded(self) -> bool:
        """Count a receive error; True once three have already been counted."""
        if self.recv_error < 3:
            self.recv_error += 1
            return False
        return True

    def to_json(self) -> str:
        data = {
            "remote": _addr_text(self.remote),
            "remotes": [dest._as_dict() for dest in self.remotes],
            "promote_counter": self.promote_counter,
            "connection_state": self.connection_state,
            "handshake_start": self.handshake_start,
            "handshake_ready": self.handshake_ready,
            "handshake_counter": self.handshake_counter,
            "handshake_complete": self.handshake_complete,
            "handshake_packet": {
                str(k): base64.b64encode(v).decode("ascii")
                for k, v in self.handshake_packet.items()
            },
            "packet_store": [
                {"message_type": p.message_type, "subtype": p.subtype,
                 "packet": base64.b64encode(p.packet).decode("ascii")}
                for p in self.packet_store
            ],
            "remote_index": self.remote_index_id,
            "local_index": self.local_index_id,
            "host_id": str(int2ip(self.host_id)),
            "receive_errors": self.recv_error,
            "last_roam": self.last_roam,
            "last_roam_remote": _addr_text(self.last_roam_remote),
        }
        return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


class HostMap:
    """Hosts keyed by VPN address and by local index, safe to share between threads."""

    def __init__(
        self,
        name: str,
        vpn_cidr: NetworkLike,
        preferred_ranges: Optional[Iterable[NetworkLike]] = None,
    ) -> None:
        self.name = name
        self.vpn_cidr = _as_network(vpn_cidr)
        self.preferred_ranges = [_as_network(n) for n in preferred_ranges or ()]
        self.indexes: dict[int, HostInfo] = {}
        self.hosts: dict[int, HostInfo] = {}
        self.default_route = 0
        self._lock = threading.RLock()

    def index_by_vpn_ip(self, vpn_ip: int) -> int:
        with self._lock:
            info = self.hosts.get(vpn_ip)
            if info is None:
                raise HostNotFoundError("vpn IP not found")
            return info.local_index_id

    def vpn_ip_by_index(self, index: int) -> int:
        with self._lock:
            info = self.indexes.get(index)
            if info is None:
                raise HostNotFoundError("vpn IP not found")
            return info.host_id

    def add_vpn_ip(self, vpn_ip: int) -> HostInfo:
        """Return the host for vpn_ip, creating an empty one if needed."""
        with self._lock:
            info = self.hosts.get(vpn_ip)
            if info is None:
                info = HostInfo(host_id=vpn_ip)
                self.hosts[vpn_ip] = info
            return info

    def delete_vpn_ip(self, vpn_ip: int) -> None:
        with self._lock:
            self.hosts.pop(vpn_ip, None)
            size = len(self.hosts)
        logger.debug(
            "Hostmap vpnIp deleted",
            extra={"hostMap": {"mapName": self.name, "vpnIp": str(int2ip(vpn_ip)),
                               "mapTotalSize": size}},
        )

    def add_index(self, index: int, connection_state: Any) -> HostInfo:
        """Create a host under a new local index; an existing index is never replaced."""
        with self._lock:
            if index in self.indexes:
                raise ValueError(f"refusing to overwrite existing index: {index}")
            info = HostInfo(connection_state=connection_state, local_index_id=index)
            self.indexes[index] = info
            size = len(self.indexes)
        logger.debug(
            "Hostmap index added",
            extra={"hostMap": {"mapName": self.name, "indexNumber": index,
                               "mapTotalSize": size}},
        )
        return info

    def add_index_host_info(self, index: int, hostinfo: HostInfo) -> None:
        with self._lock:
            hostinfo.local_index_id = index
            self.indexes[index] = hostinfo

    def add_vpn_ip_host_info(self, vpn_ip: int, hostinfo: HostInfo) -> None:
        with self._lock:
            hostinfo.host_id = vpn_ip
            self.hosts[vpn_ip] = hostinfo

    def delete_index(self, index: int) -> None:
        with self._lock:
            self.indexes.pop(index, None)
            size = len(self.indexes)
        logger.debug(
            "Hostmap index deleted",
            extra={"hostMap": {"mapName": self.name, "indexNumber": index,
                               "mapTotalSize": size}},
        )

    def query_index(self, index: int) -> HostInfo:
        with self._lock:
            info = self.indexes.get(index)
            if info is None:
                raise HostNotFoundError("unable to find index")
            return info

    def query_reverse_index(self, index: int) -> HostInfo:
        """Find the host whose remote index is index, searching indexes then hosts."""
        with self._lock:
            for info in (*self.indexes.values(), *self.hosts.values()):
                if info.connection_state is not None and info.remote_index_id == index:
                    return info
        raise HostNotFoundError(
            f"unable to find reverse index or connectionstate nil in {self.name} hostmap"
        )

    def add_remote(self, vpn_ip: int, remote: UdpAddr) -> HostInfo:
        """Record remote as an address of vpn_ip and promote the best known remote."""
        with self._lock:
            info = self.hosts.get(vpn_ip)
            if info is not None:
                info.add_remote(remote)
            else:
                info = HostInfo(host_id=vpn_ip, remotes=[HostInfoDest(remote)], remote=remote)
                self.hosts[vpn_ip] = info
                logger.debug(
                    "Hostmap remote ip added",
                    extra={"hostMap": {"mapName": self.name, "vpnIp": str(int2ip(vpn_ip)),
                                       "udpAddr": str(remote),
                                       "mapTotalSize": len(self.hosts)}},
                )
            info.force_promote_best(self.preferred_ranges)
            return info

    def query_vpn_ip(self, vpn_ip: int) -> HostInfo:
        """Look up a host; addresses outside the VPN range go to the default route if set."""
        with self._lock:
            if self.default_route != 0 and not network_contains(self.vpn_cidr, vpn_ip):
                route = self.hosts.get(self.default_route)
                if route is not None:
                    return route
            info = self.hosts.get(vpn_ip)
            if info is None:
                raise HostNotFoundError("unable to find host")
            return info

    def check_handshake_complete_ip(self, vpn_ip: int) -> bool:
        with self._lock:
            info = self.hosts.get(vpn_ip)
            return info is not None and info.handshake_complete

    def check_handshake_complete_index(self, index: int) -> bool:
        with self._lock:
            info = self.indexes.get(index)
            return info is not None and info.handshake_complete

    def clear_remotes(self, vpn_ip: int) -> None:
        with self._lock:
            info = self.hosts.get(vpn_ip)
            if info is not None:
                info.clear_remotes()

    def set_default_route(self, ip: int) -> None:
        self.default_route = ip

    def punch_list(self) -> list[UdpAddr]:
        """Every known remote address of every host."""
        with self._lock:
            return [dest.addr for info in self.hosts.values() for dest in info.remotes]