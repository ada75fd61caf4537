"""Stateful packet firewall: rule tables, matching and connection tracking."""

from __future__ import annotations

import hashlib
import ipaddress
import json
import logging
import re
import struct
import threading
import time
from collections import deque
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Hashable, Optional, Union

from .netutil import int2ip, network_contains

logger = logging.getLogger(__name__)

PROTO_ANY = 0
PROTO_ICMP = 1
PROTO_TCP = 6
PROTO_UDP = 17

PORT_ANY = 0
PORT_FRAGMENT = -1

TCP_ACK = 0x10
TCP_FIN = 0x01

_RTT_SAMPLE_SIZE = 1028

DurationLike = Union[timedelta, int, float]
NetworkArg = Union[None, str, ipaddress.IPv4Network]


class FirewallError(ValueError):
    """Raised for invalid firewall rules or rule configuration."""


def _to_timedelta(value: DurationLike) -> timedelta:
    if isinstance(value, timedelta):
        return value
    return timedelta(seconds=value)


def _as_network(ip: NetworkArg) -> Optional[ipaddress.IPv4Network]:
    if ip is None:
        return None
    if isinstance(ip, ipaddress.IPv4Network):
        return ip
    return ipaddress.IPv4Network(ip, strict=False)


class _TimerWheel:
    """Buckets items by expiry; purged items come back one at a time."""

    def __init__(self, minimum: timedelta, maximum: timedelta) -> None:
        if minimum <= timedelta(0):
            raise ValueError("timer wheel tick duration must be positive")
        self.tick_duration = minimum
        self.wheel_duration = maximum
        self.wheel_len = int(maximum / minimum) + 1
        self._tick = minimum.total_seconds()
        self._max = maximum.total_seconds()
        self._buckets: list[list[Hashable]] = [[] for _ in range(self.wheel_len)]
        self._current = 0
        self._last_tick = time.monotonic()
        self._expired: deque[Hashable] = deque()

    def add(self, item: Hashable, timeout: float) -> None:
        timeout = min(max(timeout, self._tick), self._max)
        ticks = max(int(timeout // self._tick), 1)
        self._buckets[(self._current + ticks) % self.wheel_len].append(item)

    def advance(self, now: float) -> None:
        ticks = int((now - self._last_tick) // self._tick)
        if ticks < 1:
            return
        for _ in range(min(ticks, self.wheel_len)):
            self._current = (self._current + 1) % self.wheel_len
            bucket = self._buckets[self._current]
            self._expired.extend(bucket)
            bucket.clear()
        self._last_tick += ticks * self._tick

    def purge(self, now: Optional[float] = None) -> Optional[Hashable]:
        self.advance(time.monotonic() if now is None else now)
        return self._expired.popleft() if self._expired else None


@dataclass(frozen=True)
class FirewallPacket:
    """The tuple used for rule matching and connection tracking."""

    local_ip: int = 0
    remote_ip: int = 0
    local_port: int = 0
    remote_port: int = 0
    protocol: int = 0
    fragment: bool = False

    def to_json(self) -> str:
        proto = {PROTO_TCP: "tcp", PROTO_ICMP: "icmp", PROTO_UDP: "udp"}.get(
            self.protocol, f"unknown {self.protocol}"
        )
        return json.dumps(
            {
                "LocalIP": str(int2ip(self.local_ip)),
                "RemoteIP": str(int2ip(self.remote_ip)),
                "LocalPort": self.local_port,
                "RemotePort": self.remote_port,
                "Protocol": proto,
                "Fragment": self.fragment,
            },
            sort_keys=True,
            separators=(",", ":"),
        )


@dataclass
class Conn:
    """A conntrack entry; seq and sent are used for TCP round trip tracking."""

    expires: float = 0.0
    seq: int = 0
    sent: float = 0.0


@dataclass
class FirewallRule:
    """Who may use one port; `any` makes hosts, groups and cidr irrelevant."""

    any: bool = False
    hosts: set[str] = field(default_factory=set)
    groups: list[list[str]] = field(default_factory=list)
    cidr: list[ipaddress.IPv4Network] = field(default_factory=list)
    ca_names: set[str] = field(default_factory=set)
    ca_shas: set[str] = field(default_factory=set)

    def add_rule(
        self,
        groups: Optional[Sequence[str]],
        host: str,
        ip: NetworkArg,
        ca_name: str,
        ca_sha: str,
    ) -> None:
        if ca_name:
            self.ca_names.add(ca_name)
        if ca_sha:
            self.ca_shas.add(ca_sha)
        if self.any:
            return
        network = _as_network(ip)
        if self.is_any(groups, host, network):
            self.any = True
            self.groups = []
            self.hosts = set()
            self.cidr = []
            return
        if groups:
            self.groups.append(list(groups))
        if host:
            self.hosts.add(host)
        if network is not None:
            self.cidr.append(network)

    def is_any(self, groups: Optional[Sequence[str]], host: str, ip: NetworkArg) -> bool:
        if groups and "any" in groups:
            return True
        if host == "any":
            return True
        network = _as_network(ip)
        return network is not None and network_contains(network, 0)

    def match(self, packet: FirewallPacket, cert: Any, ca_pool: Any) -> bool:
        details = cert.details
        if self.ca_shas and details.issuer not in self.ca_shas:
            return False
        if self.ca_names:
            try:
                ca = ca_pool.get_ca_for_cert(cert)
            except Exception:
                return False
            if ca.details.name not in self.ca_names:
                return False
        if self.any:
            return True
        inverted = details.inverted_groups
        if any(sg and all(g in inverted for g in sg) for sg in self.groups):
            return True
        if details.name in self.hosts:
            return True
        return any(network_contains(n, packet.remote_ip) for n in self.cidr)


class FirewallPort(dict):
    """Rules keyed by port; 0 means any port and -1 means fragments."""

    def add_rule(
        self,
        start_port: int,
        end_port: int,
        groups: Optional[Sequence[str]],
        host: str,
        ip: NetworkArg,
        ca_name: str,
        ca_sha: str,
    ) -> None:
        if start_port > end_port:
            raise FirewallError("start port was lower than end port")
        for port in range(start_port, end_port + 1):
            self.setdefault(port, FirewallRule()).add_rule(groups, host, ip, ca_name, ca_sha)

    def match(self, packet: FirewallPacket, incoming: bool, cert: Any, ca_pool: Any) -> bool:
        if packet.fragment:
            port = PORT_FRAGMENT
        elif incoming:
            port = packet.local_port
        else:
            port = packet.remote_port
        rule = self.get(port)
        if rule is not None and rule.match(packet, cert, ca_pool):
            return True
        any_rule = self.get(PORT_ANY)
        return any_rule is not None and any_rule.match(packet, cert, ca_pool)


@dataclass
class FirewallTable:
    tcp: FirewallPort = field(default_factory=FirewallPort)
    udp: FirewallPort = field(default_factory=FirewallPort)
    icmp: FirewallPort = field(default_factory=FirewallPort)
    any_proto: FirewallPort = field(default_factory=FirewallPort)

    def port_for(self, proto: int) -> FirewallPort:
        ports = {
            PROTO_TCP: self.tcp,
            PROTO_UDP: self.udp,
            PROTO_ICMP: self.icmp,
            PROTO_ANY: self.any_proto,
        }
        try:
            return ports[proto]
        except KeyError:
            raise FirewallError(f"unknown protocol {proto}") from None

    def match(self, packet: FirewallPacket, incoming: bool, cert: Any, ca_pool: Any) -> bool:
        if self.any_proto.match(packet, incoming, cert, ca_pool):
            return True
        ports = {PROTO_TCP: self.tcp, PROTO_UDP: self.udp, PROTO_ICMP: self.icmp}.get(
            packet.protocol
        )
        return ports is not None and ports.match(packet, incoming, cert, ca_pool)


def _tcp_offset(packet: bytes) -> int:
    return (packet[0] & 0x0F) << 2


def set_tcp_rtt_tracking(conn: Conn, packet: bytes) -> None:
    """Remember the sequence number of an outgoing TCP packet, unless it is a FIN."""
    if conn.seq != 0:
        return
    ihl = _tcp_offset(packet)
    if packet[ihl + 13] & TCP_FIN:
        return
    (conn.seq,) = struct.unpack_from(">I", packet, ihl + 4)
    conn.sent = time.monotonic()


class Firewall:
    """Inbound and outbound rule tables plus connection tracking."""

    def __init__(
        self,
        tcp_timeout: DurationLike,
        udp_timeout: DurationLike,
        default_timeout: DurationLike,
        cert: Any,
    ) -> None:
        self.tcp_timeout = _to_timedelta(tcp_timeout)
        self.udp_timeout = _to_timedelta(udp_timeout)
        self.default_timeout = _to_timedelta(default_timeout)

        low, high = sorted((self.tcp_timeout, self.udp_timeout))
        if self.default_timeout < low:
            low = self.default_timeout
        elif self.default_timeout > high:
            high = self.default_timeout

        self.conns: dict[FirewallPacket, Conn] = {}
        self.in_rules = FirewallTable()
        self.out_rules = FirewallTable()
        self.timer_wheel = _TimerWheel(low, high)
        self.tcp_rtt_samples: deque[int] = deque(maxlen=_RTT_SAMPLE_SIZE)
        self._lock = threading.Lock()
        self._rules = ""

        details = cert.details
        self._local_ips: list[ipaddress.IPv4Network] = []
        for ip in getattr(details, "ips", None) or ():
            address = ipaddress.ip_interface(ip).ip
            if isinstance(address, ipaddress.IPv4Address):
                self._local_ips.append(ipaddress.IPv4Network(f"{address}/32"))
        for subnet in getattr(details, "subnets", None) or ():
            network = ipaddress.ip_network(subnet, strict=False)
            if isinstance(network, ipaddress.IPv4Network):
                self._local_ips.append(network)

    def add_rule(
        self,
        incoming: bool,
        proto: int,
        start_port: int,
        end_port: int,
        groups: Optional[Sequence[str]],
        host: str,
        ip: NetworkArg,
        ca_name: str,
        ca_sha: str,
    ) -> None:
        """Add a rule to the inbound or outbound table."""
        network = _as_network(ip)
        group_text = "[" + " ".join(groups or ()) + "]"
        # The rule hash is derived from this text, so its form must stay stable.
        self._rules += (
            f"incoming: {'true' if incoming else 'false'}, proto: {proto}, "
            f"startPort: {start_port}, endPort: {end_port}, groups: {group_text}, "
            f"host: {host}, ip: {network if network is not None else '<nil>'}, "
            f"caName: {ca_name}, caSha: {ca_sha}\n"
        )
        logger.info(
            "Firewall rule added",
            extra={
                "firewallRule": {
                    "direction": "incoming" if incoming else "outgoing",
                    "proto": proto,
                    "startPort": start_port,
                    "endPort": end_port,
                    "groups": list(groups or ()),
                    "host": host,
                    "ip": str(network) if network is not None else None,
                    "caName": ca_name,
                    "caSha": ca_sha,
                }
            },
        )
        table = self.in_rules if incoming else self.out_rules
        table.port_for(proto).add_rule(start_port, end_port, groups, host, network, ca_name, ca_sha)

    def rule_hash(self) -> str:
        """SHA-256 hex digest over every rule added so far."""
        return hashlib.sha256(self._rules.encode()).hexdigest()

    def drop(
        self, packet: bytes, fp: FirewallPacket, incoming: bool, cert: Any, ca_pool: Any
    ) -> bool:
        """True if the packet must be dropped."""
        if self._in_conns(packet, fp, incoming):
            return False
        if not any(network_contains(n, fp.local_ip) for n in self._local_ips):
            return True
        table = self.in_rules if incoming else self.out_rules
        if not table.match(fp, incoming, cert, ca_pool):
            return True
        self._add_conn(packet, fp, incoming)
        return False

    def conntrack_count(self) -> int:
        return len(self.conns)

    def _timeout_for(self, protocol: int) -> timedelta:
        if protocol == PROTO_TCP:
            return self.tcp_timeout
        if protocol == PROTO_UDP:
            return self.udp_timeout
        return self.default_timeout

    def _in_conns(self, packet: bytes, fp: FirewallPacket, incoming: bool) -> bool:
        with self._lock:
            expired = self.timer_wheel.purge()
            if expired is not None:
                self._evict(expired)
            conn = self.conns.get(fp)
            if conn is None:
                return False
            conn.expires = time.monotonic() + self._timeout_for(fp.protocol).total_seconds()
            if fp.protocol == PROTO_TCP:
                if incoming:
                    self.check_tcp_rtt(conn, packet)
                else:
                    set_tcp_rtt_tracking(conn, packet)
            return True

    def _add_conn(self, packet: bytes, fp: FirewallPacket, incoming: bool) -> None:
        timeout = self._timeout_for(fp.protocol).total_seconds()
        conn = Conn()
        if fp.protocol == PROTO_TCP and not incoming:
            set_tcp_rtt_tracking(conn, packet)
        with self._lock:
            if fp not in self.conns:
                self.timer_wheel.add(fp, timeout)
            conn.expires = time.monotonic() + timeout
            self.conns[fp] = conn

    def _evict(self, fp: Hashable) -> None:
        conn = self.conns.get(fp)  # type: ignore[arg-type]
        if conn is None:
            return
        remaining = conn.expires - time.monotonic()
        if remaining > 0:
            self.timer_wheel.add(fp, remaining)
            return
        del self.conns[fp]  # type: ignore[arg-type]

    def check_tcp_rtt(self, conn: Conn, packet: bytes) -> bool:
        """Record a round trip if packet acknowledges the tracked sequence number."""
        if conn.seq == 0:
            return False
        ihl = _tcp_offset(packet)
        if not packet[ihl + 13] & TCP_ACK:
            return False
        (ack,) = struct.unpack_from(">I", packet, ihl + 8)
        # A signed 32 bit difference handles wrap around; zero or positive is a bad ack.
        if (conn.seq - ack) & 0xFFFFFFFF < 0x80000000:
            return False
        self.tcp_rtt_samples.append(int((time.monotonic() - conn.sent) * 1e9))
        conn.seq = 0
        return True


_PORT_NUMBER = re.compile(r"[+-]?[0-9]+")


def _atoi(text: str) -> Optional[int]:
    return int(text) if _PORT_NUMBER.fullmatch(text) else None


def parse_port(text: str) -> tuple[int, int]:
    """Parse "any", "fragment", a single port or a "start-end" range."""
    if text == "any":
        return PORT_ANY, PORT_ANY
    if text == "fragment":
        return PORT_FRAGMENT, PORT_FRAGMENT
    if "-" in text:
        first, second = (part.strip(" ") for part in text.split("-", 1))
        if not first or not second:
            raise FirewallError(f"appears to be a range but could not be parsed; `{text}`")
        start = _atoi(first)
        if start is None:
            raise FirewallError(f"beginning range was not a number; `{first}`")
        end = _atoi(second)
        if end is None:
            raise FirewallError(f"ending range was not a number; `{second}`")
        if start == PORT_ANY:
            end = PORT_ANY
        return start, end
    port = _atoi(text)
    if port is None:
        raise FirewallError(f"was not a number; `{text}`")
    return port, port


def _go_str(value: Any) -> str:
    if value is None:
        return "<nil>"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


@dataclass
class _RuleSpec:
    port: str = ""
    code: str = ""
    proto: str = ""
    host: str = ""
    group: str = ""
    groups: Optional[list[str]] = None
    cidr: str = ""
    ca_name: str = ""
    ca_sha: str = ""


def convert_rule(raw: Any) -> _RuleSpec:
    """Turn one rule mapping from configuration into its string fields."""
    if not isinstance(raw, Mapping):
        raise FirewallError("could not parse rule")

    def text(key: str) -> str:
        return _go_str(raw[key]) if key in raw else ""

    spec = _RuleSpec(
        port=text("port"),
        code=text("code"),
        proto=text("proto"),
        host=text("host"),
        group=text("group"),
        cidr=text("cidr"),
        ca_name=text("ca_name"),
        ca_sha=text("ca_sha"),
    )
    if "groups" in raw:
        groups = raw["groups"]
        if isinstance(groups, str):
            spec.groups = [groups]
        elif isinstance(groups, (list, tuple)):
            if not all(isinstance(g, str) for g in groups):
                raise FirewallError("groups must be a list of strings")
            spec.groups = list(groups)
        else:
            spec.groups = [_go_str(groups)]
    return spec


def _config_lookup(config: Mapping, path: str) -> Any:
    node: Any = config
    for key in path.split("."):
        if not isinstance(node, Mapping) or key not in node:
            return None
        node = node[key]
    return node


_DURATION_PART = re.compile(r"([0-9]+(?:\.[0-9]*)?|\.[0-9]+)(ns|us|µs|μs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def _parse_duration(text: str) -> Optional[timedelta]:
    sign = -1 if text.startswith("-") else 1
    body = text[1:] if text[:1] in "+-" else text
    if body == "0":
        return timedelta(0)
    if not body or _DURATION_PART.sub("", body):
        return None
    seconds = sum(float(n) * _DURATION_UNITS[u] for n, u in _DURATION_PART.findall(body))
    return timedelta(seconds=sign * seconds)


def _config_duration(config: Mapping, path: str, default: timedelta) -> timedelta:
    value = _config_lookup(config, path)
    if isinstance(value, timedelta):
        return value
    if value is not None:
        parsed = _parse_duration(_go_str(value))
        if parsed is not None:
            return parsed
    return default


_PROTOCOLS = {"any": PROTO_ANY, "tcp": PROTO_TCP, "udp": PROTO_UDP, "icmp": PROTO_ICMP}


def _parse_cidr(text: str) -> ipaddress.IPv4Network:
    if "/" not in text:
        raise ValueError(f"invalid CIDR address: {text}")
    try:
        return ipaddress.IPv4Network(text, strict=False)
    except ValueError:
        raise ValueError(f"invalid CIDR address: {text}") from None


def add_firewall_rules_from_config(inbound: bool, config: Mapping, fw: Any) -> None:
    """Add the rules under firewall.inbound or firewall.outbound to fw."""
    table = "firewall.inbound" if inbound else "firewall.outbound"
    rules = _config_lookup(config, table)
    if rules is None:
        return
    if not isinstance(rules, (list, tuple)):
        raise FirewallError(f"{table} failed to parse, should be an array of rules")

    for i, raw in enumerate(rules):
        prefix = f"{table} rule #{i};"
        try:
            spec = convert_rule(raw)
        except FirewallError as err:
            raise FirewallError(f"{prefix} {err}") from err

        if spec.code and spec.port:
            raise FirewallError(f"{prefix} only one of port or code should be provided")
        if not (spec.host or spec.groups or spec.group or spec.cidr or spec.ca_name or spec.ca_sha):
            raise FirewallError(
                f"{prefix} at least one of host, group, cidr, ca_name, or ca_sha must be provided"
            )

        groups = spec.groups if spec.groups else None
        if spec.group:
            if groups:
                raise FirewallError(
                    f"{prefix} only one of group or groups should be defined, both provided"
                )
            groups = [spec.group]

        port_kind, port_text = ("code", spec.code) if spec.code else ("port", spec.port)
        try:
            start_port, end_port = parse_port(port_text)
        except FirewallError as err:
            raise FirewallError(f"{prefix} {port_kind} {err}") from err

        if spec.proto not in _PROTOCOLS:
            raise FirewallError(f"{prefix} proto was not understood; `{spec.proto}`")
        proto = _PROTOCOLS[spec.proto]

        cidr = None
        if spec.cidr:
            try:
                cidr = _parse_cidr(spec.cidr)
            except ValueError as err:
                raise FirewallError(f"{prefix} cidr did not parse; {err}") from err

        try:
            fw.add_rule(
                inbound, proto, start_port, end_port, groups, spec.host, cidr,
                spec.ca_name, spec.ca_sha,
            )
        except Exception as err:
            raise FirewallError(f"{prefix} `{err}`") from err


def new_firewall_from_config(cert: Any, config: Mapping) -> Firewall:
    """Build a firewall with timeouts and rules taken from configuration."""
    fw = Firewall(
        _config_duration(config, "firewall.conntrack.tcp_timeout", timedelta(minutes=12)),
        _config_duration(config, "firewall.conntrack.udp_timeout", timedelta(minutes=3)),
        _config_duration(config, "firewall.conntrack.default_timeout", timedelta(minutes=10)),
        cert,
    )
    add_firewall_rules_from_config(False, config, fw)
    add_firewall_rules_from_config(True, config, fw)
    return fw