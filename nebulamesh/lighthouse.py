"""Lighthouse discovery: caching peer addresses and answering host queries."""

from __future__ import annotations

import ipaddress
import logging
import threading
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Optional, Protocol, Union

from .header import TEST_REQUEST, MessageType
from .netutil import UdpAddr, int2ip, ip2int

logger = logging.getLogger(__name__)

_UINT32 = 0xFFFFFFFF
_UINT64 = 0xFFFFFFFFFFFFFFFF


class HostUnknownError(LookupError):
    """Raised when no address is cached for a VPN address."""


class EncWriter(Protocol):
    def send_message_to_vpn_ip(
        self, message_type: int, subtype: int, vpn_ip: int, payload: bytes
    ) -> None: ...


class MetaType(IntEnum):
    NONE = 0
    HOST_QUERY = 1
    HOST_QUERY_REPLY = 2
    HOST_UPDATE_NOTIFICATION = 3
    HOST_MOVED_NOTIFICATION = 4
    HOST_PUNCH_NOTIFICATION = 5
    HOST_WHOAMI = 6
    HOST_WHOAMI_REPLY = 7
    PATH_CHECK = 8
    PATH_CHECK_REPLY = 9


def _encode_varint(value: int) -> bytes:
    out = bytearray()
    value &= _UINT64
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _decode_varint(data: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise ValueError("truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result & _UINT64, pos
        shift += 7
        if shift >= 70:
            raise ValueError("varint too long")


def _key(field_number: int, wire_type: int) -> bytes:
    return _encode_varint((field_number << 3) | wire_type)


def _varint_field(field_number: int, value: int) -> bytes:
    if not value:
        return b""
    return _key(field_number, 0) + _encode_varint(value)


def _bytes_field(field_number: int, payload: bytes) -> bytes:
    return _key(field_number, 2) + _encode_varint(len(payload)) + payload


def _fields(data: bytes) -> Iterable[tuple[int, int, Union[int, bytes]]]:
    """Yield (field number, wire type, value) for each field in a message."""
    pos = 0
    while pos < len(data):
        key, pos = _decode_varint(data, pos)
        number, wire_type = key >> 3, key & 0x07
        if number == 0:
            raise ValueError("invalid field number 0")
        if wire_type == 0:
            value, pos = _decode_varint(data, pos)
            yield number, wire_type, value
        elif wire_type == 1:
            if pos + 8 > len(data):
                raise ValueError("truncated fixed64")
            yield number, wire_type, data[pos:pos + 8]
            pos += 8
        elif wire_type == 2:
            length, pos = _decode_varint(data, pos)
            if pos + length > len(data):
                raise ValueError("truncated length-delimited field")
            yield number, wire_type, data[pos:pos + length]
            pos += length
        elif wire_type == 5:
            if pos + 4 > len(data):
                raise ValueError("truncated fixed32")
            yield number, wire_type, data[pos:pos + 4]
            pos += 4
        else:
            raise ValueError(f"unsupported wire type {wire_type}")


@dataclass
class IpAndPort:
    ip: int = 0
    port: int = 0

    def to_bytes(self) -> bytes:
        return _varint_field(1, self.ip & _UINT32) + _varint_field(2, self.port & _UINT32)

    @classmethod
    def from_bytes(cls, data: bytes) -> "IpAndPort":
        result = cls()
        for number, wire_type, value in _fields(data):
            if wire_type != 0:
                continue
            if number == 1:
                result.ip = int(value) & _UINT32
            elif number == 2:
                result.port = int(value) & _UINT32
        return result


@dataclass
class MetaDetails:
    vpn_ip: int = 0
    ip_and_ports: list[IpAndPort] = field(default_factory=list)
    counter: int = 0

    def to_bytes(self) -> bytes:
        out = _varint_field(1, self.vpn_ip & _UINT32)
        for entry in self.ip_and_ports:
            out += _bytes_field(2, entry.to_bytes())
        out += _varint_field(3, self.counter & _UINT32)
        return out

    @classmethod
    def from_bytes(cls, data: bytes) -> "MetaDetails":
        result = cls()
        for number, wire_type, value in _fields(data):
            if number == 1 and wire_type == 0:
                result.vpn_ip = int(value) & _UINT32
            elif number == 2 and wire_type == 2:
                result.ip_and_ports.append(IpAndPort.from_bytes(bytes(value)))
            elif number == 3 and wire_type == 0:
                result.counter = int(value) & _UINT32
        return result


@dataclass
class NebulaMeta:
    """Lighthouse control message."""

    type: int = MetaType.NONE
    details: Optional[MetaDetails] = None

    def to_bytes(self) -> bytes:
        out = _varint_field(1, int(self.type))
        if self.details is not None:
            out += _bytes_field(2, self.details.to_bytes())
        return out

    @classmethod
    def from_bytes(cls, data: bytes) -> "NebulaMeta":
        """Decode a message; raises ValueError on malformed input."""
        result = cls()
        for number, wire_type, value in _fields(bytes(data)):
            if number == 1 and wire_type == 0:
                raw = int(value) & _UINT32
                try:
                    result.type = MetaType(raw)
                except ValueError:
                    result.type = raw
            elif number == 2 and wire_type == 2:
                result.details = MetaDetails.from_bytes(bytes(value))
        return result


def new_lh_query_by_int(vpn_ip: int) -> NebulaMeta:
    return NebulaMeta(MetaType.HOST_QUERY, MetaDetails(vpn_ip=vpn_ip))


def new_lh_query_by_ip_string(vpn_ip: str) -> NebulaMeta:
    return new_lh_query_by_int(ip2int(vpn_ip))


def new_lh_whoami() -> NebulaMeta:
    return NebulaMeta(MetaType.HOST_WHOAMI, MetaDetails())


def ip_and_port_from_addr(addr: UdpAddr) -> IpAndPort:
    return IpAndPort(ip=addr.ip, port=addr.port)


def ip_and_ports_from_addrs(addrs: Sequence[UdpAddr]) -> list[IpAndPort]:
    return [ip_and_port_from_addr(addr) for addr in addrs]


class LightHouse:
    """Cache of underlay addresses for VPN hosts, optionally serving queries."""

    punch_interval = 1.0
    punch_attempts = 5
    punch_back_delay = 5.0

    def __init__(
        self,
        am_lighthouse: bool,
        my_ip: int,
        ips: Iterable[str],
        interval: int,
        nebula_port: int,
        punch_conn: Any,
        punch_back: bool,
    ) -> None:
        self.am_lighthouse = am_lighthouse
        self.my_ip = my_ip
        self.addr_map: dict[int, list[UdpAddr]] = {}
        self.static_list: set[int] = set()
        self.lighthouses: set[int] = {ip2int(ip) for ip in ips}
        self.interval = interval
        self.nebula_port = nebula_port
        self.punch_conn = punch_conn
        self.punch_back = punch_back
        self._lock = threading.RLock()

    def query(self, ip: int, writer: EncWriter) -> list[UdpAddr]:
        """Return cached addresses for ip, asking the lighthouses for it first."""
        if not self.is_lighthouse_ip(ip):
            self.query_server(ip, writer)
        with self._lock:
            addrs = self.addr_map.get(ip)
            if addrs is not None:
                return list(addrs)
        raise HostUnknownError(f"host {int2ip(ip)} not known, queries sent to lighthouses")

    def query_server(self, ip: int, writer: EncWriter) -> None:
        """Send a host query to every lighthouse; replies arrive asynchronously."""
        if self.am_lighthouse:
            return
        query = new_lh_query_by_int(ip).to_bytes()
        for lighthouse in list(self.lighthouses):
            writer.send_message_to_vpn_ip(MessageType.LIGHT_HOUSE, 0, lighthouse, query)

    def query_cache(self, ip: int) -> Optional[list[UdpAddr]]:
        with self._lock:
            addrs = self.addr_map.get(ip)
            return None if addrs is None else list(addrs)

    def delete_vpn_ip(self, vpn_ip: int) -> None:
        """Forget addresses of vpn_ip unless they were added as static."""
        if vpn_ip in self.static_list:
            return
        with self._lock:
            self.addr_map.pop(vpn_ip, None)
        logger.debug("deleting %s from lighthouse.", int2ip(vpn_ip))

    def add_remote(self, vpn_ip: int, addr: UdpAddr, static: bool) -> None:
        """Record addr for vpn_ip; non-static updates never touch static entries."""
        if not static and vpn_ip in self.static_list:
            return
        with self._lock:
            known = self.addr_map.setdefault(vpn_ip, [])
            if addr in known:
                return
            if static:
                self.static_list.add(vpn_ip)
            known.append(addr)

    def add_remote_and_reset(self, vpn_ip: int, addr: UdpAddr) -> None:
        if self.am_lighthouse:
            self.delete_vpn_ip(vpn_ip)
            self.add_remote(vpn_ip, addr, False)

    def is_lighthouse_ip(self, vpn_ip: int) -> bool:
        return vpn_ip in self.lighthouses

    def handle_request(
        self, remote: UdpAddr, vpn_ip: int, payload: bytes, writer: EncWriter
    ) -> None:
        """Process a lighthouse message received from vpn_ip."""
        try:
            meta = NebulaMeta.from_bytes(payload)
        except ValueError:
            logger.exception(
                "Failed to unmarshal lighthouse packet from %s (%s)", int2ip(vpn_ip), remote
            )
            return
        details = meta.details
        if details is None:
            logger.error("Invalid lighthouse update from %s (%s)", int2ip(vpn_ip), remote)
            return

        if meta.type == MetaType.HOST_QUERY:
            self._answer_query(vpn_ip, details, writer, remote)
        elif meta.type in (MetaType.HOST_QUERY_REPLY, MetaType.HOST_UPDATE_NOTIFICATION):
            if meta.type == MetaType.HOST_QUERY_REPLY and not self.is_lighthouse_ip(vpn_ip):
                return
            if meta.type == MetaType.HOST_UPDATE_NOTIFICATION and details.vpn_ip != vpn_ip:
                logger.debug(
                    "Host %s sent invalid update for %s", int2ip(vpn_ip), int2ip(details.vpn_ip)
                )
                return
            for entry in details.ip_and_ports:
                self.add_remote(details.vpn_ip, UdpAddr(entry.ip, entry.port & 0xFFFF), False)
        elif meta.type == MetaType.HOST_PUNCH_NOTIFICATION:
            if not self.is_lighthouse_ip(vpn_ip):
                return
            self._punch(details, writer)

    def _answer_query(
        self, vpn_ip: int, details: MetaDetails, writer: EncWriter, remote: UdpAddr
    ) -> None:
        if not self.am_lighthouse:
            logger.debug("I don't answer queries, but received from: %s", remote)
            return
        try:
            addrs = self.query(details.vpn_ip, writer)
        except HostUnknownError:
            return
        answer = NebulaMeta(
            MetaType.HOST_QUERY_REPLY,
            MetaDetails(vpn_ip=details.vpn_ip, ip_and_ports=ip_and_ports_from_addrs(addrs)),
        )
        writer.send_message_to_vpn_ip(MessageType.LIGHT_HOUSE, 0, vpn_ip, answer.to_bytes())

        # Tell the queried host to punch towards the one asking.
        try:
            addrs = self.query(vpn_ip, writer)
        except HostUnknownError:
            logger.debug("Can't notify host to punch: %s", int2ip(vpn_ip))
            return
        notify = NebulaMeta(
            MetaType.HOST_PUNCH_NOTIFICATION,
            MetaDetails(vpn_ip=vpn_ip, ip_and_ports=ip_and_ports_from_addrs(addrs)),
        )
        writer.send_message_to_vpn_ip(
            MessageType.LIGHT_HOUSE, 0, details.vpn_ip, notify.to_bytes()
        )

    def _punch(self, details: MetaDetails, writer: EncWriter) -> None:
        empty = b"\x00"
        for entry in details.ip_and_ports:
            peer = UdpAddr(entry.ip, entry.port & 0xFFFF)
            threading.Thread(target=self._punch_peer, args=(empty, peer), daemon=True).start()
            logger.debug(
                "Punching %s on %d for %s", int2ip(entry.ip), entry.port, int2ip(details.vpn_ip)
            )
        if self.punch_back:
            target = details.vpn_ip

            def send_test() -> None:
                logger.debug("Sending a test packet to vpn ip %s", int2ip(target))
                writer.send_message_to_vpn_ip(MessageType.TEST, TEST_REQUEST, target, b"")

            timer = threading.Timer(self.punch_back_delay, send_test)
            timer.daemon = True
            timer.start()

    def _punch_peer(self, data: bytes, peer: UdpAddr) -> None:
        for _ in range(self.punch_attempts):
            self.punch_conn.write_to(data, peer)
            time.sleep(self.punch_interval)


__all__ = [
    "HostUnknownError",
    "MetaType",
    "IpAndPort",
    "MetaDetails",
    "NebulaMeta",
    "LightHouse",
    "new_lh_query_by_int",
    "new_lh_query_by_ip_string",
    "new_lh_whoami",
    "ip_and_port_from_addr",
    "ip_and_ports_from_addrs",
]

_ = ipaddress  # re-exported types above accept ipaddress values through netutil