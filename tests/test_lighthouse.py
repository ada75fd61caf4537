import threading
import time

import pytest

from nebulamesh.header import TEST_REQUEST, MessageType
from nebulamesh.lighthouse import (
    HostUnknownError,
    IpAndPort,
    LightHouse,
    MetaDetails,
    MetaType,
    NebulaMeta,
    ip_and_port_from_addr,
    ip_and_ports_from_addrs,
    new_lh_query_by_int,
    new_lh_query_by_ip_string,
    new_lh_whoami,
)
from nebulamesh.netutil import UdpAddr, ip2int


class RecordingWriter:
    def __init__(self):
        self.calls = []
        self._lock = threading.Lock()

    def send_message_to_vpn_ip(self, message_type, subtype, vpn_ip, payload):
        with self._lock:
            self.calls.append((message_type, subtype, vpn_ip, payload))


class RecordingConn:
    def __init__(self):
        self.writes = []
        self._lock = threading.Lock()

    def write_to(self, data, addr):
        with self._lock:
            self.writes.append((data, addr))


def _wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


LH_IP = "10.0.0.1"


def _lighthouse(am_lighthouse=False, punch_back=False, conn=None):
    return LightHouse(am_lighthouse, ip2int("10.0.0.5"), [LH_IP], 10, 4242, conn, punch_back)


def test_new_lh_query_roundtrip():
    my_ip = ip2int("192.1.1.1")
    query = new_lh_query_by_int(my_ip)
    decoded = NebulaMeta.from_bytes(query.to_bytes())
    assert decoded == query
    assert decoded.type == MetaType.HOST_QUERY
    assert decoded.details.vpn_ip == my_ip


def test_query_by_ip_string_matches_int():
    assert new_lh_query_by_ip_string("192.1.1.1") == new_lh_query_by_int(ip2int("192.1.1.1"))


def test_ip_and_port_from_addr():
    result = ip_and_port_from_addr(UdpAddr.from_string("1.2.2.3:12345"))
    assert result.ip == 16908803
    assert result.port == 12345


def test_ip_and_ports_from_addrs():
    addrs = [UdpAddr.from_string("1.2.2.3:12345"), UdpAddr.from_string("9.9.9.9:47828")]
    result = ip_and_ports_from_addrs(addrs)
    assert result == [IpAndPort(16908803, 12345), IpAndPort(ip2int("9.9.9.9"), 47828)]


def test_wire_format_is_protobuf():
    meta = NebulaMeta(MetaType.HOST_QUERY, MetaDetails(vpn_ip=1))
    assert meta.to_bytes() == bytes([0x08, 0x01, 0x12, 0x02, 0x08, 0x01])
    assert new_lh_whoami().to_bytes() == bytes([0x08, 0x06, 0x12, 0x00])


def test_roundtrip_with_addresses():
    meta = NebulaMeta(
        MetaType.HOST_QUERY_REPLY,
        MetaDetails(vpn_ip=0xFFFFFFFF, ip_and_ports=[IpAndPort(1, 2), IpAndPort(300, 65535)],
                    counter=7),
    )
    assert NebulaMeta.from_bytes(meta.to_bytes()) == meta


def test_unknown_fields_are_skipped():
    data = bytes([0x08, 0x01, 0x20, 0x05, 0x12, 0x02, 0x08, 0x03])
    decoded = NebulaMeta.from_bytes(data)
    assert decoded.type == MetaType.HOST_QUERY
    assert decoded.details.vpn_ip == 3


def test_truncated_message_raises():
    with pytest.raises(ValueError):
        NebulaMeta.from_bytes(bytes([0x12, 0x05, 0x08]))


def test_query_unknown_sends_to_lighthouses_and_raises():
    lh = _lighthouse()
    writer = RecordingWriter()
    target = ip2int("10.0.0.9")
    with pytest.raises(HostUnknownError):
        lh.query(target, writer)
    assert len(writer.calls) == 1
    message_type, subtype, vpn_ip, payload = writer.calls[0]
    assert (message_type, subtype, vpn_ip) == (MessageType.LIGHT_HOUSE, 0, ip2int(LH_IP))
    assert NebulaMeta.from_bytes(payload) == new_lh_query_by_int(target)


def test_lighthouse_does_not_forward_queries():
    lh = _lighthouse(am_lighthouse=True)
    writer = RecordingWriter()
    with pytest.raises(HostUnknownError):
        lh.query(ip2int("10.0.0.9"), writer)
    assert writer.calls == []


def test_add_remote_deduplicates_and_query_returns():
    lh = _lighthouse()
    vpn = ip2int("10.0.0.9")
    addr = UdpAddr.from_string("1.2.3.4:4242")
    lh.add_remote(vpn, addr, False)
    lh.add_remote(vpn, addr, False)
    assert lh.query(vpn, RecordingWriter()) == [addr]
    assert lh.query_cache(vpn) == [addr]
    assert lh.query_cache(ip2int("10.0.0.10")) is None


def test_static_entries_survive_dynamic_changes():
    lh = _lighthouse(am_lighthouse=True)
    vpn = ip2int("10.0.0.9")
    static_addr = UdpAddr.from_string("1.2.3.4:4242")
    lh.add_remote(vpn, static_addr, True)
    lh.add_remote(vpn, UdpAddr.from_string("5.6.7.8:4242"), False)
    lh.delete_vpn_ip(vpn)
    assert lh.query_cache(vpn) == [static_addr]


def test_add_remote_and_reset_only_on_lighthouse():
    vpn = ip2int("10.0.0.9")
    old = UdpAddr.from_string("1.2.3.4:4242")
    new = UdpAddr.from_string("5.6.7.8:4242")

    server = _lighthouse(am_lighthouse=True)
    server.add_remote(vpn, old, False)
    server.add_remote_and_reset(vpn, new)
    assert server.query_cache(vpn) == [new]

    client = _lighthouse()
    client.add_remote(vpn, old, False)
    client.add_remote_and_reset(vpn, new)
    assert client.query_cache(vpn) == [old]


def test_is_lighthouse_ip():
    lh = _lighthouse()
    assert lh.is_lighthouse_ip(ip2int(LH_IP)) is True
    assert lh.is_lighthouse_ip(ip2int("10.0.0.2")) is False


def test_handle_query_sends_reply_and_punch_notification():
    lh = _lighthouse(am_lighthouse=True)
    writer = RecordingWriter()
    asker = ip2int("10.0.0.7")
    target = ip2int("10.0.0.9")
    asker_addr = UdpAddr.from_string("8.8.8.8:1000")
    target_addr = UdpAddr.from_string("9.9.9.9:2000")
    lh.add_remote(asker, asker_addr, False)
    lh.add_remote(target, target_addr, False)

    lh.handle_request(asker_addr, asker, new_lh_query_by_int(target).to_bytes(), writer)

    assert [c[2] for c in writer.calls] == [asker, target]
    reply = NebulaMeta.from_bytes(writer.calls[0][3])
    assert reply.type == MetaType.HOST_QUERY_REPLY
    assert reply.details.vpn_ip == target
    assert reply.details.ip_and_ports == [IpAndPort(target_addr.ip, 2000)]
    punch = NebulaMeta.from_bytes(writer.calls[1][3])
    assert punch.type == MetaType.HOST_PUNCH_NOTIFICATION
    assert punch.details.vpn_ip == asker
    assert punch.details.ip_and_ports == [IpAndPort(asker_addr.ip, 1000)]


def test_handle_query_ignored_when_not_lighthouse():
    lh = _lighthouse()
    writer = RecordingWriter()
    target = ip2int("10.0.0.9")
    lh.add_remote(target, UdpAddr.from_string("9.9.9.9:2000"), False)
    lh.handle_request(UdpAddr.from_string("8.8.8.8:1"), ip2int("10.0.0.7"),
                      new_lh_query_by_int(target).to_bytes(), writer)
    assert writer.calls == []


def test_query_reply_only_accepted_from_lighthouse():
    lh = _lighthouse()
    target = ip2int("10.0.0.9")
    reply = NebulaMeta(
        MetaType.HOST_QUERY_REPLY,
        MetaDetails(vpn_ip=target, ip_and_ports=[IpAndPort(ip2int("9.9.9.9"), 2000)]),
    ).to_bytes()
    remote = UdpAddr.from_string("1.1.1.1:1")
    lh.handle_request(remote, ip2int("10.0.0.2"), reply, RecordingWriter())
    assert lh.query_cache(target) is None
    lh.handle_request(remote, ip2int(LH_IP), reply, RecordingWriter())
    assert lh.query_cache(target) == [UdpAddr.from_string("9.9.9.9:2000")]


def test_update_notification_must_come_from_host_itself():
    lh = _lighthouse(am_lighthouse=True)
    host = ip2int("10.0.0.9")
    update = NebulaMeta(
        MetaType.HOST_UPDATE_NOTIFICATION,
        MetaDetails(vpn_ip=host, ip_and_ports=[IpAndPort(ip2int("9.9.9.9"), 2000)]),
    ).to_bytes()
    remote = UdpAddr.from_string("1.1.1.1:1")
    lh.handle_request(remote, ip2int("10.0.0.8"), update, RecordingWriter())
    assert lh.query_cache(host) is None
    lh.handle_request(remote, host, update, RecordingWriter())
    assert lh.query_cache(host) == [UdpAddr.from_string("9.9.9.9:2000")]


def test_missing_details_and_garbage_are_ignored():
    lh = _lighthouse(am_lighthouse=True)
    writer = RecordingWriter()
    remote = UdpAddr.from_string("1.1.1.1:1")
    lh.handle_request(remote, ip2int("10.0.0.9"), NebulaMeta(MetaType.HOST_QUERY).to_bytes(),
                      writer)
    lh.handle_request(remote, ip2int("10.0.0.9"), bytes([0xFF]), writer)
    assert writer.calls == []
    assert lh.addr_map == {}


def test_punch_notification_punches_and_punches_back():
    conn = RecordingConn()
    lh = _lighthouse(punch_back=True, conn=conn)
    lh.punch_interval = 0
    lh.punch_back_delay = 0
    writer = RecordingWriter()
    peer = UdpAddr.from_string("9.9.9.9:2000")
    asker = ip2int("10.0.0.7")
    notify = NebulaMeta(
        MetaType.HOST_PUNCH_NOTIFICATION,
        MetaDetails(vpn_ip=asker, ip_and_ports=[ip_and_port_from_addr(peer)]),
    ).to_bytes()

    lh.handle_request(UdpAddr.from_string("1.1.1.1:1"), ip2int(LH_IP), notify, writer)

    assert _wait_for(lambda: len(conn.writes) >= 5 and writer.calls)
    assert conn.writes == [(b"\x00", peer)] * 5
    assert writer.calls == [(MessageType.TEST, TEST_REQUEST, asker, b"")]


def test_punch_notification_from_non_lighthouse_ignored():
    conn = RecordingConn()
    lh = _lighthouse(punch_back=True, conn=conn)
    lh.punch_interval = 0
    lh.punch_back_delay = 0
    writer = RecordingWriter()
    notify = NebulaMeta(
        MetaType.HOST_PUNCH_NOTIFICATION,
        MetaDetails(vpn_ip=ip2int("10.0.0.7"),
                    ip_and_ports=[IpAndPort(ip2int("9.9.9.9"), 2000)]),
    ).to_bytes()
    lh.handle_request(UdpAddr.from_string("1.1.1.1:1"), ip2int("10.0.0.3"), notify, writer)
    time.sleep(0.1)
    assert conn.writes == []
    assert writer.calls == []