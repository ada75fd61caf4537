import ipaddress

import pytest

from nebulamesh.netutil import (
    UdpAddr,
    int2ip,
    ip2int,
    network_contains,
    private_ip,
)


def test_ip2int_known_value():
    assert ip2int("1.2.2.3") == 16908803


def test_udp_addr_from_string():
    addr = UdpAddr.from_string("1.2.2.3:12345")
    assert addr.ip == 16908803
    assert addr.port == 12345


@pytest.mark.parametrize("text", ["1.2.2.3:12345", "9.9.9.9:47828", "10.128.0.3:11111"])
def test_udp_addr_string_round_trip(text):
    assert str(UdpAddr.from_string(text)) == text


@pytest.mark.parametrize("text", ["1.2.2.3", "nothost:1", "1.2.3.4:port", ":80", "1.2.3.4:70000"])
def test_udp_addr_from_string_rejects(text):
    with pytest.raises(ValueError):
        UdpAddr.from_string(text)


def test_udp_addr_equality():
    assert UdpAddr.from_string("10.128.0.3:11111") == UdpAddr.from_string("10.128.0.3:11111")
    assert UdpAddr.from_string("10.128.0.3:11111") != UdpAddr.from_string("10.128.0.3:11112")


@pytest.mark.parametrize("ip", ["0.0.0.0", "127.0.0.1", "192.1.1.1", "255.255.255.255"])
def test_int_round_trip(ip):
    assert str(int2ip(ip2int(ip))) == ip


def test_ip2int_accepts_many_forms():
    value = ip2int("1.1.1.1")
    assert ip2int(ipaddress.IPv4Address("1.1.1.1")) == value
    assert ip2int(bytes([1, 1, 1, 1])) == value
    assert ip2int("::ffff:1.1.1.1") == value


def test_ip2int_rejects_ipv6():
    with pytest.raises(ValueError):
        ip2int("2001:db8::1")


def test_int2ip_out_of_range():
    with pytest.raises(ValueError):
        int2ip(1 << 32)


@pytest.mark.parametrize(
    "ip,expected",
    [
        ("10.0.0.0", True),
        ("10.127.0.3", True),
        ("172.16.0.0", True),
        ("192.168.0.0", True),
        ("1.0.0.1", False),
        ("172.1.1.1", False),
    ],
)
def test_private_ip(ip, expected):
    assert private_ip(ip) is expected
    assert private_ip(ip2int(ip)) is expected


def test_network_contains():
    assert network_contains("10.128.0.0/16", "10.128.0.3")
    assert not network_contains("10.128.0.0/16", "10.127.0.3")
    assert network_contains("1.1.1.1/24", ip2int("1.1.1.200"))
    assert network_contains(ipaddress.IPv4Network("0.0.0.0/0"), "9.9.9.9")