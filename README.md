# nebulamesh

Building blocks of an overlay mesh network node, as a plain Python library
with no third-party dependencies.

| Module | What it holds |
| --- | --- |
| `nebulamesh.header` | The 16-byte packet header: `Header` (`encode`, `parse`, `type_name`, `sub_type_name`, `to_json`), `header_encode`, `type_name`, `sub_type_name`, `MessageType`, `HeaderTooShortError` |
| `nebulamesh.netutil` | IPv4 helpers: `UdpAddr` (`from_string`), `ip2int`, `int2ip`, `private_ip`, `network_contains` |
| `nebulamesh.firewall` | A stateful, certificate-aware firewall: `Firewall`, `FirewallPacket`, `FirewallTable`, `FirewallPort`, `FirewallRule`, `Conn`, `parse_port`, `convert_rule`, `add_firewall_rules_from_config`, `new_firewall_from_config`, `set_tcp_rtt_tracking`, `FirewallError` |
| `nebulamesh.hostmap` | Known hosts keyed by VPN address and by local index: `HostMap`, `HostInfo`, `HostInfoDest`, `HostNotFoundError` |
| `nebulamesh.lighthouse` | The lighthouse address cache and its control messages: `LightHouse`, `NebulaMeta`, `MetaDetails`, `IpAndPort`, `MetaType`, `HostUnknownError` |
| `nebulamesh.handshake_manager` | Timers that retry outbound handshakes and expire inbound ones: `HandshakeManager`, `DeadlineQueue`, `generate_index` |

Lookups that find nothing raise exceptions (`HostNotFoundError`,
`HostUnknownError`, `FirewallError`, `HeaderTooShortError`) rather than
returning status values.

## Installation

```
pip install .
```

## Headers

```python
from nebulamesh.header import Header, MessageType

raw = Header(version=1, type=MessageType.TEST, subtype=0,
             remote_index=10, message_counter=9).encode()
header = Header.parse(raw)
print(header)
# ver=1 type=test subtype=testRequest reserved=0x0 remoteindex=10 messagecounter=9
```

`Header.parse` raises `HeaderTooShortError` for fewer than 16 bytes.

## Firewall

The firewall is given certificate and CA pool objects. A certificate needs a
`details` attribute with `name`, `issuer`, `inverted_groups` (a set of group
names), `ips` and `subnets`; the addresses in `ips` and `subnets` are the local
addresses the firewall will handle. A CA pool is only consulted for rules that
name a CA, through `get_ca_for_cert(cert)`.

```python
from datetime import timedelta
from types import SimpleNamespace

from nebulamesh.firewall import PROTO_TCP, Firewall, FirewallPacket
from nebulamesh.netutil import ip2int

cert = SimpleNamespace(details=SimpleNamespace(
    name="host1", issuer="ca-fingerprint", inverted_groups={"web"},
    ips=["10.0.0.1/24"], subnets=[]))

fw = Firewall(timedelta(minutes=12), timedelta(minutes=3), timedelta(minutes=10), cert)
fw.add_rule(True, PROTO_TCP, 443, 443, ["web"], "", None, "", "")

packet = FirewallPacket(local_ip=ip2int("10.0.0.1"), remote_ip=ip2int("10.0.0.2"),
                        local_port=443, remote_port=50000, protocol=PROTO_TCP)
fw.drop(b"", packet, True, cert, None)   # False: allowed, and now tracked
fw.conntrack_count()                      # 1
fw.rule_hash()                            # SHA-256 hex digest of the rules added
```

Rules can also come from a configuration mapping:

```python
from nebulamesh.firewall import new_firewall_from_config

config = {"firewall": {
    "conntrack": {"tcp_timeout": "12m"},
    "inbound": [{"port": "443", "proto": "tcp", "group": "web"}],
    "outbound": [{"port": "any", "proto": "any", "host": "any"}],
}}
fw = new_firewall_from_config(cert, config)
```

Port specifications are parsed by `parse_port`:

```python
from nebulamesh.firewall import parse_port

parse_port("any")        # (0, 0)
parse_port("fragment")   # (-1, -1)
parse_port(" 1 - 2 ")    # (1, 2)
```

Measured TCP round trips, in nanoseconds, are kept in `Firewall.tcp_rtt_samples`.

## Host maps

```python
import ipaddress

from nebulamesh.hostmap import HostMap
from nebulamesh.netutil import UdpAddr, ip2int

hosts = HostMap("main", ipaddress.ip_network("10.128.0.0/16"),
                [ipaddress.ip_network("192.168.1.0/24")])
hosts.add_remote(ip2int("10.128.0.5"), UdpAddr.from_string("1.0.0.1:4242"))
info = hosts.query_vpn_ip(ip2int("10.128.0.5"))
print(info.remote)   # 1.0.0.1:4242
```

`HostInfo.best_remote` prefers an address in a preferred range, then a public
address; `rotate_remote` steps through the candidates in order.

## Lighthouse and handshakes

`LightHouse` and `HandshakeManager` send through objects you supply:

- a writer with `send_message_to_vpn_ip(message_type, subtype, vpn_ip, payload)`;
- an outside connection (and punch connection) with `write_to(data, addr)`.

`LightHouse.query` sends a query to every lighthouse, then returns the cached
addresses or raises `HostUnknownError`. `NebulaMeta.to_bytes` and
`NebulaMeta.from_bytes` encode and decode the control messages.

`HandshakeManager.next_outbound_tick(now, writer)` and `next_inbound_tick(now)`
take instants as datetimes or as integer nanoseconds; outbound handshakes are
resent from `HostInfo.handshake_packet[0]` until 20 attempts are used, and
inbound ones are dropped after 10 seconds.

## What this package does not do

It holds no tunnel device, opens no UDP sockets and runs no node: there is no
command to start. It does not perform the handshake cryptography or build
handshake packets, does not parse or verify certificates, does not read
configuration files (configuration is a plain mapping), and does not export
metrics.

## Running the tests

```
pip install .[test]
pytest
```