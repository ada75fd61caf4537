"""Overlay mesh node core: packet headers, IPv4 helpers, firewall, host maps, lighthouse cache and handshake timers."""

__version__ = "0.1.0"

__all__ = ["header", "netutil", "firewall", "hostmap", "lighthouse", "handshake_manager"]