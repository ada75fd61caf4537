"""Pending handshakes: retrying outbound attempts and expiring inbound ones."""

from __future__ import annotations

import logging
import secrets
import threading
import time
from collections import deque
from collections.abc import Hashable, Iterable
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Union

from .hostmap import HostInfo, HostMap, HostNotFoundError, NetworkLike
from .lighthouse import HostUnknownError, LightHouse

logger = logging.getLogger(__name__)

# Total time to try a handshake is the sum of HANDSHAKE_TRY_INTERVAL * attempt
# over HANDSHAKE_RETRIES attempts.
HANDSHAKE_TRY_INTERVAL = timedelta(milliseconds=100)
HANDSHAKE_RETRIES = 20
# Attempts made against the best remote before rotating through the others.
HANDSHAKE_WAIT_ROTATION = 5
INBOUND_HANDSHAKE_TIMEOUT = timedelta(seconds=10)

DurationLike = Union[timedelta, int]
InstantLike = Union[datetime, int]

_NAIVE_EPOCH = datetime(1970, 1, 1)
_AWARE_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _timedelta_ns(value: timedelta) -> int:
    return (value.days * 86400 + value.seconds) * 1_000_000_000 + value.microseconds * 1000


def _duration_ns(value: DurationLike) -> int:
    """Durations are timedeltas or integer nanoseconds."""
    if isinstance(value, timedelta):
        return _timedelta_ns(value)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    raise TypeError(f"unsupported duration: {value!r}")


def _instant_ns(value: InstantLike) -> int:
    """Instants are datetimes or integer nanoseconds of a monotonic clock."""
    if isinstance(value, datetime):
        epoch = _NAIVE_EPOCH if value.tzinfo is None else _AWARE_EPOCH
        return _timedelta_ns(value - epoch)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    raise TypeError(f"unsupported instant: {value!r}")


class DeadlineQueue:
    """A timer wheel driven by explicit clock ticks.

    Items are placed into buckets a whole number of ticks ahead of the current
    position; advancing the clock moves expired buckets into a queue that
    purge drains one item at a time. A queue must be driven with one kind of
    instant: either datetimes or integer nanoseconds.
    """

    def __init__(self, tick: DurationLike, maximum: DurationLike) -> None:
        self.tick_ns = _duration_ns(tick)
        self.max_ns = _duration_ns(maximum)
        if self.tick_ns <= 0:
            raise ValueError("tick duration must be positive")
        if self.max_ns < self.tick_ns:
            raise ValueError("maximum duration must not be shorter than the tick")
        self.wheel_len = self.max_ns // self.tick_ns + 1
        self._wheel: list[deque[Hashable]] = [deque() for _ in range(self.wheel_len)]
        self._current = 0
        self._last_tick: Optional[int] = None
        self._expired: deque[Hashable] = deque()
        self._lock = threading.Lock()

    def add(self, item: Hashable, timeout: DurationLike) -> None:
        """Schedule item to expire after timeout, clamped to the wheel's range."""
        timeout_ns = min(max(_duration_ns(timeout), self.tick_ns), self.max_ns)
        ticks = (timeout_ns - 1) // self.tick_ns + 1
        with self._lock:
            # One extra tick since the current one may be almost over.
            slot = (self._current + ticks + 1) % self.wheel_len
            self._wheel[slot].append(item)

    def advance(self, now: InstantLike) -> None:
        """Move the wheel forward to now, collecting every bucket passed."""
        now_ns = _instant_ns(now)
        with self._lock:
            if self._last_tick is None:
                self._last_tick = now_ns
            elapsed = now_ns - self._last_tick
            ticks = elapsed // self.tick_ns if elapsed > 0 else 0
            for _ in range(ticks):
                self._current = (self._current + 1) % self.wheel_len
                bucket = self._wheel[self._current]
                self._expired.extend(bucket)
                bucket.clear()
            if ticks:
                self._last_tick = now_ns

    def purge(self) -> Optional[Hashable]:
        """Return the next expired item, or None when none are left."""
        with self._lock:
            return self._expired.popleft() if self._expired else None


def generate_index() -> int:
    """A random 32-bit session index."""
    index = int.from_bytes(secrets.token_bytes(4), "big")
    logger.debug("Generated index %d", index)
    return index


class HandshakeManager:
    """Tracks hosts whose handshakes are in progress and retries or expires them."""

    def __init__(
        self,
        tun_cidr: NetworkLike,
        preferred_ranges: Optional[Iterable[NetworkLike]],
        main_host_map: HostMap,
        light_house: LightHouse,
        outside: Any,
    ) -> None:
        self.pending_host_map = HostMap("pending", tun_cidr, preferred_ranges)
        self.main_host_map = main_host_map
        self.light_house = light_house
        self.outside = outside
        window = HANDSHAKE_TRY_INTERVAL * HANDSHAKE_RETRIES
        self.outbound_timer = DeadlineQueue(HANDSHAKE_TRY_INTERVAL, window)
        self.inbound_timer = DeadlineQueue(HANDSHAKE_TRY_INTERVAL, window)

    def run(self, writer: Any, stop: threading.Event) -> None:
        """Drive both timers every try interval until stop is set."""
        interval = HANDSHAKE_TRY_INTERVAL.total_seconds()
        while not stop.wait(interval):
            now = time.monotonic_ns()
            self.next_outbound_tick(now, writer)
            self.next_inbound_tick(now)

    def next_outbound_tick(self, now: InstantLike, writer: Any) -> None:
        """Resend due handshakes, giving up on hosts that used every retry."""
        self.outbound_timer.advance(now)
        while (vpn_ip := self.outbound_timer.purge()) is not None:
            try:
                index = self.pending_host_map.index_by_vpn_ip(vpn_ip)
                hostinfo = self.pending_host_map.query_vpn_ip(vpn_ip)
            except HostNotFoundError:
                continue

            if hostinfo.handshake_counter < HANDSHAKE_RETRIES and not hostinfo.handshake_complete:
                self._retry(vpn_ip, hostinfo, writer)
            else:
                self.pending_host_map.delete_vpn_ip(vpn_ip)
                self.pending_host_map.delete_index(index)

    def _retry(self, vpn_ip: int, hostinfo: HostInfo, writer: Any) -> None:
        if hostinfo.remote is None:
            # Hosts may come online while we retry, so keep asking the lighthouse.
            try:
                addrs = self.light_house.query(vpn_ip, writer)
            except HostUnknownError:
                pass
            else:
                for addr in addrs:
                    hostinfo.add_remote(addr)
                hostinfo.force_promote_best(self.main_host_map.preferred_ranges)

        hostinfo.handshake_counter += 1

        # Use the best remote for the first attempts, then rotate through the rest.
        if hostinfo.handshake_counter > HANDSHAKE_WAIT_ROTATION:
            hostinfo.rotate_remote()

        if hostinfo.handshake_ready and hostinfo.remote is not None:
            packet = hostinfo.handshake_packet.get(0, b"")
            try:
                self.outside.write_to(packet, hostinfo.remote)
            except OSError:
                logger.exception(
                    "Failed to send handshake message to %s (index %d)",
                    hostinfo.remote, hostinfo.local_index_id,
                )
            else:
                logger.info(
                    "Handshake message sent to %s (index %d, remote index %d)",
                    hostinfo.remote, hostinfo.local_index_id, hostinfo.remote_index_id,
                )

        self.outbound_timer.add(vpn_ip, HANDSHAKE_TRY_INTERVAL * hostinfo.handshake_counter)

    def next_inbound_tick(self, now: InstantLike) -> None:
        """Drop inbound handshakes that never completed."""
        self.inbound_timer.advance(now)
        while (index := self.inbound_timer.purge()) is not None:
            try:
                vpn_ip = self.pending_host_map.vpn_ip_by_index(index)
            except HostNotFoundError:
                continue
            self.pending_host_map.delete_index(index)
            self.pending_host_map.delete_vpn_ip(vpn_ip)

    def add_vpn_ip(self, vpn_ip: int) -> HostInfo:
        """Start tracking an outbound handshake to vpn_ip."""
        hostinfo = self.pending_host_map.add_vpn_ip(vpn_ip)
        self.outbound_timer.add(vpn_ip, HANDSHAKE_TRY_INTERVAL)
        return hostinfo

    def delete_vpn_ip(self, vpn_ip: int) -> None:
        self.pending_host_map.delete_vpn_ip(vpn_ip)

    def add_index(self, index: int, connection_state: Any) -> HostInfo:
        """Start tracking an inbound handshake under a new local index."""
        try:
            hostinfo = self.pending_host_map.add_index(index, connection_state)
        except ValueError as err:
            raise ValueError(f"Issue adding index: {index}") from err
        self.inbound_timer.add(index, INBOUND_HANDSHAKE_TIMEOUT)
        return hostinfo

    def add_index_host_info(self, index: int, hostinfo: HostInfo) -> None:
        self.pending_host_map.add_index_host_info(index, hostinfo)

    def delete_index(self, index: int) -> None:
        self.pending_host_map.delete_index(index)

    def query_index(self, index: int) -> HostInfo:
        return self.pending_host_map.query_index(index)