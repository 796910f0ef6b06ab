"""A logical packet connection for one ufrag sharing a UDP socket."""

from __future__ import annotations

import ipaddress
import logging
import threading
from collections import deque
from ipaddress import IPv6Address

from icemux.errors import ClosedPipeError, InvalidAddressError, ShortBufferError
from icemux.streaming import RECEIVE_MTU

_log = logging.getLogger("icemux")


def ip_port(host, port) -> tuple:
    """Return a hashable ``(IPv6Address, port)`` key; IPv4 is mapped into IPv6."""
    try:
        ip = ipaddress.ip_address(host)
        port = int(port)
    except (ValueError, TypeError) as err:
        raise InvalidAddressError(f"invalid IP address {host!r}") from err
    if not 0 <= port <= 0xFFFF:
        raise InvalidAddressError(f"invalid port {port}")
    if ip.version == 4:
        ip = IPv6Address(bytes(10) + b"\xff\xff" + ip.packed)
    return ip, port


class UDPMuxedConn:
    """Packets for one remote ufrag, queued by the mux and sent through it.

    ``send(data, addr)`` writes to the shared socket, ``register_address(conn, key)``
    tells the mux about a new remote, and ``on_close()`` runs once on close.
    """

    def __init__(
        self,
        key: str,
        local_addr,
        send,
        register_address=None,
        on_close=None,
        logger: logging.Logger | None = None,
    ):
        self.key = key
        self.local_addr = local_addr
        self._send = send
        self._register_address = register_address
        self._on_close = on_close
        self._log = logger or _log
        self._cond = threading.Condition()
        self._queue: deque = deque()
        self._addresses: list = []
        self._closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def __repr__(self) -> str:
        return f"UDPMuxedConn(key={self.key!r}, local_addr={self.local_addr!r})"

    def read_from(self, size: int = RECEIVE_MTU):
        """Block for the next packet and return ``(data, remote_addr)``.

        Raises EOFError once the connection is closed.
        """
        with self._cond:
            while not self._queue and not self._closed:
                self._cond.wait()
            if not self._queue:
                raise EOFError("connection closed")
            data, addr = self._queue.popleft()
        if size < len(data):
            raise ShortBufferError(f"packet of {len(data)} bytes exceeds buffer of {size} bytes")
        return data, addr

    def write_to(self, data, addr) -> int:
        """Send ``data`` to ``addr`` through the mux, registering new remotes."""
        if self.is_closed():
            raise ClosedPipeError()
        if not (isinstance(addr, tuple) and len(addr) >= 2):
            raise InvalidAddressError("failed to cast address to a UDP address")
        key = ip_port(addr[0], addr[1])
        with self._cond:
            is_new = key not in self._addresses
            if is_new:
                self._addresses.append(key)
        if is_new and self._register_address is not None:
            self._register_address(self, key)
        return self._send(bytes(data), addr)

    def close(self) -> None:
        """Drop queued packets and wake blocked readers."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._queue.clear()
            self._cond.notify_all()
        if self._on_close is not None:
            self._on_close()

    def is_closed(self) -> bool:
        with self._cond:
            return self._closed

    def write_packet(self, data, addr) -> None:
        """Queue an incoming packet from ``addr``."""
        data = bytes(data)
        if len(data) > RECEIVE_MTU:
            raise ShortBufferError(
                f"packet of {len(data)} bytes exceeds buffer of {RECEIVE_MTU} bytes"
            )
        with self._cond:
            if self._closed:
                raise ClosedPipeError()
            self._queue.append((data, addr))
            self._cond.notify()

    def addresses(self) -> list:
        """The remote address keys this connection has sent to."""
        with self._cond:
            return list(self._addresses)

    def remove_address(self, addr) -> None:
        with self._cond:
            self._addresses = [a for a in self._addresses if a != addr]