"""Several ICE connections sharing one UDP socket, told apart by ufrag."""

from __future__ import annotations

import ipaddress
import logging
import select
import socket
import threading
from dataclasses import dataclass
from typing import Any

from icemux.errors import (
    ClosedPipeError,
    IceMuxError,
    InvalidAddressError,
    ShortBufferError,
    StunDecodeError,
)
from icemux.netutil import NetworkType, local_interface_addresses
from icemux.streaming import RECEIVE_MTU
from icemux.stun import AttrType, Message, is_message
from icemux.udp_muxed_conn import UDPMuxedConn, ip_port

_POLL_INTERVAL = 0.2


def _addr_key(addr) -> tuple:
    if not (isinstance(addr, tuple) and len(addr) >= 2):
        raise InvalidAddressError(f"invalid address {addr!r}")
    try:
        return ipaddress.ip_address(addr[0]), int(addr[1])
    except (ValueError, TypeError) as err:
        raise InvalidAddressError(f"invalid address {addr!r}") from err


def _is_ipv6_host(host) -> bool:
    ip = ipaddress.ip_address(host)
    return ip.version == 6 and ip.ipv4_mapped is None


def _is_ipv6_addr(addr) -> bool:
    try:
        return isinstance(addr, tuple) and len(addr) >= 2 and _is_ipv6_host(addr[0])
    except ValueError:
        return False


@dataclass
class UDPMuxParams:
    """Settings for UDPMuxDefault: a bound UDP socket and an optional logger."""

    udp_conn: Any
    logger: logging.Logger | None = None


class UDPMuxDefault:
    """Routes datagrams of a shared UDP socket to per-ufrag packet connections.

    Incoming traffic is dispatched either by ``serve()`` reading the socket or
    by feeding STUN packets to ``handle_stun_message()``.
    """

    def __init__(self, params: UDPMuxParams):
        self._conn = params.udp_conn
        self._log = params.logger or logging.getLogger("icemux")
        self._local_addr = self._conn.getsockname()
        self._lock = threading.Lock()
        self._addr_lock = threading.Lock()
        self._close_lock = threading.Lock()
        self._closed = threading.Event()
        self._conns_ipv4: dict[str, UDPMuxedConn] = {}
        self._conns_ipv6: dict[str, UDPMuxedConn] = {}
        self._address_map: dict[tuple, UDPMuxedConn] = {}
        self._local_addrs_for_unspecified = self._unspecified_addresses()
        self._local_key = _addr_key(self._local_addr)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def _unspecified_addresses(self) -> list:
        host, port = self._local_addr[0], self._local_addr[1]
        try:
            ip = ipaddress.ip_address(host)
        except ValueError:
            self._log.error("LocalAddr is not an IP address, got %r", self._local_addr)
            return []
        if not ip.is_unspecified:
            return []
        self._log.warning(
            "UDPMuxDefault should not listen on an unspecified address, "
            "use multi_udp_mux_from_port instead"
        )
        if ip.version == 4:
            networks = [NetworkType.UDP4]
        else:
            networks = [NetworkType.UDP4, NetworkType.UDP6]
        try:
            addrs = local_interface_addresses(None, None, networks, True)
        except (OSError, RuntimeError) as err:
            self._log.error("Failed to get local interfaces for unspecified addr: %s", err)
            return []
        return [(str(addr), port) for addr in addrs]

    def local_addr(self):
        """The address the shared socket is bound to."""
        return self._local_addr

    def get_listen_addresses(self) -> list:
        """The addresses this mux answers on."""
        if self._local_addrs_for_unspecified:
            return list(self._local_addrs_for_unspecified)
        return [self._local_addr]

    def _get_conn(self, ufrag: str, is_ipv6: bool) -> UDPMuxedConn | None:
        return (self._conns_ipv6 if is_ipv6 else self._conns_ipv4).get(ufrag)

    def get_conn(self, ufrag: str, addr) -> UDPMuxedConn:
        """Return the connection for ``ufrag`` on ``addr``, creating it if needed."""
        # A mux on an unspecified address accepts any local address.
        if not self._local_addrs_for_unspecified and self._local_key != _addr_key(addr):
            raise InvalidAddressError(f"address {addr!r} does not belong to this mux")
        is_ipv6 = _is_ipv6_addr(addr)
        with self._lock:
            if self._closed.is_set():
                raise ClosedPipeError()
            conn = self._get_conn(ufrag, is_ipv6)
            if conn is not None:
                return conn
            conn = UDPMuxedConn(
                key=ufrag,
                local_addr=self._local_addr,
                send=self._write_to,
                register_address=self._register_conn_for_address,
                on_close=lambda: self.remove_conn_by_ufrag(ufrag),
                logger=self._log,
            )
            (self._conns_ipv6 if is_ipv6 else self._conns_ipv4)[ufrag] = conn
            return conn

    def remove_conn_by_ufrag(self, ufrag: str) -> None:
        """Forget the connections for ``ufrag`` and the remote addresses they used."""
        with self._lock:
            removed = [
                conn
                for table in (self._conns_ipv4, self._conns_ipv6)
                for conn in [table.pop(ufrag, None)]
                if conn is not None
            ]
        if not removed:
            return
        with self._addr_lock:
            for conn in removed:
                for key in conn.addresses():
                    self._address_map.pop(key, None)

    def is_closed(self) -> bool:
        return self._closed.is_set()

    def close(self) -> None:
        """Close every connection and the socket; later calls do nothing."""
        with self._close_lock:
            if self._closed.is_set():
                return
            with self._lock:
                conns = list(self._conns_ipv4.values()) + list(self._conns_ipv6.values())
                self._conns_ipv4 = {}
                self._conns_ipv6 = {}
                self._closed.set()
            for conn in conns:
                conn.close()
            try:
                self._conn.close()
            except OSError:
                pass

    def _write_to(self, data: bytes, addr) -> int:
        return self._conn.sendto(data, addr)

    def _register_conn_for_address(self, conn: UDPMuxedConn, key: tuple) -> None:
        if self.is_closed():
            return
        with self._addr_lock:
            existing = self._address_map.get(key)
            if existing is not None and existing is not conn:
                existing.remove_address(key)
            self._address_map[key] = conn
        self._log.debug("Registered %s:%d for %s", key[0], key[1], conn.key)

    def _find_destination(self, data: bytes, addr) -> UDPMuxedConn | None:
        if not (isinstance(addr, tuple) and len(addr) >= 2):
            raise InvalidAddressError("underlying socket did not return a UDP address")
        key = ip_port(addr[0], addr[1])
        with self._addr_lock:
            destination = self._address_map.get(key)
        if destination is None and is_message(data):
            try:
                msg = Message.decode(data)
            except StunDecodeError as err:
                raise StunDecodeError(f"Failed to handle decode ICE from {addr}: {err}") from err
            try:
                username = msg.get(AttrType.USERNAME)
            except KeyError:
                raise StunDecodeError(
                    f"No Username attribute in STUN message from {addr}"
                ) from None
            ufrag = username.decode("utf-8", errors="replace").split(":")[0]
            is_ipv6 = _is_ipv6_host(addr[0])
            with self._lock:
                destination = self._get_conn(ufrag, is_ipv6)
        return destination

    def handle_stun_message(self, addr, data) -> bool:
        """Deliver a packet received elsewhere; return False if it is not STUN.

        Raises if the packet cannot be decoded or has no destination.
        """
        data = bytes(data)
        if not is_message(data):
            return False
        destination = self._find_destination(data, addr)
        if destination is None:
            self._log.debug("Dropping packet from %s", addr)
            raise IceMuxError(f"Dropping packet from {addr}")
        destination.write_packet(data, addr)
        return True

    def serve(self) -> None:
        """Read the socket and dispatch packets until the mux is closed."""
        try:
            while not self.is_closed():
                try:
                    ready, _, _ = select.select([self._conn], [], [], _POLL_INTERVAL)
                except (OSError, ValueError) as err:
                    if not self.is_closed():
                        self._log.error("Failed to read UDP packet: %s", err)
                    return
                if self.is_closed():
                    return
                if not ready:
                    continue
                try:
                    data, addr = self._conn.recvfrom(RECEIVE_MTU)
                except socket.timeout:
                    continue
                except OSError as err:
                    if not self.is_closed():
                        self._log.error("Failed to read UDP packet: %s", err)
                    return
                try:
                    destination = self._find_destination(data, addr)
                except InvalidAddressError as err:
                    self._log.error("Failed to create a new IP/Port host pair: %s", err)
                    return
                except StunDecodeError as err:
                    self._log.warning("%s", err)
                    continue
                if destination is None:
                    self._log.debug("Dropping packet from %s", addr)
                    continue
                try:
                    destination.write_packet(data, addr)
                except (ShortBufferError, ClosedPipeError) as err:
                    self._log.error("Failed to write packet: %s", err)
        finally:
            self.close()