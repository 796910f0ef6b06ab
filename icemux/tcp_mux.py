"""Accept ICE TCP connections and group them into packet connections by ufrag."""

from __future__ import annotations

import ipaddress
import logging
import select
import socket
import threading
from dataclasses import dataclass, replace
from typing import Any

from icemux.errors import (
    ClosedPipeError,
    GetTransportAddressError,
    InvalidAddressError,
    ShortBufferError,
    StunDecodeError,
)
from icemux.streaming import read_streaming_packet
from icemux.stun import METHOD_BINDING, AttrType, Message
from icemux.tcp_packet_conn import TCPPacketConn

_FIRST_PACKET_MAX_SIZE = 512
_DEFAULT_TIMEOUT = 30.0


def _ip_key(ip) -> str:
    """Canonical text form of an IP address, IPv4-mapped addresses as IPv4."""
    try:
        if isinstance(ip, (bytes, bytearray)):
            addr = ipaddress.ip_address(bytes(ip))
        else:
            addr = ipaddress.ip_address(str(ip))
    except ValueError as err:
        raise InvalidAddressError(f"invalid IP address {ip!r}") from err
    if addr.version == 6 and addr.ipv4_mapped is not None:
        addr = addr.ipv4_mapped
    return str(addr)


def _is_ipv6_host(host: str) -> bool:
    addr = ipaddress.ip_address(host)
    return addr.version == 6 and addr.ipv4_mapped is None


def _close_quietly(sock) -> None:
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    try:
        sock.close()
    except OSError:
        pass


@dataclass
class TCPMuxParams:
    """Settings for TCPMuxDefault.

    ``write_buffer_size`` of 0 makes writes block until sent; otherwise writes
    beyond the buffered amount are refused. Timeouts of 0 fall back to 30 s;
    a negative ``first_stun_bind_timeout`` disables the first-packet deadline.
    """

    listener: Any
    logger: logging.Logger | None = None
    read_buffer_size: int = 0
    write_buffer_size: int = 0
    first_stun_bind_timeout: float = 0.0
    alive_duration_for_conn_from_stun: float = 0.0


class TCPMuxDefault:
    """Multiplexes accepted TCP connections into packet connections keyed by ufrag."""

    def __init__(self, params: TCPMuxParams):
        params = replace(params)
        if params.logger is None:
            params.logger = logging.getLogger("icemux")
        if params.first_stun_bind_timeout == 0:
            params.first_stun_bind_timeout = _DEFAULT_TIMEOUT
        if params.alive_duration_for_conn_from_stun == 0:
            params.alive_duration_for_conn_from_stun = _DEFAULT_TIMEOUT
        self._params = params
        self._log = params.logger
        self._lock = threading.Lock()
        self._closed = False
        self._conns_ipv4: dict[str, dict[str, TCPPacketConn]] = {}
        self._conns_ipv6: dict[str, dict[str, TCPPacketConn]] = {}
        self._pending: set = set()
        self._threads: list[threading.Thread] = []
        self._threads_lock = threading.Lock()
        self._wake_r, self._wake_w = socket.socketpair()
        self._spawn(self._accept_loop, name="icemux-tcp-accept")

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def _spawn(self, target, *args, name: str = "icemux-tcp") -> None:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        with self._threads_lock:
            self._threads = [t for t in self._threads if t.is_alive()]
            self._threads.append(thread)
        thread.start()

    def _accept_loop(self) -> None:
        listener = self._params.listener
        self._log.info("Listening TCP on %s", self.local_addr())
        while True:
            try:
                ready, _, _ = select.select([listener, self._wake_r], [], [])
            except (OSError, ValueError) as err:
                self._log.info("Error accepting connection: %s", err)
                return
            if self._wake_r in ready or self._closed:
                return
            try:
                sock, remote = listener.accept()
            except OSError as err:
                self._log.info("Error accepting connection: %s", err)
                return
            sock.settimeout(None)
            with self._lock:
                if self._closed:
                    _close_quietly(sock)
                    return
                self._pending.add(sock)
            self._log.debug("Accepted connection from: %s to %s", remote, sock.getsockname())
            self._spawn(self._handle_conn, sock, name="icemux-tcp-handshake")

    def local_addr(self):
        """The address the listener is bound to."""
        return self._params.listener.getsockname()

    def get_conn_by_ufrag(self, ufrag: str, is_ipv6: bool, local_ip) -> TCPPacketConn:
        """Return the packet connection for ``ufrag`` and ``local_ip``, creating it if needed."""
        with self._lock:
            if self._closed:
                raise ClosedPipeError()
            conn = self._get_conn(ufrag, is_ipv6, local_ip)
            if conn is not None:
                conn.clear_alive_timer()
                return conn
            return self._create_conn(ufrag, is_ipv6, local_ip, from_stun=False)

    def _conns_for(self, is_ipv6: bool) -> dict[str, dict[str, TCPPacketConn]]:
        return self._conns_ipv6 if is_ipv6 else self._conns_ipv4

    def _get_conn(self, ufrag: str, is_ipv6: bool, local_ip) -> TCPPacketConn | None:
        conns = self._conns_for(is_ipv6).get(ufrag)
        if conns is None:
            return None
        return conns.get(_ip_key(local_ip))

    def _create_conn(self, ufrag: str, is_ipv6: bool, local_ip, from_stun: bool) -> TCPPacketConn:
        listen_addr = self.local_addr()
        if not (isinstance(listen_addr, tuple) and len(listen_addr) >= 2):
            raise GetTransportAddressError()
        key = _ip_key(local_ip)
        alive = self._params.alive_duration_for_conn_from_stun if from_stun else 0.0
        conn = TCPPacketConn(
            local_addr=(key, listen_addr[1]),
            read_buffer=self._params.read_buffer_size,
            write_buffer=self._params.write_buffer_size,
            alive_duration=alive,
            logger=self._log,
        )
        self._conns_for(is_ipv6).setdefault(ufrag, {})[key] = conn
        self._spawn(self._watch_conn, conn, ufrag, key, name="icemux-tcp-watch")
        return conn

    def _watch_conn(self, conn: TCPPacketConn, ufrag: str, key: str) -> None:
        conn.wait_closed()
        self._remove_conn_by_ufrag_and_local_host(ufrag, key)

    def _close_and_log(self, closer) -> None:
        try:
            closer.close()
        except OSError as err:
            self._log.warning("Error closing connection: %s", err)

    def _reject(self, sock, message: str, *args) -> None:
        _close_quietly(sock)
        self._log.warning(message, *args)

    def _handle_conn(self, sock) -> None:
        try:
            remote = sock.getpeername()
            local = sock.getsockname()
        except OSError as err:
            with self._lock:
                self._pending.discard(sock)
            self._reject(sock, "Failed to get addresses of accepted connection: %s", err)
            return
        timeout = self._params.first_stun_bind_timeout
        try:
            if timeout > 0:
                sock.settimeout(timeout)
            try:
                data = read_streaming_packet(sock, _FIRST_PACKET_MAX_SIZE)
            except ShortBufferError as err:
                self._reject(sock, "Buffer too small for first packet from %s: %s", remote, err)
                return
            except (OSError, EOFError) as err:
                self._reject(sock, "Error reading first packet from %s: %s", remote, err)
                return
        finally:
            with self._lock:
                self._pending.discard(sock)
        try:
            sock.settimeout(None)
        except OSError as err:
            self._log.warning("Failed to reset read deadline from %s: %s", remote, err)

        try:
            msg = Message.decode(data)
        except StunDecodeError as err:
            self._reject(sock, "Failed to handle decode ICE from %s to %s: %s", remote, local, err)
            return
        if msg.method != METHOD_BINDING:
            self._reject(sock, "Not a STUN message from %s to %s", remote, local)
            return
        for attr_type, value in msg.attributes:
            self._log.debug("Message attribute: %r %r", attr_type, value)
        try:
            username = msg.get(AttrType.USERNAME)
        except KeyError:
            self._reject(sock, "No Username attribute in STUN message from %s to %s", remote, local)
            return
        ufrag = username.decode("utf-8", errors="replace").split(":")[0]
        self._log.debug("Ufrag: %s", ufrag)
        try:
            is_ipv6 = _is_ipv6_host(remote[0])
            local_ip = local[0]
        except (ValueError, IndexError, TypeError):
            self._reject(sock, "Failed to get host in STUN message from %s to %s", remote, local)
            return

        with self._lock:
            if self._closed:
                packet_conn = None
            else:
                packet_conn = self._get_conn(ufrag, is_ipv6, local_ip)
                if packet_conn is None:
                    try:
                        packet_conn = self._create_conn(ufrag, is_ipv6, local_ip, from_stun=True)
                    except (GetTransportAddressError, InvalidAddressError):
                        packet_conn = None
        if packet_conn is None:
            self._reject(
                sock, "Failed to create packetConn for STUN message from %s to %s", remote, local
            )
            return
        try:
            packet_conn.add_conn(sock, data)
        except (OSError, ClosedPipeError, ValueError) as err:
            self._reject(
                sock, "Error adding conn to tcpPacketConn from %s to %s: %s", remote, local, err
            )
        except Exception as err:  # ConnectionAddrExistsError and the like
            self._reject(
                sock, "Error adding conn to tcpPacketConn from %s to %s: %s", remote, local, err
            )

    def close(self) -> None:
        """Close the listener and every packet connection, then wait for the workers."""
        with self._lock:
            self._closed = True
            conns = [
                conn
                for table in (self._conns_ipv4, self._conns_ipv6)
                for by_ip in table.values()
                for conn in by_ip.values()
            ]
            self._conns_ipv4 = {}
            self._conns_ipv6 = {}
            pending = list(self._pending)
            self._pending.clear()
        for conn in conns:
            self._close_and_log(conn)
        try:
            self._wake_w.send(b"\0")
        except OSError:
            pass
        error = None
        try:
            self._params.listener.close()
        except OSError as err:
            error = err
        for sock in pending:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
        current = threading.current_thread()
        while True:
            with self._threads_lock:
                alive = [t for t in self._threads if t.is_alive() and t is not current]
            if not alive:
                break
            for thread in alive:
                thread.join()
        self._wake_r.close()
        self._wake_w.close()
        if error is not None:
            raise error

    def remove_conn_by_ufrag(self, ufrag: str) -> None:
        """Close and forget every packet connection for ``ufrag``."""
        with self._lock:
            removed = []
            for table in (self._conns_ipv4, self._conns_ipv6):
                by_ip = table.pop(ufrag, None)
                if by_ip:
                    removed.extend(by_ip.values())
        # Closed outside the lock: closing may block on reader threads.
        for conn in removed:
            self._close_and_log(conn)

    def _remove_conn_by_ufrag_and_local_host(self, ufrag: str, key: str) -> None:
        with self._lock:
            removed = []
            for table in (self._conns_ipv4, self._conns_ipv6):
                by_ip = table.get(ufrag)
                if by_ip and key in by_ip:
                    removed.append(by_ip.pop(key))
                    if not by_ip:
                        del table[ufrag]
        for conn in removed:
            self._close_and_log(conn)