"""Several UDP muxes used together, e.g. one per local interface address."""

from __future__ import annotations

import ipaddress
import logging
import socket

from icemux.errors import NoUDPMuxAvailableError
from icemux.netutil import NetworkType, local_interface_addresses
from icemux.udp_mux import UDPMuxDefault, UDPMuxParams

_DEFAULT_NETWORKS = (NetworkType.UDP4, NetworkType.UDP6)


def _addr_key(addr):
    """Normalise a socket address so equal addresses compare equal."""
    if isinstance(addr, tuple) and len(addr) >= 2:
        try:
            ip = ipaddress.ip_address(addr[0])
            if ip.version == 6 and ip.ipv4_mapped is not None:
                ip = ip.ipv4_mapped
            return ip, int(addr[1])
        except (ValueError, TypeError):
            pass
    return addr


class MultiUDPMuxDefault:
    """Dispatches to one of several UDP muxes by the local address asked for."""

    def __init__(self, *muxes):
        self._muxes = list(muxes)
        self._local_addr_to_mux = {
            _addr_key(addr): mux
            for mux in self._muxes
            for addr in mux.get_listen_addresses()
        }

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    @property
    def muxes(self) -> list:
        return list(self._muxes)

    def get_conn(self, ufrag: str, addr):
        """Return the connection for ``ufrag`` from the mux listening on ``addr``."""
        mux = self._local_addr_to_mux.get(_addr_key(addr))
        if mux is None:
            raise NoUDPMuxAvailableError()
        return mux.get_conn(ufrag, addr)

    def remove_conn_by_ufrag(self, ufrag: str) -> None:
        """Remove the connections for ``ufrag`` from every mux."""
        for mux in self._muxes:
            mux.remove_conn_by_ufrag(ufrag)

    def close(self) -> None:
        """Close every mux; the last error raised by one of them is re-raised."""
        error = None
        for mux in self._muxes:
            try:
                mux.close()
            except Exception as err:
                error = err
        if error is not None:
            raise error

    def get_listen_addresses(self) -> list:
        """Every address any of the muxes listens on."""
        return [addr for mux in self._muxes for addr in mux.get_listen_addresses()]


def _listen_udp(ip, port: int) -> socket.socket:
    family = socket.AF_INET if ip.version == 4 else socket.AF_INET6
    sock = socket.socket(family, socket.SOCK_DGRAM)
    try:
        sock.bind((str(ip), port))
    except OSError:
        sock.close()
        raise
    return sock


def _set_buffer(sock: socket.socket, option: int, size: int) -> None:
    if size > 0:
        try:
            sock.setsockopt(socket.SOL_SOCKET, option, size)
        except OSError:
            pass


def multi_udp_mux_from_port(
    port: int,
    interface_filter=None,
    ip_filter=None,
    networks=_DEFAULT_NETWORKS,
    read_buffer_size: int = 0,
    write_buffer_size: int = 0,
    logger: logging.Logger | None = None,
    include_loopback: bool = False,
) -> MultiUDPMuxDefault:
    """Listen on ``port`` on every usable local address and mux them together.

    If any socket cannot be bound, the ones already opened are closed and the
    error is raised.
    """
    addrs = local_interface_addresses(interface_filter, ip_filter, list(networks), include_loopback)
    sockets: list[socket.socket] = []
    try:
        for addr in addrs:
            sock = _listen_udp(addr, port)
            _set_buffer(sock, socket.SO_RCVBUF, read_buffer_size)
            _set_buffer(sock, socket.SO_SNDBUF, write_buffer_size)
            sockets.append(sock)
    except OSError:
        for sock in sockets:
            sock.close()
        raise
    muxes = [UDPMuxDefault(UDPMuxParams(udp_conn=sock, logger=logger)) for sock in sockets]
    return MultiUDPMuxDefault(*muxes)