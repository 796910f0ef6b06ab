"""A UDP mux that also learns server-reflexive addresses from STUN servers."""

from __future__ import annotations

import ipaddress
import logging
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Any

from icemux.errors import (
    IceMuxError,
    InvalidAddressError,
    NoXorAddrMappingError,
    StunDecodeError,
    WriteSTUNMessageError,
    XORMappedAddrTimeoutError,
)
from icemux.stun import AttrType, Message, XORMappedAddress, is_message
from icemux.udp_mux import UDPMuxDefault, UDPMuxParams

_DEFAULT_CACHE_TTL = 25.0


def _server_key(addr) -> tuple:
    if not (isinstance(addr, tuple) and len(addr) >= 2):
        raise InvalidAddressError(f"invalid address {addr!r}")
    try:
        ip = ipaddress.ip_address(addr[0])
        port = int(addr[1])
    except (ValueError, TypeError) as err:
        raise InvalidAddressError(f"invalid address {addr!r}") from err
    if ip.version == 6 and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return ip, port


@dataclass
class UniversalUDPMuxParams:
    """Settings for UniversalUDPMuxDefault; a TTL of 0 means 25 seconds."""

    udp_conn: Any
    logger: logging.Logger | None = None
    xor_mapped_addr_cache_ttl: float = 0.0


@dataclass
class _XORMapped:
    expires_at: float
    addr: XORMappedAddress | None = None
    waiter: threading.Event = field(default_factory=threading.Event)

    def close_waiters(self) -> None:
        self.waiter.set()

    def pending(self) -> bool:
        return self.addr is None

    def expired(self) -> bool:
        return self.expires_at < time.monotonic()

    def set_addr(self, addr: XORMappedAddress) -> None:
        self.addr = addr
        self.close_waiters()


class _StunAwareSocket:
    """Wraps the shared socket and picks up answers from STUN servers on receive."""

    def __init__(self, sock, mux: "UniversalUDPMuxDefault", logger: logging.Logger):
        self._sock = sock
        self._mux = mux
        self._log = logger

    def fileno(self) -> int:
        return self._sock.fileno()

    def getsockname(self):
        return self._sock.getsockname()

    def sendto(self, data, addr) -> int:
        return self._sock.sendto(data, addr)

    def close(self) -> None:
        self._sock.close()

    def recvfrom(self, bufsize: int):
        data, addr = self._sock.recvfrom(bufsize)
        if not is_message(data):
            return data, addr
        try:
            msg = Message.decode(data)
        except StunDecodeError as err:
            self._log.warning("Failed to handle decode ICE from %s: %s", addr, err)
            return data, addr
        try:
            key = _server_key(addr)
        except InvalidAddressError:
            return data, addr
        if self._mux._is_xor_mapped_response(msg, key):
            try:
                self._mux._handle_xor_mapped_response(key, msg)
            except (IceMuxError, KeyError) as err:
                self._log.debug("failed to get XOR-MAPPED-ADDRESS response: %s", err)
        return data, addr


class UniversalUDPMuxDefault(UDPMuxDefault):
    """UDP mux whose socket is also used to ask STUN servers for the mapped address.

    The mapped address of each STUN server is cached for
    ``params.xor_mapped_addr_cache_ttl`` seconds and shared by all users.
    """

    def __init__(self, params: UniversalUDPMuxParams):
        params = replace(params)
        if params.logger is None:
            params.logger = logging.getLogger("icemux")
        if params.xor_mapped_addr_cache_ttl == 0:
            params.xor_mapped_addr_cache_ttl = _DEFAULT_CACHE_TTL
        self.params = params
        self._xor_lock = threading.Lock()
        self._xor_mapped: dict[tuple, _XORMapped] = {}
        wrapper = _StunAwareSocket(params.udp_conn, self, params.logger)
        super().__init__(UDPMuxParams(udp_conn=wrapper, logger=params.logger))

    def get_relayed_addr(self, turn_addr, deadline: float):
        """Relayed candidates are not offered by this mux; always raises."""
        raise IceMuxError("relayed addresses are not supported by this mux")

    def get_conn_for_url(self, ufrag: str, url: str, addr):
        """Return a connection unique to ``ufrag`` and the server ``url``."""
        return self.get_conn(f"{ufrag}{url}", addr)

    def _is_xor_mapped_response(self, msg: Message, key: tuple) -> bool:
        with self._xor_lock:
            known = key in self._xor_mapped
        return known and msg.contains(AttrType.XOR_MAPPED_ADDRESS)

    def _handle_xor_mapped_response(self, key: tuple, msg: Message) -> None:
        with self._xor_lock:
            entry = self._xor_mapped.get(key)
            if entry is None:
                raise NoXorAddrMappingError()
            entry.set_addr(XORMappedAddress.get_from(msg))

    def get_xor_mapped_addr(self, server_addr, deadline: float) -> XORMappedAddress:
        """Return the address the STUN server at ``server_addr`` sees us at.

        A fresh cached value is returned at once; otherwise a binding request
        is sent and the answer awaited for up to ``deadline`` seconds.
        """
        key = _server_key(server_addr)
        with self._xor_lock:
            entry = self._xor_mapped.get(key)
            if entry is not None and entry.expired():
                entry.close_waiters()
                del self._xor_mapped[key]
                entry = None
            cached = entry.addr if entry is not None else None
        if cached is not None:
            return cached

        try:
            waiter = self._write_stun(server_addr, key)
        except OSError as err:
            raise WriteSTUNMessageError(f"failed to send STUN message: {err}") from err

        if not waiter.wait(deadline):
            raise XORMappedAddrTimeoutError()
        with self._xor_lock:
            entry = self._xor_mapped.get(key)
            addr = entry.addr if entry is not None else None
        if addr is None:
            raise NoXorAddrMappingError()
        return addr

    def _write_stun(self, server_addr, key: tuple) -> threading.Event:
        with self._xor_lock:
            entry = self._xor_mapped.get(key)
            if entry is None:
                entry = _XORMapped(
                    expires_at=time.monotonic() + self.params.xor_mapped_addr_cache_ttl
                )
                self._xor_mapped[key] = entry
            request = Message()
            self._conn.sendto(request.encode(), server_addr)
            return entry.waiter