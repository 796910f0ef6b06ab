import hashlib
import ipaddress
import os
import socket
import struct
import threading
import time

import pytest

from icemux.errors import ClosedPipeError, NoUDPMuxAvailableError
from icemux.netutil import NetworkType
from icemux.streaming import RECEIVE_MTU
from icemux.stun import AttrType, Message
from icemux.udp_mux import UDPMuxDefault, UDPMuxParams
from icemux.udp_mux_multi import MultiUDPMuxDefault, multi_udp_mux_from_port

LOOPBACK = ipaddress.IPv4Address("127.0.0.1")


def _only_loopback(ip):
    return ip == LOOPBACK


def _bound_socket():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    return sock


@pytest.fixture
def multi():
    muxes = [UDPMuxDefault(UDPMuxParams(udp_conn=_bound_socket())) for _ in range(2)]
    threads = [threading.Thread(target=m.serve, daemon=True) for m in muxes]
    for thread in threads:
        thread.start()
    multi_mux = MultiUDPMuxDefault(*muxes)
    yield multi_mux
    multi_mux.close()
    for thread in threads:
        thread.join(timeout=5)


def _packet(seq):
    payload = os.urandom(1024 - 36)
    return struct.pack("<I", seq) + hashlib.sha256(payload).digest() + payload


def _verify(data, seq):
    assert struct.unpack("<I", data[:4])[0] == seq
    assert hashlib.sha256(data[36:]).digest() == data[4:36]


def _exchange(pkt_conn, ufrag):
    remote = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    remote.settimeout(5)
    try:
        remote.connect(pkt_conn.local_addr)
        remote.send(b"dropped bytes")
        time.sleep(0.01)

        msg = Message()
        msg.add(AttrType.USERNAME, f"{ufrag}:otherufrag".encode())
        raw = msg.encode()
        pkt_conn.write_to(raw, remote.getsockname())
        assert remote.recv(RECEIVE_MTU) == raw

        for seq in range(16):
            remote.send(_packet(seq))
            data, addr = pkt_conn.read_from(RECEIVE_MTU)
            assert len(data) == 1024
            assert addr == remote.getsockname()
            _verify(data, seq)
            pkt_conn.write_to(data, remote.getsockname())
            echoed = remote.recv(RECEIVE_MTU)
            _verify(echoed, seq)
    finally:
        remote.close()


def test_listen_addresses_cover_every_mux(multi):
    expected = [addr for mux in multi.muxes for addr in mux.get_listen_addresses()]
    assert multi.get_listen_addresses() == expected
    assert len(expected) == 2


def test_get_conn_routes_by_local_address(multi):
    first, second = multi.get_listen_addresses()
    conn1 = multi.get_conn("ufrag", first)
    conn2 = multi.get_conn("ufrag", second)
    assert conn1.local_addr == first
    assert conn2.local_addr == second
    assert multi.get_conn("ufrag", first) is conn1


def test_get_conn_unknown_address_raises(multi):
    with pytest.raises(NoUDPMuxAvailableError):
        multi.get_conn("ufrag", ("127.0.0.1", 9))


def test_connections_exchange_packets(multi):
    for ufrag in ("ufrag1", "ufrag2"):
        conns = [multi.get_conn(ufrag, addr) for addr in multi.get_listen_addresses()]
        for conn in conns:
            _exchange(conn, ufrag)
        for conn in conns:
            conn.close()
            assert conn.is_closed()


def test_close_prevents_new_connections(multi):
    addr = multi.get_listen_addresses()[0]
    multi.close()
    with pytest.raises(ClosedPipeError):
        multi.get_conn("failufrag", addr)


def test_remove_conn_by_ufrag_forgets_connections(multi):
    first, second = multi.get_listen_addresses()
    old1 = multi.get_conn("ufrag", first)
    old2 = multi.get_conn("ufrag", second)
    multi.remove_conn_by_ufrag("ufrag")
    new1 = multi.get_conn("ufrag", first)
    new2 = multi.get_conn("ufrag", second)
    assert new1 is not old1
    assert new2 is not old2
    assert new1.key == "ufrag"


class _FakeMux:
    def __init__(self, addr, error=None):
        self.addr = addr
        self.error = error
        self.closed = False
        self.removed = []

    def get_listen_addresses(self):
        return [self.addr]

    def remove_conn_by_ufrag(self, ufrag):
        self.removed.append(ufrag)

    def close(self):
        self.closed = True
        if self.error is not None:
            raise self.error


def test_close_reraises_last_error_after_closing_all():
    first_error = RuntimeError("first")
    last_error = RuntimeError("last")
    muxes = [
        _FakeMux(("127.0.0.1", 1000), first_error),
        _FakeMux(("127.0.0.1", 1001)),
        _FakeMux(("127.0.0.1", 1002), last_error),
    ]
    with pytest.raises(RuntimeError) as info:
        MultiUDPMuxDefault(*muxes).close()
    assert info.value is last_error
    assert all(mux.closed for mux in muxes)


def test_remove_conn_by_ufrag_reaches_every_mux():
    muxes = [_FakeMux(("127.0.0.1", 2000)), _FakeMux(("127.0.0.1", 2001))]
    MultiUDPMuxDefault(*muxes).remove_conn_by_ufrag("abc")
    assert [mux.removed for mux in muxes] == [["abc"], ["abc"]]


def test_from_port_listens_on_filtered_addresses():
    multi_mux = multi_udp_mux_from_port(
        0,
        ip_filter=_only_loopback,
        networks=[NetworkType.UDP4],
        read_buffer_size=65536,
        write_buffer_size=65536,
        include_loopback=True,
    )
    try:
        addrs = multi_mux.get_listen_addresses()
        assert len(multi_mux.muxes) == 1
        assert [addr[0] for addr in addrs] == ["127.0.0.1"]
        conn = multi_mux.get_conn("ufrag", addrs[0])
        assert conn.local_addr == addrs[0]
    finally:
        multi_mux.close()


def test_from_port_with_everything_filtered_has_no_muxes():
    multi_mux = multi_udp_mux_from_port(0, ip_filter=lambda ip: False, include_loopback=True)
    assert multi_mux.muxes == []
    assert multi_mux.get_listen_addresses() == []
    with pytest.raises(NoUDPMuxAvailableError):
        multi_mux.get_conn("ufrag", ("127.0.0.1", 1234))


def test_from_port_raises_when_port_is_taken():
    holder = _bound_socket()
    try:
        port = holder.getsockname()[1]
        with pytest.raises(OSError):
            multi_udp_mux_from_port(
                port,
                ip_filter=_only_loopback,
                networks=[NetworkType.UDP4],
                include_loopback=True,
            )
    finally:
        holder.close()