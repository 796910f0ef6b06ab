import hashlib
import os
import socket
import struct
import threading
import time

import pytest

from icemux.errors import ClosedPipeError, IceMuxError, InvalidAddressError, StunDecodeError
from icemux.streaming import RECEIVE_MTU
from icemux.stun import AttrType, Message
from icemux.udp_mux import UDPMuxDefault, UDPMuxParams


@pytest.fixture
def make_mux():
    created = []

    def factory(host="127.0.0.1", serve=True):
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.bind((host, 0))
        mux = UDPMuxDefault(UDPMuxParams(udp_conn=sock))
        thread = None
        if serve:
            thread = threading.Thread(target=mux.serve, daemon=True)
            thread.start()
        created.append((mux, thread))
        return mux, thread

    yield factory
    for mux, thread in created:
        mux.close()
        if thread is not None:
            thread.join(5)


@pytest.fixture
def remote_sockets():
    socks = []

    def factory(target):
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.settimeout(5)
        sock.connect(target)
        socks.append(sock)
        return sock

    yield factory
    for sock in socks:
        sock.close()


def _stun(ufrag):
    msg = Message()
    msg.add(AttrType.USERNAME, (ufrag + ":otherufrag").encode())
    return msg.encode()


def _packet(seq):
    body = os.urandom(RECEIVE_MTU - 36)
    return struct.pack("<I", seq) + hashlib.sha256(body).digest() + body


def _verify(packet, seq):
    assert struct.unpack("<I", packet[:4])[0] == seq
    assert hashlib.sha256(packet[36:]).digest() == packet[4:36]


def _exchange(pkt_conn, remote, ufrag, count=8):
    remote.send(b"dropped bytes")
    time.sleep(0.1)

    raw = _stun(ufrag)
    pkt_conn.write_to(raw, remote.getsockname())
    assert remote.recv(RECEIVE_MTU) == raw

    for seq in range(count):
        remote.send(_packet(seq))
        data, addr = pkt_conn.read_from(RECEIVE_MTU)
        assert len(data) == RECEIVE_MTU
        _verify(data, seq)
        pkt_conn.write_to(data, addr)
        echo = remote.recv(RECEIVE_MTU)
        assert len(echo) == RECEIVE_MTU
        _verify(echo, seq)


def test_mux_loopback_connection(make_mux, remote_sockets):
    mux, thread = make_mux()
    pkt_conn = mux.get_conn("ufrag1", mux.local_addr())
    assert pkt_conn.local_addr == mux.local_addr()
    remote = remote_sockets(mux.local_addr())
    _exchange(pkt_conn, remote, "ufrag1")

    mux.close()
    thread.join(5)
    assert not thread.is_alive()
    with pytest.raises(ClosedPipeError):
        mux.get_conn("failufrag", mux.local_addr())


def test_mux_unspecified_address(make_mux, remote_sockets):
    mux, _ = make_mux("0.0.0.0")
    port = mux.local_addr()[1]
    assert ("127.0.0.1", port) in mux.get_listen_addresses()
    pkt_conn = mux.get_conn("ufrag2", mux.local_addr())
    remote = remote_sockets(("127.0.0.1", port))
    _exchange(pkt_conn, remote, "ufrag2")


def test_unspecified_mux_separates_families(make_mux):
    mux, _ = make_mux("0.0.0.0", serve=False)
    port = mux.local_addr()[1]
    conn4 = mux.get_conn("u", ("0.0.0.0", port))
    conn6 = mux.get_conn("u", ("::", port))
    assert conn4 is not conn6
    assert mux.get_conn("u", ("0.0.0.0", port)) is conn4


def test_listen_addresses_of_specific_mux(make_mux):
    mux, _ = make_mux(serve=False)
    assert mux.get_listen_addresses() == [mux.local_addr()]


def test_get_conn_rejects_foreign_address(make_mux):
    mux, _ = make_mux(serve=False)
    with pytest.raises(InvalidAddressError):
        mux.get_conn("ufrag", ("127.0.0.2", mux.local_addr()[1]))


def test_get_conn_reuses_and_remove_forgets(make_mux):
    mux, _ = make_mux(serve=False)
    first = mux.get_conn("ufrag", mux.local_addr())
    assert mux.get_conn("ufrag", mux.local_addr()) is first
    mux.remove_conn_by_ufrag("ufrag")
    second = mux.get_conn("ufrag", mux.local_addr())
    assert second is not first
    assert not first.is_closed()


def test_closing_conn_removes_it_from_mux(make_mux):
    mux, _ = make_mux(serve=False)
    first = mux.get_conn("ufrag", mux.local_addr())
    first.close()
    second = mux.get_conn("ufrag", mux.local_addr())
    assert second is not first
    assert not second.is_closed()


def test_close_closes_conns(make_mux):
    mux, _ = make_mux(serve=False)
    conn = mux.get_conn("ufrag", mux.local_addr())
    mux.close()
    assert mux.is_closed()
    assert conn.is_closed()
    with pytest.raises(EOFError):
        conn.read_from()


def test_handle_stun_message_routes_by_ufrag(make_mux):
    mux, _ = make_mux(serve=False)
    conn = mux.get_conn("ufrag", mux.local_addr())
    raw = _stun("ufrag")
    remote = ("127.0.0.1", 5000)
    assert mux.handle_stun_message(remote, raw) is True
    assert conn.read_from() == (raw, remote)


def test_handle_stun_message_ignores_non_stun(make_mux):
    mux, _ = make_mux(serve=False)
    assert mux.handle_stun_message(("127.0.0.1", 5000), b"hello world") is False


def test_handle_stun_message_unknown_ufrag(make_mux):
    mux, _ = make_mux(serve=False)
    with pytest.raises(IceMuxError):
        mux.handle_stun_message(("127.0.0.1", 5000), _stun("nobody"))


def test_handle_stun_message_without_username(make_mux):
    mux, _ = make_mux(serve=False)
    with pytest.raises(StunDecodeError):
        mux.handle_stun_message(("127.0.0.1", 5000), Message().encode())