import ipaddress
import socket
import threading
import time

import pytest

from icemux.errors import IceMuxError, WriteSTUNMessageError, XORMappedAddrTimeoutError
from icemux.streaming import RECEIVE_MTU
from icemux.stun import METHOD_BINDING, AttrType, Message, MessageClass, XORMappedAddress
from icemux.udp_mux_universal import UniversalUDPMuxDefault, UniversalUDPMuxParams

TEST_XOR_IP = "213.141.156.236"
TEST_XOR_PORT = 21254


def _bound_socket():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    return sock


@pytest.fixture
def universal_mux():
    mux = UniversalUDPMuxDefault(UniversalUDPMuxParams(udp_conn=_bound_socket()))
    thread = threading.Thread(target=mux.serve, daemon=True)
    thread.start()
    yield mux
    mux.close()
    thread.join(timeout=5)


@pytest.fixture
def remote(universal_mux):
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.settimeout(2)
    sock.connect(universal_mux.local_addr())
    yield sock
    sock.close()


def test_default_cache_ttl_is_25_seconds():
    sock = _bound_socket()
    mux = UniversalUDPMuxDefault(UniversalUDPMuxParams(udp_conn=sock))
    try:
        assert mux.params.xor_mapped_addr_cache_ttl == 25.0
    finally:
        mux.close()


def test_custom_cache_ttl_is_kept():
    sock = _bound_socket()
    mux = UniversalUDPMuxDefault(
        UniversalUDPMuxParams(udp_conn=sock, xor_mapped_addr_cache_ttl=3.0)
    )
    try:
        assert mux.params.xor_mapped_addr_cache_ttl == 3.0
        assert mux.local_addr() == sock.getsockname()
    finally:
        mux.close()


def test_xor_mapped_address_discovery(universal_mux, remote):
    mux = universal_mux
    pkt_conn = mux.get_conn("ufrag4", mux.local_addr())
    mux.params.xor_mapped_addr_cache_ttl = 0.5
    server_addr = remote.getsockname()
    results = {}

    def discover():
        try:
            results["addr"] = mux.get_xor_mapped_addr(server_addr, 2.0)
        except Exception as err:  # recorded for the assertion below
            results["error"] = err

    thread = threading.Thread(target=discover)
    thread.start()

    request = Message.decode(remote.recv(RECEIVE_MTU))
    assert request.method == METHOD_BINDING
    assert request.message_class == MessageClass.REQUEST

    response = Message()
    response.add(AttrType.USERNAME, b"ufrag4:otherufrag")
    XORMappedAddress(TEST_XOR_IP, TEST_XOR_PORT).add_to(response)
    raw = response.encode()
    remote.send(raw)

    thread.join(timeout=5)
    assert "error" not in results
    expected = XORMappedAddress(ipaddress.ip_address(TEST_XOR_IP), TEST_XOR_PORT)
    assert results["addr"] == expected

    # The response is still passed on to the muxed connection.
    data, addr = pkt_conn.read_from(RECEIVE_MTU)
    assert data == raw
    assert addr == server_addr

    # Cached: no second request goes out.
    assert mux.get_xor_mapped_addr(server_addr, 0.01) == expected
    remote.settimeout(0.2)
    with pytest.raises(socket.timeout):
        remote.recv(RECEIVE_MTU)
    remote.settimeout(2)

    # After expiry a new request is sent, and nobody answers it.
    time.sleep(0.6)
    with pytest.raises(XORMappedAddrTimeoutError):
        mux.get_xor_mapped_addr(server_addr, 0.05)
    again = Message.decode(remote.recv(RECEIVE_MTU))
    assert again.method == METHOD_BINDING
    assert again.transaction_id != request.transaction_id


def test_get_xor_mapped_addr_times_out_without_answer(universal_mux, remote):
    with pytest.raises(XORMappedAddrTimeoutError):
        universal_mux.get_xor_mapped_addr(remote.getsockname(), 0.05)
    request = Message.decode(remote.recv(RECEIVE_MTU))
    assert request.message_class == MessageClass.REQUEST


def test_get_xor_mapped_addr_on_closed_mux_fails_to_write(universal_mux):
    universal_mux.close()
    with pytest.raises(WriteSTUNMessageError):
        universal_mux.get_xor_mapped_addr(("127.0.0.1", 3478), 0.05)


def test_get_conn_for_url_is_unique_per_server(universal_mux):
    local = universal_mux.local_addr()
    stun_conn = universal_mux.get_conn_for_url("ufrag", "stun:127.0.0.1:3478", local)
    plain_conn = universal_mux.get_conn("ufrag", local)
    assert stun_conn.key == "ufragstun:127.0.0.1:3478"
    assert plain_conn.key == "ufrag"
    assert universal_mux.get_conn_for_url("ufrag", "stun:127.0.0.1:3478", local) is stun_conn


def test_get_relayed_addr_is_refused(universal_mux):
    with pytest.raises(IceMuxError, match="relayed"):
        universal_mux.get_relayed_addr(("127.0.0.1", 3478), 1.0)