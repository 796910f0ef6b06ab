"""RFC 4571 framing: each packet on a stream is preceded by a 2-byte big-endian length."""

import struct

from icemux.errors import ShortBufferError

STREAMING_PACKET_HEADER_LEN = 2
RECEIVE_MTU = 8192
MAX_PACKET_SIZE = 0xFFFF


def _recv_exactly(sock, count: int) -> bytes:
    data = bytearray()
    while len(data) < count:
        chunk = sock.recv(count - len(data))
        if not chunk:
            raise EOFError("connection closed by peer")
        data += chunk
    return bytes(data)


def read_streaming_packet(sock, max_size: int = RECEIVE_MTU) -> bytes:
    """Read one framed packet from ``sock``.

    Raises ShortBufferError if the announced length exceeds ``max_size`` and
    EOFError if the stream ends before the packet is complete.
    """
    (length,) = struct.unpack(">H", _recv_exactly(sock, STREAMING_PACKET_HEADER_LEN))
    if length > max_size:
        raise ShortBufferError(f"packet of {length} bytes exceeds buffer of {max_size} bytes")
    return _recv_exactly(sock, length)


def write_streaming_packet(sock, data) -> int:
    """Write ``data`` as one framed packet and return the payload length."""
    data = bytes(data)
    if len(data) > MAX_PACKET_SIZE:
        raise ValueError(f"packet of {len(data)} bytes is too large to frame")
    sock.sendall(struct.pack(">H", len(data)) + data)
    return len(data)