"""A packet connection built from one or more framed TCP streams."""

from __future__ import annotations

import errno
import logging
import socket
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any

from icemux.errors import ClosedPipeError, ConnectionAddrExistsError, ShortBufferError
from icemux.streaming import RECEIVE_MTU, read_streaming_packet, write_streaming_packet

_log = logging.getLogger("icemux")


def _close_socket(sock) -> None:
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    sock.close()


def _addr_key(addr):
    if isinstance(addr, tuple) and len(addr) >= 2:
        return addr[0], addr[1]
    return addr


def _is_closure(err: BaseException) -> bool:
    if isinstance(err, EOFError):
        return True
    return isinstance(err, OSError) and err.errno in (errno.EBADF, errno.ENOTSOCK)


class BufferedConn:
    """Socket writer that queues data and sends it from a background thread.

    Writes that would push the queue past ``buffer_size`` bytes are refused
    with BufferError; a size of 0 means no limit.
    """

    def __init__(self, sock, buffer_size: int = 0, logger: logging.Logger | None = None):
        self._sock = sock
        self._limit = buffer_size
        self._log = logger or _log
        self._queue: deque[bytes] = deque()
        self._queued = 0
        self._cond = threading.Condition()
        self._closed = False
        self._thread = threading.Thread(
            target=self._write_loop, name="icemux-buffered-writer", daemon=True
        )
        self._thread.start()

    def sendall(self, data) -> None:
        """Queue ``data`` to be written."""
        data = bytes(data)
        with self._cond:
            if self._closed:
                raise ClosedPipeError()
            if self._limit > 0 and self._queued + len(data) > self._limit:
                raise BufferError("write buffer is full")
            self._queue.append(data)
            self._queued += len(data)
            self._cond.notify()

    def _write_loop(self) -> None:
        while True:
            with self._cond:
                while not self._queue and not self._closed:
                    self._cond.wait()
                if self._closed:
                    return
                data = self._queue.popleft()
                self._queued -= len(data)
            try:
                self._sock.sendall(data)
            except OSError as err:
                self._log.warning("Failed to write: %s", err)

    def close(self) -> None:
        """Drop queued data and close the socket."""
        with self._cond:
            self._closed = True
            self._queue.clear()
            self._queued = 0
            self._cond.notify_all()
        _close_socket(self._sock)


@dataclass
class _StreamingPacket:
    data: bytes | None
    remote_addr: Any
    error: BaseException | None = None


@dataclass(eq=False)
class _Stream:
    sock: Any
    writer: Any
    remote_addr: Any


class TCPPacketConn:
    """Groups TCP streams by remote address and exposes them as a packet connection."""

    def __init__(
        self,
        local_addr,
        read_buffer: int = 0,
        write_buffer: int = 0,
        alive_duration: float = 0.0,
        logger: logging.Logger | None = None,
    ):
        self.local_addr = local_addr
        self._read_capacity = max(read_buffer, 1)
        self._write_buffer = write_buffer
        self._log = logger or _log
        self._lock = threading.Lock()
        self._streams: dict[Any, _Stream] = {}
        self._threads: list[threading.Thread] = []
        self._recv: deque[_StreamingPacket] = deque()
        self._recv_cond = threading.Condition()
        self._recv_closed = False
        self._closed = threading.Event()
        self._alive_timer: threading.Timer | None = None
        if alive_duration > 0:
            self._alive_timer = threading.Timer(alive_duration, self._on_alive_timeout)
            self._alive_timer.daemon = True
            self._alive_timer.start()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def __repr__(self) -> str:
        return f"TCPPacketConn(local_addr={self.local_addr!r})"

    def _on_alive_timeout(self) -> None:
        self._log.warning("close tcp packet conn by alive timeout")
        self.close()

    def clear_alive_timer(self) -> None:
        """Stop the timer that would close an unused connection."""
        with self._lock:
            if self._alive_timer is not None:
                self._alive_timer.cancel()

    def add_conn(self, sock, first_packet=None) -> None:
        """Attach a connected TCP socket; ``first_packet`` is delivered before its stream."""
        remote = sock.getpeername()
        self._log.info("Added connection: remote %s to local %s", remote, sock.getsockname())
        key = _addr_key(remote)
        with self._lock:
            if self._closed.is_set():
                raise ClosedPipeError()
            if key in self._streams:
                raise ConnectionAddrExistsError(
                    f"connection with same remote address already exists: {remote}"
                )
            writer = (
                BufferedConn(sock, self._write_buffer, self._log)
                if self._write_buffer > 0
                else sock
            )
            stream = _Stream(sock, writer, remote)
            self._streams[key] = stream
            thread = threading.Thread(
                target=self._serve,
                args=(stream, None if first_packet is None else bytes(first_packet)),
                name="icemux-tcp-reader",
                daemon=True,
            )
            self._threads = [t for t in self._threads if t.is_alive()]
            self._threads.append(thread)
            thread.start()

    def _serve(self, stream: _Stream, first_packet: bytes | None) -> None:
        if first_packet is not None:
            if not self._deliver(_StreamingPacket(first_packet, stream.remote_addr)):
                return
        self._read_loop(stream)

    def _read_loop(self, stream: _Stream) -> None:
        while True:
            try:
                data = read_streaming_packet(stream.sock, RECEIVE_MTU)
            except (OSError, EOFError, ShortBufferError) as err:
                self._log.warning("Failed to read streaming packet: %s", err)
                last = self._remove_stream(stream)
                # Closure errors only matter when no other stream remains.
                if last or not _is_closure(err):
                    self._deliver(_StreamingPacket(None, stream.remote_addr, err))
                return
            self._deliver(_StreamingPacket(data, stream.remote_addr))

    def _deliver(self, packet: _StreamingPacket) -> bool:
        with self._recv_cond:
            while len(self._recv) >= self._read_capacity and not self._closed.is_set():
                self._recv_cond.wait()
            if self._closed.is_set():
                return False
            self._recv.append(packet)
            self._recv_cond.notify_all()
            return True

    def _close_and_log(self, writer) -> None:
        try:
            if isinstance(writer, BufferedConn):
                writer.close()
            else:
                _close_socket(writer)
        except OSError as err:
            self._log.warning("failed to close connection: %s", err)

    def _remove_stream(self, stream: _Stream) -> bool:
        with self._lock:
            self._close_and_log(stream.writer)
            key = _addr_key(stream.remote_addr)
            if self._streams.get(key) is stream:
                del self._streams[key]
            return not self._streams

    def read_from(self, size: int = RECEIVE_MTU):
        """Block for the next packet and return ``(data, remote_addr)``."""
        with self._recv_cond:
            while not self._recv and not self._recv_closed:
                self._recv_cond.wait()
            if not self._recv:
                raise ClosedPipeError()
            packet = self._recv.popleft()
            self._recv_cond.notify_all()
        if packet.error is not None:
            raise packet.error
        if size < len(packet.data):
            raise ShortBufferError(
                f"packet of {len(packet.data)} bytes exceeds buffer of {size} bytes"
            )
        return packet.data, packet.remote_addr

    def write_to(self, data, addr) -> int:
        """Send ``data`` as one framed packet to the stream of ``addr``."""
        with self._lock:
            stream = self._streams.get(_addr_key(addr))
        if stream is None:
            raise ClosedPipeError()
        try:
            return write_streaming_packet(stream.writer, data)
        except (OSError, BufferError, ClosedPipeError) as err:
            self._log.debug("failed to write packet to %s: %s", addr, err)
            raise

    def close(self) -> None:
        """Close every stream and wait for the readers to stop."""
        with self._lock:
            first_close = not self._closed.is_set()
            if first_close:
                self._closed.set()
                if self._alive_timer is not None:
                    self._alive_timer.cancel()
            streams = list(self._streams.values())
            self._streams.clear()
            for stream in streams:
                self._close_and_log(stream.writer)
            threads = list(self._threads)
        with self._recv_cond:
            self._recv_cond.notify_all()
        current = threading.current_thread()
        for thread in threads:
            if thread is not current:
                thread.join()
        if first_close:
            with self._recv_cond:
                self._recv_closed = True
                self._recv_cond.notify_all()

    def wait_closed(self, timeout: float | None = None) -> bool:
        """Wait until the connection is closed; return whether it is."""
        return self._closed.wait(timeout)