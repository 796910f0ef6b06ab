# icemux

`icemux` lets many ICE sessions share one listening socket. Incoming traffic
goes to a per-session packet connection. The session is found from the
username fragment (ufrag) in the first STUN Binding request that each remote
peer sends.

## What it provides

- **TCP muxing**: `icemux.tcp_mux.TCPMuxDefault`, configured with
  `icemux.tcp_mux.TCPMuxParams`. It accepts TCP connections on a listening
  socket. Each connection must be framed as in RFC 4571, with a 2-byte
  big-endian length before every packet. The first packet must be a STUN
  Binding request with a USERNAME attribute; a connection that sends anything
  else is closed. Connections are grouped into
  `icemux.tcp_packet_conn.TCPPacketConn` objects, one per ufrag and local IP.
  `TCPMuxParams` has these options:
  - `read_buffer_size`: the number of packets queued for reading.
  - `write_buffer_size`: when this is 0, a write blocks until the data is sent.
    Otherwise data is queued and sent in the background, and a write that would
    overflow the queue raises `BufferError`.
  - `first_stun_bind_timeout`: how long a new connection has to send its first
    packet. 0 means 30 seconds, and a negative value means no limit.
  - `alive_duration_for_conn_from_stun`: a packet connection that was created
    by an incoming STUN request is closed after this long unless
    `get_conn_by_ufrag` asks for it. 0 means 30 seconds.
- `icemux.tcp_mux_multi.MultiTCPMuxDefault` combines several TCP muxes.
  `get_all_conns` returns one connection from each mux. `get_conn_by_ufrag`
  uses the first mux only.
- **UDP muxing**: `icemux.udp_mux.UDPMuxDefault`, configured with
  `icemux.udp_mux.UDPMuxParams`. It shares one bound UDP socket between
  `icemux.udp_muxed_conn.UDPMuxedConn` objects, one per ufrag.
  - A datagram from a known remote address goes to the connection that last
    wrote to that address.
  - A STUN message from an unknown address goes to the connection whose ufrag
    is in its USERNAME attribute.
  - Anything else is dropped.

  Run `serve()`, for example in a thread, to read the socket. Alternatively,
  pass packets you have received yourself to `handle_stun_message()`.
- `icemux.udp_mux_multi.MultiUDPMuxDefault` dispatches to several UDP muxes by
  local address. `multi_udp_mux_from_port(port, ...)` binds one UDP socket on
  `port` for every usable local interface address and returns the combined mux.
  It takes these options: `interface_filter`, `ip_filter`, `networks`,
  `read_buffer_size`, `write_buffer_size`, `logger` and `include_loopback`.
  Interface addresses are found with `icemux.netutil.local_interface_addresses`.
- **Universal UDP muxing**: `icemux.udp_mux_universal.UniversalUDPMuxDefault`.
  This is a UDP mux that can also ask a STUN server for the server-reflexive
  (XOR-MAPPED-ADDRESS) address of the shared socket, with
  `get_xor_mapped_addr(server_addr, deadline)`. Each answer is cached for
  `xor_mapped_addr_cache_ttl` seconds; 0 means 25 seconds.
  `get_conn_for_url(ufrag, url, addr)` returns a separate connection for each
  server.
- `icemux.stun`: a small STUN message codec. It has `Message`, `AttrType`,
  `MessageClass`, `XORMappedAddress` and `UseCandidateAttr` / `use_candidate()`
  for the USE-CANDIDATE attribute. `Message` can add MESSAGE-INTEGRITY and
  FINGERPRINT attributes.
- `icemux.tcptype.TCPType`: the ICE TCP candidate type (active, passive, so).
- `icemux.streaming`: `read_streaming_packet` and `write_streaming_packet`
  read and write RFC 4571 framed packets on a socket.

## Installation

```
pip install icemux
```

## TCP example

```python
import socket

from icemux.tcp_mux import TCPMuxDefault, TCPMuxParams

listener = socket.create_server(("127.0.0.1", 0))
mux = TCPMuxDefault(TCPMuxParams(listener=listener, read_buffer_size=20))

conn = mux.get_conn_by_ufrag("myufrag", False, "127.0.0.1")
data, remote = conn.read_from(1500)   # blocks until a peer sends a packet
conn.write_to(data, remote)           # echo it back over the same TCP stream

mux.close()
```

## UDP example

```python
import socket
import threading

from icemux.udp_mux import UDPMuxDefault, UDPMuxParams

sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
sock.bind(("127.0.0.1", 0))
mux = UDPMuxDefault(UDPMuxParams(udp_conn=sock))
threading.Thread(target=mux.serve, daemon=True).start()

conn = mux.get_conn("ufrag1", mux.local_addr())
# Writing to a remote address registers it, so replies from it reach `conn`.
```

## Errors

Failures raise subclasses of `icemux.errors.IceMuxError`:

- `ClosedPipeError` is raised when a mux or connection is already closed.
- `ShortBufferError` is raised when a packet is larger than the requested size.
- `InvalidAddressError` is raised when `get_conn` is given an address that does
  not belong to the mux.
- `XORMappedAddrTimeoutError` is raised when a STUN server does not answer in
  time.

`UDPMuxedConn.read_from` raises `EOFError` once the connection is closed.

## What it does not do

This package only multiplexes sockets. It has none of the following:

- an ICE agent
- candidate gathering
- connectivity checks
- a command-line program

It cannot obtain relayed (TURN) addresses:
`UniversalUDPMuxDefault.get_relayed_addr` always raises `IceMuxError`.

## Running the tests

```
pip install -e ".[test]"
pytest
```