"""Exceptions raised by icemux."""


class IceMuxError(Exception):
    """Base class for errors raised by this package."""

    default_message = "ice mux error"

    def __init__(self, message=None):
        super().__init__(message or self.default_message)


class ClosedPipeError(IceMuxError):
    """A read or write was attempted on a closed connection or mux."""

    default_message = "read/write on closed pipe"


class ShortBufferError(IceMuxError):
    """A packet does not fit into the space offered for it."""

    default_message = "short buffer"


class GetTransportAddressError(IceMuxError):
    """A local address could not be turned into a transport address."""

    default_message = "failed to get local transport address"


class ConnectionAddrExistsError(IceMuxError):
    """A connection with the same remote address is already registered."""

    default_message = "connection with same remote address already exists"


class NoTCPMuxAvailableError(IceMuxError):
    """No TCP mux was supplied."""

    default_message = "no TCP mux is available"


class NoUDPMuxAvailableError(IceMuxError):
    """No UDP mux listens on the requested address."""

    default_message = "no UDP mux is available"


class InvalidAddressError(IceMuxError):
    """An address does not belong to the mux or cannot be parsed."""

    default_message = "invalid address"


class XORMappedAddrTimeoutError(IceMuxError):
    """The STUN server did not answer in time."""

    default_message = "timeout while waiting for XORMappedAddr"


class NoXorAddrMappingError(IceMuxError):
    """No mapped address is known for a STUN server."""

    default_message = "no address mapping"


class WriteSTUNMessageError(IceMuxError):
    """A STUN request could not be sent."""

    default_message = "failed to send STUN message"


class StunDecodeError(IceMuxError):
    """Bytes could not be decoded as a STUN message."""

    default_message = "failed to decode STUN message"