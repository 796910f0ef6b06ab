"""Multiplex ICE TCP and UDP traffic over shared sockets, routed by STUN ufrag."""

__version__ = "0.1.0"