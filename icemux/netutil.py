"""Discovery of the local interface addresses that ICE can use."""

from __future__ import annotations

import ipaddress
import socket
from enum import Enum
from ipaddress import IPv4Address, IPv6Address

import psutil


class NetworkType(Enum):
    """A transport and IP family combination."""

    UDP4 = "udp4"
    UDP6 = "udp6"
    TCP4 = "tcp4"
    TCP6 = "tcp6"

    def __str__(self) -> str:
        return self.value

    @property
    def is_udp(self) -> bool:
        return self in (NetworkType.UDP4, NetworkType.UDP6)

    @property
    def is_tcp(self) -> bool:
        return self in (NetworkType.TCP4, NetworkType.TCP6)

    @property
    def is_ipv4(self) -> bool:
        return self in (NetworkType.UDP4, NetworkType.TCP4)

    @property
    def is_ipv6(self) -> bool:
        return self in (NetworkType.UDP6, NetworkType.TCP6)


_DEFAULT_NETWORKS = (NetworkType.UDP4, NetworkType.UDP6)


def _is_loopback_interface(stats) -> bool:
    flags = getattr(stats, "flags", "") or ""
    return "loopback" in flags.split(",")


def _supported_ipv6(ip: IPv6Address) -> bool:
    """Reject deprecated IPv6 forms: site-local and IPv4-compatible addresses."""
    if ip.is_site_local:
        return False
    if ip.packed[:12] == bytes(12) and not ip.is_loopback and not ip.is_unspecified:
        return False
    return True


def _parse(entry, interface: str, want_v4: bool, want_v6: bool):
    try:
        if entry.family == socket.AF_INET and want_v4:
            return IPv4Address(entry.address)
        if entry.family == socket.AF_INET6 and want_v6:
            base = entry.address.split("%", 1)[0]
            ip = IPv6Address(base)
            if ip.is_link_local:
                ip = IPv6Address(f"{base}%{interface}")
            return ip
    except ValueError:
        return None
    return None


def local_interface_addresses(
    interface_filter=None,
    ip_filter=None,
    networks=_DEFAULT_NETWORKS,
    include_loopback: bool = False,
) -> list:
    """Return the usable addresses of the interfaces that are up.

    ``interface_filter`` receives an interface name and ``ip_filter`` an
    ``ipaddress`` object; either returning False drops the candidate.
    Link-local IPv6 addresses carry the interface name as scope.
    """
    networks = list(networks)
    want_v4 = any(n.is_ipv4 for n in networks)
    want_v6 = any(n.is_ipv6 for n in networks)
    stats = psutil.net_if_stats()
    result = []
    for name, entries in psutil.net_if_addrs().items():
        iface_stats = stats.get(name)
        if iface_stats is not None and not iface_stats.isup:
            continue
        if iface_stats is not None and _is_loopback_interface(iface_stats) and not include_loopback:
            continue
        if interface_filter is not None and not interface_filter(name):
            continue
        for entry in entries:
            ip = _parse(entry, name, want_v4, want_v6)
            if ip is None:
                continue
            if ip.is_loopback and not include_loopback:
                continue
            if ip.version == 6 and not _supported_ipv6(ip):
                continue
            if ip_filter is not None and not ip_filter(ip):
                continue
            result.append(ip)
    return result


__all__ = ["NetworkType", "local_interface_addresses", "ipaddress"]