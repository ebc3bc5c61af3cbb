"""Name resolution helpers."""

from __future__ import annotations

import ipaddress
import socket

from .backend import Address


def _parse_ip(text: object) -> Address | None:
    try:
        return ipaddress.ip_address(str(text).split("%", 1)[0])
    except ValueError:
        return None


def _ip_of(addr: object) -> Address | None:
    if isinstance(addr, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return addr
    if isinstance(addr, tuple) and addr:
        return _parse_ip(addr[0])
    if isinstance(addr, str):
        return _parse_ip(addr)
    return None


def name_for(addr: object, numeric: bool = False) -> str:
    """Return the host name for ``addr``, or the address as text if none is found.

    ``addr`` may be an IP address object, a socket address tuple or a string.
    Anything that holds no IP address is returned as text unchanged.
    """
    ip = _ip_of(addr)
    if ip is None:
        return str(addr)
    ip_text = str(ip)
    if numeric:
        return ip_text
    try:
        name, _aliases, _addrs = socket.gethostbyaddr(ip_text)
    except (OSError, UnicodeError):
        return ip_text
    return name or ip_text


def resolve(host: str) -> Address:
    """Resolve a host name or address, preferring IPv4 over IPv6."""
    try:
        infos = socket.getaddrinfo(host, None)
    except (OSError, UnicodeError) as err:
        raise LookupError(f"lookup error: {err}") from err
    addrs: list[Address] = []
    for *_rest, sockaddr in infos:
        ip = _parse_ip(sockaddr[0])
        if ip is not None and ip not in addrs:
            addrs.append(ip)
    if not addrs:
        raise LookupError("no addresses found")
    chosen = addrs[0]
    for ip in addrs:
        if ip.version == 4:
            chosen = ip
        elif ip.ipv4_mapped is not None:
            chosen = ip.ipv4_mapped
    return chosen