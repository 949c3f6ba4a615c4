"""
IP Utility Functions
====================
Utilities for IP address checking and validation.
"""

import ipaddress
from typing import Optional

from .exceptions import InvalidIPAddressError


def is_valid_ip(ip: Optional[str]) -> bool:
    """Check if the string is a well-formed IPv4 or IPv6 address."""
    if not ip:
        return False
    try:
        ipaddress.ip_address(ip.strip())
    except ValueError:
        return False
    return True


def normalize_ip(ip: Optional[str]) -> str:
    """
    Validate and canonicalise an IP address.

    IPv6 addresses are compressed (``2001:0db8::0001`` -> ``2001:db8::1``) so the
    same client always maps to the same store key.

    Raises:
        InvalidIPAddressError: if the address is malformed
    """
    if not ip:
        raise InvalidIPAddressError(ip)
    try:
        return str(ipaddress.ip_address(ip.strip()))
    except ValueError:
        raise InvalidIPAddressError(ip) from None


def is_internal_ip(ip: str) -> bool:
    """Check if IP is private, loopback or link-local (never geolocated)."""
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return addr.is_private or addr.is_loopback or addr.is_link_local
