"""Source address to network key derivation."""

import ipaddress
from typing import Optional


IPV4_PREFIX = 32
IPV6_PREFIX = 64


class InvalidAddress(ValueError):
    """Raised when a source address cannot be parsed as IPv4 or IPv6."""

    def __init__(self, address: str):
        self.address = address
        super().__init__(f"Can't parse source address {address!r}")


def select_source_address(
    peer_address: str,
    forwarded_for: Optional[str],
    trust_forwarded: bool,
) -> str:
    """Pick the address the network key is derived from.

    The ``X-Forwarded-For`` value is only used when the deployment trusts it
    and the header was actually sent. A proxy chain resolves to its first
    (client-most) entry.
    """
    if trust_forwarded and forwarded_for is not None:
        return forwarded_for.split(",")[0].strip()
    return peer_address


def derive_network_key(address: str) -> str:
    """Map a source address to its canonical network key.

    IPv4 addresses (including IPv4-mapped IPv6) key on the exact host,
    ``a.b.c.d/32``. IPv6 addresses key on their /64 prefix.
    """
    try:
        ip = ipaddress.ip_address(address.strip())
    except (ValueError, AttributeError):
        raise InvalidAddress(address) from None

    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped

    if ip.version == 4:
        return str(ipaddress.IPv4Network((int(ip), IPV4_PREFIX)))

    # Built from the integer value so any %scope suffix is dropped
    host_bits = 128 - IPV6_PREFIX
    prefix = (int(ip) >> host_bits) << host_bits
    return str(ipaddress.IPv6Network((prefix, IPV6_PREFIX)))
