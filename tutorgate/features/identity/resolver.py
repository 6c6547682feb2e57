"""
tutorgate/features/identity/resolver.py

Derive a stable identity key from inbound transport metadata.

The assistant runtime relays calls through a proxy pool whose egress
address changes per request, so a raw IP is not stable. Explicit user id
headers win; otherwise IPv4 callers are grouped by /24 subnet.

Pure function: no store access, no side effects.
"""

import re
from typing import Mapping, Optional

# Explicit identity headers, highest priority first
IDENTITY_HEADERS = (
    "x-chatgpt-user-id",
    "x-openai-user-id",
    "x-user-id",
    "user-id",
    "openai-subject",
    "openai/subject",
)

# Headers set by the edge that carry the connecting client address
DIRECT_ADDRESS_HEADERS = (
    "cf-connecting-ip",
    "true-client-ip",
)

UNKNOWN_IDENTITY = "unknown"

_IPV4_RE = re.compile(r"^(\d{1,3})\.(\d{1,3})\.(\d{1,3})\.(\d{1,3})$")


def _lower_headers(headers: Optional[Mapping[str, str]]) -> dict:
    if not headers:
        return {}
    return {str(k).lower(): v for k, v in headers.items()}


def _first_non_empty(values: Mapping[str, str], names) -> Optional[str]:
    for name in names:
        value = values.get(name)
        if value is None:
            continue
        value = str(value).strip()
        if value:
            return value
    return None


def extract_client_address(headers: Optional[Mapping[str, str]], peer_address: Optional[str] = None) -> Optional[str]:
    """Pick the caller address: edge headers, then x-forwarded-for, then the socket peer."""
    lowered = _lower_headers(headers)

    address = _first_non_empty(lowered, DIRECT_ADDRESS_HEADERS)
    if address:
        return address

    forwarded = lowered.get("x-forwarded-for")
    if forwarded:
        first = str(forwarded).split(",")[0].strip()
        if first:
            return first

    if peer_address and str(peer_address).strip():
        return str(peer_address).strip()
    return None


def group_address(address: str) -> str:
    """Map an address to its identity key: subnet-a.b.c for IPv4, ip-<raw> otherwise."""
    match = _IPV4_RE.match(address)
    if match and all(0 <= int(octet) <= 255 for octet in match.groups()):
        a, b, c, _ = match.groups()
        return f"subnet-{int(a)}.{int(b)}.{int(c)}"
    return f"ip-{address}"


def resolve_identity(headers: Optional[Mapping[str, str]], peer_address: Optional[str] = None) -> str:
    """Resolve the identity key for a call.

    Args:
        headers: Inbound transport headers (any case)
        peer_address: Socket peer address, used when no header carries one

    Returns:
        The explicit user id, subnet-a.b.c, ip-<raw>, or "unknown"
    """
    lowered = _lower_headers(headers)

    explicit = _first_non_empty(lowered, IDENTITY_HEADERS)
    if explicit:
        return explicit

    address = extract_client_address(lowered, peer_address)
    if not address:
        return UNKNOWN_IDENTITY
    return group_address(address)
