"""Validation helpers for redirect inputs."""

import ipaddress
from typing import Tuple
from urllib.parse import urlparse

ALLOWED_SCHEMES = ("http", "https")

# Longest textual IP address (IPv4-mapped IPv6)
MAX_ADDRESS_LENGTH = 45


def validate_destination(url: str) -> Tuple[bool, str | None]:
    """
    Validate a redirect destination.

    Args:
        url: Destination URL

    Returns:
        Tuple of (is_valid, error_message)
        If valid, error_message is None
    """
    if not url:
        return False, "Destination is required"

    if any(ch.isspace() for ch in url):
        return False, "Destination cannot contain whitespace"

    try:
        parsed = urlparse(url)
    except ValueError as e:
        return False, f"Destination is not a valid URL: {e}"

    if parsed.scheme.lower() not in ALLOWED_SCHEMES:
        return False, "Destination must be an http or https URL"

    if not parsed.netloc or not parsed.hostname:
        return False, "Destination must include a host"

    try:
        parsed.port
    except ValueError:
        return False, "Destination has an invalid port"

    return True, None


def validate_ref_name(name: str, max_length: int) -> Tuple[bool, str | None]:
    """
    Validate a referral tag.

    Args:
        name: Referral tag
        max_length: Longest accepted tag

    Returns:
        Tuple of (is_valid, error_message)
    """
    if len(name) > max_length:
        return False, f"Referral name is too long (max {max_length} characters)"
    return True, None


def parse_address(value: str | None) -> str | None:
    """
    Normalize an IP address.

    Returns:
        The canonical address, or None if the value is not an IP address
    """
    if not value:
        return None
    value = value.strip()
    if not value or len(value) > MAX_ADDRESS_LENGTH:
        return None
    try:
        return str(ipaddress.ip_address(value))
    except ValueError:
        return None


def first_forwarded_address(forwarded_for: str | None) -> str | None:
    """
    Get the originating client from an X-Forwarded-For header.

    X-Forwarded-For can contain multiple addresses: client, proxy1, proxy2.
    The first one is the original client. Anything that does not parse as
    an IP address is ignored.
    """
    if not forwarded_for:
        return None
    return parse_address(forwarded_for.split(",")[0])


def is_public_address(address: str | None) -> bool:
    """Check whether an address is globally routable (not private, loopback or reserved)."""
    if not address:
        return False
    try:
        return ipaddress.ip_address(address).is_global
    except ValueError:
        return False
