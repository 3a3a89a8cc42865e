"""Access scope derivation from a shared PIN."""

import hashlib
import re

SCOPE_HASH_PATTERN = re.compile(r"[0-9a-f]{64}")


def derive_scope(pin: str, salt: str) -> str:
    """
    Derive the access scope hash for a PIN.

    The same PIN and salt always give the same scope; different PINs give
    different scopes.

    Args:
        pin: Shared secret supplied by the viewer
        salt: Server-side salt

    Returns:
        Hex-encoded SHA-256 digest
    """
    return hashlib.sha256(f"{salt}:{pin}".encode("utf-8")).hexdigest()


def is_scope_hash(value: str) -> bool:
    """Check that a value has the shape of a derived scope (64 lowercase hex digits)."""
    return SCOPE_HASH_PATTERN.fullmatch(value) is not None
