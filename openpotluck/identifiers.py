"""Event codes and secret tokens.

Event codes are the short public handles people read aloud or type from an
invitation, so the alphabet leaves out ``0``, ``1``, ``I`` and ``O``. Tokens
are long random hex strings used as bearer credentials for organizers and
returning participants.
"""

from __future__ import annotations

import hashlib
import re
import secrets
import time

EVENT_CODE_ALPHABET = "23456789ABCDEFGHJKLMNPQRSTUVWXYZ"
EVENT_CODE_LENGTH = 8
DEFAULT_TOKEN_BYTES = 32

_non_alphanumeric = re.compile(r"[^A-Za-z0-9]+")
_canonical_code = re.compile(
    rf"^[{EVENT_CODE_ALPHABET}]{{4}}-[{EVENT_CODE_ALPHABET}]{{4}}$"
)


def _group(symbols: str) -> str:
    return f"{symbols[:4]}-{symbols[4:8]}".upper()


def generate_event_code() -> str:
    """Return a random ``XXXX-XXXX`` code drawn from the readable alphabet."""
    symbols = "".join(
        secrets.choice(EVENT_CODE_ALPHABET) for _ in range(EVENT_CODE_LENGTH)
    )
    return _group(symbols)


def generate_secure_token(byte_length: int = DEFAULT_TOKEN_BYTES) -> str:
    """Return ``byte_length`` random bytes as lowercase hex."""
    if byte_length < 1:
        raise ValueError("byte_length must be positive")
    return secrets.token_hex(byte_length)


def fallback_event_code() -> str:
    """Derive a code from the millisecond clock."""
    remaining = time.time_ns() // 1_000_000
    base = len(EVENT_CODE_ALPHABET)
    symbols = []
    for _ in range(EVENT_CODE_LENGTH):
        remaining, index = divmod(remaining, base)
        symbols.append(EVENT_CODE_ALPHABET[index])
    return _group("".join(reversed(symbols)))


def fallback_token() -> str:
    """Derive a 64 character hex token from the nanosecond clock."""
    return hashlib.sha256(f"token-{time.time_ns()}".encode("ascii")).hexdigest()


def normalize_event_code(raw: str | None) -> str:
    """Strip everything but letters and digits and uppercase the rest."""
    return _non_alphanumeric.sub("", raw or "").upper()


def format_event_code(raw: str | None) -> str:
    """Return the canonical ``XXXX-XXXX`` form when the input has 8 symbols.

    Inputs of any other length are returned stripped but otherwise untouched.
    """
    normalized = normalize_event_code(raw)
    if len(normalized) == EVENT_CODE_LENGTH:
        return _group(normalized)
    return (raw or "").strip()


def is_canonical_event_code(value: str | None) -> bool:
    return bool(value) and _canonical_code.match(value) is not None
