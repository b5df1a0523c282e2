"""Base32 and HOTP/TOTP primitives (RFC 4648, RFC 4226, RFC 6238).

Every place that produces or checks a one-time code goes through this module.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from datetime import datetime
from urllib.parse import quote, urlencode

B32_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567"
_B32_INDEX = {ch: idx for idx, ch in enumerate(B32_ALPHABET)}

SECRET_BYTES = 20  # 160 bits -> 32 base32 chars
CODE_DIGITS = 6
TIME_STEP_SECONDS = 30


class MalformedSecret(ValueError):
    """Input holds no decodable base32 data."""


def generate_secret() -> str:
    return base64.b32encode(secrets.token_bytes(SECRET_BYTES)).decode("ascii").rstrip("=")


def decode_base32(value: str) -> bytes:
    """Decode base32 text, ignoring case, padding and stray characters.

    Characters outside the RFC 4648 alphabet are dropped before decoding and
    trailing bits that do not fill a whole byte are discarded.
    """
    buffer = 0
    bits = 0
    out = bytearray()
    for ch in value.upper():
        idx = _B32_INDEX.get(ch)
        if idx is None:
            continue
        buffer = (buffer << 5) | idx
        bits += 5
        if bits >= 8:
            bits -= 8
            out.append((buffer >> bits) & 0xFF)
    if not out:
        raise MalformedSecret("secret contains no base32 data")
    return bytes(out)


def time_step(at: datetime | float, period: int = TIME_STEP_SECONDS) -> int:
    timestamp = at.timestamp() if isinstance(at, datetime) else at
    return int(timestamp // period)


def derive_code(secret: bytes, step: int, digits: int = CODE_DIGITS) -> str:
    counter = step.to_bytes(8, "big")
    digest = hmac.new(secret, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def codes_match(expected: str, presented: str) -> bool:
    # SECURITY: constant-time comparison
    return hmac.compare_digest(expected.encode("utf-8"), presented.encode("utf-8"))


def verify_code(
    secret: bytes, code: str, at: datetime | float, *, window: int = 1
) -> bool:
    """Check ``code`` against the steps ``now - window .. now + window``."""
    current = time_step(at)
    matched = False
    for offset in range(-window, window + 1):
        step = current + offset
        # Counters are unsigned; near the epoch the window has no earlier step
        if step < 0:
            continue
        # No early exit so every candidate step costs the same
        if codes_match(derive_code(secret, step), code):
            matched = True
    return matched


def provisioning_uri(secret: str, account_label: str, issuer: str) -> str:
    label = f"{quote(issuer, safe='')}:{quote(account_label, safe='')}"
    query = urlencode({"secret": secret, "issuer": issuer}, quote_via=quote)
    return f"otpauth://totp/{label}?{query}"
