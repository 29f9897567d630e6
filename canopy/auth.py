"""Time-windowed bearer token derivation.

The agent and the dashboard share a long-term secret. For every request the
client derives a token from the secret and the current 15 second time
window; the agent computes the same value and compares. There is no
handshake, nonce or stored session, so both sides must agree exactly on the
constants below.
"""

import base64
import binascii
import hashlib
import logging
import struct
import time

logger = logging.getLogger(__name__)

# Protocol constants shared with the agent. Changing any of them breaks
# authentication against agents that were not changed in lockstep.
WINDOW_SECONDS = 15
SEGMENT_SIZE = 64
SEGMENT_COUNT = 6
SECRET_SIZE = SEGMENT_SIZE * SEGMENT_COUNT  # 384 bytes
CODE_DIGITS = 6
CODE_MODULUS = 10**CODE_DIGITS

AUTH_SCHEME = "Bearer"

# Returned when the secret cannot be used. Never matches a real token, so
# the agent rejects it with 403.
INVALID_TOKEN = f"{AUTH_SCHEME} invalid-token"


class SecretError(ValueError):
    """Raised when a secret cannot be decoded into token segments."""

    pass


def time_window(now: float | None = None) -> int:
    """Return the time window index for a Unix timestamp in seconds."""
    if now is None:
        now = time.time()
    return int(now // WINDOW_SECONDS)


def decode_secret(secret: str | bytes) -> bytes:
    """Decode a base64 secret and check its length.

    Args:
        secret: Base64 text as entered by the user, or its ASCII bytes.

    Returns:
        The raw secret bytes.

    Raises:
        SecretError: If the secret is not valid base64 or not SECRET_SIZE bytes.
    """
    # Keys pasted from a terminal or PEM-style file may be line-wrapped.
    if isinstance(secret, str):
        secret = "".join(secret.split())
    else:
        secret = b"".join(secret.split())
    try:
        raw = base64.b64decode(secret, validate=True)
    except (binascii.Error, ValueError) as e:
        raise SecretError(f"Secret is not valid base64: {e}")

    if len(raw) != SECRET_SIZE:
        raise SecretError(f"Secret must decode to {SECRET_SIZE} bytes (got {len(raw)})")
    return raw


def segment_code(segment: bytes, window: int) -> str:
    """Compute the six-digit code for one secret segment.

    SHA-256 over ``segment || big_endian_u64(window)``; the first four bytes
    of the digest are read as a big-endian unsigned integer and reduced
    modulo one million.
    """
    digest = hashlib.sha256(segment + struct.pack(">Q", window)).digest()
    (value,) = struct.unpack(">I", digest[:4])
    return f"{value % CODE_MODULUS:0{CODE_DIGITS}d}"


def derive_token(raw_secret: bytes, window: int) -> str:
    """Derive the bearer token for raw secret bytes and a window index."""
    codes = [
        segment_code(raw_secret[i * SEGMENT_SIZE : (i + 1) * SEGMENT_SIZE], window)
        for i in range(SEGMENT_COUNT)
    ]
    encoded = base64.b64encode("".join(codes).encode("ascii")).decode("ascii")
    return f"{AUTH_SCHEME} {encoded}"


def issue_token(secret: str | bytes, now: float | None = None) -> str:
    """Issue the Authorization header value for a secret.

    Never raises: an undecodable secret or one of the wrong length produces
    INVALID_TOKEN, which the agent always rejects.

    Args:
        secret: Base64-encoded shared secret.
        now: Unix timestamp in seconds (default: current time).

    Returns:
        Header value of the form "Bearer <base64 of 36 digits>".
    """
    try:
        raw = decode_secret(secret)
        return derive_token(raw, time_window(now))
    # struct.error: a timestamp before the epoch gives a negative window.
    except (SecretError, struct.error, TypeError) as e:
        logger.error("Failed to generate token: %s", e)
        return INVALID_TOKEN
