"""HMAC-SHA256 signatures for outbound webhook payloads.

The signed message is the exact byte string ``b"{timestamp}." + payload``.
The timestamp travels with the signature in a single header value::

    t=1718000000,v1=5257a869e7ecebeda32affa62cdca3fa51cad7e77a0e56ff536d0ce8e108d8bd

so that a receiver can recompute the digest and reject requests whose
timestamp falls outside its replay window.

INVARIANT: The secret is only ever used as HMAC key material.  It never
appears in a header, a body, or a log line.
"""

from __future__ import annotations

import hashlib
import hmac
import time

SIGNATURE_SCHEME = "v1"
DEFAULT_TOLERANCE_SECONDS = 300


def _to_bytes(value: str | bytes) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def sign(secret: str | bytes, timestamp: int, payload: str | bytes) -> str:
    """Return the hex HMAC-SHA256 digest of ``"{timestamp}.{payload}"``.

    Parameters
    ----------
    secret:
        Shared webhook secret.
    timestamp:
        Unix seconds, computed at send time.
    payload:
        The exact body bytes that will be transmitted.
    """
    message = str(int(timestamp)).encode("ascii") + b"." + _to_bytes(payload)
    return hmac.new(_to_bytes(secret), message, hashlib.sha256).hexdigest()


def build_signature_header(
    secret: str | bytes,
    payload: str | bytes,
    timestamp: int | None = None,
) -> str:
    """Sign *payload* and format the ``t=...,v1=...`` header value."""
    if timestamp is None:
        timestamp = int(time.time())
    return f"t={int(timestamp)},{SIGNATURE_SCHEME}={sign(secret, timestamp, payload)}"


def parse_signature_header(header: str) -> tuple[int | None, list[str]]:
    """Split a signature header into its timestamp and ``v1`` signatures.

    Unknown schemes are ignored.  A missing or non-numeric ``t`` yields
    ``None`` for the timestamp.
    """
    timestamp: int | None = None
    signatures: list[str] = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                timestamp = None
        elif key == SIGNATURE_SCHEME:
            signatures.append(value)
    return timestamp, signatures


def verify(
    signature: str,
    secret: str | bytes,
    timestamp: int,
    payload: str | bytes,
) -> bool:
    """Constant-time check that *signature* matches ``sign(secret, timestamp, payload)``."""
    expected = sign(secret, timestamp, payload)
    return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8", "surrogateescape"))


def verify_signature_header(
    secret: str | bytes,
    payload: str | bytes,
    header: str,
    *,
    tolerance_seconds: int | None = DEFAULT_TOLERANCE_SECONDS,
    now: int | None = None,
) -> bool:
    """Receiver-side verification of a ``t=...,v1=...`` header.

    Returns ``False`` when the header is malformed, when no ``v1``
    signature matches, or when the timestamp is further than
    *tolerance_seconds* from *now*.  Pass ``tolerance_seconds=None`` to
    skip the replay-window check.
    """
    if not header or not secret:
        return False

    timestamp, signatures = parse_signature_header(header)
    if timestamp is None or not signatures:
        return False

    if tolerance_seconds is not None:
        current = int(time.time()) if now is None else now
        if abs(current - timestamp) > tolerance_seconds:
            return False

    return any(verify(candidate, secret, timestamp, payload) for candidate in signatures)
