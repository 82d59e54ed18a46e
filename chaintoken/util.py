"""
Encoding and time helpers shared by the key, wire and Datalog modules.
"""

import base64
import binascii
import hmac
import re
from datetime import datetime, timezone
from typing import Union


_B64URL_PATTERN = re.compile(r'^[A-Za-z0-9_-]*$')

# fromisoformat only takes fractions of 3 or 6 digits before Python 3.11
_FRACTION_PATTERN = re.compile(r'(\d{2}:\d{2}:\d{2})\.\d+')


def b64url_encode(b: bytes) -> str:
    """URL-safe base64 encode bytes to string (no padding)."""
    return base64.urlsafe_b64encode(b).rstrip(b'=').decode('ascii')


def b64url_decode(s: Union[str, bytes]) -> bytes:
    """
    URL-safe base64 decode, accepting unpadded input.

    Raises ValueError on characters outside the URL-safe alphabet or on
    an impossible length.
    """
    if isinstance(s, bytes):
        try:
            s = s.decode('ascii')
        except UnicodeDecodeError as e:
            raise ValueError("base64 data is not ASCII") from e
    s = s.strip().rstrip('=')
    if not _B64URL_PATTERN.match(s):
        raise ValueError("invalid character in URL-safe base64 data")
    if len(s) % 4 == 1:
        raise ValueError("invalid URL-safe base64 length")
    padding = -len(s) % 4
    try:
        return base64.urlsafe_b64decode((s + '=' * padding).encode('ascii'))
    except binascii.Error as e:
        raise ValueError(f"invalid URL-safe base64 data: {e}") from e


def to_hex(data: bytes) -> str:
    """Lowercase hexadecimal form of raw bytes."""
    return data.hex()


def from_hex(s: str, expected_length: int = None) -> bytes:
    """
    Decode a hexadecimal string.

    Args:
        s: Hex string (either case)
        expected_length: Required decoded length in bytes, if any
    """
    try:
        data = bytes.fromhex(s)
    except (ValueError, TypeError) as e:
        raise ValueError(f"invalid hex string: {e}") from e
    if expected_length is not None and len(data) != expected_length:
        raise ValueError(
            f"expected {expected_length} bytes, got {len(data)}"
        )
    return data


def utc_rfc3339(ts_epoch: int) -> str:
    """Convert Unix timestamp to RFC3339 UTC string."""
    return datetime.fromtimestamp(ts_epoch, tz=timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


def parse_rfc3339(s: str) -> int:
    """
    Parse an RFC3339 timestamp to Unix seconds.

    Accepts a trailing "Z" or a numeric offset; fractional seconds are
    truncated.
    """
    text = s.strip()
    if text.endswith(('Z', 'z')):
        text = text[:-1] + '+00:00'
    text = _FRACTION_PATTERN.sub(r'\1', text, count=1)
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        raise ValueError(f"timestamp has no UTC offset: {s}")
    return int(dt.timestamp())


def datetime_to_epoch(dt: datetime) -> int:
    """Unix seconds for an aware or naive (assumed UTC) datetime."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def constant_time_compare(a: Union[str, bytes], b: Union[str, bytes]) -> bool:
    """
    Compare two strings/bytes in constant time.
    """
    if isinstance(a, str):
        a = a.encode('utf-8')
    if isinstance(b, str):
        b = b.encode('utf-8')
    return hmac.compare_digest(a, b)
