"""
chaintoken Canonical JSON Encoding

Block payloads are signed as canonical JSON so that semantically identical
blocks produce identical bytes, and decoding rejects any payload that is
not in canonical form.
"""

import json
from typing import Any, Dict, List, Union


def canonicalize(obj: Any) -> bytes:
    """
    Convert an object to canonical JSON.

    Rules:
    - Object keys sorted lexicographically (Unicode code point order)
    - No whitespace between tokens (compact form)
    - UTF-8 encoding, no BOM, minimal escaping
    - Integers only; floats are rejected
    - Arrays preserve order

    Returns:
        UTF-8 encoded bytes of canonical JSON
    """
    canonical = _canonicalize_value(obj)
    return json.dumps(canonical, separators=(',', ':'), ensure_ascii=False).encode('utf-8')


def canonicalize_str(obj: Any) -> str:
    """Return canonical JSON as string."""
    return canonicalize(obj).decode('utf-8')


def _reject_float(text: str):
    raise ValueError(f"non-integer number in canonical JSON: {text}")


def _reject_constant(text: str):
    raise ValueError(f"invalid JSON constant: {text}")


def _reject_duplicates(pairs: List) -> Dict[str, Any]:
    obj = {}
    for key, value in pairs:
        if key in obj:
            raise ValueError(f"duplicate key in canonical JSON: {key!r}")
        obj[key] = value
    return obj


def decode_canonical(data: bytes) -> Any:
    """
    Parse canonical JSON bytes.

    Raises:
        ValueError: invalid UTF-8 or JSON, floats, duplicate keys, or any
            deviation from the canonical byte form
    """
    try:
        text = data.decode('utf-8')
    except UnicodeDecodeError as e:
        raise ValueError(f"payload is not UTF-8: {e}") from e
    try:
        obj = json.loads(
            text,
            parse_float=_reject_float,
            parse_constant=_reject_constant,
            object_pairs_hook=_reject_duplicates,
        )
    except json.JSONDecodeError as e:
        raise ValueError(f"payload is not valid JSON: {e}") from e
    if canonicalize(obj) != data:
        raise ValueError("payload is not in canonical form")
    return obj


def _canonicalize_value(value: Any) -> Any:
    """Recursively canonicalize a value."""
    if value is None:
        return None
    elif isinstance(value, bool):
        return value
    elif isinstance(value, int):
        return value
    elif isinstance(value, str):
        return value
    elif isinstance(value, dict):
        return _canonicalize_object(value)
    elif isinstance(value, (list, tuple)):
        return _canonicalize_array(value)
    else:
        raise ValueError(f"Cannot canonicalize type: {type(value)}")


def _canonicalize_object(obj: Dict[str, Any]) -> Dict[str, Any]:
    for key in obj:
        if not isinstance(key, str):
            raise ValueError(f"object keys must be strings, got {type(key)}")
    return {k: _canonicalize_value(obj[k]) for k in sorted(obj.keys())}


def _canonicalize_array(arr: Union[List, tuple]) -> List:
    return [_canonicalize_value(item) for item in arr]
