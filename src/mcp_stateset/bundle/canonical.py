"""Canonical serialization for JSON-like values.

Two maps holding the same key/value pairs encode identically regardless of
insertion order; sequences keep their order. The encoded string is the only
equality key the diff engine uses.
"""
import hashlib
import json
from typing import Any


def canonicalize(value: Any) -> str:
    """Encode a JSON-like value deterministically."""
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def compute_checksum(value: Any) -> str:
    """Short content checksum of the canonical encoding."""
    digest = hashlib.sha256(canonicalize(value).encode("utf-8")).hexdigest()
    return f"sha256:{digest[:16]}"
