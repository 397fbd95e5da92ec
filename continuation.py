"""Opaque continuation tokens for suspended runs.

A token is the interpreter state serialised as JSON, compressed with zlib and
prefixed with its SHA-256 digest, then encoded as URL-safe base64. Decoding
verifies the digest so that a truncated or edited token is rejected instead of
resuming from a corrupted state.
"""

from __future__ import annotations
import base64
import binascii
import hashlib
import json
import zlib
from typing import Any, Dict

from errors import StateError


DIGEST_SIZE = hashlib.sha256().digest_size


def encode_state(state: Dict[str, Any]) -> str:
    payload = zlib.compress(json.dumps(state, separators=(",", ":"), sort_keys=True).encode("utf-8"))
    digest = hashlib.sha256(payload).digest()
    return base64.urlsafe_b64encode(digest + payload).decode("ascii").rstrip("=")


def decode_state(token: str) -> Dict[str, Any]:
    if not isinstance(token, str) or not token:
        raise StateError("invalid continuation token", rule="STATE")
    padded = token + "=" * (-len(token) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, ValueError) as exc:
        raise StateError("invalid continuation token", rule="STATE") from exc
    digest, payload = raw[:DIGEST_SIZE], raw[DIGEST_SIZE:]
    if len(digest) != DIGEST_SIZE or hashlib.sha256(payload).digest() != digest:
        raise StateError("continuation token failed its integrity check", rule="STATE")
    try:
        state = json.loads(zlib.decompress(payload).decode("utf-8"))
    except (zlib.error, UnicodeDecodeError, ValueError) as exc:
        raise StateError("invalid continuation token", rule="STATE") from exc
    if not isinstance(state, dict):
        raise StateError("invalid continuation token", rule="STATE")
    return state
