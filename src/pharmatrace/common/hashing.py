"""Canonical JSON hashing and HMAC helpers shared by anchoring, custody and signatures."""

import hashlib
import hmac
import json
from typing import Any


def canonical_json(data: Any) -> str:
    """Sorted-key, compact JSON. The only serialization ever hashed."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sha256_hex(data: Any) -> str:
    """SHA-256 of the canonical JSON of ``data`` (strings are hashed as-is)."""
    text = data if isinstance(data, str) else canonical_json(data)
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def hmac_hex(key: str, message: str) -> str:
    """HMAC-SHA256 hex digest of ``message`` under ``key``."""
    return hmac.new(key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_hmac_keyring(message: str, signature: str, keyring: dict[int, str]) -> bool:
    """Verify ``signature`` against every key in the keyring (supports rotated keys)."""
    for _version, key in keyring.items():
        if hmac.compare_digest(hmac_hex(key, message), signature):
            return True
    return False
