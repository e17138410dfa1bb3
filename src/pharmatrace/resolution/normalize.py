"""Scanned-string normalization.

Scanners hand us whatever they decoded: bare anchor ids, ids wrapped in
stray quotes or brackets, whole JSON payloads and now and then a phone
number. ``normalize`` turns that into one lookup token by applying a fixed
sequence of pure transforms.
"""

import json
import re
from dataclasses import dataclass
from typing import Any

from pharmatrace.common.exceptions import MalformedIdentifierError

REJECTED_SCHEMES = ("tel:", "mailto:", "sms:")

_ANCHOR_FIELD = re.compile(r'"anchorId"\s*:\s*"([^"]*)"')
_WRAPPING_CHARS = "\"'`{}[] \t\r\n"


@dataclass(frozen=True)
class NormalizedToken:
    token: str
    # raw | anchor_field | stripped
    source: str


def trim(raw: str) -> str:
    return raw.strip()


def reject_schemes(text: str) -> str:
    """Refuse payloads that are clearly not ours (phone, mail, sms links)."""
    if text.lower().startswith(REJECTED_SCHEMES):
        raise MalformedIdentifierError(f"Scanned code uses an unsupported scheme: {text[:20]!r}")
    return text


def extract_anchor_field(text: str) -> str | None:
    """Value of an embedded ``"anchorId":"..."`` pair, if present and non-empty."""
    match = _ANCHOR_FIELD.search(text)
    if match and match.group(1).strip():
        return match.group(1).strip()
    return None


def strip_wrapping(text: str) -> str:
    """Drop leading/trailing quotes, braces and brackets left behind by scanners."""
    return text.strip(_WRAPPING_CHARS)


def normalize(raw: str | None) -> NormalizedToken:
    """Reduce a raw scanned string to a single lookup token.

    Raises MalformedIdentifierError when nothing usable remains.
    """
    if raw is None:
        raise MalformedIdentifierError("Scanned code is empty")
    text = reject_schemes(trim(raw))
    if not text:
        raise MalformedIdentifierError("Scanned code is empty")

    anchor = extract_anchor_field(text)
    if anchor is not None:
        return NormalizedToken(anchor, "anchor_field")

    token = strip_wrapping(text)
    if not token:
        raise MalformedIdentifierError(f"Scanned code {raw!r} contains no identifier")
    return NormalizedToken(token, "raw" if token == text else "stripped")


def parse_document(raw: str) -> dict[str, Any] | None:
    """The scanned string as a JSON object, or ``None`` if it is not one."""
    try:
        data = json.loads(raw.strip())
    except (ValueError, TypeError):
        return None
    return data if isinstance(data, dict) else None
