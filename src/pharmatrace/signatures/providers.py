"""Certificate authority registry and timestamp-authority proofs."""

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from types import MappingProxyType

from pharmatrace.common.exceptions import ValidationError
from pharmatrace.common.hashing import hmac_hex
from pharmatrace.common.models import iso


@dataclass(frozen=True)
class CAProvider:
    id: str
    name: str
    url: str
    algorithm: str = "RSA-SHA256"
    key_size: int = 2048
    supports_hsm: bool = True


CA_PROVIDERS: MappingProxyType = MappingProxyType({
    "vnca": CAProvider("vnca", "CA Quốc gia Việt Nam", "https://ca.vnca.gov.vn"),
    "viettel-ca": CAProvider("viettel-ca", "Viettel CA", "https://ca.viettel.vn"),
    "fpt-ca": CAProvider("fpt-ca", "FPT CA", "https://ca.fpt.vn"),
    "bkav-ca": CAProvider("bkav-ca", "Bkav CA", "https://ca.bkav.com.vn"),
    "vietnam-post-ca": CAProvider("vietnam-post-ca", "Vietnam Post CA", "https://ca.vnpost.vn"),
})


def get_provider(provider_id: str) -> CAProvider:
    try:
        return CA_PROVIDERS[provider_id]
    except KeyError:
        known = ", ".join(sorted(CA_PROVIDERS))
        raise ValidationError(
            f"Unknown CA provider '{provider_id}' (known: {known})"
        ) from None


@dataclass(frozen=True)
class Certificate:
    serial: str
    provider: CAProvider
    valid_from: datetime
    valid_to: datetime


def issue_certificate(provider: CAProvider, now: datetime, validity_days: int) -> Certificate:
    """Certificate metadata for a new signature, valid from ``now`` for ``validity_days``."""
    serial = f"{provider.id.upper().replace('-', '')}-{secrets.token_hex(8).upper()}"
    return Certificate(
        serial=serial,
        provider=provider,
        valid_from=now,
        valid_to=now + timedelta(days=validity_days),
    )


def timestamp_token(key: str, data_hash: str, timestamped_at: datetime) -> str:
    """Timestamp proof binding ``data_hash`` to the signing time."""
    return hmac_hex(key, f"tsa|{data_hash}|{iso(timestamped_at)}")
