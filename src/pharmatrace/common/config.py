"""PharmaTrace configuration via pydantic-settings."""

import json
import warnings
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

_INSECURE_DEFAULTS = {
    "secret_key": "insecure-dev-key-change-me",
    "hmac_key": "insecure-hmac-key-change-me",
    "event_sink_secret": "insecure-event-secret-change-me",
}


class PharmaTraceSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PHARMATRACE_")

    environment: str = "development"
    secret_key: str = "insecure-dev-key-change-me"
    hmac_key: str = "insecure-hmac-key-change-me"

    # HMAC keyring: JSON dict mapping version (int) to key string.
    # e.g. '{"0": "old-key", "1": "new-key"}'
    # When set, hmac_key is ignored.  When empty, hmac_key is used as version 0.
    hmac_keys: str = ""

    # Database
    db_url: str = "sqlite+aiosqlite:///./data/pharmatrace.db"

    # Scannable code payload
    verification_base_url: str = "http://localhost:3001"

    # External ledger
    ledger_mode: str = "simulated"  # simulated | http
    ledger_url: str = "http://127.0.0.1:7545"
    ledger_token: str = ""
    ledger_timeout: float = 30.0

    # Signatures
    tsa_url: str = "https://tsa.vnca.gov.vn"
    default_ca_provider: str = "vnca"
    certificate_validity_days: int = 365

    # Resolution
    near_expiry_days: int = 30

    # Concurrency
    max_append_retries: int = 5
    max_identifier_attempts: int = 10

    # Event hand-off to the notification/audit collaborator
    event_sink_url: str = ""
    event_sink_secret: str = "insecure-event-secret-change-me"
    event_sink_timeout: float = 10.0

    log_level: str = "INFO"

    @property
    def hmac_keyring(self) -> dict[int, str]:
        """Return HMAC keyring as {version_int: key_str}.

        If hmac_keys is set, parse it as JSON.
        Otherwise, fall back to scalar hmac_key as version 0.
        """
        if self.hmac_keys:
            try:
                raw = json.loads(self.hmac_keys)
            except (json.JSONDecodeError, TypeError) as exc:
                raise ValueError(
                    f"PHARMATRACE_HMAC_KEYS must be valid JSON (e.g. '{{\"0\": \"key\"}}'), got: {self.hmac_keys!r}"
                ) from exc
            return {int(k): v for k, v in raw.items()}
        return {0: self.hmac_key}

    @property
    def current_hmac_version(self) -> int:
        """Return the highest version number in the keyring."""
        return max(self.hmac_keyring.keys())

    @property
    def current_hmac_key(self) -> str:
        """Return the HMAC key for the current (highest) version."""
        ring = self.hmac_keyring
        return ring[max(ring.keys())]

    def validate_for_production(self) -> None:
        """Raise if insecure defaults are used in non-development environments."""
        insecure_fields = [
            field
            for field, default in _INSECURE_DEFAULTS.items()
            if getattr(self, field) == default
        ]
        if self.hmac_keys:
            insecure_fields = [f for f in insecure_fields if f != "hmac_key"]

        if self.environment != "development" and insecure_fields:
            env_vars = ", ".join(f"PHARMATRACE_{f.upper()}" for f in insecure_fields)
            raise RuntimeError(
                f"Insecure default values detected in '{self.environment}' environment. "
                f"Set these environment variables to secure values: {env_vars}. "
                "Generate secrets with: python -c \"import secrets; print(secrets.token_urlsafe(48))\""
            )

        if self.ledger_mode not in ("simulated", "http"):
            raise RuntimeError(
                f"PHARMATRACE_LEDGER_MODE must be 'simulated' or 'http', got {self.ledger_mode!r}"
            )

        if insecure_fields:
            warnings.warn(
                "Using insecure default keys — set PHARMATRACE_SECRET_KEY, "
                "PHARMATRACE_HMAC_KEY, PHARMATRACE_EVENT_SINK_SECRET for production",
                UserWarning,
                stacklevel=2,
            )


@lru_cache
def get_settings() -> PharmaTraceSettings:
    settings = PharmaTraceSettings()
    settings.validate_for_production()
    return settings
