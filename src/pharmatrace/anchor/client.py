"""Ledger anchor clients.

The external ledger is an opaque, slow and sometimes failing dependency. A
client takes a canonical payload and either returns an ``AnchorReceipt`` or
raises ``ExternalAnchorError``. There is no retry policy here; callers leave
unresolved anchors in ``pending``/``failed`` for later reconciliation.
"""

import os
import secrets
import time
from dataclasses import dataclass
from typing import Any

import httpx

from pharmatrace.common.config import PharmaTraceSettings
from pharmatrace.common.exceptions import ExternalAnchorError
from pharmatrace.common.hashing import canonical_json, hmac_hex, sha256_hex
from pharmatrace.common.logging import get_logger

logger = get_logger("anchor")


@dataclass
class AnchorReceipt:
    """What the ledger tells us about one anchored payload."""
    anchor_id: str
    tx_ref: str
    block_ref: str | None
    data_hash: str
    signature: str
    confirmed: bool = True


class LedgerClient:
    """Interface every ledger client implements."""

    async def anchor(self, payload: dict[str, Any]) -> AnchorReceipt:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class SimulatedLedgerClient(LedgerClient):
    """In-process stand-in for the ledger, used in development and tests.

    Anchor ids look like ``BC_<epoch ms>_<first 8 hash chars>_<4 random hex>``. Set
    ``fail_with`` to make every call raise, or ``confirm=False`` to return
    unconfirmed receipts.
    """

    def __init__(self, signing_key: str, confirm: bool = True, fail_with: str | None = None):
        self.signing_key = signing_key
        self.confirm = confirm
        self.fail_with = fail_with
        self.calls: list[dict[str, Any]] = []

    async def anchor(self, payload: dict[str, Any]) -> AnchorReceipt:
        self.calls.append(payload)
        if self.fail_with:
            raise ExternalAnchorError(self.fail_with)

        data_hash = sha256_hex(payload)
        anchor_id = f"BC_{int(time.time() * 1000)}_{data_hash[:8].upper()}_{secrets.token_hex(2).upper()}"
        return AnchorReceipt(
            anchor_id=anchor_id,
            tx_ref=f"0x{os.urandom(32).hex()}",
            block_ref=str(1_000_000 + secrets.randbelow(1_000_000)),
            data_hash=data_hash,
            signature=hmac_hex(self.signing_key, data_hash),
            confirmed=self.confirm,
        )


class HttpLedgerClient(LedgerClient):
    """Calls a ledger gateway's ``/v1/anchors`` endpoint."""

    def __init__(
        self,
        base_url: str,
        service_token: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.service_token = service_token
        self.timeout = timeout
        self._transport = transport

    async def anchor(self, payload: dict[str, Any]) -> AnchorReceipt:
        """POST the canonical payload; map every failure onto ExternalAnchorError."""
        url = f"{self.base_url}/v1/anchors"
        data_hash = sha256_hex(payload)
        body = {"payload": payload, "data_hash": data_hash}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(
                    url,
                    content=canonical_json(body),
                    headers={
                        "Content-Type": "application/json",
                        "X-Service-Token": self.service_token,
                    },
                )
                resp.raise_for_status()
                data = resp.json()
        except httpx.TimeoutException as exc:
            raise ExternalAnchorError(f"Ledger call timed out: {exc}", timed_out=True) from exc
        except httpx.HTTPStatusError as exc:
            raise ExternalAnchorError(
                f"Ledger rejected anchor: HTTP {exc.response.status_code}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise ExternalAnchorError(f"Ledger call failed: {exc}") from exc

        try:
            return AnchorReceipt(
                anchor_id=data["anchor_id"],
                tx_ref=data["tx_ref"],
                block_ref=str(data["block_ref"]) if data.get("block_ref") is not None else None,
                data_hash=data.get("data_hash", data_hash),
                signature=data.get("signature", ""),
                confirmed=data.get("status", "confirmed") == "confirmed",
            )
        except (KeyError, TypeError) as exc:
            raise ExternalAnchorError(f"Malformed ledger response: missing {exc}") from exc


def build_ledger_client(settings: PharmaTraceSettings) -> LedgerClient:
    """Pick the ledger client configured by ``ledger_mode``."""
    if settings.ledger_mode == "http":
        return HttpLedgerClient(
            settings.ledger_url, settings.ledger_token, timeout=settings.ledger_timeout,
        )
    logger.info("Using simulated ledger client")
    return SimulatedLedgerClient(settings.current_hmac_key)
