"""Fire-and-forget hand-off of event records to the notification/audit collaborator."""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any

import httpx

from pharmatrace.common.config import PharmaTraceSettings
from pharmatrace.common.hashing import hmac_hex
from pharmatrace.common.logging import get_logger

logger = get_logger("events")

VALID_EVENT_TYPES: frozenset[str] = frozenset({
    "batch.created",
    "batch.anchored",
    "batch.recalled",
    "batch.distribution_updated",
    "custody.ledger_created",
    "custody.step_added",
    "custody.quality_check_added",
    "custody.recalled",
    "signature.created",
    "signature.revoked",
    "scan.alert",
})


def sign_payload(payload_json: str, secret: str) -> str:
    """Compute HMAC-SHA256 hex digest for a JSON payload."""
    return hmac_hex(secret, payload_json)


class EventPublisher:
    """Publishes events without ever blocking or failing the caller."""

    def __init__(self, settings: PharmaTraceSettings, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None
        self._tasks: set[asyncio.Task] = set()

    def _get_http_client(self) -> httpx.AsyncClient:
        """Lazy-init httpx.AsyncClient."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.settings.event_sink_timeout, transport=self._transport,
            )
        return self._http_client

    def publish(self, event_type: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Wrap ``payload`` in an envelope and schedule its delivery.

        Returns the envelope. Without a configured sink the event is only logged.
        """
        if event_type not in VALID_EVENT_TYPES:
            raise ValueError(f"Unknown event type '{event_type}'")

        envelope = {
            "event_type": event_type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "data": payload,
        }
        logger.info("event %s", event_type, extra={"context": payload})

        if not self.settings.event_sink_url:
            return envelope

        try:
            task = asyncio.get_running_loop().create_task(self._deliver(envelope))
        except RuntimeError:
            logger.warning("No running event loop; event %s not delivered", event_type)
            return envelope
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return envelope

    async def _deliver(self, envelope: dict[str, Any]) -> bool:
        payload_json = json.dumps(envelope, sort_keys=True, default=str)
        signature = sign_payload(payload_json, self.settings.event_sink_secret)
        try:
            resp = await self._get_http_client().post(
                self.settings.event_sink_url,
                content=payload_json,
                headers={
                    "Content-Type": "application/json",
                    "X-PharmaTrace-Signature": signature,
                    "X-PharmaTrace-Event": envelope["event_type"],
                },
            )
        except httpx.HTTPError as exc:
            logger.warning("Event %s delivery failed: %s", envelope["event_type"], exc)
            return False
        if resp.status_code >= 400:
            logger.warning(
                "Event %s rejected by sink: HTTP %d", envelope["event_type"], resp.status_code,
            )
            return False
        return True

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
