"""
Metrics Sink

Append-only telemetry records written to the key/value store. Metrics are
for cost tracking and alerting, never for correctness, so a failed write
is logged and dropped.
"""

import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from astropal.infrastructure.kv import KeyValueStore


logger = logging.getLogger(__name__)


DAY_SECONDS = 24 * 60 * 60

WEBHOOK_METRIC_TTL = 7 * DAY_SECONDS
FAILED_WEBHOOK_TTL = 30 * DAY_SECONDS
GENERATION_METRIC_TTL = 30 * DAY_SECONDS
ALERT_TTL = 30 * DAY_SECONDS

# Dead-letter records keep only the head of the payload
FAILED_PAYLOAD_LIMIT = 1000


class MetricsSink:
    """Writes webhook, generation and alert records."""

    def __init__(
        self,
        store: KeyValueStore,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _timestamp(self) -> str:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat()

    async def _write(self, key: str, record: Dict[str, Any], ttl: int) -> None:
        try:
            await self._store.put(key, json.dumps(record, default=str), ttl)
        except Exception as e:
            logger.warning(f"Failed to write metric {key}: {e}")

    async def record_webhook(
        self,
        event_id: str,
        event_type: str,
        webhook_type: str,
        success: bool,
        duration_ms: int,
        attempts: int,
        duplicate: bool = False,
    ) -> None:
        """One record per webhook delivery that passed signature checks."""
        await self._write(
            f"webhook_metric:{self._now_ms()}:{event_id}",
            {
                "eventId": event_id,
                "eventType": event_type,
                "webhookType": webhook_type,
                "success": success,
                "duplicate": duplicate,
                "attempts": attempts,
                "durationMs": duration_ms,
                "timestamp": self._timestamp(),
            },
            WEBHOOK_METRIC_TTL,
        )

    async def record_failed_webhook(
        self,
        event_id: str,
        event_type: str,
        error: str,
        payload: str,
    ) -> None:
        """Dead-letter record for an event whose handler exhausted its retries."""
        await self._write(
            f"failed_webhook:{self._now_ms()}:{event_id}",
            {
                "eventId": event_id,
                "eventType": event_type,
                "error": error,
                "payload": payload[:FAILED_PAYLOAD_LIMIT],
                "timestamp": self._timestamp(),
            },
            FAILED_WEBHOOK_TTL,
        )

    async def record_generation(
        self,
        perspective: str,
        tier: str,
        model_used: str,
        provider: str,
        tokens_used: int,
        cost_usd: float,
        duration_ms: int,
        cache_hit: bool = False,
        fallback_reason: Optional[str] = None,
    ) -> None:
        """One record per generate_content call, whichever path served it."""
        now = self._clock()
        await self._write(
            f"generation_metrics:{self._now_ms()}:{perspective}",
            {
                "date": datetime.fromtimestamp(now, tz=timezone.utc).date().isoformat(),
                "perspective": perspective,
                "tier": tier,
                "modelUsed": model_used,
                "provider": provider,
                "tokensUsed": tokens_used,
                "costUsd": cost_usd,
                "duration": duration_ms,
                "cacheHit": cache_hit,
                "fallbackReason": fallback_reason,
                "timestamp": self._timestamp(),
            },
            GENERATION_METRIC_TTL,
        )

    async def record_tier_resolution_fallback(
        self,
        subscription_id: str,
        price_id: Optional[str],
        resolved_tier: str,
    ) -> None:
        """Alert record for a subscription whose tier had to be defaulted."""
        await self._write(
            f"tier_resolution_fallback:{self._now_ms()}:{subscription_id}",
            {
                "subscriptionId": subscription_id,
                "priceId": price_id,
                "resolvedTier": resolved_tier,
                "timestamp": self._timestamp(),
            },
            ALERT_TTL,
        )
