"""
Email Queue

Email jobs handed to the delivery worker through the key/value store.
Rendering and sending happen elsewhere; the core only enqueues.
"""

import json
import logging
import time
from typing import Any, Callable, Dict, Optional

from astropal.domain.billing import EmailType
from astropal.infrastructure.kv import KeyValueStore


logger = logging.getLogger(__name__)


EMAIL_JOB_TTL = 24 * 60 * 60


class EmailQueue:
    """Enqueue sink for {userId, type, payload} email jobs."""

    def __init__(
        self,
        store: KeyValueStore,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._clock = clock

    async def enqueue(
        self,
        user_id: str,
        email_type: EmailType,
        payload: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Store one email job.

        Errors propagate: callers decide whether a lost email is fatal.

        Returns:
            The queue key
        """
        now_ms = int(self._clock() * 1000)
        key = f"email_queue:{email_type.value}:{user_id}:{now_ms}"
        job = {
            "userId": user_id,
            "type": email_type.value,
            "payload": payload or {},
            "timestamp": now_ms,
        }
        await self._store.put(key, json.dumps(job, default=str), EMAIL_JOB_TTL)
        logger.info(f"Queued {email_type.value} email for user {user_id}")
        return key
