"""
Provider Circuit Breaker

Per-provider failure gate for the content pipeline.

States:
- CLOSED: calls pass through; consecutive failures are counted
- OPEN: calls are refused until the reset timeout has elapsed
- HALF_OPEN: one test call is let through; success closes the
  circuit, failure opens it again

State changes happen under an asyncio.Lock so concurrent generations
sharing one pipeline instance see a consistent failure count.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from astropal.infrastructure.exceptions import CircuitOpenError


logger = logging.getLogger(__name__)


T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker around one provider.

    Args:
        name: Provider name, used in logs and errors
        failure_threshold: Consecutive failures that open the circuit
        reset_timeout: Seconds to stay open before a test call is allowed
        clock: Monotonic clock, replaceable in tests
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 3,
        reset_timeout: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._test_call_in_flight = False
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failures(self) -> int:
        return self._failures

    async def _before_call(self) -> None:
        async with self._lock:
            if self._state == CircuitState.CLOSED:
                return

            if self._state == CircuitState.OPEN:
                if self._clock() - self._opened_at < self.reset_timeout:
                    raise CircuitOpenError(
                        f"Circuit {self.name} is OPEN", provider=self.name
                    )
                self._state = CircuitState.HALF_OPEN
                self._test_call_in_flight = False
                logger.info(f"Circuit {self.name} transitioning to HALF_OPEN")

            if self._test_call_in_flight:
                raise CircuitOpenError(
                    f"Circuit {self.name} is HALF_OPEN with a test call in flight",
                    provider=self.name,
                )
            self._test_call_in_flight = True

    async def record_success(self) -> None:
        async with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info(f"Circuit {self.name} CLOSED after successful test call")
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._opened_at = None
            self._test_call_in_flight = False

    async def record_failure(self) -> None:
        async with self._lock:
            self._failures += 1
            self._test_call_in_flight = False

            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()
                logger.warning(f"Circuit {self.name} OPEN after half-open failure")
            elif self._failures >= self.failure_threshold and self._state == CircuitState.CLOSED:
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()
                logger.warning(f"Circuit {self.name} OPEN after {self._failures} failures")

    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        """
        Run func through the breaker.

        Raises:
            CircuitOpenError if the circuit refuses the call
            Whatever func raises, after counting the failure
        """
        await self._before_call()
        try:
            result = await func()
        except asyncio.CancelledError:
            self._test_call_in_flight = False
            raise
        except Exception:
            await self.record_failure()
            raise
        await self.record_success()
        return result
