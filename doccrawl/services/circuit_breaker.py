"""S3 — Circuit breaker guarding calls to the crawl provider.

closed ──(failure_threshold failures)──> open ──(timeout)──> half_open
half_open ──(success_threshold successes)──> closed
half_open ──(any failure)──> open
half_open ──(trial slots used, no verdict after timeout)──> new trial round

State lives in Redis under ``circuit:<name>`` when a connection is available,
so every instance sees the same breaker; otherwise it is per-process.
Updates are read-modify-write: concurrent instances may lose an increment,
which only shifts the trip point by a request or two.
"""

import logging
import time
from collections.abc import Callable
from enum import Enum

from pydantic import BaseModel

from doccrawl.config import settings
from doccrawl.services.cache import TieredCache

logger = logging.getLogger(__name__)

STATE_TTL = 3600


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitState(BaseModel):
    state: BreakerState = BreakerState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    half_open_attempts: int = 0
    opened_at: float | None = None
    half_open_at: float | None = None


class CircuitBreaker:
    """Process-wide (or Redis-shared) breaker for one dependency."""

    def __init__(
        self,
        name: str,
        cache: TieredCache | None = None,
        failure_threshold: int | None = None,
        success_threshold: int | None = None,
        timeout: float | None = None,
        half_open_requests: int | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self._cache = cache
        self.failure_threshold = failure_threshold or settings.breaker_failure_threshold
        self.success_threshold = success_threshold or settings.breaker_success_threshold
        self.timeout = settings.breaker_timeout if timeout is None else timeout
        self.half_open_requests = half_open_requests or settings.breaker_half_open_requests
        self._clock = clock
        self._local = CircuitState()

    @property
    def key(self) -> str:
        return f"circuit:{self.name}"

    @property
    def _shared(self) -> bool:
        return self._cache is not None and self._cache.is_redis_available

    async def get_state(self) -> CircuitState:
        if self._shared:
            data = await self._cache.get_json(self.key)
            if data is not None:
                return CircuitState.model_validate(data)
            return CircuitState()
        return self._local.model_copy()

    async def _save(self, state: CircuitState):
        self._local = state
        if self._shared:
            await self._cache.set_json(self.key, state.model_dump(mode="json"), STATE_TTL)

    async def can_request(self) -> bool:
        """Whether a guarded call may proceed now. Check before every call.

        Moves an expired open breaker to half_open and hands out at most
        ``half_open_requests`` trial slots while half-open. Slots whose calls
        never reported back are handed out again once ``timeout`` passes.
        """
        state = await self.get_state()

        if state.state == BreakerState.CLOSED:
            return True

        if state.state == BreakerState.OPEN:
            if self._clock() - (state.opened_at or 0.0) < self.timeout:
                return False
            logger.info("Circuit HALF_OPEN | name=%s", self.name)
            state = CircuitState(
                state=BreakerState.HALF_OPEN, opened_at=state.opened_at, half_open_at=self._clock(),
            )

        if state.half_open_attempts >= self.half_open_requests:
            if self._clock() - (state.half_open_at or 0.0) < self.timeout:
                return False
            logger.warning(
                "Circuit half-open trials unresolved, starting new round | name=%s | attempts=%d",
                self.name, state.half_open_attempts,
            )
            state.half_open_attempts = 0
            state.success_count = 0
            state.half_open_at = self._clock()
        state.half_open_attempts += 1
        await self._save(state)
        return True

    async def record_success(self):
        state = await self.get_state()

        if state.state == BreakerState.HALF_OPEN:
            state.success_count += 1
            if state.success_count >= self.success_threshold:
                logger.info("Circuit CLOSED | name=%s", self.name)
                state = CircuitState()
            await self._save(state)
        elif state.state == BreakerState.CLOSED and state.failure_count:
            state.failure_count = 0
            await self._save(state)

    async def record_failure(self):
        state = await self.get_state()

        if state.state == BreakerState.HALF_OPEN:
            logger.warning("Circuit re-OPEN after half-open failure | name=%s", self.name)
            state = self._opened(state.failure_count + 1)
        elif state.state == BreakerState.CLOSED:
            state.failure_count += 1
            if state.failure_count >= self.failure_threshold:
                logger.error(
                    "Circuit OPEN | name=%s | failures=%d | cooldown=%ss",
                    self.name, state.failure_count, self.timeout,
                )
                state = self._opened(state.failure_count)
        else:
            # Late failure from a call admitted before the breaker opened
            state.failure_count += 1

        await self._save(state)

    def _opened(self, failure_count: int) -> CircuitState:
        return CircuitState(
            state=BreakerState.OPEN,
            failure_count=failure_count,
            opened_at=self._clock(),
        )

    async def reset(self):
        await self._save(CircuitState())
