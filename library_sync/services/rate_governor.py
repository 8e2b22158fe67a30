"""Request-rate governor for outbound catalog API calls."""

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from library_sync.config import get_settings
from library_sync.database import upsert_insert
from library_sync.models import RateLimitState
from library_sync.timeutils import ensure_utc, utcnow

logger = logging.getLogger(__name__)
settings = get_settings()


class RateGovernor:
    """
    Process-local gate combining a sliding-window quota with a global backoff.

    - Sliding window: at most ``max_requests`` admissions in any trailing
      ``window_seconds``. At capacity the caller sleeps until the oldest
      admission leaves the window.
    - Backoff: ``trigger_backoff()`` pauses every caller for a cooldown that
      grows linearly with each consecutive trigger (60s, 120s, 180s by
      default, capped). ``reset_backoff()`` ends it at once, including for
      a caller already waiting on it.

    All gating state is guarded by one asyncio.Lock, so concurrent callers
    pass through the window check one at a time. ``trigger_backoff`` and
    ``reset_backoff`` are synchronous and run between awaits of the event
    loop, which makes them atomic with respect to ``acquire``.
    """

    def __init__(
        self,
        max_requests: int = settings.rate_limit_max_requests,
        window_seconds: float = settings.rate_limit_window_seconds,
        backoff_step_seconds: float = settings.backoff_step_seconds,
        backoff_max_seconds: float | None = settings.backoff_max_seconds,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.backoff_step_seconds = backoff_step_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self._clock = clock
        self._sleep = sleep

        self._lock = asyncio.Lock()
        self._request_times: deque[float] = deque()
        self._backoff_until = 0.0
        self._backoff_seconds = 0.0
        self._consecutive_triggers = 0
        self._reset_event = asyncio.Event()

    @property
    def backoff_seconds(self) -> float:
        """Duration of the most recently triggered cooldown (0 after a reset)."""
        return self._backoff_seconds

    @property
    def backoff_remaining(self) -> float:
        return max(0.0, self._backoff_until - self._clock())

    def trigger_backoff(self) -> float:
        """Start (or extend) the global cooldown after an overload signal."""
        self._consecutive_triggers += 1
        seconds = self.backoff_step_seconds * self._consecutive_triggers
        if self.backoff_max_seconds is not None:
            seconds = min(seconds, self.backoff_max_seconds)
        self._backoff_seconds = seconds
        self._backoff_until = max(self._backoff_until, self._clock() + seconds)

        logger.warning(
            f"Global rate limit backoff activated: {seconds:.0f}s "
            f"(hit #{self._consecutive_triggers})"
        )
        return seconds

    def reset_backoff(self) -> None:
        """Clear the cooldown and wake any caller waiting it out."""
        if self._consecutive_triggers or self._backoff_until:
            logger.info("Rate limit backoff reset - requests flowing normally")
        self._consecutive_triggers = 0
        self._backoff_seconds = 0.0
        self._backoff_until = 0.0
        self._reset_event.set()

    async def acquire(self) -> None:
        """Block until a request slot is available. Never fails."""
        async with self._lock:
            while True:
                await self._wait_out_backoff()

                now = self._clock()
                while self._request_times and now - self._request_times[0] >= self.window_seconds:
                    self._request_times.popleft()

                if len(self._request_times) < self.max_requests:
                    self._request_times.append(now)
                    return

                wait = self.window_seconds - (now - self._request_times[0])
                logger.debug(f"Request window full, waiting {wait:.2f}s")
                await self._sleep(max(wait, 0.0))

    async def _wait_out_backoff(self) -> None:
        while True:
            remaining = self._backoff_until - self._clock()
            if remaining <= 0:
                return
            logger.info(f"Waiting {remaining:.0f}s due to global rate limit backoff...")
            self._reset_event.clear()
            try:
                await asyncio.wait_for(self._reset_event.wait(), timeout=remaining)
            except TimeoutError:
                pass


class RateLimitTracker:
    """
    Persisted rate-limit state shared across processes.

    Every access is a short read-modify-write on its own session, so the
    playback poller and the sync worker observe each other's rate-limit walls.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        key: str = settings.rate_limit_state_key,
        window_seconds: float = settings.rate_limit_window_seconds,
        default_reset: timedelta = timedelta(hours=settings.rate_limit_default_reset_hours),
    ):
        self.session_factory = session_factory
        self.key = key
        self.window_seconds = window_seconds
        self.default_reset = default_reset

    async def can_make_request(self) -> bool:
        """False while a recorded rate limit has not yet expired."""
        async with self.session_factory() as session:
            state = await self._get_or_create(session)
            retry_after = ensure_utc(state.retry_after)

            if state.is_rate_limited and retry_after and utcnow() < retry_after:
                return False

            if state.is_rate_limited or retry_after:
                # Rate limit period has passed
                state.is_rate_limited = False
                state.retry_after = None
                await session.commit()
                logger.info("Recorded rate limit expired")

            return True

    async def record_request(self) -> None:
        async with self.session_factory() as session:
            state = await self._get_or_create(session)
            now = utcnow()
            window_start = ensure_utc(state.window_start)
            if (now - window_start).total_seconds() >= self.window_seconds:
                state.window_start = now
                state.request_count = 1
            else:
                state.request_count += 1
            state.last_request_at = now
            await session.commit()

    async def record_rate_limit_hit(self, retry_after: datetime | None = None) -> datetime:
        """Persist a rate-limit wall; defaults to a conservative 24h when no hint."""
        now = utcnow()
        reset_at = ensure_utc(retry_after) or now + self.default_reset
        async with self.session_factory() as session:
            state = await self._get_or_create(session)
            state.is_rate_limited = True
            state.retry_after = reset_at
            state.last_rate_limit_at = now
            await session.commit()

        logger.warning(f"Rate limit hit. Retry after: {reset_at}")
        return reset_at

    async def clear(self) -> None:
        async with self.session_factory() as session:
            state = await self._get_or_create(session)
            state.is_rate_limited = False
            state.retry_after = None
            await session.commit()

    async def get_state(self) -> RateLimitState:
        async with self.session_factory() as session:
            return await self._get_or_create(session)

    async def _get_or_create(self, session: AsyncSession) -> RateLimitState:
        query = select(RateLimitState).where(RateLimitState.key == self.key).with_for_update()
        state = (await session.execute(query)).scalar_one_or_none()
        if state is not None:
            return state

        now = utcnow()
        stmt = (
            upsert_insert(session, RateLimitState)
            .values(
                key=self.key,
                request_count=0,
                window_start=now,
                is_rate_limited=False,
                last_request_at=now,
            )
            .on_conflict_do_nothing(index_elements=["key"])
        )
        await session.execute(stmt)
        await session.commit()
        return (await session.execute(query)).scalar_one()
