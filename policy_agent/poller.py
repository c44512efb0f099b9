"""Resilient poller – periodic refresh with last-known-good fallback.

States::

    INITIALIZING → SERVING ⇄ REFRESHING
                       ↓ stop()
                    STOPPED

The poller seeds itself from the cache store (if any) at construction, so it
can serve before the first successful fetch.  Each tick performs exactly one
fetch; only a structurally different result replaces the current snapshot,
gets persisted and is handed to the listener.  Fetch failures are logged and
the stale snapshot keeps being served.

Ticks never overlap.  A tick still running when the next one is due causes
the missed slot to be dropped, not queued.  ``stop()`` wakes the inter-tick
sleep immediately; the persist + notify step contains no ``await`` and so
cannot be split by cancellation.
"""

from __future__ import annotations

import asyncio
import math
from contextlib import suppress
from datetime import datetime
from typing import Any, Generic, Optional, Protocol, TypeVar

from policy_agent.errors import ConfigurationError, FetchError
from policy_agent.models import UNCHANGED, PolicySnapshot, PollerState, PollerStatus, TickResult
from policy_agent.utils.cache_store import PolicyCacheStore
from policy_agent.utils.logger import logger
from policy_agent.utils.utils import utc_now

__all__ = ["ResilientPoller", "Fetcher"]

T = TypeVar("T")


class Fetcher(Protocol):
    async def fetch(self) -> Any: ...


class ResilientPoller(Generic[T]):
    def __init__(
        self,
        fetcher: Fetcher,
        interval_seconds: float,
        *,
        cache_store: PolicyCacheStore | None = None,
        listener: Any = None,
        initial: Optional[T] = None,
        name: str = "policy",
    ) -> None:
        if interval_seconds is None or not math.isfinite(interval_seconds) or interval_seconds <= 0:
            raise ConfigurationError(f"Poll interval must be finite and strictly positive, got {interval_seconds!r}")

        self.name = name
        self.interval = float(interval_seconds)
        self._fetcher = fetcher
        self._cache_store = cache_store
        self._listener = listener

        self._state = PollerState.initializing
        self._snapshot: Optional[T] = initial
        if self._snapshot is None and cache_store is not None:
            self._snapshot = cache_store.load()  # type: ignore[assignment]
            if self._snapshot is not None:
                logger.info(f"{self.name} poller seeded from cache {cache_store.path}")
        self._state = PollerState.serving

        self._tick_lock = asyncio.Lock()
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

        self._ticks = 0
        self._consecutive_failures = 0
        self._last_success_at: Optional[datetime] = None
        self._last_change_at: Optional[datetime] = None
        self._last_failure_at: Optional[datetime] = None
        self._last_error: Optional[str] = None

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> Optional[T]:
        """Current snapshot; replaced as a whole, never mutated."""
        return self._snapshot

    @property
    def state(self) -> PollerState:
        return self._state

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def status(self) -> PollerStatus:
        snapshot = self._snapshot
        return PollerStatus(
            state=self._state,
            has_snapshot=snapshot is not None,
            interval_seconds=self.interval,
            etag=snapshot.etag() if isinstance(snapshot, PolicySnapshot) else None,
            last_success_at=self._last_success_at,
            last_change_at=self._last_change_at,
            last_failure_at=self._last_failure_at,
            last_error=self._last_error,
            consecutive_failures=self._consecutive_failures,
            ticks=self._ticks,
        )

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    async def refresh(self) -> TickResult:
        """Run one tick now, unless one is already in flight."""
        if self._tick_lock.locked():
            logger.warning(f"{self.name} poll tick still running, skipping this one")
            return TickResult.skipped

        async with self._tick_lock:
            previous_state = self._state
            self._state = PollerState.refreshing
            try:
                return await self._tick()
            finally:
                self._state = PollerState.stopped if previous_state is PollerState.stopped else PollerState.serving

    async def _tick(self) -> TickResult:
        self._ticks += 1
        try:
            fetched = await self._fetcher.fetch()
        except FetchError as exc:
            self._record_failure(exc)
            logger.warning(
                f"{self.name} refresh failed, serving last known snapshot: {exc.message}",
                extra={"poller": self.name, "consecutive_failures": self._consecutive_failures},
            )
            return TickResult.failed
        except ConfigurationError:
            raise
        except Exception as exc:  # noqa: BLE001 – any fetch failure is transient
            self._record_failure(exc)
            logger.exception(f"{self.name} refresh failed unexpectedly, serving last known snapshot")
            return TickResult.failed

        self._consecutive_failures = 0
        self._last_success_at = utc_now()

        if fetched is UNCHANGED or fetched == self._snapshot:
            logger.debug(f"{self.name} unchanged")
            return TickResult.unchanged

        self._apply(fetched)
        return TickResult.updated

    def _record_failure(self, exc: Exception) -> None:
        self._consecutive_failures += 1
        self._last_failure_at = utc_now()
        self._last_error = str(exc)

    def _apply(self, snapshot: T) -> None:
        """Swap, persist, notify – in that order and without suspending."""
        self._snapshot = snapshot
        self._last_change_at = utc_now()

        if self._cache_store is not None:
            try:
                self._cache_store.save(snapshot)  # type: ignore[arg-type]
            except OSError as exc:
                logger.error(f"Unable to persist {self.name} snapshot to {self._cache_store.path}: {exc}")

        logger.info(f"{self.name} changed", extra={"poller": self.name})

        if self._listener is not None:
            handler = getattr(self._listener, "on_change", self._listener)
            try:
                handler(snapshot)
            except Exception:  # noqa: BLE001 – a broken listener must not stop polling
                logger.exception(f"{self.name} change listener failed")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Schedule the polling loop on the running event loop."""
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._state = PollerState.serving
        self._task = asyncio.create_task(self._run(self._stop_event), name=f"{self.name}-poller")
        logger.info(f"{self.name} poller started (every {self.interval}s)")

    async def _run(self, stop_event: asyncio.Event) -> None:
        loop = asyncio.get_running_loop()
        next_due = loop.time()
        while not stop_event.is_set():
            try:
                await self.refresh()
            except ConfigurationError:
                logger.exception(f"{self.name} poller stopping on configuration error")
                self._state = PollerState.stopped
                raise

            next_due += self.interval
            now = loop.time()
            if now > next_due:
                missed = int((now - next_due) // self.interval) + 1
                next_due += missed * self.interval
                logger.warning(f"{self.name} tick overran, dropping {missed} missed tick(s)")

            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stop_event.wait(), timeout=max(0.0, next_due - loop.time()))

    async def stop(self, timeout: float | None = 10.0) -> None:
        """Stop polling; an in-flight tick gets ``timeout`` seconds to finish."""
        if self._stop_event is not None:
            self._stop_event.set()

        task, self._task = self._task, None
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout)
            except asyncio.TimeoutError:
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task

        self._state = PollerState.stopped
        logger.info(f"{self.name} poller stopped")
