from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional, TypeVar

from unical.config_manager import ConfigManager
from unical.errors import RateLimited, TransientNetwork
from unical.event_store import EventStore
from unical.models import SYNC_PROVIDER_KINDS, SyncReport
from unical.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ProviderBackoff:
    def __init__(self, base_seconds: float, max_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.base_seconds = base_seconds
        self.max_seconds = max_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._strikes: dict[str, int] = {}
        self._paused_until: dict[str, float] = {}

    def pause(self, provider: str, retry_after: float | None = None) -> float:
        with self._lock:
            strikes = self._strikes.get(provider, 0)
            delay = min(self.max_seconds, self.base_seconds * (2 ** strikes))
            if retry_after:
                delay = max(delay, min(self.max_seconds, retry_after))
            self._strikes[provider] = strikes + 1
            self._paused_until[provider] = self._clock() + delay
        logger.warning("Provider %s rate limited, pausing syncs for %.0f s", provider, delay)
        return delay

    def reset(self, provider: str) -> None:
        with self._lock:
            self._strikes.pop(provider, None)
            self._paused_until.pop(provider, None)

    def is_paused(self, provider: str) -> bool:
        with self._lock:
            until = self._paused_until.get(provider)
            return until is not None and self._clock() < until

    def remaining(self, provider: str) -> float:
        with self._lock:
            until = self._paused_until.get(provider)
            return max(0.0, until - self._clock()) if until is not None else 0.0

    def observe(self, report: SyncReport) -> None:
        if report.rate_limited:
            retry_after = max((entry.retry_after or 0 for entry in report.errors), default=0)
            self.pause(report.provider, retry_after or None)
        elif report.success:
            self.reset(report.provider)


class SyncQueue:
    """Bounded pool of account syncs; resubmitting a running account joins its future."""

    def __init__(self, engine: SyncEngine, max_workers: int = 4) -> None:
        self.engine = engine
        self._executor = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="unical-sync")
        self._lock = threading.RLock()
        self._in_flight: dict[str, Future] = {}
        self._listeners: list[Callable[[SyncReport], None]] = []

    def add_listener(self, listener: Callable[[SyncReport], None]) -> None:
        self._listeners.append(listener)

    def submit(self, account_id: str, trigger: str = "manual") -> Future:
        with self._lock:
            current = self._in_flight.get(account_id)
            if current is not None and not current.done():
                logger.debug("Account %s already syncing, joining the running sync", account_id)
                return current
            future = self._executor.submit(self.engine.sync_account, account_id, trigger)
            self._in_flight[account_id] = future
        future.add_done_callback(lambda done, key=account_id: self._finished(key, done))
        return future

    def _finished(self, account_id: str, future: Future) -> None:
        with self._lock:
            if self._in_flight.get(account_id) is future:
                del self._in_flight[account_id]
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Background sync of account %s crashed: %s", account_id, exc)
            return
        report = future.result()
        for listener in list(self._listeners):
            try:
                listener(report)
            except Exception:
                logger.exception("Sync listener failed for account %s", account_id)

    def in_flight(self) -> list[str]:
        with self._lock:
            return [key for key, future in self._in_flight.items() if not future.done()]

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


class SyncScheduler:
    def __init__(
        self,
        queue: SyncQueue,
        store: EventStore,
        config_manager: ConfigManager,
        backoff: ProviderBackoff | None = None,
    ) -> None:
        self.queue = queue
        self.store = store
        self.config_manager = config_manager
        if backoff is None:
            sync_config = config_manager.load().sync
            backoff = ProviderBackoff(
                sync_config.rate_limit_backoff_seconds,
                sync_config.rate_limit_backoff_max_seconds,
            )
        self.backoff = backoff
        self.queue.add_listener(self.backoff.observe)
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="unical-sync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def run_cycle(self, trigger: str = "scheduled") -> list[Future]:
        """Queue a sync for every active remote account not paused by backoff."""
        futures: list[Future] = []
        for account in self.store.list_accounts(active_only=True):
            if account.provider not in SYNC_PROVIDER_KINDS:
                continue
            if self.backoff.is_paused(account.provider):
                logger.info("Skipping %s account %s: provider paused after rate limiting", account.provider, account.id)
                continue
            futures.append(self.queue.submit(account.id, trigger))
        return futures

    def _loop(self) -> None:
        # Run one cycle at startup so calendars are fresh quickly.
        self.run_cycle(trigger="startup")

        while not self._stop_event.is_set():
            config = self.config_manager.load()
            interval_seconds = max(30, int(config.sync.interval_seconds))
            manual = self._manual_trigger_event.wait(timeout=interval_seconds)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            self.run_cycle(trigger="manual" if manual else "scheduled")


def poll_with_backoff(
    fn: Callable[[], T],
    *,
    is_done: Callable[[T], bool] = lambda result: True,
    max_attempts: int = 5,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``fn`` until ``is_done`` accepts its result; RateLimited stops at once."""
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    result: T | None = None
    for attempt in range(max_attempts):
        try:
            result = fn()
        except RateLimited:
            raise
        except TransientNetwork:
            if attempt == max_attempts - 1:
                raise
        else:
            if is_done(result):
                return result
            if attempt == max_attempts - 1:
                return result
        sleep(min(max_delay, base_delay * (2 ** attempt)))
    return result  # type: ignore[return-value]
