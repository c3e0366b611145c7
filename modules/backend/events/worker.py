"""
Outbox Worker.

Background loop that delivers events from the outbox:

    1. every stuck_check_interval seconds, rows stuck in processing longer
       than stuck_timeout_minutes are failed back to pending
    2. up to worker_batch_size pending rows are claimed and replayed through
       EventBus.process(), at most worker_concurrency at a time
    3. each row is marked completed, or failed (requeued or dead-lettered)

Claims are a conditional UPDATE, so several workers can poll the same
table. A failed row carries a next_attempt_at set from its backoff delay
and is not returned as pending, to any worker, before then.

Outbox reads go through an aiobreaker circuit breaker and a tenacity retry
for transient database errors.

Run with: python cli.py --service worker
"""

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import aiobreaker

from modules.backend.core.logging import get_logger, log_context, log_with_source
from modules.backend.core.resilience import create_circuit_breaker, database_retry
from modules.backend.events.bus import EventBus
from modules.backend.events.config import EventConfig, EventConfigStore
from modules.backend.events.outbox import Outbox, calculate_backoff_delay
from modules.backend.events.schemas import RetryPolicy

logger = get_logger(__name__)

T = TypeVar("T")

STUCK_EVENT_MESSAGE = "Event was stuck in processing state"


def backoff_delay_ms(retry_count: int, policy: RetryPolicy) -> int:
    """Delay before a failed row may be retried, per the retry policy."""
    if not policy.exponential_backoff:
        return policy.backoff_ms
    return calculate_backoff_delay(
        retry_count,
        base_delay_ms=policy.backoff_ms,
        jitter=policy.jitter,
    )


class OutboxWorker:
    """
    Polls the outbox and replays events through the bus.

    Args:
        bus: Bus whose process() runs the handlers
        outbox: Outbox to poll
        config_store: Live event configuration, read every cycle
        clock: Monotonic clock in seconds for the stuck-sweep schedule, injectable for tests
        db_breaker: Circuit breaker for outbox reads
    """

    def __init__(
        self,
        bus: EventBus,
        outbox: Outbox,
        config_store: EventConfigStore,
        clock: Callable[[], float] = time.monotonic,
        db_breaker: aiobreaker.CircuitBreaker | None = None,
    ) -> None:
        self._bus = bus
        self._outbox = outbox
        self._config_store = config_store
        self._clock = clock
        self._db_breaker = db_breaker or create_circuit_breaker("event_outbox")
        self._last_stuck_check: float | None = None
        self._stop_event: asyncio.Event | None = None
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self, sweep_stuck: bool | None = None) -> int:
        """
        Run one poll cycle.

        Args:
            sweep_stuck: Force (True) or skip (False) the stuck-row sweep;
                by default it runs every stuck_check_interval seconds

        Returns:
            Number of rows completed in this cycle
        """
        config = self._config_store.get()

        if sweep_stuck is None:
            sweep_stuck = self._stuck_sweep_due(config)
        if sweep_stuck:
            await self.recover_stuck_events(config)

        records = await self._read(self._outbox.get_pending_events, config.worker_batch_size)
        if not records:
            return 0

        log_with_source(logger, "worker", "info", "Processing pending events", count=len(records))

        semaphore = asyncio.Semaphore(config.worker_concurrency)

        async def bounded(outbox_id: str) -> bool:
            async with semaphore:
                return await self.process_outbox_event(outbox_id, config.default_retry_policy)

        results = await asyncio.gather(
            *(bounded(record.id) for record in records),
            return_exceptions=True,
        )

        completed = 0
        for record, result in zip(records, results):
            if isinstance(result, BaseException):
                log_with_source(
                    logger, "worker", "error", "Failed to process outbox event",
                    outbox_id=record.id, error=str(result),
                )
            elif result:
                completed += 1
        return completed

    async def process_outbox_event(self, outbox_id: str, policy: RetryPolicy | None = None) -> bool:
        """
        Claim one row and replay it.

        Returns:
            True if the event was processed and marked completed
        """
        policy = policy or self._config_store.get().default_retry_policy

        if not await self._outbox.mark_as_processing(outbox_id):
            return False

        with log_context("worker", outbox_id=outbox_id):
            return await self._deliver(outbox_id, policy)

    async def _deliver(self, outbox_id: str, policy: RetryPolicy) -> bool:
        record = await self._outbox.get_outbox_event(outbox_id)
        if record is None:
            logger.warning("Outbox record not found")
            return False

        try:
            event = self._outbox.reconstruct_event(record)
            await self._bus.process(event)
        except Exception as e:
            error_message = str(e)
            logger.warning(
                "Outbox event failed",
                extra={"event_name": record.event_name, "retry_count": record.retry_count, "error": error_message},
            )
            delay_ms = backoff_delay_ms(record.retry_count, policy)
            if await self._outbox.mark_as_failed(outbox_id, error_message, retry_delay_ms=delay_ms):
                logger.info("Outbox event scheduled for retry", extra={"delay_ms": delay_ms})
            return False

        await self._outbox.mark_as_completed(outbox_id)
        logger.info("Outbox event processed", extra={"event_name": record.event_name})
        return True

    async def recover_stuck_events(self, config: EventConfig | None = None) -> int:
        """
        Fail rows stuck in processing so they are retried or dead-lettered.

        Returns:
            Number of stuck rows found
        """
        config = config or self._config_store.get()
        stuck = await self._read(
            self._outbox.get_stuck_events,
            config.stuck_timeout_minutes,
            config.worker_batch_size,
        )
        if not stuck:
            return 0

        log_with_source(logger, "worker", "warning", "Resetting stuck events", count=len(stuck))
        for record in stuck:
            await self._outbox.mark_as_failed(
                record.id,
                STUCK_EVENT_MESSAGE,
                retry_delay_ms=backoff_delay_ms(record.retry_count, config.default_retry_policy),
            )
        return len(stuck)

    async def start(self) -> None:
        """Start the poll loop in the background."""
        if self.is_running:
            log_with_source(logger, "worker", "warning", "Outbox worker is already running")
            return

        config = self._config_store.get()
        if not config.enabled:
            log_with_source(logger, "worker", "info", "Event system is disabled, worker not started")
            return

        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(self._stop_event), name="outbox-worker")
        log_with_source(
            logger, "worker", "info", "Outbox worker started",
            polling_interval=config.outbox_polling_interval,
            batch_size=config.worker_batch_size,
            concurrency=config.worker_concurrency,
        )

    async def stop(self, timeout: float = 30.0) -> None:
        """Stop after the current cycle and wait for in-flight immediate dispatches."""
        if self._task is None or self._stop_event is None:
            return

        log_with_source(logger, "worker", "info", "Shutting down outbox worker")
        self._stop_event.set()
        try:
            await asyncio.wait_for(self._task, timeout)
        except TimeoutError:
            log_with_source(logger, "worker", "warning", "Outbox worker did not stop in time, cancelled", timeout=timeout)
        self._task = None

        await self._bus.drain()
        log_with_source(logger, "worker", "info", "Outbox worker stopped")

    async def wait(self) -> None:
        """Block until the poll loop exits."""
        if self._task is not None:
            await self._task

    async def _loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await self.run_once()
            except aiobreaker.CircuitBreakerError as e:
                log_with_source(logger, "worker", "warning", "Outbox database circuit open", error=str(e))
            except Exception as e:
                log_with_source(logger, "worker", "error", "Outbox worker cycle failed", error=str(e))

            interval = self._config_store.get().outbox_polling_interval
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(stop_event.wait(), interval)

    def _stuck_sweep_due(self, config: EventConfig) -> bool:
        now = self._clock()
        if self._last_stuck_check is None or now - self._last_stuck_check >= config.stuck_check_interval:
            self._last_stuck_check = now
            return True
        return False

    async def _read(self, fn: Callable[..., Awaitable[T]], *args: Any) -> T:
        return await self._db_breaker.call_async(database_retry(fn), *args)
