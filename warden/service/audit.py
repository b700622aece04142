"""Asynchronous audit recorder.

``record`` only appends to a bounded in-memory buffer and is safe from any
thread or coroutine. A single delivery task drains the buffer to the sink in
FIFO batches, so events from one actor reach storage in submission order.
While the sink is unavailable undelivered batches return to the head of the
buffer. When the buffer is full the oldest event is dropped and counted per
tenant; an ``audit.overflow`` event carrying that count is recorded after the
next successful delivery. Events still buffered when ``stop`` cannot reach
the sink are logged as lost.
"""

from __future__ import annotations

import asyncio
import threading
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Protocol, Sequence

from warden.logging import get_logger
from warden.storage.models import AuditEvent, AuditOutcome, AuditSeverity

logger = get_logger(__name__)

OVERFLOW_ACTION = "audit.overflow"


class AuditSink(Protocol):
    def append_audit_events(self, events: Sequence[AuditEvent]) -> None: ...


class AuditRecorder:
    def __init__(
        self,
        sink: AuditSink,
        *,
        capacity: int = 10_000,
        batch_size: int = 100,
        max_retries: int = 5,
        retry_base_seconds: float = 0.1,
        retry_max_seconds: float = 5.0,
        poll_interval: float = 1.0,
        io_timeout: float = 2.0,
    ) -> None:
        self.sink = sink
        self.capacity = capacity
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.poll_interval = poll_interval
        self.io_timeout = io_timeout
        self._buffer: Deque[AuditEvent] = deque()
        self._lock = threading.Lock()
        self._dropped: Dict[str, int] = {}
        self._drain_lock = asyncio.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.delivered = 0
        self.lost = 0
        self.dropped_total = 0

    @property
    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "buffered": len(self._buffer),
                "delivered": self.delivered,
                "lost": self.lost,
                "dropped": self.dropped_total,
                "pending_overflow": dict(self._dropped),
                "running": self._running,
            }

    def record(self, event: AuditEvent) -> None:
        """Enqueue ``event`` without waiting on the sink."""
        with self._lock:
            if len(self._buffer) >= self.capacity:
                self._drop_oldest_locked()
            self._buffer.append(event)
        self._notify()

    def _notify(self) -> None:
        loop, wakeup = self._loop, self._wakeup
        if loop is None or wakeup is None:
            return
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None
        if current is loop:
            wakeup.set()
            return
        try:
            loop.call_soon_threadsafe(wakeup.set)
        except RuntimeError:
            # Loop already closed; the event stays buffered for the final flush
            logger.debug("audit_wakeup_skipped")

    async def start(self) -> None:
        if self._running:
            logger.warning("audit_recorder_already_running")
            return
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("audit_recorder_started", capacity=self.capacity)

    async def stop(self, *, timeout: float = 5.0) -> None:
        """Stop the delivery task, then flush whatever is still buffered."""
        self._running = False
        if self._wakeup is not None:
            self._wakeup.set()
        if self._task:
            try:
                await asyncio.wait_for(self._task, timeout)
            except asyncio.TimeoutError:
                logger.warning("audit_recorder_stop_timeout", timeout=timeout)
            self._task = None
        if not await self.flush():
            # Shutting down with the sink still refusing writes
            with self._lock:
                remaining = list(self._buffer)
                self._buffer.clear()
            self._mark_lost(remaining)
        self._loop = None
        self._wakeup = None
        logger.info("audit_recorder_stopped", **self.stats)

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            wakeup = self._wakeup
            if wakeup is None:
                logger.warning("audit_loop_missing_wakeup")
                return
            try:
                await asyncio.wait_for(wakeup.wait(), self.poll_interval)
            except asyncio.TimeoutError:
                pass
            wakeup.clear()
            try:
                drained = await self.flush()
            except Exception as exc:
                drained = False
                logger.error(
                    "audit_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors + 1,
                )
            if drained:
                consecutive_errors = 0
                continue
            consecutive_errors += 1
            await asyncio.sleep(
                min(self.retry_max_seconds, self.poll_interval * consecutive_errors)
            )

    async def flush(self) -> bool:
        """Deliver buffered events in FIFO order; False when the sink is unavailable.

        A batch the sink keeps refusing goes back to the head of the buffer and
        waits for the next drain.
        """
        async with self._drain_lock:
            while True:
                batch = self._take_batch()
                if not batch:
                    return True
                try:
                    delivered = await self._deliver(batch)
                except asyncio.CancelledError:
                    self._requeue(batch)
                    raise
                if not delivered:
                    self._requeue(batch)
                    return False
                self._emit_overflow_events()

    def _take_batch(self) -> List[AuditEvent]:
        with self._lock:
            count = min(self.batch_size, len(self._buffer))
            return [self._buffer.popleft() for _ in range(count)]

    def _requeue(self, batch: List[AuditEvent]) -> None:
        with self._lock:
            self._buffer.extendleft(reversed(batch))
            while len(self._buffer) > self.capacity:
                self._drop_oldest_locked()
            buffered = len(self._buffer)
        logger.warning("audit_delivery_deferred", batch_size=len(batch), buffered=buffered)

    def _drop_oldest_locked(self) -> None:
        oldest = self._buffer.popleft()
        self._dropped[oldest.tenant_id] = self._dropped.get(oldest.tenant_id, 0) + 1
        self.dropped_total += 1

    async def _deliver(self, batch: List[AuditEvent]) -> bool:
        attempt = 0
        while True:
            try:
                await asyncio.wait_for(
                    asyncio.to_thread(self.sink.append_audit_events, batch),
                    self.io_timeout,
                )
            except Exception as exc:
                attempt += 1
                if attempt > self.max_retries:
                    logger.error(
                        "audit_delivery_failed",
                        attempts=attempt,
                        batch_size=len(batch),
                        error_type=type(exc).__name__,
                    )
                    return False
                delay = min(
                    self.retry_max_seconds, self.retry_base_seconds * (2 ** (attempt - 1))
                )
                logger.warning(
                    "audit_delivery_retry",
                    attempt=attempt,
                    delay_seconds=delay,
                    batch_size=len(batch),
                    error_type=type(exc).__name__,
                )
                await asyncio.sleep(delay)
                continue
            with self._lock:
                self.delivered += len(batch)
            return True

    def _mark_lost(self, events: List[AuditEvent]) -> None:
        with self._lock:
            self.lost += len(events)
        for event in events:
            logger.error(
                "audit_event_lost",
                event_id=event.id,
                tenant_id=event.tenant_id,
                action=event.action,
                actor_id=event.actor_id,
            )

    def _emit_overflow_events(self) -> None:
        with self._lock:
            dropped, self._dropped = self._dropped, {}
        for tenant_id, count in dropped.items():
            logger.warning("audit_overflow", tenant_id=tenant_id, dropped=count)
            self.record(
                AuditEvent.new(
                    tenant_id=tenant_id,
                    action=OVERFLOW_ACTION,
                    resource_type="audit",
                    metadata={"dropped": count},
                    outcome=AuditOutcome.FAILURE,
                    severity=AuditSeverity.ELEVATED,
                )
            )
