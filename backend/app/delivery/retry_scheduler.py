"""
retry_scheduler.py — Periodic sweep that re-pushes unacknowledged messages.

═══════════════════════════════════════════════════════════════════════════
SWEEP (one tick)
═══════════════════════════════════════════════════════════════════════════

    1. candidates = store.list_retry_candidates()
         unacknowledged, unexpired, retry_attempts < max_retry_attempts
    2. for each candidate:
         reachable   → push; on success retry_attempts += 1, state DELIVERED
                       on push failure nothing is counted (retried next tick)
         unreachable → retry_attempts += 1 when RETRY_COUNT_UNREACHABLE,
                       state stays QUEUED
    3. expired = store.list_expired_unacknowledged()
         persist EXPIRED for records still stored as live
    4. tick hooks (e.g. idle-actor deactivation) run after the sweep

A failure on one candidate is logged and the sweep moves on. A failure of
the sweep itself is logged by the loop, which always re-arms the timer.

═══════════════════════════════════════════════════════════════════════════
LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

One asyncio task per process, started and stopped by the application
lifespan. The sleep between ticks waits on a stop event, so ``stop()`` returns
promptly instead of after a full interval. A tick in progress finishes its
current candidate list before the loop exits.

Messages past their retry ceiling stay in the store and are still flushed
when the recipient connects; they are only no longer swept.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional

from backend.app.core.config import settings
from backend.app.core.errors import PersistenceError
from backend.app.delivery.dispatcher import DeliveryDispatcher
from backend.app.delivery.models import (
    DELIVERABLE_STATES,
    TERMINAL_STATES,
    Message,
    MessageState,
    SweepReport,
)
from backend.app.delivery.presence import PresenceRegistry
from backend.app.delivery.store import MessageStore, apply_update

logger = logging.getLogger(__name__)


def _consume_attempt(message: Message) -> bool:
    if message.state in TERMINAL_STATES or message.retries_exhausted:
        return False
    message.retry_attempts += 1
    return True


def _record_push(message: Message) -> bool:
    if message.state in TERMINAL_STATES:
        return False
    changed = _consume_attempt(message)
    if message.state in DELIVERABLE_STATES and message.state != MessageState.DELIVERED:
        message.state = MessageState.DELIVERED
        changed = True
    return changed


def _expire_as_of(now: datetime) -> Callable[[Message], bool]:
    def _mark_expired(message: Message) -> bool:
        if message.state in TERMINAL_STATES or not message.expired_at(now):
            return False
        message.state = MessageState.EXPIRED
        return True
    return _mark_expired


class RetryScheduler:
    """
    Runs the retry sweep on a fixed interval.

    Usage:
        scheduler = RetryScheduler(store, presence, dispatcher)
        await scheduler.start()
        ...
        await scheduler.stop()

    Tests drive ``run_tick()`` directly with a fake clock on the store.
    """

    def __init__(
        self,
        store: MessageStore,
        presence: PresenceRegistry,
        dispatcher: DeliveryDispatcher,
        *,
        interval_seconds: Optional[float] = None,
        count_unreachable: Optional[bool] = None,
    ):
        self._store = store
        self._presence = presence
        self._dispatcher = dispatcher
        self.interval_seconds = (
            settings.RETRY_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        )
        self.count_unreachable = (
            settings.RETRY_COUNT_UNREACHABLE if count_unreachable is None else count_unreachable
        )
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0
        self.last_report: Optional[SweepReport] = None
        self._tick_hooks: List[Callable[[], object]] = []

    def add_tick_hook(self, hook: Callable[[], object]) -> None:
        """Run ``hook`` after every sweep; failures are logged, not raised."""
        self._tick_hooks.append(hook)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background loop."""
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_scheduler(), name="retry-scheduler")
        logger.info("Retry scheduler started (interval=%.1fs)", self.interval_seconds)

    async def stop(self, timeout: float = 10.0) -> None:
        """Signal the loop and wait for it to exit."""
        if self._task is None:
            return
        self._stop_event.set()
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Retry sweep did not finish in %.1fs, cancelling", timeout)
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Retry scheduler stopped")

    async def _run_scheduler(self) -> None:
        """Main scheduler loop."""
        while not self._stop_event.is_set():
            try:
                await self.run_tick()
            except Exception:
                logger.exception("Retry sweep failed")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    async def run_tick(self) -> SweepReport:
        """Run one sweep and return its counters."""
        report = SweepReport(started_at=self._store.clock.now())

        candidates = await self._store.list_retry_candidates()
        report.candidates = len(candidates)
        for message in candidates:
            try:
                await self._retry_candidate(message, report)
            except PersistenceError as exc:
                report.persistence_failures += 1
                logger.error(
                    "Retry of %s failed: %s", message.id, exc.message,
                    extra={"message_id": message.id},
                )
            except Exception:
                report.persistence_failures += 1
                logger.exception(
                    "Retry of %s failed", message.id, extra={"message_id": message.id},
                )

        await self._expire(report)
        self._run_tick_hooks()

        report.completed_at = self._store.clock.now()
        self.ticks += 1
        self.last_report = report
        logger.info(
            "Retry sweep: %d candidate(s), %d pushed, %d unreachable, "
            "%d push failure(s), %d expired (%d newly)",
            report.candidates, report.pushed, report.unreachable,
            report.push_failures, report.expired_total, report.expired_marked,
        )
        return report

    async def _retry_candidate(self, message: Message, report: SweepReport) -> None:
        if not self._presence.is_reachable(message.recipient_id):
            report.unreachable += 1
            if self.count_unreachable:
                await apply_update(self._store, message.id, _consume_attempt)
            return

        if not await self._dispatcher.push(message):
            report.push_failures += 1
            return

        report.pushed += 1
        stored, _ = await apply_update(self._store, message.id, _record_push)
        if stored is not None:
            logger.debug(
                "Message %s re-pushed (attempt %d/%d)",
                message.id, stored.retry_attempts, stored.max_retry_attempts,
                extra={"message_id": message.id, "retry_attempts": stored.retry_attempts},
            )

    async def retry_message(self, message_id: str) -> bool:
        """
        Retry a single message outside the periodic sweep.

        True if the message is unknown, already acknowledged, or was pushed;
        False if it expired (EXPIRED is persisted) or could not be pushed.
        The retry ceiling still caps ``retry_attempts``.
        """
        message = await self._store.get(message_id)
        if message is None or message.is_acknowledged:
            return True

        now = self._store.clock.now()
        if message.expired_at(now):
            await apply_update(self._store, message_id, _expire_as_of(now))
            logger.warning(
                "Message %s expired", message_id, extra={"message_id": message_id},
            )
            return False

        if not self._presence.is_reachable(message.recipient_id):
            return False
        if not await self._dispatcher.push(message):
            return False

        await apply_update(self._store, message_id, _record_push)
        return True

    async def _expire(self, report: SweepReport) -> None:
        expired = await self._store.list_expired_unacknowledged()
        report.expired_total = len(expired)
        _mark_expired = _expire_as_of(self._store.clock.now())

        for message in expired:
            if message.state == MessageState.EXPIRED:
                continue
            try:
                _, changed = await apply_update(self._store, message.id, _mark_expired)
            except PersistenceError as exc:
                report.persistence_failures += 1
                logger.error(
                    "Expiring %s failed: %s", message.id, exc.message,
                    extra={"message_id": message.id},
                )
                continue
            if changed:
                report.expired_marked += 1
                logger.warning(
                    "Message %s for %s expired unacknowledged after %d attempt(s)",
                    message.id, message.recipient_id, message.retry_attempts,
                    extra={"message_id": message.id, "recipient_id": message.recipient_id},
                )

    def _run_tick_hooks(self) -> None:
        for hook in self._tick_hooks:
            try:
                hook()
            except Exception:
                logger.exception("Tick hook %s failed", getattr(hook, "__qualname__", hook))
