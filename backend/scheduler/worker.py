"""
Follow-up Poll Worker

Background worker that, on a fixed cadence, pulls due follow-ups and
reminders, backfills orphans, plans upcoming reminders and executes the batch
sequentially. Runs as a daemon thread with graceful shutdown support; each
tick runs inside its own asyncio.run() so async HTTP clients never outlive it.
"""

import asyncio
import logging
import threading
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy.engine import Engine

import settings
from agent.openai_client import OpenAIClient
from db import get_session
from evolution_sender import EvolutionSender
from followup.business_hours import BusinessHours
from followup.credit_gate import CreditGate
from followup.executor import ExecutionDriver
from followup.guards import EligibilityEvaluator
from followup.notifications import NotificationService
from followup.orphan_detector import OrphanDetector
from followup.personalization import MessagePersonalizer
from followup.queue_service import QueueService
from followup.reminder_planner import ReminderPlanner
from models import QueueItem, KIND_FOLLOW_UP, KIND_REMINDER
from scheduler.stats import ExecutionStats

logger = logging.getLogger(__name__)


def default_sender_factory() -> EvolutionSender:
    return EvolutionSender(
        settings.EVOLUTION_API_URL,
        settings.EVOLUTION_API_KEY,
        timeout=settings.WHATSAPP_TIMEOUT_SECONDS,
        max_retries=settings.WHATSAPP_MAX_RETRIES,
    )


def default_llm_factory() -> Optional[OpenAIClient]:
    if not settings.OPENAI_API_KEY:
        return None
    return OpenAIClient(
        settings.OPENAI_API_KEY,
        base_url=settings.OPENAI_BASE_URL,
        timeout=settings.LLM_TIMEOUT_SECONDS,
    )


class FollowUpWorker:
    """Background worker driving the follow-up and reminder queue."""

    def __init__(
        self,
        engine: Engine,
        stats: Optional[ExecutionStats] = None,
        poll_interval_minutes: Optional[int] = None,
        max_items_per_tick: Optional[int] = None,
        item_pause_seconds: Optional[float] = None,
        sender_factory: Callable[[], EvolutionSender] = default_sender_factory,
        llm_factory: Callable[[], Optional[OpenAIClient]] = default_llm_factory,
        business_hours: Optional[BusinessHours] = None,
    ):
        """
        Initialize follow-up worker.

        Args:
            engine: SQLAlchemy engine for database access
            stats: Shared stats collector (read by the status endpoints)
            poll_interval_minutes: Tick cadence (default: settings.POLL_INTERVAL_MINUTES)
            max_items_per_tick: Cap for each pending pull
            item_pause_seconds: Pause between two executed items
            sender_factory: Builds the messaging gateway client for one tick
            llm_factory: Builds the LLM client for one tick (None disables AI)
            business_hours: Business-hours window and timezone resolution
        """
        self.engine = engine
        self.stats = stats or ExecutionStats()
        self.poll_interval_minutes = poll_interval_minutes or settings.POLL_INTERVAL_MINUTES
        self.max_items = max_items_per_tick or settings.MAX_ITEMS_PER_TICK
        self.item_pause = item_pause_seconds if item_pause_seconds is not None else settings.ITEM_PAUSE_SECONDS
        self.sender_factory = sender_factory
        self.llm_factory = llm_factory
        self.business_hours = business_hours or BusinessHours(
            settings.BUSINESS_HOURS_START,
            settings.BUSINESS_HOURS_END,
            settings.DEFAULT_TIMEZONE,
        )

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._tick_lock = threading.Lock()
        self._running = False

    def start(self):
        """Start the background worker thread."""
        if self._running:
            logger.warning("FollowUpWorker already running")
            return

        self._stop_event.clear()
        self._running = True

        self._thread = threading.Thread(
            target=self._run_loop,
            name="FollowUpWorker",
            daemon=True
        )
        self._thread.start()

        logger.info(f"FollowUpWorker started (interval: {self.poll_interval_minutes} min)")

    def stop(self, timeout: int = 10):
        """
        Stop the background worker thread.

        Args:
            timeout: Maximum seconds to wait for graceful shutdown
        """
        if not self._running:
            logger.warning("FollowUpWorker not running")
            return

        logger.info("Stopping FollowUpWorker...")
        self._stop_event.set()

        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)

            if self._thread.is_alive():
                logger.warning(f"FollowUpWorker did not stop within {timeout}s")
            else:
                logger.info("FollowUpWorker stopped successfully")

        self._running = False

    def is_running(self) -> bool:
        """Check if worker is currently running."""
        return bool(self._running and self._thread and self._thread.is_alive())

    def _run_loop(self):
        """Fire one tick per cadence boundary. Overrunning ticks skip the boundaries they missed."""
        logger.info("FollowUpWorker loop started")
        interval = self.poll_interval_minutes * 60
        next_run = time.monotonic()

        while not self._stop_event.is_set():
            if time.monotonic() >= next_run:
                self._tick_blocking()

                next_run += interval
                missed = 0
                while next_run <= time.monotonic():
                    next_run += interval
                    missed += 1
                if missed:
                    logger.warning(f"Tick overran its interval, skipped {missed} boundary(ies)")

            self._stop_event.wait(max(min(next_run - time.monotonic(), 1.0), 0.05))

        logger.info("FollowUpWorker loop ended")

    def _tick_blocking(self) -> Optional[Dict[str, int]]:
        if not self._tick_lock.acquire(blocking=False):
            logger.warning("Previous tick still running, skipping")
            return None
        try:
            return asyncio.run(self.run_tick())
        except Exception as e:
            self.stats.increment("errors")
            logger.error(f"Error in follow-up worker tick: {e}", exc_info=True)
            return None
        finally:
            self._tick_lock.release()

    def force_tick(self) -> Optional[Dict[str, int]]:
        """
        Run one tick immediately on the calling thread (manual triggers/tests).
        Does not interrupt the regular schedule.
        """
        logger.info("Forcing immediate tick...")
        return self._tick_blocking()

    async def run_tick(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        One poll cycle. Never raises: failures are counted and logged.

        Returns:
            Per-tick summary counts
        """
        started = time.monotonic()
        summary = {"pending": 0, "orphans": 0, "reminders_created": 0, "stale_reaped": 0, "executed": 0}

        try:
            with get_session(self.engine) as db:
                await self._tick(db, now or datetime.utcnow(), summary)
        except Exception as e:
            self.stats.increment("errors")
            logger.error(f"Follow-up tick failed: {e}", exc_info=True)
        finally:
            duration_ms = int((time.monotonic() - started) * 1000)
            self.stats.record_tick(datetime.utcnow(), duration_ms)
            logger.info(f"Tick finished in {duration_ms}ms: {summary}")

        return summary

    async def _tick(self, db, now: datetime, summary: Dict[str, int]):
        queue = QueueService(db)

        follow_ups = queue.list_pending(KIND_FOLLOW_UP, self.max_items, now)

        detector = OrphanDetector(
            db, queue,
            stale_hours=settings.STALE_ITEM_HOURS,
            lookback_days=settings.ORPHAN_LOOKBACK_DAYS,
            limit=settings.ORPHAN_LIMIT,
        )
        summary["stale_reaped"] = detector.cleanup_stale_items(now)
        self.stats.increment("stale_reaped", summary["stale_reaped"])

        orphans = detector.find_and_create_orphans(now)
        summary["orphans"] = len(orphans)
        self.stats.increment("orphans_created", len(orphans))

        reminders = queue.list_pending(KIND_REMINDER, self.max_items, now)

        planner = ReminderPlanner(db, queue, hours_ahead=settings.REMINDER_HOURS_AHEAD)
        summary["reminders_created"] = planner.create_upcoming_reminders(now)
        self.stats.increment("reminders_created", summary["reminders_created"])

        items = self._merge(follow_ups, orphans, reminders)
        summary["pending"] = len(items)
        if not items:
            logger.info("No queue items due")
            return

        logger.info(
            f"Processing {len(items)} item(s): {len(follow_ups)} follow-ups, "
            f"{len(orphans)} orphans, {len(reminders)} reminders"
        )
        summary["executed"] = await self._execute_batch(db, queue, items)

    @staticmethod
    def _merge(*batches: List[QueueItem]) -> List[QueueItem]:
        seen = set()
        merged = []
        for batch in batches:
            for item in batch:
                if item.id in seen:
                    continue
                seen.add(item.id)
                merged.append(item)
        return merged

    async def _execute_batch(self, db, queue: QueueService, items: List[QueueItem]) -> int:
        llm = self.llm_factory()
        sender = self.sender_factory()
        executed = 0

        try:
            credit_gate = CreditGate(db)
            personalizer = MessagePersonalizer(
                db,
                llm,
                credit_gate=credit_gate,
                notifications=NotificationService(db, settings.NOTIFICATION_COOLDOWN_MINUTES),
                thread_floor=settings.CREDITS_THREAD_FLOOR,
                default_model=settings.OPENAI_DEFAULT_MODEL,
                run_poll_attempts=settings.RUN_POLL_ATTEMPTS,
                run_poll_interval=settings.RUN_POLL_INTERVAL_SECONDS,
            )
            evaluator = EligibilityEvaluator(
                db,
                business_hours=self.business_hours,
                credit_gate=credit_gate,
                min_balance=settings.CREDITS_MIN_BALANCE,
                queue=queue,
            )
            driver = ExecutionDriver(
                db, personalizer, sender,
                evaluator=evaluator,
                business_hours=self.business_hours,
                queue=queue,
                lease_seconds=settings.CLAIM_LEASE_SECONDS,
            )

            for index, item in enumerate(items):
                if self._stop_event.is_set():
                    logger.info("Stop requested, leaving remaining items for the next run")
                    break

                item_id = item.id
                try:
                    result = await driver.execute(item)
                    self.stats.record_result(result)
                    executed += 1
                except Exception as e:
                    db.rollback()
                    self.stats.increment("errors")
                    logger.error(f"Failed to execute queue item {item_id}: {e}", exc_info=True)

                if self.item_pause > 0 and index < len(items) - 1:
                    await asyncio.sleep(self.item_pause)
        finally:
            await sender.close()
            if llm is not None:
                await llm.close()

        return executed


# Global worker instance (singleton pattern)
_worker_instance: Optional[FollowUpWorker] = None


def get_followup_worker(engine: Engine, stats: Optional[ExecutionStats] = None) -> FollowUpWorker:
    """
    Get or create the global follow-up worker instance.

    Args:
        engine: SQLAlchemy engine for database access
        stats: Stats collector (only used on first creation)

    Returns:
        FollowUpWorker instance
    """
    global _worker_instance

    if _worker_instance is None:
        _worker_instance = FollowUpWorker(engine, stats=stats)

    return _worker_instance


def start_followup_worker(engine: Engine, stats: Optional[ExecutionStats] = None) -> FollowUpWorker:
    """Start the global follow-up worker."""
    worker = get_followup_worker(engine, stats)
    worker.start()
    return worker


def stop_followup_worker(timeout: int = 10):
    """Stop the global follow-up worker."""
    if _worker_instance:
        _worker_instance.stop(timeout)
