"""
Report scheduler.

Each ScheduledReport moves between active, paused and error. Due schedules
are run on a worker pool with force_refresh, retried on transient data
source failures, delivered, and recorded in the append-only history. A
schedule never runs twice at the same time.

APScheduler drives tick() periodically when the scheduler runs as a
background service (start()/shutdown()); tests call tick() directly.
"""

import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from report_engine.delivery import BaseDelivery, DeliveryOutcome, LoggingDelivery
from report_engine.errors import DataSourceUnavailable, DeliveryFailure, ExecutionCancelled, NotFoundError
from report_engine.execution import CancellationToken, ExecutionEngine
from report_engine.models import ReportHistoryItem, ScheduledReport, ScheduleSettings
from report_engine.persistence import HistoryRepository, ReportRepository, ScheduleRepository
from report_engine.recurrence import compute_next_run

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class ReportScheduler:
    """Creates, edits and runs scheduled reports."""

    def __init__(
        self,
        engine: ExecutionEngine,
        reports: ReportRepository,
        schedules: ScheduleRepository,
        history: HistoryRepository,
        delivery: Optional[BaseDelivery] = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], None] = time.sleep,
        retry_attempts: int = 2,
        retry_backoff_seconds: float = 5.0,
        execution_timeout: Optional[float] = None,
        max_workers: int = 4,
        poll_seconds: int = 60,
        timezone_name: str = "UTC",
    ):
        self.engine = engine
        self.reports = reports
        self.schedules = schedules
        self.history = history
        self.delivery = delivery or LoggingDelivery()
        self.clock = clock
        self.sleep = sleep
        self.retry_attempts = retry_attempts
        self.retry_backoff_seconds = retry_backoff_seconds
        self.execution_timeout = execution_timeout
        self.poll_seconds = poll_seconds
        self.timezone_name = timezone_name

        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="report-schedule")
        self._running: Dict[str, CancellationToken] = {}
        self._lock = threading.Lock()
        self._background: Optional[BackgroundScheduler] = None

    # ── Schedule lifecycle ─────────────────────────────────────────────

    def create_schedule(self, report_id: str, settings: ScheduleSettings, created_by: str = "") -> ScheduledReport:
        report = self.reports.get_saved(report_id)
        now = self.clock()
        schedule = ScheduledReport(
            id=_new_id("schedule"),
            report_id=report.id,
            report_name=report.name,
            schedule=settings,
            next_run_at=compute_next_run(settings, now) if settings.enabled else None,
            status="active" if settings.enabled else "paused",
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        logger.info(f"Scheduled report '{report.name}' {settings.frequency}, next run {schedule.next_run_at}")
        return self.schedules.add(schedule)

    def update_schedule(self, schedule_id: str, settings: ScheduleSettings) -> ScheduledReport:
        current = self.schedules.get(schedule_id)
        now = self.clock()
        if settings.enabled:
            status = "active" if current.status == "paused" else current.status
            next_run = compute_next_run(settings, now)
        else:
            status, next_run = "paused", None
        updated = current.model_copy(update={
            "schedule": settings,
            "status": status,
            "next_run_at": next_run,
            "updated_at": now,
        })
        return self.schedules.replace(updated)

    def set_enabled(self, schedule_id: str, enabled: bool) -> ScheduledReport:
        """
        Pause or resume a schedule. Resuming always computes the next run
        from now, never from the last run.
        """
        current = self.schedules.get(schedule_id)
        now = self.clock()
        settings = current.schedule.model_copy(update={"enabled": enabled})
        if enabled:
            changes = {"status": "active", "error_message": None, "next_run_at": compute_next_run(settings, now)}
        else:
            changes = {"status": "paused", "next_run_at": None}
        logger.info(f"Schedule {schedule_id} {'resumed' if enabled else 'paused'}")
        return self.schedules.replace(current.model_copy(update={"schedule": settings, "updated_at": now, **changes}))

    def delete_schedule(self, schedule_id: str):
        token = self._running.get(schedule_id)
        if token is not None:
            token.cancel()
        self.schedules.delete(schedule_id)

    def delete_report(self, report_id: str) -> List[str]:
        """Delete a saved report and its schedules, cancelling any of their runs in progress."""
        schedule_ids = self.reports.delete_saved(report_id)
        with self._lock:
            tokens = [self._running[s] for s in schedule_ids if s in self._running]
        for token in tokens:
            token.cancel()
        return schedule_ids

    def retry(self, schedule_id: str) -> Optional[ReportHistoryItem]:
        """Clear the error state and run the schedule immediately."""
        current = self.schedules.get(schedule_id)
        if current.status == "error":
            self.schedules.replace(current.model_copy(update={
                "status": "active" if current.schedule.enabled else "paused",
                "error_message": None,
                "updated_at": self.clock(),
            }))
        return self.run_now(schedule_id)

    def run_now(self, schedule_id: str, cancel_token: Optional[CancellationToken] = None) -> Optional[ReportHistoryItem]:
        return self.run_schedule(schedule_id, cancel_token)

    # ── Ticking ────────────────────────────────────────────────────────

    def due_schedules(self, now: Optional[datetime] = None) -> List[ScheduledReport]:
        now = now or self.clock()
        return [
            s for s in self.schedules.list()
            if s.schedule.enabled and s.status != "paused"
            and s.next_run_at is not None and s.next_run_at <= now
        ]

    def is_running(self, schedule_id: str) -> bool:
        with self._lock:
            return schedule_id in self._running

    def tick(self) -> List[Future]:
        """Start every due schedule that is not already running."""
        futures = []
        for schedule in self.due_schedules():
            token = CancellationToken()
            with self._lock:
                if schedule.id in self._running:
                    logger.debug(f"Schedule {schedule.id} still running; skipping this tick")
                    continue
                self._running[schedule.id] = token
            future = self.executor.submit(self._run_claimed, schedule.id, token)
            future.add_done_callback(self._log_failure)
            futures.append(future)
        if futures:
            logger.info(f"Tick started {len(futures)} scheduled reports")
        return futures

    @staticmethod
    def _log_failure(future: Future):
        error = future.exception()
        if error is not None:
            logger.error(f"Scheduled run failed outside the run loop: {error!r}")

    def _run_claimed(self, schedule_id: str, token: CancellationToken):
        try:
            return self._run(schedule_id, token)
        finally:
            with self._lock:
                self._running.pop(schedule_id, None)

    def run_schedule(self, schedule_id: str, cancel_token: Optional[CancellationToken] = None) -> Optional[ReportHistoryItem]:
        """
        Run one schedule now, unless it is already running.

        Returns the history item written for the run, or None when the run was
        cancelled or skipped.
        """
        token = cancel_token or CancellationToken()
        with self._lock:
            if schedule_id in self._running:
                logger.info(f"Schedule {schedule_id} already running; not starting another run")
                return None
            self._running[schedule_id] = token
        return self._run_claimed(schedule_id, token)

    # ── One run ────────────────────────────────────────────────────────

    def _execute_with_retry(self, config, cancel_token: CancellationToken):
        attempt = 0
        while True:
            try:
                return self.engine.execute(
                    config, force_refresh=True, timeout=self.execution_timeout, cancel_token=cancel_token
                )
            except DataSourceUnavailable as e:
                if attempt >= self.retry_attempts:
                    raise
                delay = self.retry_backoff_seconds * (2 ** attempt)
                attempt += 1
                logger.warning(
                    f"Data source unavailable for '{config.name}' (attempt {attempt}/{self.retry_attempts + 1}), "
                    f"retrying in {delay}s: {e}"
                )
                self.sleep(delay)
                if cancel_token.cancelled:
                    raise ExecutionCancelled("Execution cancelled")

    def _deliver(self, result, schedule: ScheduledReport) -> DeliveryOutcome:
        try:
            return self.delivery.deliver(result, schedule)
        except DeliveryFailure as e:
            logger.warning(f"Delivery failed for schedule {schedule.id}: {e}")
            return DeliveryOutcome(status="error", error_message=str(e))

    def _run(self, schedule_id: str, cancel_token: CancellationToken) -> Optional[ReportHistoryItem]:
        schedule = self.schedules.get(schedule_id)
        settings = schedule.schedule
        result = None
        error_message = None
        delivery_status = "success"

        try:
            report = self.reports.get_saved(schedule.report_id)
            result = self._execute_with_retry(report.configuration, cancel_token)
        except ExecutionCancelled:
            logger.info(f"Run of schedule {schedule_id} cancelled; nothing recorded")
            return None
        except Exception as e:
            logger.error(f"Scheduled run of '{schedule.report_name}' failed: {e}")
            error_message = str(e)

        if result is not None:
            self.reports.mark_generated(schedule.report_id, result.generated_at)
            outcome = self._deliver(result, schedule)
            if not outcome.ok:
                error_message = outcome.error_message or "Delivery failed"
        if error_message:
            delivery_status = "error"

        now = self.clock()
        item = self.history.append(ReportHistoryItem(
            id=_new_id("history"),
            report_id=schedule.report_id,
            schedule_id=schedule.id,
            report_name=schedule.report_name,
            generated_at=result.generated_at if result is not None else now,
            generated_by="scheduler",
            processing_time_ms=result.processing_time_ms if result is not None else 0,
            export_format=settings.export_format,
            delivery_method=settings.delivery_method,
            delivery_status=delivery_status,
            error_message=error_message,
            result_id=result.id if result is not None else None,
        ))

        try:
            latest = self.schedules.get(schedule_id)
        except NotFoundError:
            logger.info(f"Schedule {schedule_id} was deleted during its run")
            return item
        if latest.schedule.enabled:
            next_run = compute_next_run(latest.schedule, now)
            status = "error" if error_message else "active"
        else:
            next_run, status = None, "paused"
        self.schedules.replace(latest.model_copy(update={
            "last_run_at": now,
            "next_run_at": next_run,
            "status": status,
            "error_message": error_message,
            "updated_at": now,
        }))
        logger.info(f"Schedule {schedule_id} ran with status {delivery_status}; next run {next_run}")
        return item

    # ── Background service ─────────────────────────────────────────────

    def start(self):
        if self._background is not None:
            return
        self._background = BackgroundScheduler(timezone=self.timezone_name)
        self._background.add_job(
            self.tick,
            IntervalTrigger(seconds=self.poll_seconds),
            id="report-scheduler-tick",
            max_instances=1,
            coalesce=True,
        )
        self._background.start()
        logger.info(f"Report scheduler started (poll every {self.poll_seconds}s)")

    def shutdown(self):
        if self._background is not None:
            self._background.shutdown(wait=False)
            self._background = None
        self.executor.shutdown(wait=True)
        logger.info("Report scheduler stopped")
