"""
ReportingService: wires the catalog, connectors, execution engine, report
store and scheduler together from EngineSettings.

The HTTP routes and the CLI script only talk to this object.
"""

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, List, Optional

from sqlalchemy.orm import sessionmaker

from report_cache.cache import MemoryCache
from report_engine.builder import ReportBuilder
from report_engine.catalog import CatalogRegistry, DataSource
from report_engine.connectors.base import BaseConnector
from report_engine.connectors.factory import build_routing_connector
from report_engine.database import init_db, make_engine, make_session_factory
from report_engine.delivery import BaseDelivery
from report_engine.errors import DataSourceUnavailable, ReportValidationError
from report_engine.execution import CancellationToken, ExecutionEngine
from report_engine.models import ReportConfiguration, ReportDraft, ReportHistoryItem, ReportResult
from report_engine.persistence import HistoryRepository, ReportRepository, ScheduleRepository
from report_engine.scheduler import ReportScheduler
from report_engine.settings import EngineSettings
from report_engine.validator import FieldError, validate_configuration

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReportingService:

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        catalog: Optional[CatalogRegistry] = None,
        connector: Optional[BaseConnector] = None,
        session_factory: Optional[sessionmaker] = None,
        delivery: Optional[BaseDelivery] = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], None] = time.sleep,
        load_system_templates: bool = True,
    ):
        self.settings = settings or EngineSettings.from_env()
        self.clock = clock
        self.catalog = catalog or CatalogRegistry(self.settings.catalog_dir)
        self.connector = connector or build_routing_connector(self.catalog, clock=clock)

        if session_factory is None:
            db_engine = make_engine(self.settings.database_url)
            init_db(db_engine)
            session_factory = make_session_factory(db_engine)

        self.cache = MemoryCache(
            max_entries=self.settings.cache_max_entries,
            enabled=self.settings.cache_enabled,
        )
        self.engine = ExecutionEngine(
            self.catalog,
            self.connector,
            cache=self.cache,
            clock=clock,
            max_workers=self.settings.execution_max_workers,
            default_timeout=self.settings.execution_timeout,
        )
        self.reports = ReportRepository(session_factory, self.catalog, clock=clock)
        self.schedules = ScheduleRepository(session_factory, clock=clock)
        self.history = HistoryRepository(session_factory, clock=clock)
        self.scheduler = ReportScheduler(
            self.engine,
            self.reports,
            self.schedules,
            self.history,
            delivery=delivery,
            clock=clock,
            sleep=sleep,
            retry_attempts=self.settings.scheduler_retry_attempts,
            retry_backoff_seconds=self.settings.scheduler_retry_backoff_seconds,
            execution_timeout=self.settings.execution_timeout,
            max_workers=self.settings.scheduler_max_workers,
            poll_seconds=self.settings.scheduler_poll_seconds,
            timezone_name=self.settings.scheduler_timezone,
        )
        if load_system_templates:
            self.reports.load_system_templates()

    def data_sources(self) -> List[DataSource]:
        return self.catalog.list()

    def new_builder(self, draft: Optional[ReportDraft] = None) -> ReportBuilder:
        return ReportBuilder(self.catalog, clock=self.clock, draft=draft)

    def build_configuration(self, draft: ReportDraft, created_by: str = "") -> ReportConfiguration:
        """Materialize a draft sent by an outer surface (HTTP, CLI) without the wizard."""
        if not draft.data_source_id:
            raise ReportValidationError([FieldError("data_source_id", "A data source is required", "required")])
        return ReportConfiguration.from_draft(
            draft, id=f"config-{uuid.uuid4().hex[:12]}", created_by=created_by, now=self.clock()
        )

    def preview(self, config: ReportConfiguration, force_refresh: bool = False,
                cancel_token: Optional[CancellationToken] = None) -> ReportResult:
        """Interactive run of an unsaved configuration. Nothing is recorded."""
        validation = validate_configuration(config, self.catalog.find(config.data_source_id))
        if not validation.valid:
            raise ReportValidationError(validation.errors)
        return self.engine.execute(config, force_refresh=force_refresh, cancel_token=cancel_token)

    def generate_saved(self, report_id: str, generated_by: str = "", force_refresh: bool = False,
                       cancel_token: Optional[CancellationToken] = None) -> ReportResult:
        """
        Run a saved report on demand and record it in the history as a
        download. Data source failures are recorded and then re-raised;
        cancellations are not recorded.
        """
        report = self.reports.get_saved(report_id)
        try:
            result = self.engine.execute(report.configuration, force_refresh=force_refresh, cancel_token=cancel_token)
        except DataSourceUnavailable as e:
            self._record(report, generated_by, error_message=str(e))
            raise
        self.reports.mark_generated(report.id, result.generated_at)
        self._record(report, generated_by, result=result)
        return result

    def _record(self, report, generated_by: str, result: Optional[ReportResult] = None,
                error_message: Optional[str] = None) -> ReportHistoryItem:
        return self.history.append(ReportHistoryItem(
            id=f"history-{uuid.uuid4().hex[:12]}",
            report_id=report.id,
            report_name=report.name,
            generated_at=result.generated_at if result is not None else self.clock(),
            generated_by=generated_by or "user",
            processing_time_ms=result.processing_time_ms if result is not None else 0,
            export_format="json",
            delivery_method="download",
            delivery_status="error" if error_message else "success",
            error_message=error_message,
            result_id=result.id if result is not None else None,
        ))

    def shutdown(self):
        self.scheduler.shutdown()
        self.engine.shutdown()
