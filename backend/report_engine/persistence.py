"""
Persistence layer: saved reports, templates, schedules and run history.

Repositories take a session factory and hand back frozen domain models, so
nothing outside this module ever holds a live ORM row. Ids are assigned
here, not by the builder or the engine.
"""

import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional

import yaml
from sqlalchemy.orm import Session, sessionmaker

from report_engine.catalog import CatalogRegistry
from report_engine.db_models import ReportHistoryRow, ReportTemplateRow, SavedReportRow, ScheduledReportRow
from report_engine.errors import NotFoundError, ReportValidationError
from report_engine.models import (
    ReportConfiguration,
    ReportHistoryItem,
    ReportTemplate,
    SavedReport,
    ScheduledReport,
    ScheduleSettings,
)
from report_engine.validator import FieldError, validate_configuration

logger = logging.getLogger(__name__)

SYSTEM_TEMPLATES_FILE = Path(__file__).resolve().parent / "templates" / "system_templates.yaml"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on the way back; every stored timestamp is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _config_json(config: ReportConfiguration) -> dict:
    return config.model_dump(mode="json")


# ── Row <-> model ───────────────────────────────────────────────────────

def _saved_from_row(row: SavedReportRow) -> SavedReport:
    return SavedReport(
        id=row.id,
        configuration=ReportConfiguration.model_validate(row.configuration),
        favorited=row.favorited,
        times_viewed=row.times_viewed,
        last_generated_at=_aware(row.last_generated_at),
        created_by=row.created_by,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def _template_from_row(row: ReportTemplateRow) -> ReportTemplate:
    return ReportTemplate(
        id=row.id,
        name=row.name,
        description=row.description or "",
        category=row.category,
        is_system=row.is_system,
        configuration=ReportConfiguration.model_validate(row.configuration),
        created_at=_aware(row.created_at),
    )


def _schedule_from_row(row: ScheduledReportRow) -> ScheduledReport:
    return ScheduledReport(
        id=row.id,
        report_id=row.report_id,
        report_name=row.report_name,
        schedule=ScheduleSettings.model_validate(row.schedule),
        last_run_at=_aware(row.last_run_at),
        next_run_at=_aware(row.next_run_at),
        status=row.status,
        error_message=row.error_message,
        created_by=row.created_by,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def _history_from_row(row: ReportHistoryRow) -> ReportHistoryItem:
    return ReportHistoryItem(
        id=row.id,
        report_id=row.report_id,
        schedule_id=row.schedule_id,
        report_name=row.report_name,
        generated_at=_aware(row.generated_at),
        generated_by=row.generated_by,
        processing_time_ms=row.processing_time_ms,
        export_format=row.export_format,
        delivery_method=row.delivery_method,
        delivery_status=row.delivery_status,
        error_message=row.error_message,
        result_id=row.result_id,
    )


class _Repository:
    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = _utcnow):
        self.session_factory = session_factory
        self.clock = clock

    def _session(self) -> Session:
        return self.session_factory()


# ── Saved reports & templates ───────────────────────────────────────────

class ReportRepository(_Repository):
    """Saved reports and report templates."""

    def __init__(self, session_factory: sessionmaker, catalog: CatalogRegistry,
                 clock: Callable[[], datetime] = _utcnow):
        super().__init__(session_factory, clock)
        self.catalog = catalog

    def _require_complete(self, config: ReportConfiguration):
        result = validate_configuration(config, self.catalog.find(config.data_source_id))
        if not result.valid:
            raise ReportValidationError(result.errors)

    def _get_row(self, db: Session, report_id: str) -> SavedReportRow:
        row = db.query(SavedReportRow).filter(SavedReportRow.id == report_id).first()
        if not row:
            raise NotFoundError(f"Saved report '{report_id}' not found")
        return row

    def save(self, config: ReportConfiguration, created_by: Optional[str] = None) -> SavedReport:
        """Persist a complete configuration as a new saved report."""
        self._require_complete(config)
        now = self.clock()
        db = self._session()
        try:
            row = SavedReportRow(
                id=_new_id("report"),
                name=config.name,
                data_source_id=config.data_source_id,
                configuration=_config_json(config),
                favorited=False,
                times_viewed=0,
                created_by=created_by if created_by is not None else config.created_by,
                created_at=now,
                updated_at=now,
            )
            db.add(row)
            db.commit()
            logger.info(f"Saved report '{config.name}' as {row.id}")
            return _saved_from_row(row)
        finally:
            db.close()

    def get_saved(self, report_id: str) -> SavedReport:
        db = self._session()
        try:
            return _saved_from_row(self._get_row(db, report_id))
        finally:
            db.close()

    def list_saved(
        self,
        favorites_only: bool = False,
        data_source_id: Optional[str] = None,
        search: Optional[str] = None,
        created_by: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[SavedReport]:
        """Saved reports, most recently updated first. `search` matches the name, case-insensitively."""
        db = self._session()
        try:
            q = db.query(SavedReportRow)
            if favorites_only:
                q = q.filter(SavedReportRow.favorited.is_(True))
            if data_source_id:
                q = q.filter(SavedReportRow.data_source_id == data_source_id)
            if search:
                q = q.filter(SavedReportRow.name.ilike(f"%{search}%"))
            if created_by is not None:
                q = q.filter(SavedReportRow.created_by == created_by)
            q = q.order_by(SavedReportRow.updated_at.desc(), SavedReportRow.id.asc()).offset(offset)
            if limit is not None:
                q = q.limit(limit)
            return [_saved_from_row(r) for r in q.all()]
        finally:
            db.close()

    def update_configuration(self, report_id: str, config: ReportConfiguration) -> SavedReport:
        """
        Replace the embedded configuration with a new version.

        The stored configuration is never edited in place: the replacement keeps
        the original id and created_at, gets version + 1 and a fresh updated_at.
        """
        now = self.clock()
        db = self._session()
        try:
            row = self._get_row(db, report_id)
            current = ReportConfiguration.model_validate(row.configuration)
            updated = config.model_copy(update={
                "id": current.id,
                "created_by": current.created_by,
                "created_at": current.created_at,
                "updated_at": now,
                "version": current.version + 1,
            })
            self._require_complete(updated)
            row.configuration = _config_json(updated)
            row.name = updated.name
            row.data_source_id = updated.data_source_id
            row.updated_at = now
            db.commit()
            logger.info(f"Report {report_id} updated to version {updated.version}")
            return _saved_from_row(row)
        finally:
            db.close()

    def record_view(self, report_id: str) -> SavedReport:
        db = self._session()
        try:
            row = self._get_row(db, report_id)
            row.times_viewed = (row.times_viewed or 0) + 1
            db.commit()
            return _saved_from_row(row)
        finally:
            db.close()

    def set_favorite(self, report_id: str, favorited: bool) -> SavedReport:
        db = self._session()
        try:
            row = self._get_row(db, report_id)
            row.favorited = favorited
            db.commit()
            return _saved_from_row(row)
        finally:
            db.close()

    def toggle_favorite(self, report_id: str) -> SavedReport:
        return self.set_favorite(report_id, not self.get_saved(report_id).favorited)

    def mark_generated(self, report_id: str, generated_at: datetime) -> SavedReport:
        db = self._session()
        try:
            row = self._get_row(db, report_id)
            row.last_generated_at = generated_at
            db.commit()
            return _saved_from_row(row)
        finally:
            db.close()

    def delete_saved(self, report_id: str) -> List[str]:
        """Delete a saved report together with its schedules. Returns the deleted schedule ids."""
        db = self._session()
        try:
            row = self._get_row(db, report_id)
            schedules = db.query(ScheduledReportRow).filter(ScheduledReportRow.report_id == report_id).all()
            schedule_ids = [s.id for s in schedules]
            for schedule in schedules:
                db.delete(schedule)
            db.delete(row)
            db.commit()
            logger.info(f"Deleted saved report {report_id} and {len(schedule_ids)} schedules")
            return schedule_ids
        finally:
            db.close()

    # templates

    def save_as_template(self, config: ReportConfiguration, name: str, description: str = "",
                         category: Optional[str] = None, is_system: bool = False,
                         template_id: Optional[str] = None) -> ReportTemplate:
        self._require_complete(config)
        db = self._session()
        try:
            row = ReportTemplateRow(
                id=template_id or _new_id("template"),
                name=name,
                description=description,
                category=category if category is not None else config.category,
                is_system=is_system,
                configuration=_config_json(config),
                created_at=self.clock(),
            )
            db.add(row)
            db.commit()
            logger.info(f"Saved template '{name}' ({row.id}, system={is_system})")
            return _template_from_row(row)
        finally:
            db.close()

    def get_template(self, template_id: str) -> ReportTemplate:
        db = self._session()
        try:
            row = db.query(ReportTemplateRow).filter(ReportTemplateRow.id == template_id).first()
            if not row:
                raise NotFoundError(f"Template '{template_id}' not found")
            return _template_from_row(row)
        finally:
            db.close()

    def list_templates(self, category: Optional[str] = None, include_system: bool = True) -> List[ReportTemplate]:
        db = self._session()
        try:
            q = db.query(ReportTemplateRow)
            if category:
                q = q.filter(ReportTemplateRow.category == category)
            if not include_system:
                q = q.filter(ReportTemplateRow.is_system.is_(False))
            rows = q.order_by(ReportTemplateRow.is_system.desc(), ReportTemplateRow.name.asc()).all()
            return [_template_from_row(r) for r in rows]
        finally:
            db.close()

    def instantiate_template(self, template_id: str, created_by: str = "", name: Optional[str] = None) -> ReportConfiguration:
        """A fresh, independent configuration cloned from the template."""
        template = self.get_template(template_id)
        now = self.clock()
        return template.configuration.model_copy(update={
            "id": _new_id("config"),
            "name": name or template.configuration.name,
            "created_by": created_by,
            "created_at": now,
            "updated_at": now,
            "version": 1,
        })

    def delete_template(self, template_id: str):
        db = self._session()
        try:
            row = db.query(ReportTemplateRow).filter(ReportTemplateRow.id == template_id).first()
            if not row:
                raise NotFoundError(f"Template '{template_id}' not found")
            if row.is_system:
                raise ReportValidationError(
                    [FieldError("template", "system templates cannot be deleted", code="protected")]
                )
            db.delete(row)
            db.commit()
        finally:
            db.close()

    def load_system_templates(self, path: Optional[Path] = None) -> int:
        """
        Register the built-in templates from YAML. Templates already stored
        (by id) are left alone, so calling this on every start is safe.
        Returns the number of templates added.
        """
        path = Path(path or SYSTEM_TEMPLATES_FILE)
        if not path.exists():
            logger.warning(f"System templates file not found: {path}")
            return 0
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        existing = {t.id for t in self.list_templates()}
        added = 0
        now = self.clock()
        for raw in data.get("templates", []):
            template_id = raw["id"]
            if template_id in existing:
                continue
            config = ReportConfiguration.model_validate({
                "id": f"config-{template_id}",
                "created_by": "system",
                "created_at": now,
                "updated_at": now,
                **raw["configuration"],
            })
            if self.catalog.find(config.data_source_id) is None:
                logger.warning(f"Skipping system template '{template_id}': unknown data source")
                continue
            self.save_as_template(
                config,
                name=raw["name"],
                description=raw.get("description", ""),
                category=raw.get("category"),
                is_system=True,
                template_id=template_id,
            )
            added += 1
        logger.info(f"Loaded {added} system templates")
        return added


# ── Schedules ───────────────────────────────────────────────────────────

class ScheduleRepository(_Repository):

    def add(self, schedule: ScheduledReport) -> ScheduledReport:
        db = self._session()
        try:
            row = ScheduledReportRow(id=schedule.id, created_at=schedule.created_at, updated_at=schedule.updated_at)
            self._fill(row, schedule)
            db.add(row)
            db.commit()
            return _schedule_from_row(row)
        finally:
            db.close()

    def get(self, schedule_id: str) -> ScheduledReport:
        db = self._session()
        try:
            row = db.query(ScheduledReportRow).filter(ScheduledReportRow.id == schedule_id).first()
            if not row:
                raise NotFoundError(f"Schedule '{schedule_id}' not found")
            return _schedule_from_row(row)
        finally:
            db.close()

    def list(self, report_id: Optional[str] = None) -> List[ScheduledReport]:
        db = self._session()
        try:
            q = db.query(ScheduledReportRow)
            if report_id:
                q = q.filter(ScheduledReportRow.report_id == report_id)
            return [_schedule_from_row(r) for r in q.order_by(ScheduledReportRow.created_at.asc()).all()]
        finally:
            db.close()

    def replace(self, schedule: ScheduledReport) -> ScheduledReport:
        db = self._session()
        try:
            row = db.query(ScheduledReportRow).filter(ScheduledReportRow.id == schedule.id).first()
            if not row:
                raise NotFoundError(f"Schedule '{schedule.id}' not found")
            self._fill(row, schedule)
            db.commit()
            return _schedule_from_row(row)
        finally:
            db.close()

    def delete(self, schedule_id: str):
        db = self._session()
        try:
            row = db.query(ScheduledReportRow).filter(ScheduledReportRow.id == schedule_id).first()
            if not row:
                raise NotFoundError(f"Schedule '{schedule_id}' not found")
            db.delete(row)
            db.commit()
        finally:
            db.close()

    @staticmethod
    def _fill(row: ScheduledReportRow, schedule: ScheduledReport):
        row.report_id = schedule.report_id
        row.report_name = schedule.report_name
        row.schedule = schedule.schedule.model_dump(mode="json")
        row.last_run_at = schedule.last_run_at
        row.next_run_at = schedule.next_run_at
        row.status = schedule.status
        row.error_message = schedule.error_message
        row.created_by = schedule.created_by
        row.updated_at = schedule.updated_at


# ── History ─────────────────────────────────────────────────────────────

class HistoryRepository(_Repository):
    """Append-only run history."""

    def append(self, item: ReportHistoryItem) -> ReportHistoryItem:
        db = self._session()
        try:
            db.add(ReportHistoryRow(**item.model_dump()))
            db.commit()
            return item
        finally:
            db.close()

    def list(self, report_id: Optional[str] = None, schedule_id: Optional[str] = None,
             limit: int = 100) -> List[ReportHistoryItem]:
        db = self._session()
        try:
            q = db.query(ReportHistoryRow)
            if report_id:
                q = q.filter(ReportHistoryRow.report_id == report_id)
            if schedule_id:
                q = q.filter(ReportHistoryRow.schedule_id == schedule_id)
            rows = q.order_by(ReportHistoryRow.generated_at.desc()).limit(limit).all()
            return [_history_from_row(r) for r in rows]
        finally:
            db.close()
