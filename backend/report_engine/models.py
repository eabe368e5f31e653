"""
Report configuration, result, and lifecycle models.

All models are frozen: an update always produces a new object (model_copy)
and never mutates one that someone else may hold.
"""

import re
from datetime import date, datetime
from typing import Any, Literal, Optional, Tuple
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict, field_validator

from report_engine.catalog import Aggregation, FieldFormat, FieldType

TimeFrame = Literal["day", "week", "month", "quarter", "custom"]
ChartType = Literal["bar", "line", "pie", "area"]
SortDirection = Literal["asc", "desc"]
FilterOperator = Literal[
    "equals", "notEquals", "contains", "notContains", "startsWith", "endsWith",
    "greaterThan", "lessThan", "between", "in", "notIn",
]
Frequency = Literal["daily", "weekly", "monthly", "quarterly"]
DeliveryMethod = Literal["email", "download", "webhook"]
ExportFormat = Literal["pdf", "csv", "excel", "json"]
ScheduleStatus = Literal["active", "paused", "error"]
DeliveryStatus = Literal["success", "error"]

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# ── Selections ──────────────────────────────────────────────────────────

class DimensionSelection(_Frozen):
    id: str
    field: str
    label: str = ""
    group_by: bool = True


class MetricSelection(_Frozen):
    id: str
    field: str
    aggregation: Aggregation
    label: str = ""
    format: Optional[FieldFormat] = None
    color: Optional[str] = None

    @property
    def display_label(self) -> str:
        return self.label or f"{self.field} ({self.aggregation})"


class ReportFilter(_Frozen):
    id: str
    field: str
    operator: FilterOperator
    value: Any = None
    field_type: FieldType = "string"


class Sorting(_Frozen):
    field: str
    direction: SortDirection = "asc"


# ── Configuration ───────────────────────────────────────────────────────

class ReportDraft(_Frozen):
    """Partial, in-progress configuration held by the builder."""
    name: str = "Untitled report"
    description: str = ""
    category: Optional[str] = None
    data_source_id: Optional[str] = None
    time_frame: TimeFrame = "month"
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    dimensions: Tuple[DimensionSelection, ...] = ()
    metrics: Tuple[MetricSelection, ...] = ()
    filters: Tuple[ReportFilter, ...] = ()
    chart_type: Optional[ChartType] = None
    sorting: Optional[Sorting] = None
    limit: Optional[int] = None


class ReportConfiguration(_Frozen):
    id: str
    name: str
    description: str = ""
    category: Optional[str] = None
    data_source_id: str
    time_frame: TimeFrame = "month"
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    dimensions: Tuple[DimensionSelection, ...] = ()
    metrics: Tuple[MetricSelection, ...] = ()
    filters: Tuple[ReportFilter, ...] = ()
    chart_type: ChartType = "bar"
    sorting: Optional[Sorting] = None
    limit: Optional[int] = None
    created_by: str = ""
    created_at: datetime
    updated_at: datetime
    version: int = 1

    @classmethod
    def from_draft(cls, draft: ReportDraft, *, id: str, created_by: str, now: datetime) -> "ReportConfiguration":
        return cls(
            id=id,
            created_by=created_by,
            created_at=now,
            updated_at=now,
            **draft.model_dump(exclude={"chart_type"}),
            chart_type=draft.chart_type or "bar",
        )

    def to_draft(self) -> ReportDraft:
        return ReportDraft(**self.model_dump(include=set(ReportDraft.model_fields)))

    @property
    def grouping_dimensions(self) -> Tuple[DimensionSelection, ...]:
        return tuple(d for d in self.dimensions if d.group_by)


# ── Results ─────────────────────────────────────────────────────────────

class Series(_Frozen):
    id: str
    label: str
    data: Tuple[Optional[float], ...] = ()
    color: str = ""


class Dataset(_Frozen):
    labels: Tuple[str, ...] = ()
    series: Tuple[Series, ...] = ()


class Summary(_Frozen):
    total: float = 0
    average: float = 0
    min: float = 0
    max: float = 0
    count: int = 0


class ReportResult(_Frozen):
    id: str
    configuration: ReportConfiguration
    dataset: Dataset
    summary: Summary
    generated_at: datetime
    processing_time_ms: int = 0
    cache_hit: bool = False
    row_count: int = 0


# ── Persistence ─────────────────────────────────────────────────────────

class SavedReport(_Frozen):
    id: str
    configuration: ReportConfiguration
    favorited: bool = False
    times_viewed: int = 0
    last_generated_at: Optional[datetime] = None
    created_by: str = ""
    created_at: datetime
    updated_at: datetime

    @property
    def name(self) -> str:
        return self.configuration.name


class ReportTemplate(_Frozen):
    id: str
    name: str
    description: str = ""
    category: Optional[str] = None
    is_system: bool = False
    configuration: ReportConfiguration
    created_at: datetime


# ── Scheduling ──────────────────────────────────────────────────────────

class ScheduleSettings(_Frozen):
    enabled: bool = True
    frequency: Frequency = "daily"
    day_of_week: Optional[int] = None  # 0 = Sunday ... 6 = Saturday
    day_of_month: Optional[int] = None
    time: str = "00:00"
    timezone: str = "UTC"
    recipients: Tuple[str, ...] = ()
    delivery_method: DeliveryMethod = "email"
    export_format: ExportFormat = "pdf"

    @field_validator("time")
    @classmethod
    def _check_time(cls, v: str) -> str:
        if not _TIME_RE.match(v):
            raise ValueError("time must be HH:MM (24h)")
        return v

    @field_validator("day_of_week")
    @classmethod
    def _check_day_of_week(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and not 0 <= v <= 6:
            raise ValueError("day_of_week must be between 0 (Sunday) and 6 (Saturday)")
        return v

    @field_validator("day_of_month")
    @classmethod
    def _check_day_of_month(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and not 1 <= v <= 31:
            raise ValueError("day_of_month must be between 1 and 31")
        return v

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except Exception:
            raise ValueError(f"unknown timezone '{v}'")
        return v


class ScheduledReport(_Frozen):
    id: str
    report_id: str
    report_name: str = ""
    schedule: ScheduleSettings
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    status: ScheduleStatus = "active"
    error_message: Optional[str] = None
    created_by: str = ""
    created_at: datetime
    updated_at: datetime


class ReportHistoryItem(_Frozen):
    id: str
    report_id: str
    schedule_id: Optional[str] = None
    report_name: str = ""
    generated_at: datetime
    generated_by: str = "scheduler"
    processing_time_ms: int = 0
    export_format: ExportFormat = "json"
    delivery_method: DeliveryMethod = "download"
    delivery_status: DeliveryStatus = "success"
    error_message: Optional[str] = None
    result_id: Optional[str] = None
