"""
Report builder: the five-step wizard as an explicit state machine.

The builder owns an immutable ReportDraft. Every edit swaps in a new draft;
advance() validates the current step before moving on, retreat() never
validates and never discards input. No persistence happens here: complete()
only hands back the finished ReportConfiguration.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Type

from pydantic import BaseModel, ValidationError

from report_engine.catalog import CatalogRegistry, DataSource
from report_engine.errors import BuilderStateError, ReportValidationError
from report_engine.models import (
    DimensionSelection,
    MetricSelection,
    ReportConfiguration,
    ReportDraft,
    ReportFilter,
    Sorting,
)
from report_engine.stages import BuilderStage, next_stage, previous_stage
from report_engine.validator import FieldError, ValidationResult, validate, validate_configuration

logger = logging.getLogger(__name__)

_UNSET: Any = object()


class CompletionIntent(str, Enum):
    SAVE = "save"
    SCHEDULE = "schedule"


@dataclass(frozen=True)
class CompletionResult:
    validation: ValidationResult
    configuration: Optional[ReportConfiguration] = None

    @property
    def valid(self) -> bool:
        return self.validation.valid


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _field_errors(error: ValidationError, prefix: str = "") -> List[FieldError]:
    """pydantic error locations as dotted paths, e.g. metrics[0].aggregation."""
    errors = []
    for err in error.errors():
        path = prefix
        for part in err["loc"]:
            if isinstance(part, int):
                path += f"[{part}]"
            else:
                path = f"{path}.{part}" if path else str(part)
        errors.append(FieldError(path, err["msg"], "invalid_value"))
    return errors


def _usable_dimension(source: DataSource, dimension: DimensionSelection) -> bool:
    f = source.field(dimension.field)
    return f is not None and f.is_dimension


def _usable_metric(source: DataSource, metric: MetricSelection) -> bool:
    f = source.field(metric.field)
    return f is not None and f.is_metric and metric.aggregation in f.supported_aggregations


def _usable_filter(source: DataSource, report_filter: ReportFilter) -> bool:
    f = source.field(report_filter.field)
    return f is not None and f.type == report_filter.field_type


class ReportBuilder:
    """One wizard session. Not thread-safe: callers serialize their calls."""

    def __init__(
        self,
        catalog: CatalogRegistry,
        *,
        clock: Callable[[], datetime] = _utcnow,
        id_factory: Callable[[str], str] = _new_id,
        draft: Optional[ReportDraft] = None,
    ):
        self.catalog = catalog
        self.clock = clock
        self.id_factory = id_factory
        self.stage = BuilderStage.SELECT_DATA_SOURCE
        self.draft = draft or ReportDraft()
        self.errors: List = []
        self.snapshots: Dict[BuilderStage, ReportDraft] = {}
        self.configuration: Optional[ReportConfiguration] = None

    # ── state helpers ────────────────────────────────────────────────

    @property
    def data_source(self) -> Optional[DataSource]:
        return self.catalog.find(self.draft.data_source_id)

    def _require_active(self):
        if self.stage.is_terminal:
            raise BuilderStateError(f"Builder is finished ({self.stage.value})")

    def _build(self, model: Type[BaseModel], path: str, data: Dict[str, Any]):
        """Validate an edit. A rejected edit leaves the draft untouched."""
        try:
            return model.model_validate(data)
        except ValidationError as e:
            self.errors = _field_errors(e, path)
            logger.debug(f"edit rejected: {self.errors}")
            raise ReportValidationError(self.errors) from e

    def _update(self, **changes) -> ReportDraft:
        self._require_active()
        self.draft = self._build(ReportDraft, "", {**self.draft.model_dump(), **changes})
        return self.draft

    # ── step 1: data source ──────────────────────────────────────────

    def select_data_source(self, data_source_id: str) -> ReportDraft:
        """
        Pick the data source. Selections that reference fields the new source
        does not have (or cannot use the same way) are dropped.
        """
        self._require_active()
        if self.stage != BuilderStage.SELECT_DATA_SOURCE:
            raise BuilderStateError("The data source can only be changed on the first step")
        if data_source_id == self.draft.data_source_id:
            return self.draft

        source = self.catalog.find(data_source_id)
        if source is None:
            return self._update(data_source_id=data_source_id)

        dimensions = tuple(d for d in self.draft.dimensions if _usable_dimension(source, d))
        metrics = tuple(m for m in self.draft.metrics if _usable_metric(source, m))
        filters = tuple(flt for flt in self.draft.filters if _usable_filter(source, flt))
        sorting = self.draft.sorting
        remaining = {d.field for d in dimensions if d.group_by} | {m.field for m in metrics} | {m.id for m in metrics}
        if sorting is not None and sorting.field not in remaining:
            sorting = None

        dropped = (
            len(self.draft.dimensions) - len(dimensions)
            + len(self.draft.metrics) - len(metrics)
            + len(self.draft.filters) - len(filters)
        )
        if dropped:
            logger.info(f"Data source changed to '{data_source_id}': dropped {dropped} incompatible selections")
        return self._update(
            data_source_id=data_source_id,
            dimensions=dimensions,
            metrics=metrics,
            filters=filters,
            sorting=sorting,
        )

    # ── step 2: dimensions ───────────────────────────────────────────

    def add_dimension(self, field: str, label: Optional[str] = None, group_by: bool = True) -> DimensionSelection:
        self._require_active()
        catalog_field = self.data_source.field(field) if self.data_source else None
        dimension = self._build(DimensionSelection, f"dimensions[{len(self.draft.dimensions)}]", dict(
            id=self.id_factory("dim"),
            field=field,
            label=label or (catalog_field.display_label if catalog_field else field),
            group_by=group_by,
        ))
        self._update(dimensions=self.draft.dimensions + (dimension,))
        return dimension

    def update_dimension(self, dimension_id: str, **changes) -> DimensionSelection:
        return self._replace("dimensions", dimension_id, changes)

    def remove_dimension(self, dimension_id: str) -> ReportDraft:
        return self._remove("dimensions", dimension_id)

    # ── step 3: metrics ──────────────────────────────────────────────

    def add_metric(
        self,
        field: str,
        aggregation: str,
        label: Optional[str] = None,
        format: Optional[str] = None,
        color: Optional[str] = None,
    ) -> MetricSelection:
        self._require_active()
        catalog_field = self.data_source.field(field) if self.data_source else None
        metric = self._build(MetricSelection, f"metrics[{len(self.draft.metrics)}]", dict(
            id=self.id_factory("metric"),
            field=field,
            aggregation=aggregation,
            label=label or "",
            format=format or (catalog_field.format if catalog_field else None),
            color=color,
        ))
        self._update(metrics=self.draft.metrics + (metric,))
        return metric

    def update_metric(self, metric_id: str, **changes) -> MetricSelection:
        return self._replace("metrics", metric_id, changes)

    def remove_metric(self, metric_id: str) -> ReportDraft:
        return self._remove("metrics", metric_id)

    # ── step 4: filters ──────────────────────────────────────────────

    def add_filter(self, field: str, operator: str, value: Any = None) -> ReportFilter:
        self._require_active()
        catalog_field = self.data_source.field(field) if self.data_source else None
        report_filter = self._build(ReportFilter, f"filters[{len(self.draft.filters)}]", dict(
            id=self.id_factory("filter"),
            field=field,
            operator=operator,
            value=value,
            field_type=catalog_field.type if catalog_field else "string",
        ))
        self._update(filters=self.draft.filters + (report_filter,))
        return report_filter

    def update_filter(self, filter_id: str, **changes) -> ReportFilter:
        return self._replace("filters", filter_id, changes)

    def remove_filter(self, filter_id: str) -> ReportDraft:
        return self._remove("filters", filter_id)

    # ── step 5: visualization & details ──────────────────────────────

    def configure_visualization(
        self,
        chart_type: Optional[str] = _UNSET,
        time_frame: str = _UNSET,
        start_date: Optional[date] = _UNSET,
        end_date: Optional[date] = _UNSET,
        sorting: Optional[Sorting] = _UNSET,
        limit: Optional[int] = _UNSET,
    ) -> ReportDraft:
        changes = {
            k: v for k, v in dict(
                chart_type=chart_type,
                time_frame=time_frame,
                start_date=start_date,
                end_date=end_date,
                sorting=sorting,
                limit=limit,
            ).items()
            if v is not _UNSET
        }
        return self._update(**changes)

    def set_details(self, name: Optional[str] = None, description: Optional[str] = None,
                    category: Optional[str] = _UNSET) -> ReportDraft:
        changes = {}
        if name is not None:
            changes["name"] = name
        if description is not None:
            changes["description"] = description
        if category is not _UNSET:
            changes["category"] = category
        return self._update(**changes)

    # ── transitions ──────────────────────────────────────────────────

    def validate_current(self) -> ValidationResult:
        return validate(self.draft, self.stage, self.data_source)

    def advance(self) -> ValidationResult:
        """Validate the current step and move forward if it passes."""
        self._require_active()
        target = next_stage(self.stage)
        if target is None:
            raise BuilderStateError("Already on the last step; call complete() instead")

        result = self.validate_current()
        self.errors = result.errors
        if not result.valid:
            logger.debug(f"advance blocked at {self.stage.value}: {len(result.errors)} errors")
            return result

        self.snapshots[self.stage] = self.draft
        logger.debug(f"builder {self.stage.value} -> {target.value}")
        self.stage = target
        return result

    def retreat(self) -> BuilderStage:
        """Step back without validating; entered selections are kept."""
        self._require_active()
        target = previous_stage(self.stage)
        if target is not None:
            logger.debug(f"builder {self.stage.value} -> {target.value}")
            self.stage = target
        self.errors = []
        return self.stage

    def complete(self, intent: CompletionIntent = CompletionIntent.SAVE, created_by: str = "") -> CompletionResult:
        """
        Finish the wizard. Returns the validation outcome together with the
        materialized configuration when it passes.
        """
        self._require_active()
        if self.stage != BuilderStage.CONFIGURE_VISUALIZATION:
            raise BuilderStateError("complete() is only allowed on the visualization step")

        result = validate_configuration(self.draft, self.data_source)
        self.errors = result.errors
        if not result.valid:
            return CompletionResult(validation=result)

        self.configuration = ReportConfiguration.from_draft(
            self.draft,
            id=self.id_factory("report"),
            created_by=created_by,
            now=self.clock(),
        )
        self.snapshots[self.stage] = self.draft
        intent = CompletionIntent(intent)
        self.stage = BuilderStage.SCHEDULED if intent == CompletionIntent.SCHEDULE else BuilderStage.SAVED
        logger.info(f"Report configuration '{self.configuration.id}' completed ({self.stage.value})")
        return CompletionResult(validation=result, configuration=self.configuration)

    def cancel(self) -> BuilderStage:
        self._require_active()
        self.stage = BuilderStage.ABANDONED
        logger.debug("builder abandoned")
        return self.stage

    # ── internals ────────────────────────────────────────────────────

    def _replace(self, collection: str, item_id: str, changes: Dict[str, Any]):
        self._require_active()
        items = getattr(self.draft, collection)
        for i, item in enumerate(items):
            if item.id == item_id:
                updated = self._build(type(item), f"{collection}[{i}]", {**item.model_dump(), **changes})
                self._update(**{collection: items[:i] + (updated,) + items[i + 1:]})
                return updated
        raise KeyError(f"No {collection[:-1]} with id '{item_id}'")

    def _remove(self, collection: str, item_id: str) -> ReportDraft:
        items = getattr(self.draft, collection)
        remaining = tuple(item for item in items if item.id != item_id)
        if len(remaining) == len(items):
            raise KeyError(f"No {collection[:-1]} with id '{item_id}'")
        return self._update(**{collection: remaining})
