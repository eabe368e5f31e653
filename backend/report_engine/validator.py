"""
Configuration validator.

Pure functions: they inspect a (partial) configuration against the data
source's field catalog and return every problem found. Nothing is raised and
nothing is mutated; the builder decides whether a transition is blocked.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from report_engine.catalog import NON_NUMERIC_AGGREGATIONS, DataSource
from report_engine.filters import OPERATORS_BY_TYPE, coerce_operand
from report_engine.stages import BuilderStage


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str
    code: str = "invalid"


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    errors: List[FieldError] = field(default_factory=list)

    @classmethod
    def from_errors(cls, errors: List[FieldError]) -> "ValidationResult":
        return cls(valid=not errors, errors=list(errors))


def _check_data_source(config, data_source: Optional[DataSource]) -> List[FieldError]:
    if not config.data_source_id:
        return [FieldError("data_source_id", "A data source is required", "required")]
    if data_source is None or data_source.id != config.data_source_id:
        return [FieldError("data_source_id", f"Unknown data source '{config.data_source_id}'", "unknown")]
    return []


def _check_dimensions(config, data_source: DataSource) -> List[FieldError]:
    errors: List[FieldError] = []
    seen = set()
    for i, dim in enumerate(config.dimensions):
        path = f"dimensions[{i}].field"
        catalog_field = data_source.field(dim.field)
        if catalog_field is None:
            errors.append(FieldError(path, f"Field '{dim.field}' does not exist in '{data_source.id}'", "unknown"))
        elif not catalog_field.is_dimension:
            errors.append(FieldError(path, f"Field '{dim.field}' cannot be used as a dimension", "not_dimension"))
        if dim.field in seen:
            errors.append(FieldError(path, f"Dimension '{dim.field}' is selected more than once", "duplicate"))
        seen.add(dim.field)
    return errors


def _check_metrics(config, data_source: DataSource, require_one: bool) -> List[FieldError]:
    errors: List[FieldError] = []
    if require_one and not config.metrics:
        errors.append(FieldError("metrics", "Select at least one metric", "required"))
    for i, metric in enumerate(config.metrics):
        catalog_field = data_source.field(metric.field)
        if catalog_field is None:
            errors.append(FieldError(
                f"metrics[{i}].field", f"Field '{metric.field}' does not exist in '{data_source.id}'", "unknown"))
            continue
        if not catalog_field.is_metric:
            errors.append(FieldError(
                f"metrics[{i}].field", f"Field '{metric.field}' cannot be used as a metric", "not_metric"))
            continue
        if metric.aggregation not in catalog_field.supported_aggregations:
            errors.append(FieldError(
                f"metrics[{i}].aggregation",
                f"'{metric.aggregation}' is not supported for '{metric.field}' "
                f"(supported: {', '.join(catalog_field.supported_aggregations)})",
                "unsupported_aggregation",
            ))
        elif catalog_field.type != "number" and metric.aggregation not in NON_NUMERIC_AGGREGATIONS:
            errors.append(FieldError(
                f"metrics[{i}].aggregation",
                f"'{metric.aggregation}' needs a number field; '{metric.field}' is {catalog_field.type}",
                "unsupported_aggregation",
            ))
    return errors


def _check_filters(config, data_source: DataSource) -> List[FieldError]:
    errors: List[FieldError] = []
    for i, report_filter in enumerate(config.filters):
        catalog_field = data_source.field(report_filter.field)
        if catalog_field is None:
            errors.append(FieldError(
                f"filters[{i}].field", f"Field '{report_filter.field}' does not exist in '{data_source.id}'", "unknown"))
            continue
        if report_filter.field_type != catalog_field.type:
            errors.append(FieldError(
                f"filters[{i}].field_type",
                f"Filter type '{report_filter.field_type}' does not match field type '{catalog_field.type}'",
                "type_mismatch",
            ))
            continue
        allowed = OPERATORS_BY_TYPE.get(report_filter.field_type, ())
        if report_filter.operator not in allowed:
            errors.append(FieldError(
                f"filters[{i}].operator",
                f"Operator '{report_filter.operator}' is not valid for {report_filter.field_type} fields",
                "invalid_operator",
            ))
            continue
        try:
            coerce_operand(report_filter.operator, report_filter.value, report_filter.field_type)
        except (TypeError, ValueError) as e:
            errors.append(FieldError(f"filters[{i}].value", str(e), "invalid_value"))
    return errors


def _check_visualization(config) -> List[FieldError]:
    errors: List[FieldError] = []
    if not config.chart_type:
        errors.append(FieldError("chart_type", "Choose a chart type", "required"))
    if not (config.name or "").strip():
        errors.append(FieldError("name", "Report name is required", "required"))

    if config.time_frame == "custom":
        if config.start_date is None:
            errors.append(FieldError("start_date", "A custom time frame needs a start date", "required"))
        if config.end_date is None:
            errors.append(FieldError("end_date", "A custom time frame needs an end date", "required"))
        if config.start_date and config.end_date and config.start_date > config.end_date:
            errors.append(FieldError("end_date", "End date must not be before start date", "out_of_order"))

    if config.limit is not None and config.limit <= 0:
        errors.append(FieldError("limit", "Limit must be a positive number", "invalid_value"))

    if config.sorting is not None:
        selectable = {d.field for d in config.dimensions if d.group_by}
        selectable |= {m.field for m in config.metrics} | {m.id for m in config.metrics}
        if config.sorting.field not in selectable:
            errors.append(FieldError(
                "sorting.field", f"Sort field '{config.sorting.field}' is not a grouping dimension or selected metric", "unknown"))
    return errors


def validate(config, stage: BuilderStage, data_source: Optional[DataSource] = None) -> ValidationResult:
    """Validate the parts of `config` that `stage` is responsible for."""
    errors = _check_data_source(config, data_source)
    if stage == BuilderStage.SELECT_DATA_SOURCE or errors:
        return ValidationResult.from_errors(errors)

    if stage == BuilderStage.CHOOSE_DIMENSIONS:
        errors = _check_dimensions(config, data_source)
    elif stage == BuilderStage.SELECT_METRICS:
        errors = _check_metrics(config, data_source, require_one=True)
    elif stage == BuilderStage.ADD_FILTERS:
        errors = _check_filters(config, data_source)
    elif stage == BuilderStage.CONFIGURE_VISUALIZATION:
        errors = _check_visualization(config)
    return ValidationResult.from_errors(errors)


def validate_configuration(config, data_source: Optional[DataSource]) -> ValidationResult:
    """Full check of every invariant a finished configuration must satisfy."""
    errors = _check_data_source(config, data_source)
    if errors:
        return ValidationResult.from_errors(errors)

    errors += _check_dimensions(config, data_source)
    errors += _check_metrics(config, data_source, require_one=False)
    errors += _check_filters(config, data_source)
    errors += _check_visualization(config)

    if not config.metrics and not any(d.group_by for d in config.dimensions):
        errors.append(FieldError(
            "metrics", "A report needs at least one metric or one grouping dimension", "incomplete"))
    return ValidationResult.from_errors(errors)
