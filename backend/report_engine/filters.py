"""
Filter operators: which operators each field type accepts, and how a filter
is applied to a DataFrame of raw rows.
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, Iterable, Tuple

import pandas as pd

logger = logging.getLogger(__name__)

OPERATORS_BY_TYPE: Dict[str, Tuple[str, ...]] = {
    "string": ("equals", "notEquals", "contains", "notContains", "startsWith", "endsWith", "in", "notIn"),
    "number": ("equals", "notEquals", "greaterThan", "lessThan", "between", "in", "notIn"),
    "date": ("equals", "notEquals", "greaterThan", "lessThan", "between"),
    "boolean": ("equals",),
}

RANGE_OPERATORS = {"between"}
LIST_OPERATORS = {"in", "notIn"}


def coerce_scalar(value: Any, field_type: str) -> Any:
    """
    Convert a filter operand to the Python type matching `field_type`.
    Raises ValueError/TypeError when the operand cannot represent that type.
    """
    if value is None:
        raise ValueError("value is required")
    if field_type == "number":
        if isinstance(value, bool):
            raise TypeError("expected a number")
        return float(value)
    if field_type == "date":
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        return date.fromisoformat(str(value)[:10])
    if field_type == "boolean":
        if isinstance(value, bool):
            return value
        if str(value).lower() in {"true", "false"}:
            return str(value).lower() == "true"
        raise ValueError("expected true or false")
    return str(value)


def coerce_operand(operator: str, value: Any, field_type: str) -> Any:
    """Coerce the whole operand for `operator`: a pair, a list, or a scalar."""
    if operator in RANGE_OPERATORS:
        if not isinstance(value, (list, tuple)) or len(value) != 2:
            raise ValueError("between expects [low, high]")
        low, high = coerce_scalar(value[0], field_type), coerce_scalar(value[1], field_type)
        if low > high:
            raise ValueError("between lower bound must not exceed upper bound")
        return low, high
    if operator in LIST_OPERATORS:
        if not isinstance(value, (list, tuple)) or not value:
            raise ValueError(f"{operator} expects a non-empty list")
        return [coerce_scalar(v, field_type) for v in value]
    return coerce_scalar(value, field_type)


def _column_as(series: pd.Series, field_type: str) -> pd.Series:
    if field_type == "number":
        return pd.to_numeric(series, errors="coerce")
    if field_type == "date":
        return pd.to_datetime(series, errors="coerce").dt.normalize()
    if field_type == "string":
        return series.astype("string")
    return series


def _as_timestamp(value):
    return pd.Timestamp(value) if isinstance(value, date) else value


def filter_mask(df: pd.DataFrame, report_filter) -> pd.Series:
    """Boolean mask of rows matching one filter. Missing columns match nothing."""
    if report_filter.field not in df.columns:
        logger.debug(f"Filter on absent column '{report_filter.field}' excludes every row")
        return pd.Series(False, index=df.index)

    op = report_filter.operator
    field_type = report_filter.field_type
    operand = coerce_operand(op, report_filter.value, field_type)
    col = _column_as(df[report_filter.field], field_type)

    if field_type == "date":
        if op in RANGE_OPERATORS:
            operand = tuple(_as_timestamp(v) for v in operand)
        else:
            operand = _as_timestamp(operand)

    if op in ("contains", "notContains", "startsWith", "endsWith"):
        text = col.str.lower()
        needle = operand.lower()
        if op == "startsWith":
            mask = text.str.startswith(needle)
        elif op == "endsWith":
            mask = text.str.endswith(needle)
        else:
            mask = text.str.contains(needle, regex=False)
            if op == "notContains":
                mask = ~mask.fillna(False)
    elif op == "equals":
        mask = col == operand
    elif op == "notEquals":
        mask = col != operand
    elif op == "greaterThan":
        mask = col > operand
    elif op == "lessThan":
        mask = col < operand
    elif op == "between":
        low, high = operand
        mask = (col >= low) & (col <= high)
    elif op == "in":
        mask = col.isin(operand)
    elif op == "notIn":
        mask = ~col.isin(operand)
    else:
        raise ValueError(f"Unsupported filter operator '{op}'")

    return mask.fillna(False).astype(bool)


def apply_filters(df: pd.DataFrame, filters: Iterable) -> pd.DataFrame:
    """Keep only rows matching every filter (filters are AND-ed)."""
    filters = list(filters)
    if df.empty or not filters:
        return df
    mask = pd.Series(True, index=df.index)
    for report_filter in filters:
        mask &= filter_mask(df, report_filter)
    return df[mask]
