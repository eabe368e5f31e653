"""
Connector for any SQLAlchemy-compatible database table.
Filters and the time window are pushed down into the WHERE clause.
"""
from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta
from typing import Optional

import pandas as pd
from sqlalchemy import MetaData, Table, and_, create_engine, false, func, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from report_engine.connectors.base import BaseConnector
from report_engine.errors import DataSourceUnavailable
from report_engine.filters import coerce_operand
from report_engine.timeframes import resolve_time_window

logger = logging.getLogger(__name__)


def _midnight(day: date) -> datetime:
    return datetime.combine(day, time.min)


def _date_condition(column, op: str, operand):
    """Day-granular comparisons so a date filter matches whole days of timestamps."""
    one_day = timedelta(days=1)
    if op == "between":
        low, high = (_midnight(d) for d in operand)
        return and_(column >= low, column < high + one_day)
    operand = _midnight(operand)
    if op == "equals":
        return and_(column >= operand, column < operand + one_day)
    if op == "notEquals":
        return ~and_(column >= operand, column < operand + one_day)
    if op == "greaterThan":
        return column >= operand + one_day
    if op == "lessThan":
        return column < operand
    raise ValueError(f"Unsupported date operator '{op}'")


def build_condition(column, report_filter):
    op = report_filter.operator
    operand = coerce_operand(op, report_filter.value, report_filter.field_type)

    if report_filter.field_type == "date":
        return _date_condition(column, op, operand)

    if op in ("contains", "notContains", "startsWith", "endsWith"):
        lowered = func.lower(column)
        needle = operand.lower()
        if op == "startsWith":
            return lowered.startswith(needle, autoescape=True)
        if op == "endsWith":
            return lowered.endswith(needle, autoescape=True)
        cond = lowered.contains(needle, autoescape=True)
        return ~cond if op == "notContains" else cond
    if op == "equals":
        return column == operand
    if op == "notEquals":
        return column != operand
    if op == "greaterThan":
        return column > operand
    if op == "lessThan":
        return column < operand
    if op == "between":
        return column.between(*operand)
    if op == "in":
        return column.in_(operand)
    if op == "notIn":
        return column.not_in(operand)
    raise ValueError(f"Unsupported filter operator '{op}'")


class SQLAlchemyConnector(BaseConnector):
    connector_type = "sql"
    supports_filtering = True

    def __init__(self, config: Optional[dict] = None, **kwargs):
        super().__init__(config, **kwargs)
        self.url = self.config.get("url", "")
        self.table_name = self.config.get("table", "")
        self._engine: Optional[Engine] = self.config.get("engine")
        self._table: Optional[Table] = None

    def _get_engine(self) -> Engine:
        if self._engine is None:
            if not self.url:
                raise ValueError(f"{self.connector_type} connection URL is required in config.url")
            self._engine = create_engine(self.url, pool_pre_ping=True)
            logger.info(f"{self.connector_type} engine created")
        return self._engine

    def _get_table(self) -> Table:
        if self._table is None:
            self._table = Table(self.table_name, MetaData(), autoload_with=self._get_engine())
        return self._table

    def test_connection(self) -> tuple[str, str]:
        try:
            with self._get_engine().connect() as conn:
                conn.execute(text("SELECT 1"))
            return "connected", f"{self.connector_type} connection successful"
        except SQLAlchemyError as e:
            logger.error(f"{self.connector_type} test_connection failed: {e}")
            return "error", f"Connection failed: {type(e).__name__}: {e}"

    def build_query(self, filters, time_frame, start_date=None, end_date=None):
        table = self._get_table()
        conditions = []
        for report_filter in filters:
            column = table.c.get(report_filter.field)
            if column is None:
                conditions.append(false())
                continue
            conditions.append(build_condition(column, report_filter))

        window = resolve_time_window(time_frame, start_date, end_date, now=self.clock())
        if window is not None and self.time_field and self.time_field in table.c:
            start, end = window
            conditions.append(table.c[self.time_field].between(start.to_pydatetime(), end.to_pydatetime()))

        stmt = select(table)
        if conditions:
            stmt = stmt.where(and_(*conditions))
        return stmt

    def fetch_rows(self, data_source_id, filters, time_frame, start_date=None, end_date=None) -> pd.DataFrame:
        try:
            stmt = self.build_query(filters, time_frame, start_date, end_date)
            with self._get_engine().connect() as conn:
                return pd.read_sql(stmt, conn)
        except SQLAlchemyError as e:
            logger.error(f"{self.connector_type} fetch failed for '{data_source_id}': {e}")
            raise DataSourceUnavailable(f"Database unavailable for '{data_source_id}': {e}") from e
