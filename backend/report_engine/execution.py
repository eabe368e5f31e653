"""
Execution Engine: turns a ReportConfiguration into a ReportResult.

Rows come from a connector; filtering, grouping, aggregation, sorting and
limiting happen here over a pandas DataFrame. Results are cached per
fingerprint for the data source's refresh rate, and concurrent requests for
the same fingerprint share a single computation.
"""

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

import pandas as pd

from report_cache.cache import MemoryCache, SingleFlight
from report_engine.catalog import CatalogRegistry, DataSource
from report_engine.connectors.base import BaseConnector
from report_engine.errors import (
    AggregationTypeMismatch,
    DataSourceTimeout,
    DataSourceUnavailable,
    ExecutionCancelled,
)
from report_engine.filters import apply_filters
from report_engine.fingerprint import fingerprint
from report_engine.models import Dataset, ReportConfiguration, ReportResult, Series, Summary

logger = logging.getLogger(__name__)

SERIES_PALETTE = (
    "#4dabf7", "#37b24d", "#f03e3e", "#f59f00",
    "#7950f2", "#1098ad", "#e64980", "#74b816",
)

# report aggregation -> pandas reduction
PANDAS_AGGREGATIONS = {
    "sum": "sum",
    "average": "mean",
    "min": "min",
    "max": "max",
    "count": "count",
}

ALL_ROWS_LABEL = "All"
MISSING_LABEL = "Unknown"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CancellationToken:
    """Set by the caller to stop waiting on an execution."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def series_color(metric, index: int) -> str:
    return metric.color or SERIES_PALETTE[index % len(SERIES_PALETTE)]


def _format_key(value) -> str:
    if pd.isna(value):
        return MISSING_LABEL
    if isinstance(value, pd.Timestamp):
        return value.date().isoformat() if value == value.normalize() else value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _to_float(value) -> Optional[float]:
    if value is None or pd.isna(value):
        return None
    return float(value)


def _check_metric(metric, source: DataSource):
    field = source.field(metric.field)
    if field is None or not field.is_metric:
        raise AggregationTypeMismatch(f"'{metric.field}' is not a metric field of '{source.id}'")
    if metric.aggregation not in field.supported_aggregations:
        raise AggregationTypeMismatch(
            f"Aggregation '{metric.aggregation}' is not supported by field '{metric.field}'"
        )
    if metric.aggregation != "count" and field.type != "number":
        raise AggregationTypeMismatch(
            f"Aggregation '{metric.aggregation}' needs a number field, '{metric.field}' is {field.type}"
        )


def _sort_groups(groups: List[dict], config: ReportConfiguration) -> List[dict]:
    """Stable sort on a grouping dimension or a metric; missing values always go last."""
    sorting = config.sorting
    if sorting is None:
        return groups

    group_fields = [d.field for d in config.grouping_dimensions]
    if sorting.field in group_fields:
        pos = group_fields.index(sorting.field)

        def value_of(g):
            return g["key"][pos]
    else:
        metric_pos = next((i for i, m in enumerate(config.metrics) if m.id == sorting.field), None)
        if metric_pos is None:
            metric_pos = next((i for i, m in enumerate(config.metrics) if m.field == sorting.field), None)
        if metric_pos is None:
            logger.debug(f"Sort field '{sorting.field}' is not a grouping dimension or metric; order kept")
            return groups

        def value_of(g):
            return g["values"][metric_pos]

    present = [g for g in groups if not pd.isna(value_of(g))]
    missing = [g for g in groups if pd.isna(value_of(g))]
    reverse = sorting.direction == "desc"
    try:
        present.sort(key=value_of, reverse=reverse)
    except TypeError:
        present.sort(key=lambda g: str(value_of(g)), reverse=reverse)
    return present + missing


def reduce_rows(df: pd.DataFrame, config: ReportConfiguration, source: DataSource) -> Tuple[Dataset, Summary]:
    """
    Group already-filtered rows and aggregate every metric per group.

    Groups keep first-seen order unless `config.sorting` says otherwise. The
    summary covers the first metric over every group, before sort and limit.
    """
    for metric in config.metrics:
        _check_metric(metric, source)

    if df.empty:
        return Dataset(), Summary()

    frame = df.copy()
    group_fields = [d.field for d in config.grouping_dimensions]
    for name in group_fields + [m.field for m in config.metrics]:
        if name not in frame.columns:
            frame[name] = None

    value_columns = []
    for i, metric in enumerate(config.metrics):
        column = f"__metric_{i}"
        if metric.aggregation == "count":
            frame[column] = frame[metric.field]
        else:
            frame[column] = pd.to_numeric(frame[metric.field], errors="coerce")
        value_columns.append((column, PANDAS_AGGREGATIONS[metric.aggregation]))

    groups: List[dict] = []
    if group_fields:
        grouped = frame.groupby(group_fields, sort=False, dropna=False)
        if value_columns:
            table = grouped.agg(**{col: (col, func) for col, func in value_columns})
        else:
            table = grouped.size().to_frame("__rows")
        for key, row in table.iterrows():
            key = key if isinstance(key, tuple) else (key,)
            groups.append({
                "key": key,
                "label": " / ".join(_format_key(v) for v in key),
                "values": [_to_float(row[col]) for col, _ in value_columns],
            })
    else:
        groups.append({
            "key": (),
            "label": ALL_ROWS_LABEL,
            "values": [_to_float(frame[col].agg(func)) for col, func in value_columns],
        })

    summary = summarize(groups)
    groups = _sort_groups(groups, config)
    if config.limit is not None:
        groups = groups[: config.limit]

    series = tuple(
        Series(
            id=metric.id,
            label=metric.display_label,
            data=tuple(g["values"][i] for g in groups),
            color=series_color(metric, i),
        )
        for i, metric in enumerate(config.metrics)
    )
    return Dataset(labels=tuple(g["label"] for g in groups), series=series), summary


def summarize(groups: List[dict]) -> Summary:
    count = len(groups)
    values = [g["values"][0] for g in groups if g["values"] and g["values"][0] is not None]
    if not values:
        return Summary(count=count)
    total = float(sum(values))
    return Summary(
        total=total,
        average=total / count if count else 0,
        min=min(values),
        max=max(values),
        count=count,
    )


def reproject(result: ReportResult, config: ReportConfiguration, cache_hit: bool) -> ReportResult:
    """Serve a shared result to `config`: same data, the requester's labels and colours."""
    series = tuple(
        s.model_copy(update={"id": m.id, "label": m.display_label, "color": series_color(m, i)})
        for i, (s, m) in enumerate(zip(result.dataset.series, config.metrics))
    )
    return result.model_copy(update={
        "configuration": config,
        "cache_hit": cache_hit,
        "dataset": result.dataset.model_copy(update={"series": series}),
    })


class ExecutionEngine:
    """Executes report configurations with caching and single-flight deduplication."""

    def __init__(
        self,
        catalog: CatalogRegistry,
        connector: BaseConnector,
        cache: Optional[MemoryCache] = None,
        clock: Callable[[], datetime] = _utcnow,
        max_workers: int = 4,
        default_timeout: Optional[float] = None,
        poll_interval: float = 0.05,
    ):
        """
        Args:
            catalog: data sources the configurations refer to
            connector: supplies raw rows (usually a RoutingConnector)
            cache: result cache; None disables caching
            clock: returns the current aware datetime
            default_timeout: seconds a caller waits when execute() gets no timeout
        """
        self.catalog = catalog
        self.connector = connector
        self.cache = cache
        self.clock = clock
        self.default_timeout = default_timeout
        self.poll_interval = poll_interval
        self.flights = SingleFlight()
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="report-exec")

    def execute(
        self,
        config: ReportConfiguration,
        force_refresh: bool = False,
        timeout: Optional[float] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ReportResult:
        """
        Run `config` and return its result.

        Raises DataSourceUnavailable (or DataSourceTimeout) when rows cannot be
        fetched in time, ExecutionCancelled when `cancel_token` is set first.
        """
        source = self.catalog.get(config.data_source_id)
        key = fingerprint(config)

        if not force_refresh and self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                logger.info(f"Cache hit for report '{config.name}' ({key[:12]})")
                return reproject(cached, config, cache_hit=True)
            logger.debug(f"Cache miss for report '{config.name}' ({key[:12]})")

        flight, leader = self.flights.join(key)
        cache_hit = False
        if leader:
            # a flight that finished after the lookup above has already published
            cached = self.cache.get(key) if self.cache is not None and not force_refresh else None
            if cached is not None:
                logger.info(f"Cache filled while joining for report '{config.name}' ({key[:12]})")
                cache_hit = True
                self.flights.finish(flight)
                flight.future.set_result(cached)
            else:
                self._pool.submit(self._run_flight, flight, config, source)
        else:
            logger.info(f"Joined in-flight execution {key[:12]} ({self.flights.waiters(key)} waiting)")

        result = self._wait(flight, timeout if timeout is not None else self.default_timeout, cancel_token)
        return reproject(result, config, cache_hit=cache_hit)

    def _wait(self, flight, timeout, cancel_token) -> ReportResult:
        deadline = time.monotonic() + timeout if timeout else None
        try:
            while True:
                if cancel_token is not None and cancel_token.cancelled:
                    logger.info(f"Execution {flight.key[:12]} cancelled by caller")
                    raise ExecutionCancelled("Execution cancelled")
                wait_for = self.poll_interval
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        logger.warning(f"Execution {flight.key[:12]} timed out after {timeout}s")
                        raise DataSourceTimeout(f"Execution timed out after {timeout}s")
                    wait_for = min(wait_for, remaining)
                try:
                    return flight.future.result(timeout=wait_for)
                except FutureTimeoutError:
                    continue
        finally:
            self.flights.leave(flight)

    def _run_flight(self, flight, config: ReportConfiguration, source: DataSource):
        try:
            result = self.run(config, source, abandoned=lambda: not self.flights.should_publish(flight))
        except Exception as e:
            self.flights.finish(flight)
            flight.future.set_exception(e)
            return
        if self.cache is not None and self.flights.should_publish(flight):
            self.cache.set(flight.key, result, ttl=source.refresh_rate * 60)
        self.flights.finish(flight)
        flight.future.set_result(result)

    def run(self, config: ReportConfiguration, source: DataSource, abandoned=None) -> ReportResult:
        """Fetch, filter and reduce without touching the cache."""
        started = time.perf_counter()
        try:
            df = self.connector.fetch_rows(
                config.data_source_id, config.filters, config.time_frame, config.start_date, config.end_date
            )
        except DataSourceUnavailable:
            raise
        except Exception as e:
            logger.error(f"Fetching rows for '{config.data_source_id}' failed: {e}")
            raise DataSourceUnavailable(f"Data source '{config.data_source_id}' failed: {e}") from e

        if abandoned is not None and abandoned():
            raise ExecutionCancelled("Nobody is waiting for this execution")

        if not self.connector.handles_filters(config.data_source_id):
            df = apply_filters(df, config.filters)

        dataset, summary = reduce_rows(df, config, source)
        elapsed_ms = int(round((time.perf_counter() - started) * 1000))
        logger.info(
            f"Executed report '{config.name}' on '{config.data_source_id}': "
            f"{len(df)} rows, {len(dataset.labels)} groups in {elapsed_ms}ms"
        )
        return ReportResult(
            id=f"result-{uuid.uuid4().hex[:12]}",
            configuration=config,
            dataset=dataset,
            summary=summary,
            generated_at=self.clock(),
            processing_time_ms=elapsed_ms,
            cache_hit=False,
            row_count=len(df),
        )

    def shutdown(self, wait: bool = True):
        self._pool.shutdown(wait=wait)
