import threading
import time
from datetime import date

import pandas as pd
import pytest

from report_engine.connectors.base import BaseConnector
from report_engine.errors import (
    AggregationTypeMismatch,
    DataSourceTimeout,
    DataSourceUnavailable,
    ExecutionCancelled,
)
from report_engine.execution import CancellationToken, ExecutionEngine, reduce_rows
from report_engine.fingerprint import fingerprint
from report_engine.models import DimensionSelection, MetricSelection, ReportConfiguration, ReportFilter, Sorting


class CountingConnector(BaseConnector):
    """Serves fixed rows, counts calls and can block until released."""

    connector_type = "test"

    def __init__(self, rows, block=False, fail=None):
        super().__init__({})
        self.rows = rows
        self.calls = 0
        self.fail = fail
        self.started = threading.Event()
        self.release = threading.Event()
        if not block:
            self.release.set()

    def test_connection(self):
        return "connected", "ok"

    def fetch_rows(self, data_source_id, filters, time_frame, start_date=None, end_date=None):
        self.calls += 1
        self.started.set()
        self.release.wait(5)
        if self.fail is not None:
            raise self.fail
        return pd.DataFrame(self.rows)


def test_end_to_end_orders_report(engine, make_config, completed_filter):
    config = make_config(filters=(completed_filter,))

    result = engine.execute(config)

    assert result.dataset.labels == ("completed",)
    assert len(result.dataset.series) == 1
    series = result.dataset.series[0]
    assert series.label == "total (sum)"
    assert series.data == (150,)
    assert result.summary.total == 150
    assert result.summary.count == 1
    assert result.cache_hit is False
    assert result.row_count == 2
    assert result.configuration == config


def test_sum_per_group(catalog, make_config):
    rows = pd.DataFrame([{"status": "A", "total": 10}, {"status": "A", "total": 20}, {"status": "B", "total": 5}])
    dataset, summary = reduce_rows(rows, make_config(), catalog.get("orders"))
    assert dataset.labels == ("A", "B")
    assert dataset.series[0].data == (30, 5)
    assert summary.total == 35
    assert summary.average == 17.5
    assert (summary.min, summary.max, summary.count) == (5, 30, 2)


def test_every_aggregation(catalog, make_config):
    rows = pd.DataFrame([
        {"status": "A", "total": 10, "items": 1},
        {"status": "A", "total": 20, "items": None},
        {"status": "B", "total": 5, "items": 3},
    ])
    metrics = tuple(
        MetricSelection(id=agg, field="total", aggregation=agg)
        for agg in ("sum", "average", "min", "max", "count")
    ) + (MetricSelection(id="item-count", field="items", aggregation="count"),)

    dataset, _ = reduce_rows(rows, make_config(metrics=metrics), catalog.get("orders"))

    data = {s.id: s.data for s in dataset.series}
    assert data["sum"] == (30, 5)
    assert data["average"] == (15, 5)
    assert data["min"] == (10, 5)
    assert data["max"] == (20, 5)
    assert data["count"] == (2, 1)
    assert data["item-count"] == (1, 1)


def test_groups_keep_first_seen_order_and_cross_product(catalog, make_config):
    rows = pd.DataFrame([
        {"status": "shipped", "channel": "web", "total": 1},
        {"status": "completed", "channel": "store", "total": 2},
        {"status": "shipped", "channel": "web", "total": 3},
        {"status": "completed", "channel": None, "total": 4},
    ])
    config = make_config(dimensions=(
        DimensionSelection(id="d1", field="status"),
        DimensionSelection(id="d2", field="channel"),
    ))
    dataset, _ = reduce_rows(rows, config, catalog.get("orders"))
    assert dataset.labels == ("shipped / web", "completed / store", "completed / Unknown")
    assert dataset.series[0].data == (4, 2, 4)


def test_no_grouping_dimension_gives_single_group(catalog, make_config):
    rows = pd.DataFrame([{"status": "A", "total": 10}, {"status": "B", "total": 5}])
    config = make_config(dimensions=(DimensionSelection(id="d1", field="status", group_by=False),))
    dataset, summary = reduce_rows(rows, config, catalog.get("orders"))
    assert dataset.labels == ("All",)
    assert dataset.series[0].data == (15,)
    assert summary.count == 1


def test_sorting_and_limit_apply_after_aggregation(catalog, make_config):
    rows = pd.DataFrame([
        {"status": "a", "total": 1}, {"status": "b", "total": 7},
        {"status": "c", "total": 3}, {"status": "b", "total": 1},
    ])
    config = make_config(sorting=Sorting(field="m1", direction="desc"), limit=2)
    dataset, summary = reduce_rows(rows, config, catalog.get("orders"))
    assert dataset.labels == ("b", "c")
    assert dataset.series[0].data == (8, 3)
    # summary covers every group, not just the limited ones
    assert summary.total == 12
    assert summary.count == 3

    by_label = make_config(sorting=Sorting(field="status", direction="asc"))
    dataset, _ = reduce_rows(rows, by_label, catalog.get("orders"))
    assert dataset.labels == ("a", "b", "c")


def test_empty_result_is_not_an_error(engine, make_config):
    config = make_config(filters=(
        ReportFilter(id="f1", field="status", operator="equals", value="refunded", field_type="string"),
    ))
    result = engine.execute(config)
    assert result.dataset.series == ()
    assert result.dataset.labels == ()
    assert result.summary.count == 0
    assert result.summary.total == 0


def test_aggregation_mismatch_is_raised(catalog, make_config):
    rows = pd.DataFrame([{"status": "A", "total": 10}])
    config = make_config(metrics=(MetricSelection(id="m1", field="status", aggregation="sum"),))
    with pytest.raises(AggregationTypeMismatch):
        reduce_rows(rows, config, catalog.get("orders"))


def test_fingerprint_ignores_cosmetic_fields(make_config):
    a = make_config()
    b = make_config(
        id="config-2",
        name="Another name",
        description="changed",
        chart_type="pie",
        metrics=(MetricSelection(id="other", field="total", aggregation="sum", label="Revenue", color="#000000"),),
    )
    assert fingerprint(a) == fingerprint(b)
    assert fingerprint(a) != fingerprint(make_config(limit=5))
    assert fingerprint(a) != fingerprint(make_config(time_frame="custom", start_date=date(2024, 1, 1),
                                                     end_date=date(2024, 1, 2)))


def test_cache_hit_reprojects_labels(engine, connector, make_config, monkeypatch):
    calls = []
    original = connector.fetch_rows
    monkeypatch.setattr(connector, "fetch_rows", lambda *a, **kw: calls.append(a) or original(*a, **kw))

    first = engine.execute(make_config())
    renamed = make_config(
        name="Renamed",
        chart_type="line",
        metrics=(MetricSelection(id="m9", field="total", aggregation="sum", label="Revenue", color="#111111"),),
    )
    second = engine.execute(renamed)

    assert len(calls) == 1
    assert second.cache_hit is True
    assert second.configuration == renamed
    assert second.dataset.series[0].label == "Revenue"
    assert second.dataset.series[0].color == "#111111"
    assert second.dataset.series[0].data == first.dataset.series[0].data


def test_force_refresh_and_expiry_skip_the_cache(engine, connector, make_config, clock, monkeypatch):
    calls = []
    original = connector.fetch_rows
    monkeypatch.setattr(connector, "fetch_rows", lambda *a, **kw: calls.append(a) or original(*a, **kw))

    engine.execute(make_config())
    engine.execute(make_config(), force_refresh=True)
    assert len(calls) == 2

    clock.advance(minutes=16)  # orders refresh_rate is 15 minutes
    result = engine.execute(make_config())
    assert len(calls) == 3
    assert result.cache_hit is False


def test_failures_are_not_cached(catalog, cache, clock, make_config):
    failing = CountingConnector([], fail=DataSourceUnavailable("down"))
    engine = ExecutionEngine(catalog, failing, cache=cache, clock=clock, poll_interval=0.01)
    try:
        with pytest.raises(DataSourceUnavailable):
            engine.execute(make_config())
        assert len(cache) == 0
    finally:
        engine.shutdown(wait=False)


def test_connector_errors_become_unavailable(catalog, cache, clock, make_config):
    broken = CountingConnector([], fail=RuntimeError("socket closed"))
    engine = ExecutionEngine(catalog, broken, cache=cache, clock=clock, poll_interval=0.01)
    try:
        with pytest.raises(DataSourceUnavailable, match="socket closed"):
            engine.execute(make_config())
    finally:
        engine.shutdown(wait=False)


def test_concurrent_identical_requests_fetch_once(catalog, cache, clock, make_config):
    slow = CountingConnector([{"status": "completed", "total": 5}], block=True)
    engine = ExecutionEngine(catalog, slow, cache=cache, clock=clock, poll_interval=0.01)
    config = make_config()
    key = fingerprint(config)
    results = []

    def run():
        results.append(engine.execute(config, timeout=5))

    threads = [threading.Thread(target=run) for _ in range(2)]
    try:
        for t in threads:
            t.start()
        assert slow.started.wait(2)
        deadline = time.monotonic() + 2
        while engine.flights.waiters(key) < 2 and time.monotonic() < deadline:
            time.sleep(0.005)
        assert engine.flights.waiters(key) == 2
        slow.release.set()
        for t in threads:
            t.join(5)
    finally:
        slow.release.set()
        engine.shutdown(wait=False)

    assert slow.calls == 1
    assert len(results) == 2
    assert results[0].dataset == results[1].dataset


def test_cancelled_execution_is_not_cached(catalog, cache, clock, make_config):
    slow = CountingConnector([{"status": "completed", "total": 5}], block=True)
    engine = ExecutionEngine(catalog, slow, cache=cache, clock=clock, poll_interval=0.01)
    token = CancellationToken()
    config = make_config()
    try:
        threading.Timer(0.05, token.cancel).start()
        with pytest.raises(ExecutionCancelled):
            engine.execute(config, cancel_token=token)
        slow.release.set()
        engine.shutdown(wait=True)
    finally:
        slow.release.set()
    assert len(cache) == 0
    assert not engine.flights.in_flight(fingerprint(config))


def test_timeout_is_a_data_source_failure(catalog, cache, clock, make_config):
    slow = CountingConnector([{"status": "completed", "total": 5}], block=True)
    engine = ExecutionEngine(catalog, slow, cache=cache, clock=clock, poll_interval=0.01)
    try:
        with pytest.raises(DataSourceUnavailable) as exc:
            engine.execute(make_config(), timeout=0.05)
        assert isinstance(exc.value, DataSourceTimeout)
    finally:
        slow.release.set()
        engine.shutdown(wait=True)
    assert len(cache) == 0


def test_time_window_applies_to_time_field(engine, connector, clock):
    connector.add_rows("events", [
        {"kind": "a", "happened_at": "2024-03-14T10:00:00", "amount": 1},
        {"kind": "a", "happened_at": "2024-02-01T10:00:00", "amount": 10},
        {"kind": "b", "happened_at": "2023-12-01T10:00:00", "amount": 100},
    ])

    config = ReportConfiguration(
        id="c", name="Events", data_source_id="events", time_frame="week",
        dimensions=(DimensionSelection(id="d", field="kind"),),
        metrics=(MetricSelection(id="m", field="amount", aggregation="sum"),),
        created_at=clock(), updated_at=clock(),
    )
    assert engine.execute(config).dataset.series[0].data == (1,)
    quarter = engine.execute(config.model_copy(update={"time_frame": "quarter"}))
    assert quarter.dataset.series[0].data == (11,)


def test_leader_uses_result_published_before_it_joined(engine, cache, connector, make_config, monkeypatch):
    config = make_config()
    engine.execute(config)

    calls = []
    original = connector.fetch_rows
    monkeypatch.setattr(connector, "fetch_rows", lambda *a, **kw: calls.append(a) or original(*a, **kw))
    # first lookup misses as if the other flight had not published yet
    lookups = []
    cache_get = cache.get

    def late_get(key):
        lookups.append(key)
        return None if len(lookups) == 1 else cache_get(key)

    monkeypatch.setattr(cache, "get", late_get)

    result = engine.execute(config)
    assert len(lookups) == 2
    assert calls == []
    assert result.cache_hit is True
    assert not engine.flights.in_flight(fingerprint(config))


def test_grouping_only_configuration_lists_groups(engine, make_config):
    result = engine.execute(make_config(metrics=()))
    assert result.dataset.labels == ("completed", "shipped")
    assert result.dataset.series == ()
    assert result.summary.count == 2
