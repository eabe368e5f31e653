from datetime import date, datetime, timedelta, timezone

import pytest

from report_cache.cache import MemoryCache
from report_engine.catalog import CatalogRegistry, DataSource, FieldDefinition
from report_engine.connectors.memory_connector import InMemoryConnector
from report_engine.database import init_db, make_engine, make_session_factory
from report_engine.execution import ExecutionEngine
from report_engine.models import (
    DimensionSelection,
    MetricSelection,
    ReportConfiguration,
    ReportFilter,
)

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)

ORDER_ROWS = [
    {"status": "completed", "total": 100},
    {"status": "completed", "total": 50},
    {"status": "shipped", "total": 30},
]


class FakeClock:
    """Manually advanced clock for deterministic timestamps."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


def orders_source() -> DataSource:
    return DataSource(
        id="orders",
        name="Orders",
        refresh_rate=15,
        fields=(
            FieldDefinition(name="status", label="Status", type="string", is_dimension=True),
            FieldDefinition(name="channel", label="Channel", type="string", is_dimension=True),
            FieldDefinition(name="total", label="Total", type="number", is_metric=True,
                            supported_aggregations=("sum", "average", "min", "max", "count")),
            FieldDefinition(name="items", label="Items", type="number", is_metric=True,
                            supported_aggregations=("sum", "count")),
            FieldDefinition(name="note", label="Note", type="string"),
        ),
    )


def events_source() -> DataSource:
    return DataSource(
        id="events",
        name="Events",
        refresh_rate=60,
        time_field="happened_at",
        fields=(
            FieldDefinition(name="kind", type="string", is_dimension=True),
            FieldDefinition(name="status", type="string", is_dimension=True),
            FieldDefinition(name="happened_at", type="date", is_dimension=True),
            FieldDefinition(name="amount", type="number", is_metric=True, supported_aggregations=("sum",)),
            FieldDefinition(name="flagged", type="boolean", is_dimension=True),
        ),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def catalog():
    return CatalogRegistry(sources=[orders_source(), events_source()])


@pytest.fixture
def connector(clock):
    return InMemoryConnector(
        {"rows": {"orders": ORDER_ROWS, "events": []}, "time_fields": {"events": "happened_at"}},
        clock=clock,
    )


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=lambda: clock().timestamp())


@pytest.fixture
def engine(catalog, connector, cache, clock):
    eng = ExecutionEngine(catalog, connector, cache=cache, clock=clock, max_workers=4, poll_interval=0.01)
    yield eng
    eng.shutdown(wait=False)


@pytest.fixture
def session_factory():
    db_engine = make_engine("sqlite://")
    init_db(db_engine)
    return make_session_factory(db_engine)


@pytest.fixture
def make_config(clock):
    """Factory for complete `orders` configurations; keyword arguments override fields."""

    def _make(**overrides):
        data = dict(
            id="config-1",
            name="Completed orders",
            data_source_id="orders",
            time_frame="month",
            dimensions=(DimensionSelection(id="d1", field="status", label="Status"),),
            metrics=(MetricSelection(id="m1", field="total", aggregation="sum"),),
            filters=(),
            chart_type="bar",
            created_by="tester",
            created_at=clock(),
            updated_at=clock(),
        )
        data.update(overrides)
        return ReportConfiguration(**data)

    return _make


@pytest.fixture
def completed_filter():
    return ReportFilter(id="f1", field="status", operator="equals", value="completed", field_type="string")


@pytest.fixture
def custom_window():
    return dict(time_frame="custom", start_date=date(2024, 3, 1), end_date=date(2024, 3, 10))
