import pytest

from report_engine.builder import CompletionIntent, ReportBuilder
from report_engine.errors import BuilderStateError, ReportValidationError
from report_engine.stages import BuilderStage


def _counter_ids():
    counter = {"n": 0}

    def factory(prefix):
        counter["n"] += 1
        return f"{prefix}-{counter['n']}"

    return factory


@pytest.fixture
def builder(catalog, clock):
    return ReportBuilder(catalog, clock=clock, id_factory=_counter_ids())


def _walk_to_visualization(builder):
    builder.select_data_source("orders")
    assert builder.advance().valid
    builder.add_dimension("status")
    assert builder.advance().valid
    builder.add_metric("total", "sum")
    assert builder.advance().valid
    builder.add_filter("status", "equals", "completed")
    assert builder.advance().valid
    assert builder.stage == BuilderStage.CONFIGURE_VISUALIZATION


def test_advance_from_metrics_without_metric_is_blocked(builder):
    builder.select_data_source("orders")
    builder.advance()
    builder.advance()
    assert builder.stage == BuilderStage.SELECT_METRICS

    result = builder.advance()
    assert result.valid is False
    assert builder.stage == BuilderStage.SELECT_METRICS
    assert [e.field for e in builder.errors] == ["metrics"]


def test_advance_without_data_source_is_blocked(builder):
    result = builder.advance()
    assert not result.valid
    assert builder.stage == BuilderStage.SELECT_DATA_SOURCE


def test_retreat_then_advance_reproduces_the_draft(builder):
    _walk_to_visualization(builder)
    before = builder.draft

    builder.retreat()
    assert builder.stage == BuilderStage.ADD_FILTERS
    builder.advance()

    assert builder.stage == BuilderStage.CONFIGURE_VISUALIZATION
    assert builder.draft == before
    assert builder.draft.model_dump() == before.model_dump()


def test_retreat_keeps_selections_and_never_validates(builder):
    _walk_to_visualization(builder)
    for _ in range(10):
        builder.retreat()
    assert builder.stage == BuilderStage.SELECT_DATA_SOURCE
    assert len(builder.draft.dimensions) == 1
    assert len(builder.draft.metrics) == 1
    assert len(builder.draft.filters) == 1


def test_changing_data_source_drops_foreign_selections(builder, catalog):
    builder.select_data_source("orders")
    builder.add_dimension("status")
    builder.add_dimension("channel")
    builder.add_metric("total", "sum")
    builder.add_filter("total", "greaterThan", 10)
    builder.configure_visualization(sorting={"field": "total", "direction": "desc"})

    builder.select_data_source("events")

    # `status` exists in both sources, `channel` and `total` only in orders
    assert [d.field for d in builder.draft.dimensions] == ["status"]
    assert builder.draft.metrics == ()
    assert builder.draft.filters == ()
    assert builder.draft.sorting is None


def test_data_source_only_changes_on_first_step(builder):
    builder.select_data_source("orders")
    builder.advance()
    with pytest.raises(BuilderStateError):
        builder.select_data_source("events")


def test_metric_label_defaults_to_field_and_aggregation(builder):
    builder.select_data_source("orders")
    metric = builder.add_metric("total", "sum")
    assert metric.display_label == "total (sum)"


def test_complete_only_from_visualization(builder):
    builder.select_data_source("orders")
    with pytest.raises(BuilderStateError):
        builder.complete()


def test_complete_requires_chart_type(builder):
    _walk_to_visualization(builder)
    result = builder.complete()
    assert not result.valid
    assert builder.stage == BuilderStage.CONFIGURE_VISUALIZATION
    assert builder.configuration is None


def test_complete_materializes_configuration(builder, clock):
    _walk_to_visualization(builder)
    builder.configure_visualization(chart_type="bar")
    builder.set_details(name="Completed orders")

    result = builder.complete(CompletionIntent.SCHEDULE, created_by="ana")

    assert result.valid
    config = result.configuration
    assert builder.stage == BuilderStage.SCHEDULED
    assert config.id.startswith("report-")
    assert config.created_at == clock() == config.updated_at
    assert config.created_by == "ana"
    assert config.chart_type == "bar"
    assert [m.field for m in config.metrics] == ["total"]


def test_terminal_stages_reject_edits(builder):
    builder.cancel()
    assert builder.stage == BuilderStage.ABANDONED
    with pytest.raises(BuilderStateError):
        builder.add_dimension("status")
    with pytest.raises(BuilderStateError):
        builder.retreat()


def test_update_and_remove_by_id(builder):
    builder.select_data_source("orders")
    dim = builder.add_dimension("status")
    updated = builder.update_dimension(dim.id, label="Order status")
    assert builder.draft.dimensions == (updated,)
    builder.remove_dimension(dim.id)
    assert builder.draft.dimensions == ()
    with pytest.raises(KeyError):
        builder.remove_dimension(dim.id)


def test_invalid_visualization_edit_is_rejected(builder):
    _walk_to_visualization(builder)
    before = builder.draft

    with pytest.raises(ReportValidationError):
        builder.configure_visualization(chart_type="scatter")
    assert [e.field for e in builder.errors] == ["chart_type"]
    with pytest.raises(ReportValidationError):
        builder.configure_visualization(time_frame="yearly")
    assert [e.field for e in builder.errors] == ["time_frame"]
    assert builder.draft == before

    builder.configure_visualization(chart_type="line")
    assert builder.complete().valid


def test_invalid_selection_edit_names_the_item(builder):
    _walk_to_visualization(builder)
    metric = builder.draft.metrics[0]

    with pytest.raises(ReportValidationError) as exc:
        builder.update_metric(metric.id, aggregation="median")
    assert [e.field for e in exc.value.errors] == ["metrics[0].aggregation"]
    assert builder.draft.metrics == (metric,)

    with pytest.raises(ReportValidationError) as exc:
        builder.add_filter("status", "like", "comp")
    assert [e.field for e in exc.value.errors] == ["filters[1].operator"]
    assert len(builder.draft.filters) == 1


def test_sort_on_non_grouping_dimension_is_dropped_with_source_change(builder):
    builder.select_data_source("orders")
    builder.add_dimension("status", group_by=False)
    builder.configure_visualization(sorting={"field": "status"})

    builder.select_data_source("events")

    assert [d.field for d in builder.draft.dimensions] == ["status"]
    assert builder.draft.sorting is None
