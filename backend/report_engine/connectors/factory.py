"""
Connector factory: maps connector_type strings to connector classes, and
builds a routing connector that serves every catalogued data source.
"""

import logging
from typing import Dict, Type

from report_engine.catalog import CatalogRegistry
from report_engine.connectors.base import BaseConnector
from report_engine.connectors.csv_connector import CsvConnector
from report_engine.connectors.memory_connector import InMemoryConnector
from report_engine.connectors.rest_api_connector import RestAPIConnector
from report_engine.connectors.sqlalchemy_connector import SQLAlchemyConnector
from report_engine.errors import DataSourceUnavailable

logger = logging.getLogger(__name__)

CONNECTOR_REGISTRY: Dict[str, Type[BaseConnector]] = {
    "memory": InMemoryConnector,
    "csv": CsvConnector,
    "api": RestAPIConnector,
    "sql": SQLAlchemyConnector,
    "sqlite": SQLAlchemyConnector,
    "postgresql": SQLAlchemyConnector,
    "mysql": SQLAlchemyConnector,
}


def get_connector(connector_type: str, config: dict, **kwargs) -> BaseConnector:
    """
    Instantiate a connector by type name.

    Raises ValueError if the type is unknown.
    """
    cls = CONNECTOR_REGISTRY.get(connector_type)
    if not cls:
        raise ValueError(
            f"Unknown connector type '{connector_type}'. "
            f"Available: {sorted(CONNECTOR_REGISTRY.keys())}"
        )
    return cls(config, **kwargs)


class RoutingConnector(BaseConnector):
    """Dispatches each request to the connector registered for its data source."""

    connector_type = "routing"

    def __init__(self, routes: Dict[str, BaseConnector] = None, **kwargs):
        super().__init__({}, **kwargs)
        self.routes: Dict[str, BaseConnector] = dict(routes or {})

    def register(self, data_source_id: str, connector: BaseConnector):
        self.routes[data_source_id] = connector

    def _route(self, data_source_id: str) -> BaseConnector:
        connector = self.routes.get(data_source_id)
        if connector is None:
            raise DataSourceUnavailable(f"No connector configured for data source '{data_source_id}'")
        return connector

    def handles_filters(self, data_source_id: str) -> bool:
        return self._route(data_source_id).handles_filters(data_source_id)

    def test_connection(self) -> tuple[str, str]:
        failing = [ds for ds, c in self.routes.items() if c.test_connection()[0] != "connected"]
        if failing:
            return "error", f"Unreachable data sources: {', '.join(sorted(failing))}"
        return "connected", f"{len(self.routes)} data sources reachable"

    def fetch_rows(self, data_source_id, filters, time_frame, start_date=None, end_date=None):
        return self._route(data_source_id).fetch_rows(data_source_id, filters, time_frame, start_date, end_date)


def build_routing_connector(catalog: CatalogRegistry, **kwargs) -> RoutingConnector:
    """One connector per catalogued data source that declares a `connector` block."""
    router = RoutingConnector(**kwargs)
    for source in catalog.list():
        if source.connector is None:
            continue
        config = {**source.connector.options}
        config.setdefault("time_field", source.time_field)
        try:
            router.register(source.id, get_connector(source.connector.type, config, **kwargs))
        except ValueError as e:
            logger.warning(f"Data source '{source.id}' has no usable connector: {e}")
    logger.info(f"Routing connector serves {len(router.routes)} data sources")
    return router
