"""Data source connectors package."""
from report_engine.connectors.factory import (
    CONNECTOR_REGISTRY,
    RoutingConnector,
    build_routing_connector,
    get_connector,
)

__all__ = ["get_connector", "build_routing_connector", "RoutingConnector", "CONNECTOR_REGISTRY"]
