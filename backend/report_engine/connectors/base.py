"""
Base connector interface.
Every data source connector inherits from this class.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date, datetime, timezone
from typing import Callable, Optional, Sequence

import pandas as pd


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BaseConnector(ABC):
    """
    Supplies raw rows for a data source. The engine never assumes a connector
    can aggregate; it only asks for rows.
    """

    connector_type: str = "unknown"
    # True when fetch_rows applies `filters` itself (server-side)
    supports_filtering: bool = False

    def __init__(self, config: Optional[dict] = None, clock: Callable[[], datetime] = _utcnow):
        self.config = config or {}
        self.clock = clock
        self.time_field: Optional[str] = self.config.get("time_field")

    def handles_filters(self, data_source_id: str) -> bool:
        return self.supports_filtering

    @abstractmethod
    def test_connection(self) -> tuple[str, str]:
        """
        Test that the source is reachable.
        Returns (status, message) where status is "connected" or "error".
        """
        ...

    @abstractmethod
    def fetch_rows(
        self,
        data_source_id: str,
        filters: Sequence,
        time_frame: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> pd.DataFrame:
        """
        Return raw rows (one column per field) restricted to the time frame.
        Connectors that do not support filtering may ignore `filters`.
        Raise DataSourceUnavailable when the source cannot be reached.
        """
        ...
