"""In-memory connector: serves rows held in Python lists, keyed by data source id."""
from __future__ import annotations

import logging
from typing import Dict, List, Optional

import pandas as pd

from report_engine.connectors.base import BaseConnector
from report_engine.errors import DataSourceUnavailable
from report_engine.timeframes import apply_time_window, resolve_time_window

logger = logging.getLogger(__name__)


class InMemoryConnector(BaseConnector):
    connector_type = "memory"

    def __init__(self, config: Optional[dict] = None, **kwargs):
        super().__init__(config, **kwargs)
        self.rows: Dict[str, List[dict]] = {k: list(v) for k, v in self.config.get("rows", {}).items()}
        self.time_fields: Dict[str, str] = dict(self.config.get("time_fields", {}))

    def add_rows(self, data_source_id: str, rows: List[dict]):
        self.rows.setdefault(data_source_id, []).extend(rows)

    def test_connection(self) -> tuple[str, str]:
        return "connected", f"{len(self.rows)} in-memory data sources"

    def fetch_rows(self, data_source_id, filters, time_frame, start_date=None, end_date=None) -> pd.DataFrame:
        if data_source_id not in self.rows:
            raise DataSourceUnavailable(f"No rows registered for data source '{data_source_id}'")
        df = pd.DataFrame(self.rows[data_source_id])
        time_field = self.time_fields.get(data_source_id, self.time_field)
        window = resolve_time_window(time_frame, start_date, end_date, now=self.clock())
        return apply_time_window(df, time_field, window)
