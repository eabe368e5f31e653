"""CSV file connector: reads one CSV file per data source."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import pandas as pd

from report_engine.connectors.base import BaseConnector
from report_engine.errors import DataSourceUnavailable
from report_engine.timeframes import apply_time_window, resolve_time_window

logger = logging.getLogger(__name__)


class CsvConnector(BaseConnector):
    connector_type = "csv"

    def __init__(self, config: Optional[dict] = None, **kwargs):
        super().__init__(config, **kwargs)
        self.file_path = self.config.get("path", self.config.get("url", ""))

    def test_connection(self) -> tuple[str, str]:
        p = Path(self.file_path)
        if not p.exists():
            return "error", f"File not found: {self.file_path}"
        return "connected", f"CSV file readable ({p.stat().st_size} bytes)"

    def fetch_rows(self, data_source_id, filters, time_frame, start_date=None, end_date=None) -> pd.DataFrame:
        try:
            df = pd.read_csv(self.file_path)
        except (OSError, pd.errors.ParserError) as e:
            logger.error(f"csv read failed for '{data_source_id}': {e}")
            raise DataSourceUnavailable(f"Cannot read {self.file_path}: {e}") from e
        window = resolve_time_window(time_frame, start_date, end_date, now=self.clock())
        return apply_time_window(df, self.time_field, window)
