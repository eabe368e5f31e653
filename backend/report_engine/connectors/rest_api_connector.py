"""REST API data connector: pulls JSON rows from an HTTP endpoint."""
from __future__ import annotations

import logging
from typing import Optional

import httpx
import pandas as pd

from report_engine.connectors.base import BaseConnector
from report_engine.errors import DataSourceUnavailable
from report_engine.timeframes import apply_time_window, resolve_time_window

logger = logging.getLogger(__name__)


class RestAPIConnector(BaseConnector):
    connector_type = "api"

    def __init__(self, config: Optional[dict] = None, **kwargs):
        super().__init__(config, **kwargs)
        self.base_url = self.config.get("url", "")
        self.headers = self.config.get("headers", {})
        self.auth_token = self.config.get("auth_token")
        self.data_path = self.config.get("data_path", "")  # dot-separated: "results.data"
        self.timeout = float(self.config.get("timeout", 30))
        self.transport: Optional[httpx.BaseTransport] = self.config.get("transport")

    def _request(self, params: Optional[dict] = None):
        headers = {**self.headers}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            resp = client.get(self.base_url, headers=headers, params=params)
            resp.raise_for_status()
            return resp.json()

    def _extract_data_from_json(self, data):
        """Navigate into nested JSON using dot-separated data_path."""
        if not self.data_path:
            return data
        for key in self.data_path.split("."):
            if isinstance(data, dict):
                data = data.get(key, data)
            elif isinstance(data, list) and key.isdigit():
                data = data[int(key)]
        return data

    def test_connection(self) -> tuple[str, str]:
        try:
            data = self._request()
            return "connected", f"API responded successfully (type: {type(data).__name__})"
        except httpx.HTTPError as e:
            return "error", f"Connection failed: {type(e).__name__}: {e}"

    def fetch_rows(self, data_source_id, filters, time_frame, start_date=None, end_date=None) -> pd.DataFrame:
        try:
            data = self._request()
        except httpx.HTTPError as e:
            logger.error(f"api fetch failed for '{data_source_id}': {e}")
            raise DataSourceUnavailable(f"{self.base_url} unavailable: {e}") from e
        rows = self._extract_data_from_json(data)
        if isinstance(rows, list):
            df = pd.json_normalize(rows) if rows else pd.DataFrame()
        elif isinstance(rows, dict):
            df = pd.json_normalize([rows])
        else:
            raise DataSourceUnavailable(f"Expected list or dict, got {type(rows).__name__}")
        window = resolve_time_window(time_frame, start_date, end_date, now=self.clock())
        return apply_time_window(df, self.time_field, window)
