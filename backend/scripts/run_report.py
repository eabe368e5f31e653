"""
Run one report configuration from the command line and print the result.

Usage:
  python scripts/run_report.py --config report.yaml
  python scripts/run_report.py --config report.json --csv orders=./orders.csv --output result.json
"""
from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Dict, List

import yaml

from report_cache.cache import MemoryCache
from report_engine.catalog import CatalogRegistry
from report_engine.connectors.csv_connector import CsvConnector
from report_engine.connectors.factory import build_routing_connector
from report_engine.errors import ReportEngineError
from report_engine.execution import ExecutionEngine
from report_engine.models import ReportConfiguration, ReportDraft
from report_engine.settings import BUNDLED_CATALOG_DIR
from report_engine.validator import validate_configuration


def _load_draft(path: Path) -> ReportDraft:
    text = path.read_text(encoding="utf-8")
    data = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
    return ReportDraft.model_validate(data or {})


def _parse_csv_overrides(values: List[str]) -> Dict[str, str]:
    overrides = {}
    for value in values:
        data_source_id, sep, path = value.partition("=")
        if not sep or not data_source_id or not path:
            raise SystemExit(f"--csv expects DATA_SOURCE=PATH, got '{value}'")
        overrides[data_source_id] = path
    return overrides


def main() -> int:
    parser = argparse.ArgumentParser(description="Execute a report configuration and print the ReportResult as JSON.")
    parser.add_argument("--config", required=True, help="Path to a JSON or YAML report configuration")
    parser.add_argument("--catalog-dir", default=str(BUNDLED_CATALOG_DIR), help="Directory of data source catalogs")
    parser.add_argument("--csv", action="append", default=[], help="Serve DATA_SOURCE from a CSV file (DATA_SOURCE=PATH)")
    parser.add_argument("--output", default="", help="Optional path to write the JSON result")
    parser.add_argument("--verbose", action="store_true", help="Log engine activity to stderr")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)

    catalog = CatalogRegistry(args.catalog_dir)
    connector = build_routing_connector(catalog)
    for data_source_id, path in _parse_csv_overrides(args.csv).items():
        source = catalog.find(data_source_id)
        connector.register(data_source_id, CsvConnector({"path": path, "time_field": source.time_field if source else None}))

    draft = _load_draft(Path(args.config))
    if not draft.data_source_id:
        print("Configuration has no data_source_id.")
        return 1
    config = ReportConfiguration.from_draft(draft, id="cli", created_by="cli", now=connector.clock())

    validation = validate_configuration(config, catalog.find(config.data_source_id))
    if not validation.valid:
        print("Invalid report configuration:")
        for err in validation.errors:
            print(f"- {err.field}: {err.message}")
        return 1

    engine = ExecutionEngine(catalog, connector, cache=MemoryCache(enabled=False), max_workers=1)
    try:
        result = engine.execute(config)
    except ReportEngineError as e:
        print(f"Report failed: {e}")
        return 2
    finally:
        engine.shutdown()

    payload = result.model_dump(mode="json")
    print(json.dumps(payload, indent=2))
    if args.output:
        Path(args.output).write_text(json.dumps(payload, indent=2), encoding="utf-8")
        print(f"\nWrote result to {args.output}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
