"""
Field Catalog: data sources and the fields they expose.

Each data source is described by one YAML file. A field can be used as a
dimension (grouping), as a metric (aggregated), both, or neither. Catalogs
are validated on load; invalid files are recorded and skipped so one bad
catalog never takes the others down.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Literal, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

from report_engine.errors import UnknownDataSourceError

logger = logging.getLogger(__name__)

FieldType = Literal["string", "number", "date", "boolean"]
Aggregation = Literal["sum", "average", "min", "max", "count"]
FieldFormat = Literal["currency", "percentage", "number"]

DEFAULT_AGGREGATIONS: Tuple[str, ...] = ("sum", "average", "count", "min", "max")
# Only rows can be counted on fields that are not numbers
NON_NUMERIC_AGGREGATIONS: Tuple[str, ...] = ("count",)


class FieldDefinition(BaseModel):
    """A single field of a data source."""
    model_config = ConfigDict(frozen=True)

    name: str
    label: str = ""
    type: FieldType = "string"
    is_dimension: bool = False
    is_metric: bool = False
    supported_aggregations: Tuple[Aggregation, ...] = ()
    format: Optional[FieldFormat] = None
    description: str = ""

    @model_validator(mode="after")
    def _metric_needs_aggregation(self):
        if self.is_metric and not self.supported_aggregations:
            raise ValueError(f"metric field '{self.name}' must declare at least one supported aggregation")
        if self.is_metric and self.type != "number":
            invalid = [a for a in self.supported_aggregations if a not in NON_NUMERIC_AGGREGATIONS]
            if invalid:
                raise ValueError(f"{self.type} metric field '{self.name}' only supports count, not {', '.join(invalid)}")
        return self

    @property
    def display_label(self) -> str:
        return self.label or self.name


class ConnectorSpec(BaseModel):
    """Which connector serves a data source, and its options (path, url, table...)."""
    model_config = ConfigDict(frozen=True)

    type: str = "memory"
    options: Dict[str, Any] = {}


class DataSource(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    category: Optional[str] = None
    fields: Tuple[FieldDefinition, ...] = ()
    refresh_rate: int = 60  # minutes
    time_field: Optional[str] = None
    connector: Optional[ConnectorSpec] = None

    def field(self, name: str) -> Optional[FieldDefinition]:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    @property
    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]

    @property
    def dimension_fields(self) -> List[FieldDefinition]:
        return [f for f in self.fields if f.is_dimension]

    @property
    def metric_fields(self) -> List[FieldDefinition]:
        return [f for f in self.fields if f.is_metric]


def parse_data_source(data: Dict[str, Any]) -> Tuple[Optional[DataSource], List[str]]:
    """
    Build a DataSource from a raw catalog mapping.

    Returns (data_source, errors). Errors are collected rather than raised so
    the caller can report every problem in a catalog at once.
    """
    errors: List[str] = []
    if not isinstance(data, dict):
        return None, ["catalog must be a mapping"]

    source_id = data.get("id")
    if not source_id:
        errors.append("catalog must define 'id'")

    raw_fields = data.get("fields") or []
    if not raw_fields:
        errors.append("catalog must define at least one field")

    fields: List[FieldDefinition] = []
    seen = set()
    for raw in raw_fields:
        raw = dict(raw or {})
        name = raw.get("name")
        if name in seen:
            errors.append(f"field '{name}': duplicate name")
            continue
        seen.add(name)
        # Metric fields without an explicit list accept every aggregation their type allows
        if raw.get("is_metric") and not raw.get("supported_aggregations"):
            numeric = raw.get("type", "string") == "number"
            raw["supported_aggregations"] = list(DEFAULT_AGGREGATIONS if numeric else NON_NUMERIC_AGGREGATIONS)
        try:
            fields.append(FieldDefinition(**raw))
        except ValidationError as e:
            errors.append(f"field '{name}': {e.errors()[0]['msg']}")

    time_field = data.get("time_field")
    if time_field:
        match = next((f for f in fields if f.name == time_field), None)
        if match is None:
            errors.append(f"time_field '{time_field}' is not a declared field")
        elif match.type != "date":
            errors.append(f"time_field '{time_field}' must be a date field")

    refresh_rate = data.get("refresh_rate", 60)
    if not isinstance(refresh_rate, int) or refresh_rate < 0:
        errors.append("refresh_rate must be a non-negative integer (minutes)")

    if errors:
        return None, errors

    try:
        source = DataSource(
            id=source_id,
            name=data.get("name") or source_id,
            description=data.get("description", ""),
            category=data.get("category"),
            fields=tuple(fields),
            refresh_rate=refresh_rate,
            time_field=time_field,
            connector=ConnectorSpec(**data["connector"]) if data.get("connector") else None,
        )
    except ValidationError as e:
        return None, [str(err["msg"]) for err in e.errors()]
    return source, []


def _resolve_connector_path(data, base_dir: Path):
    """Relative file paths in a connector block are relative to the catalog file."""
    if not isinstance(data, dict) or not isinstance(data.get("connector"), dict):
        return
    options = data["connector"].get("options") or {}
    path = options.get("path")
    if path and not Path(path).is_absolute():
        options["path"] = str(base_dir / path)
        data["connector"]["options"] = options


class CatalogRegistry:
    """Holds every loaded data source, keyed by id."""

    def __init__(self, catalog_dir: Optional[str] = None, sources: Iterable[DataSource] = ()):
        self.sources: Dict[str, DataSource] = {}
        self.load_errors: Dict[str, List[str]] = {}
        if catalog_dir:
            self.load_directory(catalog_dir)
        for source in sources:
            self.register(source)

    def load_directory(self, catalog_dir):
        path = Path(catalog_dir)
        if not path.exists():
            logger.warning(f"Catalog directory not found: {path}")
            return

        for catalog_file in sorted(path.glob("*.yaml")):
            with open(catalog_file, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            _resolve_connector_path(data, catalog_file.parent)
            source, errors = parse_data_source(data)
            if errors:
                self.load_errors[catalog_file.name] = errors
                logger.warning(f"Skipping catalog {catalog_file.name}: {errors}")
                continue
            self.register(source)

        logger.info(f"Loaded {len(self.sources)} data sources from {path}")

    def register(self, source: DataSource):
        if source.id in self.sources:
            logger.warning(f"Data source '{source.id}' registered twice; keeping the latest")
        self.sources[source.id] = source

    def find(self, source_id: Optional[str]) -> Optional[DataSource]:
        if not source_id:
            return None
        return self.sources.get(source_id)

    def get(self, source_id: str) -> DataSource:
        source = self.find(source_id)
        if source is None:
            raise UnknownDataSourceError(f"Unknown data source '{source_id}'")
        return source

    def list(self) -> List[DataSource]:
        return list(self.sources.values())

    def __contains__(self, source_id: str) -> bool:
        return source_id in self.sources
