"""Cache key for a report configuration: only what changes the data counts."""

from report_cache.cache import stable_hash


def fingerprint_payload(config) -> dict:
    return {
        "data_source_id": config.data_source_id,
        "dimensions": [[d.field, d.group_by] for d in config.dimensions],
        "metrics": [[m.field, m.aggregation] for m in config.metrics],
        "filters": [[f.field, f.operator, f.value, f.field_type] for f in config.filters],
        "time_frame": config.time_frame,
        "start_date": config.start_date.isoformat() if config.start_date else None,
        "end_date": config.end_date.isoformat() if config.end_date else None,
        "sorting": [config.sorting.field, config.sorting.direction] if config.sorting else None,
        "limit": config.limit,
    }


def fingerprint(config) -> str:
    """
    Stable hash of the data-affecting part of `config`.

    Name, description, category, chart type, selection ids, labels, colours
    and formats are left out, so two configurations that differ only in how
    they look share one cache entry.
    """
    return stable_hash(fingerprint_payload(config))
