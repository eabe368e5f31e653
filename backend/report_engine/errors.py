"""
Error taxonomy for the report engine.

Validation problems found while building a report are returned as values
(see validator.ValidationResult); the exceptions below are for failures a
caller has to handle explicitly.
"""

from typing import List, Optional


class ReportEngineError(Exception):
    """Base class for every error raised by the engine."""
    pass


class ReportValidationError(ReportEngineError):
    """Raised when an outer surface must reject an invalid configuration."""

    def __init__(self, errors: List, message: Optional[str] = None):
        self.errors = list(errors)
        detail = "; ".join(f"{e.field}: {e.message}" for e in self.errors)
        super().__init__(message or f"Invalid report configuration: {detail}")


class UnknownDataSourceError(ReportEngineError):
    pass


class NotFoundError(ReportEngineError):
    pass


class BuilderStateError(ReportEngineError):
    """Illegal builder transition (e.g. complete() outside the last step)."""
    pass


class DataSourceUnavailable(ReportEngineError):
    """Transient failure reaching a data source. Never cached."""
    pass


class DataSourceTimeout(DataSourceUnavailable):
    pass


class ExecutionCancelled(ReportEngineError):
    """The caller cancelled the execution. Not a failure; never recorded in history."""
    pass


class AggregationTypeMismatch(ReportEngineError):
    """A metric reached the engine with an aggregation its field cannot support."""
    pass


class DeliveryFailure(ReportEngineError):
    pass
