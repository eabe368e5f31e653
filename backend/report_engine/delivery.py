"""
Delivery collaborators used by the scheduler.

How a result actually reaches its recipients (email, export files, webhooks)
lives outside the engine; the scheduler only records the outcome.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, List, Optional

from report_engine.errors import DeliveryFailure
from report_engine.models import ReportResult, ScheduledReport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryOutcome:
    status: str  # "success" or "error"
    error_message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "success"


class BaseDelivery(ABC):

    @abstractmethod
    def deliver(self, result: ReportResult, schedule: ScheduledReport) -> DeliveryOutcome:
        """
        Hand `result` to the schedule's recipients.
        May raise DeliveryFailure; the scheduler records it as an error outcome.
        """
        ...


class LoggingDelivery(BaseDelivery):
    """Logs each delivery and keeps it in memory. Always succeeds."""

    def __init__(self):
        self.delivered: List[tuple] = []

    def deliver(self, result, schedule) -> DeliveryOutcome:
        settings = schedule.schedule
        self.delivered.append((schedule.id, result.id))
        logger.info(
            f"Delivered report '{schedule.report_name}' as {settings.export_format} "
            f"via {settings.delivery_method} to {len(settings.recipients)} recipients"
        )
        return DeliveryOutcome(status="success")


class CallableDelivery(BaseDelivery):
    """Adapts a plain function `fn(result, schedule)` into a delivery."""

    def __init__(self, fn: Callable[[ReportResult, ScheduledReport], Optional[DeliveryOutcome]]):
        self.fn = fn

    def deliver(self, result, schedule) -> DeliveryOutcome:
        try:
            outcome = self.fn(result, schedule)
        except DeliveryFailure as e:
            logger.warning(f"Delivery of '{schedule.report_name}' failed: {e}")
            return DeliveryOutcome(status="error", error_message=str(e))
        return outcome or DeliveryOutcome(status="success")
