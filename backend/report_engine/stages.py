"""Builder stages and the transition table between them."""

from enum import Enum
from typing import Dict, Optional


class BuilderStage(str, Enum):
    SELECT_DATA_SOURCE = "select_data_source"
    CHOOSE_DIMENSIONS = "choose_dimensions"
    SELECT_METRICS = "select_metrics"
    ADD_FILTERS = "add_filters"
    CONFIGURE_VISUALIZATION = "configure_visualization"
    SAVED = "saved"
    SCHEDULED = "scheduled"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STAGES


WIZARD_STAGES = (
    BuilderStage.SELECT_DATA_SOURCE,
    BuilderStage.CHOOSE_DIMENSIONS,
    BuilderStage.SELECT_METRICS,
    BuilderStage.ADD_FILTERS,
    BuilderStage.CONFIGURE_VISUALIZATION,
)

TERMINAL_STAGES = frozenset({BuilderStage.SAVED, BuilderStage.SCHEDULED, BuilderStage.ABANDONED})

_FORWARD: Dict[BuilderStage, BuilderStage] = dict(zip(WIZARD_STAGES, WIZARD_STAGES[1:]))
_BACKWARD: Dict[BuilderStage, BuilderStage] = {v: k for k, v in _FORWARD.items()}


def next_stage(stage: BuilderStage) -> Optional[BuilderStage]:
    """Stage reached by advancing, or None from the last wizard step."""
    return _FORWARD.get(stage)


def previous_stage(stage: BuilderStage) -> Optional[BuilderStage]:
    """Stage reached by retreating, or None from the first wizard step."""
    return _BACKWARD.get(stage)


def stages_through(stage: BuilderStage):
    """Wizard stages up to and including `stage`."""
    return WIZARD_STAGES[: WIZARD_STAGES.index(stage) + 1]
