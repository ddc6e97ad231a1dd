"""Trip domain models."""

from .models import (
    KM_TO_MILES,
    Coordinate,
    MovementMode,
    PositionSample,
    ProgressSnapshot,
    ProgressState,
    Units,
)

__all__ = [
    "KM_TO_MILES",
    "Coordinate",
    "MovementMode",
    "PositionSample",
    "ProgressSnapshot",
    "ProgressState",
    "Units",
]
