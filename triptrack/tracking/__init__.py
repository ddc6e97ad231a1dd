"""Trip tracking - distance, movement modes, progress and persistence."""

from .classifier import ModeDecision, MovementModeClassifier
from .controls import ControlResult, TripControls
from .engine import TripEngine
from .geo import DistanceCalculator, haversine_km
from .persistence import PersistedProgress, PersistenceAdapter, should_reset_today
from .processor import GPSUpdateProcessor, Outcome, ProcessResult, RejectReason
from .store import ProgressStore
from .validation import CoordinateValidator, clamp_distance

__all__ = [
    "ControlResult",
    "CoordinateValidator",
    "DistanceCalculator",
    "GPSUpdateProcessor",
    "ModeDecision",
    "MovementModeClassifier",
    "Outcome",
    "PersistedProgress",
    "PersistenceAdapter",
    "ProcessResult",
    "ProgressStore",
    "RejectReason",
    "TripControls",
    "TripEngine",
    "clamp_distance",
    "haversine_km",
    "should_reset_today",
]
