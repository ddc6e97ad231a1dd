from __future__ import annotations

import logging
import os
from enum import Enum
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .domain.models import Coordinate, MovementMode, Units

MAX_DISTANCE_KM = 50000.0


class ModeProfile(BaseModel):
    """Static per-mode tuning."""

    max_speed_kmh: float = Field(..., gt=0)
    min_movement_m: float = Field(..., ge=0)
    gps_throttle_ms: int = Field(..., ge=0)
    avatar: str = Field("")


def _default_modes() -> dict[MovementMode, ModeProfile]:
    return {
        MovementMode.STATIONARY: ModeProfile(
            max_speed_kmh=0.5, min_movement_m=0.5, gps_throttle_ms=5000, avatar="/stationary.png"
        ),
        MovementMode.WALKING: ModeProfile(
            max_speed_kmh=10.0, min_movement_m=0.5, gps_throttle_ms=2000, avatar="/walking.gif"
        ),
        MovementMode.CYCLING: ModeProfile(
            max_speed_kmh=35.0, min_movement_m=1.0, gps_throttle_ms=500, avatar="/cycling.gif"
        ),
        MovementMode.VEHICLE: ModeProfile(
            max_speed_kmh=200.0, min_movement_m=5.0, gps_throttle_ms=500, avatar="/vehicle.png"
        ),
    }


class MovementConfig(BaseModel):
    modes: dict[MovementMode, ModeProfile] = Field(default_factory=_default_modes)
    enable_vehicle: bool = Field(False)  # VEHICLE is opt-in per deployment
    mode_switch_delay_s: float = Field(10.0, ge=0.0, le=600.0)
    jump_tolerance: float = Field(1.5, ge=1.0, le=10.0)

    @field_validator("modes", mode="before")
    @classmethod
    def _merge_defaults(cls, value: object) -> object:
        # Partial YAML overrides (e.g. only WALKING.max_speed_kmh) keep the other defaults
        if not isinstance(value, dict):
            return value
        merged = {m.value: p.model_dump() for m, p in _default_modes().items()}
        for key, override in value.items():
            name = str(getattr(key, "value", key)).upper()
            if isinstance(override, ModeProfile):
                override = override.model_dump()
            merged.setdefault(name, {}).update(override or {})
        return merged

    @model_validator(mode="after")
    def _ceilings_ascend(self) -> MovementConfig:
        ceilings = [self.modes[m].max_speed_kmh for m in MovementMode]
        if ceilings != sorted(ceilings) or len(set(ceilings)) != len(ceilings):
            raise ValueError("mode max_speed_kmh must strictly increase STATIONARY < WALKING < CYCLING < VEHICLE")
        return self

    @property
    def enabled_modes(self) -> list[MovementMode]:
        """Modes taking part in classification, slowest first."""
        return [m for m in MovementMode if m is not MovementMode.VEHICLE or self.enable_vehicle]

    def profile(self, mode: MovementMode) -> ModeProfile:
        return self.modes[mode]


class CoordinateConfig(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)

    def to_coordinate(self) -> Coordinate:
        return Coordinate(self.lat, self.lon)


class TripConfig(BaseModel):
    total_distance_km: float = Field(371.0, gt=0, le=MAX_DISTANCE_KM)  # Vienna -> Zagreb
    use_auto_start: bool = Field(False)
    manual_start_location: CoordinateConfig = Field(
        default_factory=lambda: CoordinateConfig(lat=48.209, lon=16.3531)  # Vienna
    )
    units: Units = Field(Units.KM)


class StorageBackend(str, Enum):
    MEMORY = "memory"
    SQLITE = "sqlite"
    JSON = "json"


class PersistenceConfig(BaseModel):
    backend: StorageBackend = Field(StorageBackend.SQLITE)
    path: Path = Field(Path("data/triptrack.db"))
    storage_key: str = Field("trip-overlay-data", min_length=1)
    save_debounce_s: float = Field(0.5, ge=0.0, le=60.0)
    max_distance_km: float = Field(MAX_DISTANCE_KM, gt=0)
    rollover_gap_hours: float = Field(6.0, ge=0.0, le=72.0)

    @field_validator("path")
    @classmethod
    def _expand_path(cls, value: Path) -> Path:
        return value.expanduser()


class GpsdConfig(BaseModel):
    """gpsd daemon connection."""

    host: str = Field("localhost")
    port: int = Field(2947, ge=1, le=65535)
    timeout: float = Field(10.0, ge=1.0)
    reconnect_delay: float = Field(5.0, ge=0.1)
    max_reconnect_attempts: int = Field(0, ge=0)  # 0 = infinite


class SourceConfig(BaseModel):
    demo_mode: bool = Field(False)
    demo_interval_s: float = Field(10.0, gt=0, le=600.0)
    gpsd: GpsdConfig = Field(default_factory=GpsdConfig)


class LoggingConfig(BaseModel):
    level: str = Field("INFO")
    progress_log_interval_s: float = Field(15.0, ge=0.0)

    @field_validator("level")
    @classmethod
    def _validate_level(cls, value: str) -> str:
        level = value.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"unknown log level: {value}")
        return level


class TripTrackConfig(BaseModel):
    trip: TripConfig = Field(default_factory=TripConfig)
    movement: MovementConfig = Field(default_factory=MovementConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    source: SourceConfig = Field(default_factory=SourceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(path: Path) -> TripTrackConfig:
    with Path(path).expanduser().open("r", encoding="utf-8") as fp:
        raw = yaml.safe_load(fp) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"config root must be a mapping: {path}")
    try:
        return TripTrackConfig.model_validate(raw)
    except ValidationError as exc:  # pragma: no cover - formatting
        raise ValueError(str(exc)) from exc


def resolve_config_path(cli_path: Path | None) -> Path:
    """Resolve config path by priority: CLI, env, /etc/triptrack, repo configs."""
    candidates: list[Path] = []
    if cli_path:
        p = Path(cli_path).expanduser()
        if p.exists():
            return p.resolve()
        candidates.append(p)
    env = os.environ.get("TRIPTRACK_CONFIG")
    if env:
        p = Path(env).expanduser()
        if p.exists():
            return p.resolve()
        candidates.append(p)
    for p in [Path("/etc/triptrack/triptrack.yml"), Path("configs/triptrack.yml")]:
        if p.exists():
            return p.resolve()
        candidates.append(p)
    # Fallback to first candidate even if not exists to surface errors consistently
    return candidates[0] if candidates else Path("configs/triptrack.yml").resolve()


def load_or_default(cli_path: Path | None) -> TripTrackConfig:
    """Load the resolved config, or defaults when no file exists."""
    resolved = resolve_config_path(cli_path)
    if not resolved.exists():
        return TripTrackConfig()
    return load_config(resolved)
