import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, field_validator

# Measured fields of an observation, in column order.
OBSERVATION_FIELDS: Tuple[str, ...] = (
    "temp_f",
    "dew_point_f",
    "humidity",
    "pressure_rel_inhg",
    "wind_speed_mph",
    "wind_gust_mph",
    "wind_dir_deg",
    "daily_rain_in",
    "solar_radiation_w_m2",
    "uv_index",
)

# Rollup aggregate families. Wind direction is handled separately (sin/cos means).
AVG_MIN_MAX_FIELDS: Tuple[str, ...] = (
    "temp_f",
    "dew_point_f",
    "humidity",
    "pressure_rel_inhg",
    "wind_speed_mph",
)
MAX_FIELDS: Tuple[str, ...] = ("wind_gust_mph", "daily_rain_in")
AVG_MAX_FIELDS: Tuple[str, ...] = ("solar_radiation_w_m2", "uv_index")


def parse_window(window: str) -> timedelta:
    try:
        value, unit = window.split()
        value = int(value)
    except ValueError:
        return timedelta(0)
    unit = unit.lower()
    if "min" in unit:
        return timedelta(minutes=value)
    if "hour" in unit:
        return timedelta(hours=value)
    if "day" in unit:
        return timedelta(days=value)
    return timedelta(0)


def finite_or_none(value) -> Optional[float]:
    """
    Coerce a raw field value to a finite float, or None when it is missing,
    non-numeric, or NaN/inf.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            return None
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class Resolution:
    """One fixed aggregation granularity and the table holding its buckets."""

    label: str
    table: str

    @property
    def width(self) -> timedelta:
        return parse_window(self.label)


RESOLUTION_5M = Resolution("5 minutes", "observations_5m")
RESOLUTION_15M = Resolution("15 minutes", "observations_15m")
RESOLUTION_1H = Resolution("1 hour", "observations_1h")
RESOLUTION_1D = Resolution("1 day", "observations_1d")

ROLLUP_RESOLUTIONS: Tuple[Resolution, ...] = (
    RESOLUTION_5M,
    RESOLUTION_15M,
    RESOLUTION_1H,
    RESOLUTION_1D,
)
RESOLUTIONS_BY_LABEL: Dict[str, Resolution] = {r.label: r for r in ROLLUP_RESOLUTIONS}


class Observation(BaseModel):
    model_config = ConfigDict(extra="ignore")

    time: datetime
    temp_f: Optional[float] = None
    dew_point_f: Optional[float] = None
    humidity: Optional[float] = None
    pressure_rel_inhg: Optional[float] = None
    wind_speed_mph: Optional[float] = None
    wind_gust_mph: Optional[float] = None
    wind_dir_deg: Optional[float] = None
    daily_rain_in: Optional[float] = None
    solar_radiation_w_m2: Optional[float] = None
    uv_index: Optional[float] = None

    @field_validator(*OBSERVATION_FIELDS, mode="before")
    @classmethod
    def _drop_invalid(cls, value):
        return finite_or_none(value)

    @field_validator("time")
    @classmethod
    def _second_precision_utc(cls, value: datetime) -> datetime:
        return to_utc(value).replace(microsecond=0)


class RollupBucket(BaseModel):
    bucket: datetime
    resolution: str
    sample_count: int

    temp_f_avg: Optional[float] = None
    temp_f_min: Optional[float] = None
    temp_f_max: Optional[float] = None
    dew_point_f_avg: Optional[float] = None
    dew_point_f_min: Optional[float] = None
    dew_point_f_max: Optional[float] = None
    humidity_avg: Optional[float] = None
    humidity_min: Optional[float] = None
    humidity_max: Optional[float] = None
    pressure_rel_inhg_avg: Optional[float] = None
    pressure_rel_inhg_min: Optional[float] = None
    pressure_rel_inhg_max: Optional[float] = None
    wind_speed_mph_avg: Optional[float] = None
    wind_speed_mph_min: Optional[float] = None
    wind_speed_mph_max: Optional[float] = None

    wind_gust_mph_max: Optional[float] = None
    daily_rain_in_max: Optional[float] = None

    solar_radiation_w_m2_avg: Optional[float] = None
    solar_radiation_w_m2_max: Optional[float] = None
    uv_index_avg: Optional[float] = None
    uv_index_max: Optional[float] = None

    wind_dir_sin_avg: Optional[float] = None
    wind_dir_cos_avg: Optional[float] = None

    @field_validator("bucket")
    @classmethod
    def _utc_bucket(cls, value: datetime) -> datetime:
        return to_utc(value)


# Stored rollup columns (everything but the resolution tag, which is implied by the table).
ROLLUP_COLUMNS: Tuple[str, ...] = tuple(
    name for name in RollupBucket.model_fields if name != "resolution"
)


class ForecastGridPoint(BaseModel):
    """A forecast grid value valid over ``[start, start + duration)``."""

    value: float
    start: datetime
    duration: timedelta
    unit_code: str = "wmoUnit:mm"

    @field_validator("start")
    @classmethod
    def _utc_start(cls, value: datetime) -> datetime:
        return to_utc(value)

    @property
    def end(self) -> datetime:
        return self.start + self.duration
