"""
Derived meteorological metrics over observations and observation series.

Every function returns None when its inputs are missing, non-finite, or
outside the metric's domain. Series are expected oldest first; nothing here
re-sorts. ``ValueError`` is reserved for malformed arguments such as a
negative window.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple

from .config import Settings, get_settings
from .schemas import ForecastGridPoint, Observation, finite_or_none, to_utc

MM_PER_INCH = 25.4
CM_PER_INCH = 2.54
SMOOTH_GUST_FACTOR_MAX = 1.3
GUSTY_GUST_FACTOR_MAX = 1.6
RAIN_DAY_THRESHOLD_IN = 0.01
COMPASS_POINTS = (
    "N", "NNE", "NE", "ENE", "E", "ESE", "SE", "SSE",
    "S", "SSW", "SW", "WSW", "W", "WNW", "NW", "NNW",
)

_ISO_DURATION = re.compile(r"^P(?:(\d+)D)?(?:T(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?)?$")


@dataclass(slots=True)
class GustFactor:
    value: float
    category: str


@dataclass(slots=True)
class SeriesStats:
    min: float
    max: float
    avg: float


def _finite(value: Optional[float]) -> bool:
    return value is not None and math.isfinite(value)


def heat_index_f(temp_f: Optional[float], humidity: Optional[float]) -> Optional[float]:
    """Rothfusz regression; defined for temp_f >= 80 and humidity >= 40."""
    if not _finite(temp_f) or not _finite(humidity):
        return None
    if temp_f < 80 or humidity < 40:
        return None
    t = temp_f
    rh = humidity
    return (
        -42.379
        + 2.04901523 * t
        + 10.14333127 * rh
        - 0.22475541 * t * rh
        - 0.00683783 * t * t
        - 0.05481717 * rh * rh
        + 0.00122874 * t * t * rh
        + 0.00085282 * t * rh * rh
        - 0.00000199 * t * t * rh * rh
    )


def wind_chill_f(temp_f: Optional[float], wind_mph: Optional[float]) -> Optional[float]:
    """NWS (2001) wind chill; defined for temp_f <= 50 and wind_mph > 3."""
    if not _finite(temp_f) or not _finite(wind_mph):
        return None
    if temp_f > 50 or wind_mph <= 3:
        return None
    v = wind_mph**0.16
    return 35.74 + 0.6215 * temp_f - 35.75 * v + 0.4275 * temp_f * v


def feels_like_f(
    temp_f: Optional[float], humidity: Optional[float], wind_mph: Optional[float]
) -> Optional[float]:
    if not _finite(temp_f):
        return None
    chill = wind_chill_f(temp_f, wind_mph)
    if chill is not None:
        return chill
    heat = heat_index_f(temp_f, humidity)
    if heat is not None:
        return heat
    return temp_f


def _window_samples(
    series: Iterable[Observation], field: str, ref_time: datetime, window: timedelta
) -> List[Tuple[datetime, float]]:
    if window < timedelta(0):
        raise ValueError("window must not be negative")
    ref = to_utc(ref_time)
    cutoff = ref - window
    samples = []
    for obs in series:
        value = getattr(obs, field)
        if not _finite(value):
            continue
        if cutoff <= obs.time <= ref:
            samples.append((obs.time, value))
    return samples


def _day_bounds(ref_time: datetime, tz: tzinfo) -> Tuple[datetime, datetime]:
    local = to_utc(ref_time).astimezone(tz)
    start = local.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(hours=24)


def circular_mean_deg(directions: Iterable[Optional[float]]) -> Optional[float]:
    sum_sin = 0.0
    sum_cos = 0.0
    count = 0
    for direction in directions:
        if not _finite(direction):
            continue
        rad = math.radians(direction)
        sum_sin += math.sin(rad)
        sum_cos += math.cos(rad)
        count += 1
    if not count:
        return None
    degrees = math.degrees(math.atan2(sum_sin / count, sum_cos / count)) % 360.0
    return 0.0 if degrees >= 360.0 else degrees


def wind_variability_deg(
    series: Iterable[Observation], ref_time: datetime, window: timedelta
) -> Optional[float]:
    """
    Circular standard deviation of wind direction over ``[ref_time - window, ref_time]``,
    in degrees, capped at 180. Needs at least two samples.
    """
    samples = _window_samples(series, "wind_dir_deg", ref_time, window)
    if len(samples) < 2:
        return None
    sum_sin = sum(math.sin(math.radians(d)) for _, d in samples)
    sum_cos = sum(math.cos(math.radians(d)) for _, d in samples)
    r = min(1.0, max(0.0, math.hypot(sum_sin, sum_cos) / len(samples)))
    if r >= 1.0:
        return 0.0
    if r <= 0.0:
        return 180.0
    return min(180.0, math.degrees(math.sqrt(-2.0 * math.log(r))))


def max_gust_for_day(
    series: Iterable[Observation], ref_time: datetime, tz: tzinfo = timezone.utc
) -> Optional[float]:
    start, end = _day_bounds(ref_time, tz)
    gusts = [
        obs.wind_gust_mph
        for obs in series
        if _finite(obs.wind_gust_mph) and start <= obs.time < end
    ]
    return max(gusts) if gusts else None


def mean_wind_speed(
    series: Iterable[Observation], ref_time: datetime, window: timedelta
) -> Optional[float]:
    samples = _window_samples(series, "wind_speed_mph", ref_time, window)
    if not samples:
        return None
    return sum(speed for _, speed in samples) / len(samples)


def classify_gust_factor(value: float) -> str:
    if value <= SMOOTH_GUST_FACTOR_MAX:
        return "Smooth"
    if value <= GUSTY_GUST_FACTOR_MAX:
        return "Gusty"
    return "Turbulent"


def gust_factor(
    series: Sequence[Observation], ref_time: datetime, window: timedelta
) -> Optional[GustFactor]:
    """
    Latest gust in the window divided by the window's mean wind speed.
    """
    gusts = _window_samples(series, "wind_gust_mph", ref_time, window)
    mean = mean_wind_speed(series, ref_time, window)
    if not gusts or mean is None or mean <= 0:
        return None
    value = gusts[-1][1] / mean
    return GustFactor(value=value, category=classify_gust_factor(value))


def wind_run_miles_for_day(
    series: Iterable[Observation], ref_time: datetime, tz: tzinfo = timezone.utc
) -> Optional[float]:
    """
    Distance of air passing the station during the calendar day of ``ref_time``,
    by trapezoidal integration of wind speed. A missing speed counts as calm.
    """
    start, end = _day_bounds(ref_time, tz)
    points = [obs for obs in series if start <= obs.time < end]
    if len(points) < 2:
        return None
    miles = 0.0
    for prev, curr in zip(points, points[1:]):
        hours = (curr.time - prev.time).total_seconds() / 3600.0
        if hours <= 0:
            continue
        prev_speed = prev.wind_speed_mph if _finite(prev.wind_speed_mph) else 0.0
        curr_speed = curr.wind_speed_mph if _finite(curr.wind_speed_mph) else 0.0
        miles += (prev_speed + curr_speed) / 2.0 * hours
    return miles if math.isfinite(miles) else None


def solar_energy_wh_m2(series: Sequence[Observation]) -> Optional[float]:
    """
    Trapezoidal integral of solar irradiance, in Wh/m^2. Intervals with a
    missing endpoint or a non-positive time step are skipped.
    """
    if len(series) < 2:
        return None
    total = 0.0
    for prev, curr in zip(series, series[1:]):
        if not _finite(prev.solar_radiation_w_m2) or not _finite(curr.solar_radiation_w_m2):
            continue
        hours = (curr.time - prev.time).total_seconds() / 3600.0
        if hours <= 0:
            continue
        total += (prev.solar_radiation_w_m2 + curr.solar_radiation_w_m2) / 2.0 * hours
    return total if math.isfinite(total) else None


def precip_to_inches(value: float, unit_code: str) -> float:
    """Convert using the unit code; anything unrecognized is taken as millimetres."""
    unit = (unit_code or "").lower()
    if "mm" in unit:
        return value / MM_PER_INCH
    if "cm" in unit:
        return value / CM_PER_INCH
    if "in" in unit:
        return value
    return value / MM_PER_INCH


def precip_amount_in(period: Mapping[str, Any]) -> Optional[float]:
    """
    Precipitation amount of a forecast period, in inches. Reads
    ``quantitativePrecipitation`` or ``precipitationAmount`` (``{"value",
    "unitCode"}``); values without a metric unit are taken as inches.
    """
    amount = period.get("quantitativePrecipitation") or period.get("precipitationAmount")
    if not isinstance(amount, Mapping):
        return None
    value = finite_or_none(amount.get("value"))
    if value is None:
        return None
    unit = str(amount.get("unitCode") or amount.get("uom") or "").lower()
    if "mm" in unit or "cm" in unit:
        return precip_to_inches(value, unit)
    return value


def sum_precip_inches(
    points: Sequence[ForecastGridPoint], range_start: datetime, range_end: datetime
) -> Optional[float]:
    """
    Total forecast precipitation over ``[range_start, range_end)``. Each grid
    value is weighted by the share of its validity interval that overlaps the
    range.
    """
    if not points:
        return None
    start, end = to_utc(range_start), to_utc(range_end)
    if end <= start:
        return None
    total = 0.0
    for point in points:
        if not _finite(point.value) or point.duration <= timedelta(0):
            continue
        overlap = min(point.end, end) - max(point.start, start)
        if overlap <= timedelta(0):
            continue
        portion = overlap / point.duration
        total += precip_to_inches(point.value * portion, point.unit_code)
    return total if math.isfinite(total) else None


def forecast_precip_inches(
    points: Sequence[ForecastGridPoint],
    periods: Iterable[Mapping[str, Any]],
    range_start: datetime,
    range_end: datetime,
) -> Optional[float]:
    """Grid total over the range, falling back to the periods' own amounts."""
    total = sum_precip_inches(points, range_start, range_end)
    if total is not None:
        return total
    amounts = [amount for amount in (precip_amount_in(period) for period in periods) if amount is not None]
    return sum(amounts) if amounts else None


def parse_iso_duration(text: str) -> Optional[timedelta]:
    """Parse the ``P#DT#H#M#S`` durations used by forecast grids."""
    match = _ISO_DURATION.match(text or "")
    if not match:
        return None
    days, hours, minutes, seconds = (int(part or 0) for part in match.groups())
    duration = timedelta(days=days, hours=hours, minutes=minutes, seconds=seconds)
    return duration if duration > timedelta(0) else None


def parse_valid_time(valid_time: str) -> Optional[Tuple[datetime, timedelta]]:
    """Split ``<ISO start>/<ISO duration>`` into a start and a duration."""
    start_text, sep, duration_text = (valid_time or "").partition("/")
    if not sep or not start_text:
        return None
    if start_text.endswith(("Z", "z")):
        start_text = start_text[:-1] + "+00:00"
    try:
        start = to_utc(datetime.fromisoformat(start_text))
    except ValueError:
        return None
    duration = parse_iso_duration(duration_text)
    if duration is None:
        return None
    return start, duration


def grid_points_from_layer(layer: Mapping[str, Any]) -> List[ForecastGridPoint]:
    """
    Build grid points from a forecast grid layer such as
    ``{"uom": "wmoUnit:mm", "values": [{"validTime": ..., "value": ...}]}``.
    Entries with a null value or a malformed validTime are dropped.
    """
    unit_code = layer.get("uom") or layer.get("unitCode") or "wmoUnit:mm"
    points = []
    for entry in layer.get("values") or []:
        value = entry.get("value")
        parsed = parse_valid_time(entry.get("validTime", ""))
        if value is None or parsed is None or not _finite(value):
            continue
        start, duration = parsed
        points.append(
            ForecastGridPoint(value=value, start=start, duration=duration, unit_code=unit_code)
        )
    return points


def series_stats(values: Iterable[Optional[float]]) -> Optional[SeriesStats]:
    nums = [v for v in values if _finite(v)]
    if not nums:
        return None
    return SeriesStats(min=min(nums), max=max(nums), avg=sum(nums) / len(nums))


def deg_to_compass(deg: Optional[float]) -> Optional[str]:
    if not _finite(deg):
        return None
    index = int(math.floor((deg % 360.0) / 22.5 + 0.5)) % 16
    return COMPASS_POINTS[index]


def rainy_streak_days(
    series: Iterable[Observation],
    ref_time: datetime,
    threshold: float = RAIN_DAY_THRESHOLD_IN,
    tz: tzinfo = timezone.utc,
) -> int:
    """
    Consecutive calendar days, ending with the day of ``ref_time``, whose
    peak daily rain total reached ``threshold`` inches.
    """
    max_by_day = {}
    for obs in series:
        if not _finite(obs.daily_rain_in):
            continue
        day = obs.time.astimezone(tz).date()
        max_by_day[day] = max(max_by_day.get(day, 0.0), obs.daily_rain_in)

    day = to_utc(ref_time).astimezone(tz).date()
    streak = 0
    for _ in range(366):
        if max_by_day.get(day, 0.0) < threshold:
            break
        streak += 1
        day -= timedelta(days=1)
    return streak


@dataclass(slots=True)
class StationConditions:
    at: datetime
    feels_like_f: Optional[float]
    wind_compass: Optional[str]
    mean_wind_mph: Optional[float]
    gust_factor: Optional[GustFactor]
    wind_variability_deg: Optional[float]
    max_gust_today_mph: Optional[float]
    wind_run_today_miles: Optional[float]
    rainy_streak_days: int


def station_conditions(
    series: Sequence[Observation], ref_time: datetime, settings: Optional[Settings] = None
) -> Optional[StationConditions]:
    """
    Headline metrics for the latest observation at or before ``ref_time``,
    using the configured windows and station time zone.
    """
    settings = settings or get_settings()
    ref = to_utc(ref_time)
    current = None
    for obs in series:
        if obs.time <= ref:
            current = obs
    if current is None:
        return None
    tz = settings.station_tz
    return StationConditions(
        at=current.time,
        feels_like_f=feels_like_f(current.temp_f, current.humidity, current.wind_speed_mph),
        wind_compass=deg_to_compass(current.wind_dir_deg),
        mean_wind_mph=mean_wind_speed(series, ref, settings.wind_window),
        gust_factor=gust_factor(series, ref, settings.wind_window),
        wind_variability_deg=wind_variability_deg(series, ref, settings.variability_window),
        max_gust_today_mph=max_gust_for_day(series, ref, tz=tz),
        wind_run_today_miles=wind_run_miles_for_day(series, ref, tz=tz),
        rainy_streak_days=rainy_streak_days(series, ref, tz=tz),
    )
