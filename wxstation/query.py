import logging
import math
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Dict, List, Optional, Tuple

from .errors import QueryFailure
from .metrics import query_failures, range_queries
from .schemas import (
    RESOLUTION_1D,
    RESOLUTION_1H,
    RESOLUTION_5M,
    RESOLUTION_15M,
    Observation,
    Resolution,
    RollupBucket,
    to_utc,
)

logger = logging.getLogger(__name__)

BASE_SOURCE = "observations"

# (largest span served, source). None means the base table; spans past the
# last entry read daily buckets.
ROUTING_TABLE: Tuple[Tuple[timedelta, Optional[Resolution]], ...] = (
    (timedelta(hours=48), None),
    (timedelta(days=7), RESOLUTION_5M),
    (timedelta(days=31), RESOLUTION_15M),
    (timedelta(days=370), RESOLUTION_1H),
)

# Dashboard range names measured back from "now". "today", "ytd" and "all" are
# calendar anchored; unknown names fall back to the default.
RANGE_PRESETS: Dict[str, timedelta] = {
    "1h": timedelta(hours=1),
    "12h": timedelta(hours=12),
    "24h": timedelta(hours=24),
    "3d": timedelta(days=3),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}
DEFAULT_RANGE = "24h"
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _validate_interval(start: datetime, end: datetime) -> Tuple[datetime, datetime]:
    start, end = to_utc(start), to_utc(end)
    if end <= start:
        raise QueryFailure(
            f"Invalid interval: end {end.isoformat()} is not after start {start.isoformat()}"
        )
    return start, end


def select_resolution(start: datetime, end: datetime) -> Optional[Resolution]:
    """
    Coarsest source that still suits the span; None selects raw observations.
    """
    start, end = _validate_interval(start, end)
    span = end - start
    for limit, resolution in ROUTING_TABLE:
        if span <= limit:
            return resolution
    return RESOLUTION_1D


def reconstruct_direction(sin_avg: Optional[float], cos_avg: Optional[float]) -> Optional[float]:
    """
    Mean direction in [0, 360) from averaged unit-vector components.
    """
    if sin_avg is None or cos_avg is None:
        return None
    degrees = math.degrees(math.atan2(sin_avg, cos_avg)) % 360.0
    return 0.0 if degrees >= 360.0 else degrees


def observation_from_bucket(bucket: RollupBucket) -> Observation:
    return Observation(
        time=bucket.bucket,
        temp_f=bucket.temp_f_avg,
        dew_point_f=bucket.dew_point_f_avg,
        humidity=bucket.humidity_avg,
        pressure_rel_inhg=bucket.pressure_rel_inhg_avg,
        wind_speed_mph=bucket.wind_speed_mph_avg,
        wind_gust_mph=bucket.wind_gust_mph_max,
        wind_dir_deg=reconstruct_direction(bucket.wind_dir_sin_avg, bucket.wind_dir_cos_avg),
        daily_rain_in=bucket.daily_rain_in_max,
        solar_radiation_w_m2=bucket.solar_radiation_w_m2_avg,
        uv_index=bucket.uv_index_avg,
    )


async def query_range(store, start: datetime, end: datetime) -> List[Observation]:
    """
    Return the series for ``[start, end]`` (inclusive), oldest first, read
    from the base table or the rollup resolution chosen by span.
    """
    try:
        start, end = _validate_interval(start, end)
        resolution = select_resolution(start, end)
    except QueryFailure:
        query_failures.inc()
        raise

    source = resolution.table if resolution is not None else BASE_SOURCE
    try:
        if resolution is None:
            series = await store.fetch_observations(start, end)
        else:
            buckets = await store.fetch_rollups(resolution, start, end)
            series = [observation_from_bucket(bucket) for bucket in buckets]
    except Exception as exc:
        query_failures.inc()
        logger.warning("Range query on %s failed: %s", source, exc)
        raise QueryFailure(f"Read from {source} failed: {exc}") from exc

    range_queries.labels(source=source).inc()
    logger.debug(
        "Range %s..%s served from %s (%d rows)", start.isoformat(), end.isoformat(), source, len(series)
    )
    return series


async def latest_observation(store) -> Optional[Observation]:
    try:
        return await store.latest_observation()
    except Exception as exc:
        query_failures.inc()
        logger.warning("Latest observation lookup failed: %s", exc)
        raise QueryFailure(f"Read from {BASE_SOURCE} failed: {exc}") from exc


def range_window(
    preset: str, now: Optional[datetime] = None, tz: tzinfo = timezone.utc
) -> Tuple[datetime, datetime]:
    """
    ``(start, end)`` for a named range ending at ``now``. ``today`` and ``ytd``
    start at local midnight in ``tz``.
    """
    end = to_utc(now) if now is not None else datetime.now(timezone.utc)
    local = end.astimezone(tz)
    if preset == "today":
        start = local.replace(hour=0, minute=0, second=0, microsecond=0)
    elif preset == "ytd":
        start = local.replace(month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    elif preset == "all":
        start = _EPOCH
    else:
        start = end - RANGE_PRESETS.get(preset, RANGE_PRESETS[DEFAULT_RANGE])
    return to_utc(start), end
