import logging
import math
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence

from .metrics import rollup_buckets_deleted, rollup_buckets_written
from .schemas import (
    AVG_MAX_FIELDS,
    AVG_MIN_MAX_FIELDS,
    MAX_FIELDS,
    ROLLUP_RESOLUTIONS,
    Observation,
    Resolution,
    RollupBucket,
    to_utc,
)

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def bucket_start(t: datetime, resolution: Resolution) -> datetime:
    """
    Start of the bucket containing ``t``: floor(t / R) * R on the UTC epoch grid.
    """
    width = resolution.width
    return _EPOCH + ((to_utc(t) - _EPOCH) // width) * width


def _present(samples: Sequence[Observation], field: str) -> List[float]:
    return [value for value in (getattr(obs, field) for obs in samples) if value is not None]


def _mean(values: Sequence[float]) -> Optional[float]:
    return sum(values) / len(values) if values else None


def aggregate_bucket(
    resolution: Resolution, bucket: datetime, observations: Iterable[Observation]
) -> Optional[RollupBucket]:
    """
    Summarize the observations of one bucket. Returns None when there are none;
    an empty interval has no bucket rather than a zero-valued one.
    """
    samples = list(observations)
    if not samples:
        return None

    values = {"bucket": bucket, "resolution": resolution.label, "sample_count": len(samples)}
    for field in AVG_MIN_MAX_FIELDS:
        present = _present(samples, field)
        values[f"{field}_avg"] = _mean(present)
        values[f"{field}_min"] = min(present) if present else None
        values[f"{field}_max"] = max(present) if present else None
    for field in MAX_FIELDS:
        present = _present(samples, field)
        values[f"{field}_max"] = max(present) if present else None
    for field in AVG_MAX_FIELDS:
        present = _present(samples, field)
        values[f"{field}_avg"] = _mean(present)
        values[f"{field}_max"] = max(present) if present else None

    # Direction is averaged as unit vectors, never as raw degrees.
    radians = [math.radians(d) for d in _present(samples, "wind_dir_deg")]
    values["wind_dir_sin_avg"] = _mean([math.sin(r) for r in radians])
    values["wind_dir_cos_avg"] = _mean([math.cos(r) for r in radians])
    return RollupBucket(**values)


async def refresh_bucket(session, resolution: Resolution, t: datetime) -> Optional[RollupBucket]:
    """
    Recompute the bucket of ``resolution`` covering ``t`` from the base table,
    deleting it when the interval holds no observations.
    """
    start = bucket_start(t, resolution)
    bucket = await session.refresh_rollup(resolution, start)
    if bucket is None:
        await session.delete_rollup(resolution, start)
        rollup_buckets_deleted.labels(resolution=resolution.label).inc()
        logger.debug("Removed empty %s bucket %s", resolution.label, start.isoformat())
        return None
    rollup_buckets_written.labels(resolution=resolution.label).inc()
    logger.debug(
        "Refreshed %s bucket %s from %d samples",
        resolution.label,
        start.isoformat(),
        bucket.sample_count,
    )
    return bucket


async def refresh_rollups(
    session,
    t: datetime,
    resolutions: Sequence[Resolution] = ROLLUP_RESOLUTIONS,
) -> List[RollupBucket]:
    written: List[RollupBucket] = []
    for resolution in resolutions:
        bucket = await refresh_bucket(session, resolution, t)
        if bucket is not None:
            written.append(bucket)
    return written


async def rebuild_rollups(store, start: datetime, end: datetime) -> int:
    """
    Recompute every bucket touched by base observations in ``[start, end]``.
    Each resolution is rebuilt in its own unit of work. Returns the number of
    buckets written.
    """
    observations = await store.fetch_observations(to_utc(start), to_utc(end))
    written = 0
    for resolution in ROLLUP_RESOLUTIONS:
        starts = sorted({bucket_start(obs.time, resolution) for obs in observations})
        async with store.unit_of_work() as session:
            for bucket in starts:
                if await refresh_bucket(session, resolution, bucket) is not None:
                    written += 1
        logger.info("Rebuilt %d %s buckets", len(starts), resolution.label)
    return written
