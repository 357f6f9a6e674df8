"""
Storage for base observations and rollup buckets.

Both stores expose the same surface: ``unit_of_work()`` yields a session used
for the write path (upsert + rollup recompute), while the read methods on the
store itself take no locks. Postgres recomputes buckets in SQL; the memory
store runs ``aggregate_bucket`` over the same rows.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional

from .rollups import aggregate_bucket
from .schemas import (
    AVG_MAX_FIELDS,
    AVG_MIN_MAX_FIELDS,
    MAX_FIELDS,
    OBSERVATION_FIELDS,
    ROLLUP_COLUMNS,
    ROLLUP_RESOLUTIONS,
    Observation,
    Resolution,
    RollupBucket,
)

# pg_advisory_xact_lock key serializing ingestion for the station.
INGEST_LOCK_KEY = 0x77787374

_OBSERVATION_COLUMNS = ("time",) + OBSERVATION_FIELDS


def _conflict_updates(columns, key: str) -> str:
    return ",\n        ".join(f"{col} = EXCLUDED.{col}" for col in columns if col != key)


def _upsert_sql(table: str, columns, key: str) -> str:
    placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
    updates = _conflict_updates(columns, key)
    return (
        f"INSERT INTO {table} ({', '.join(columns)})\n"
        f"    VALUES ({placeholders})\n"
        f"    ON CONFLICT ({key}) DO UPDATE SET\n"
        f"        {updates}"
    )


UPSERT_OBSERVATION_SQL = _upsert_sql("observations", _OBSERVATION_COLUMNS, "time")
SELECT_OBSERVATIONS = f"SELECT {', '.join(_OBSERVATION_COLUMNS)} FROM observations"


def _rollup_expressions() -> Dict[str, str]:
    exprs = {"bucket": "$1::timestamptz", "sample_count": "count(*)"}
    for field in AVG_MIN_MAX_FIELDS:
        exprs[f"{field}_avg"] = f"avg({field})"
        exprs[f"{field}_min"] = f"min({field})"
        exprs[f"{field}_max"] = f"max({field})"
    for field in MAX_FIELDS:
        exprs[f"{field}_max"] = f"max({field})"
    for field in AVG_MAX_FIELDS:
        exprs[f"{field}_avg"] = f"avg({field})"
        exprs[f"{field}_max"] = f"max({field})"
    exprs["wind_dir_sin_avg"] = "avg(sin(radians(wind_dir_deg)))"
    exprs["wind_dir_cos_avg"] = "avg(cos(radians(wind_dir_deg)))"
    return exprs


ROLLUP_EXPRESSIONS = _rollup_expressions()


def _refresh_rollup_sql(table: str) -> str:
    """
    Recompute one bucket from the base rows in ``[$1, $2)`` and upsert it.
    Returns no row (and writes nothing) when the interval is empty.
    """
    columns = ", ".join(ROLLUP_COLUMNS)
    select = ",\n        ".join(ROLLUP_EXPRESSIONS[column] for column in ROLLUP_COLUMNS)
    return (
        f"INSERT INTO {table} ({columns})\n"
        f"    SELECT\n"
        f"        {select}\n"
        f"    FROM observations\n"
        f"    WHERE time >= $1 AND time < $2\n"
        f"    HAVING count(*) > 0\n"
        f"    ON CONFLICT (bucket) DO UPDATE SET\n"
        f"        {_conflict_updates(ROLLUP_COLUMNS, 'bucket')}\n"
        f"    RETURNING {columns}"
    )


REFRESH_ROLLUP_SQL: Dict[str, str] = {
    resolution.label: _refresh_rollup_sql(resolution.table) for resolution in ROLLUP_RESOLUTIONS
}


class PostgresSession:
    """Write-path operations bound to one connection inside an open transaction."""

    def __init__(self, conn) -> None:
        self._conn = conn

    async def upsert_observation(self, obs: Observation) -> None:
        await self._conn.execute(
            UPSERT_OBSERVATION_SQL,
            *(getattr(obs, column) for column in _OBSERVATION_COLUMNS),
        )

    async def refresh_rollup(
        self, resolution: Resolution, bucket_start: datetime
    ) -> Optional[RollupBucket]:
        row = await self._conn.fetchrow(
            REFRESH_ROLLUP_SQL[resolution.label],
            bucket_start,
            bucket_start + resolution.width,
        )
        return RollupBucket(resolution=resolution.label, **dict(row)) if row is not None else None

    async def delete_rollup(self, resolution: Resolution, bucket_start: datetime) -> None:
        await self._conn.execute(f"DELETE FROM {resolution.table} WHERE bucket = $1", bucket_start)


class PostgresStore:
    def __init__(self, pool) -> None:
        self._pool = pool

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[PostgresSession]:
        """
        Open a transaction holding the station ingest lock. Anything written
        through the yielded session commits together or not at all.
        """
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("SELECT pg_advisory_xact_lock($1)", INGEST_LOCK_KEY)
                yield PostgresSession(conn)

    async def fetch_observations(self, start: datetime, end: datetime) -> List[Observation]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"{SELECT_OBSERVATIONS} WHERE time >= $1 AND time <= $2 ORDER BY time ASC",
                start,
                end,
            )
        return [Observation(**dict(row)) for row in rows]

    async def fetch_rollups(
        self, resolution: Resolution, start: datetime, end: datetime
    ) -> List[RollupBucket]:
        query = (
            f"SELECT {', '.join(ROLLUP_COLUMNS)} FROM {resolution.table} "
            "WHERE bucket >= $1 AND bucket <= $2 ORDER BY bucket ASC"
        )
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, start, end)
        return [RollupBucket(resolution=resolution.label, **dict(row)) for row in rows]

    async def latest_observation(self) -> Optional[Observation]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(f"{SELECT_OBSERVATIONS} ORDER BY time DESC LIMIT 1")
        return Observation(**dict(row)) if row is not None else None


class MemorySession:
    def __init__(self, store: "MemoryStore") -> None:
        self._store = store

    async def upsert_observation(self, obs: Observation) -> None:
        self._store._observations[obs.time] = obs

    async def observations_in(self, start: datetime, end: datetime) -> List[Observation]:
        return [
            obs
            for time, obs in sorted(self._store._observations.items())
            if start <= time < end
        ]

    async def upsert_rollup(self, resolution: Resolution, bucket: RollupBucket) -> None:
        self._store._rollups[resolution.label][bucket.bucket] = bucket

    async def refresh_rollup(
        self, resolution: Resolution, bucket_start: datetime
    ) -> Optional[RollupBucket]:
        observations = await self.observations_in(bucket_start, bucket_start + resolution.width)
        bucket = aggregate_bucket(resolution, bucket_start, observations)
        if bucket is not None:
            await self.upsert_rollup(resolution, bucket)
        return bucket

    async def delete_rollup(self, resolution: Resolution, bucket_start: datetime) -> None:
        self._store._rollups[resolution.label].pop(bucket_start, None)


class MemoryStore:
    """In-process store with the same contract as ``PostgresStore``."""

    def __init__(self) -> None:
        self._observations: Dict[datetime, Observation] = {}
        self._rollups: Dict[str, Dict[datetime, RollupBucket]] = {
            resolution.label: {} for resolution in ROLLUP_RESOLUTIONS
        }
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[MemorySession]:
        async with self._lock:
            observations = dict(self._observations)
            rollups = {label: dict(buckets) for label, buckets in self._rollups.items()}
            try:
                yield MemorySession(self)
            except BaseException:
                self._observations = observations
                self._rollups = rollups
                raise

    async def fetch_observations(self, start: datetime, end: datetime) -> List[Observation]:
        return [obs for time, obs in sorted(self._observations.items()) if start <= time <= end]

    async def fetch_rollups(
        self, resolution: Resolution, start: datetime, end: datetime
    ) -> List[RollupBucket]:
        buckets = self._rollups[resolution.label]
        return [bucket for key, bucket in sorted(buckets.items()) if start <= key <= end]

    async def latest_observation(self) -> Optional[Observation]:
        if not self._observations:
            return None
        return self._observations[max(self._observations)]
