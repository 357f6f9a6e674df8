from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone

import pytest

from wxstation.ingest import ingest_observation
from wxstation.query import query_range
from wxstation.rollups import aggregate_bucket, bucket_start, rebuild_rollups, refresh_bucket
from wxstation.schemas import (
    RESOLUTION_1D,
    RESOLUTION_1H,
    RESOLUTION_5M,
    RESOLUTION_15M,
    ROLLUP_RESOLUTIONS,
    Observation,
)


def _obs(day_start: datetime, minutes: float, **fields) -> Observation:
    return Observation(time=day_start + timedelta(minutes=minutes), **fields)


def test_bucket_start_floors_to_each_resolution():
    t = datetime(2024, 1, 1, 10, 7, 31, tzinfo=timezone.utc)
    assert bucket_start(t, RESOLUTION_5M) == datetime(2024, 1, 1, 10, 5, tzinfo=timezone.utc)
    assert bucket_start(t, RESOLUTION_15M) == datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
    assert bucket_start(t, RESOLUTION_1H) == datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
    assert bucket_start(t, RESOLUTION_1D) == datetime(2024, 1, 1, tzinfo=timezone.utc)


def test_bucket_start_on_boundary_is_its_own_bucket():
    t = datetime(2024, 1, 1, 10, 15, tzinfo=timezone.utc)
    assert bucket_start(t, RESOLUTION_15M) == t
    assert bucket_start(t - timedelta(seconds=1), RESOLUTION_15M) == datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)


def test_aggregate_bucket_empty_interval_has_no_bucket(day_start):
    assert aggregate_bucket(RESOLUTION_5M, day_start, []) is None


def test_aggregate_bucket_summarizes_fields(day_start):
    samples = [
        _obs(day_start, 0, temp_f=40.0, wind_gust_mph=5.0, daily_rain_in=0.1, solar_radiation_w_m2=100.0),
        _obs(day_start, 2, temp_f=44.0, wind_gust_mph=9.0, daily_rain_in=0.2, solar_radiation_w_m2=300.0),
        _obs(day_start, 4, temp_f=None, wind_gust_mph=7.0, daily_rain_in=0.2),
    ]
    bucket = aggregate_bucket(RESOLUTION_5M, day_start, samples)

    assert bucket.sample_count == 3
    assert bucket.resolution == "5 minutes"
    assert bucket.temp_f_avg == pytest.approx(42.0)
    assert bucket.temp_f_min == pytest.approx(40.0)
    assert bucket.temp_f_max == pytest.approx(44.0)
    assert bucket.wind_gust_mph_max == pytest.approx(9.0)
    assert bucket.daily_rain_in_max == pytest.approx(0.2)
    assert bucket.solar_radiation_w_m2_avg == pytest.approx(200.0)
    assert bucket.solar_radiation_w_m2_max == pytest.approx(300.0)
    # Fields with no samples stay absent instead of collapsing to zero.
    assert bucket.humidity_avg is None
    assert bucket.uv_index_max is None
    assert bucket.wind_dir_sin_avg is None
    assert bucket.wind_dir_cos_avg is None


def test_aggregate_bucket_uses_direction_components(day_start):
    samples = [_obs(day_start, 0, wind_dir_deg=350.0), _obs(day_start, 1, wind_dir_deg=10.0)]
    bucket = aggregate_bucket(RESOLUTION_5M, day_start, samples)
    assert bucket.wind_dir_sin_avg == pytest.approx(0.0, abs=1e-12)
    assert bucket.wind_dir_cos_avg == pytest.approx(math.cos(math.radians(10.0)))


@pytest.mark.anyio
async def test_rollups_match_base_observations_after_out_of_order_and_corrected_writes(store, day_start):
    minutes = list(range(0, 150, 2))
    readings = [
        {
            "time": day_start + timedelta(minutes=m),
            "tempf": 40.0 + (m % 17) * 0.5,
            "humidity": None if m % 5 == 0 else 60.0 + m % 11,
            "windspeedmph": (m % 7) * 1.5,
            "windgustmph": (m % 7) * 2.0 + 1.0,
            "winddir": (m * 37) % 360,
            "dailyrainin": m / 1000.0,
            "solarradiation": (m % 13) * 10.0,
            "uv": (m % 4) * 0.5,
        }
        for m in minutes
    ]
    for reading in reversed(readings):
        await ingest_observation(store, reading)
    # Corrections for already-stored timestamps.
    await ingest_observation(store, dict(readings[3], tempf=80.0, winddir=None))
    await ingest_observation(store, dict(readings[40], windgustmph=55.0))

    start, end = day_start - timedelta(days=1), day_start + timedelta(days=2)
    base = await store.fetch_observations(start, end)
    assert len(base) == len(minutes)

    for resolution in ROLLUP_RESOLUTIONS:
        buckets = await store.fetch_rollups(resolution, start, end)
        assert {b.bucket for b in buckets} == {bucket_start(o.time, resolution) for o in base}
        for bucket in buckets:
            members = [o for o in base if bucket.bucket <= o.time < bucket.bucket + resolution.width]
            assert bucket == aggregate_bucket(resolution, bucket.bucket, members)


@pytest.mark.anyio
async def test_refresh_bucket_removes_bucket_without_samples(store, day_start):
    async with store.unit_of_work() as session:
        await session.upsert_observation(_obs(day_start, 1, temp_f=40.0))
        assert await refresh_bucket(session, RESOLUTION_5M, day_start) is not None

    # Simulate the only sample disappearing from the base table.
    store._observations.clear()
    async with store.unit_of_work() as session:
        assert await refresh_bucket(session, RESOLUTION_5M, day_start + timedelta(minutes=3)) is None

    assert await store.fetch_rollups(RESOLUTION_5M, day_start, day_start + timedelta(hours=1)) == []


@pytest.mark.anyio
async def test_rebuild_rollups_backfills_every_resolution(store, day_start):
    async with store.unit_of_work() as session:
        for minute in (0, 7, 20, 70):
            await session.upsert_observation(_obs(day_start, minute, temp_f=30.0 + minute))

    written = await rebuild_rollups(store, day_start, day_start + timedelta(hours=2))

    # 4 five-minute, 3 fifteen-minute, 2 hourly and 1 daily bucket.
    assert written == 10
    hourly = await store.fetch_rollups(RESOLUTION_1H, day_start, day_start + timedelta(hours=2))
    assert [b.sample_count for b in hourly] == [3, 1]


@pytest.mark.anyio
async def test_end_to_end_direction_across_north(store, day_start):
    for minute, direction in ((0, 350.0), (2, 0.0), (4, 10.0)):
        await ingest_observation(
            store, {"time": day_start + timedelta(minutes=minute), "winddir": direction}
        )

    series = await query_range(store, day_start, day_start + timedelta(days=3))

    assert [obs.time for obs in series] == [day_start]
    direction = series[0].wind_dir_deg
    assert min(direction, 360.0 - direction) < 1e-6
