import ssl
from typing import Optional

import asyncpg

from .config import Settings, get_settings
from .schemas import ROLLUP_RESOLUTIONS

_pool: Optional[asyncpg.pool.Pool] = None

OBSERVATIONS_DDL = """
CREATE TABLE IF NOT EXISTS observations (
    time timestamptz PRIMARY KEY,
    temp_f double precision,
    dew_point_f double precision,
    humidity double precision,
    pressure_rel_inhg double precision,
    wind_speed_mph double precision,
    wind_gust_mph double precision,
    wind_dir_deg double precision,
    daily_rain_in double precision,
    solar_radiation_w_m2 double precision,
    uv_index double precision
);
"""

ROLLUP_DDL_TEMPLATE = """
CREATE TABLE IF NOT EXISTS {table} (
    bucket timestamptz PRIMARY KEY,
    sample_count integer NOT NULL,
    temp_f_avg double precision,
    temp_f_min double precision,
    temp_f_max double precision,
    dew_point_f_avg double precision,
    dew_point_f_min double precision,
    dew_point_f_max double precision,
    humidity_avg double precision,
    humidity_min double precision,
    humidity_max double precision,
    pressure_rel_inhg_avg double precision,
    pressure_rel_inhg_min double precision,
    pressure_rel_inhg_max double precision,
    wind_speed_mph_avg double precision,
    wind_speed_mph_min double precision,
    wind_speed_mph_max double precision,
    wind_gust_mph_max double precision,
    daily_rain_in_max double precision,
    solar_radiation_w_m2_avg double precision,
    solar_radiation_w_m2_max double precision,
    uv_index_avg double precision,
    uv_index_max double precision,
    wind_dir_sin_avg double precision,
    wind_dir_cos_avg double precision
);
"""

SCHEMA_SQL = OBSERVATIONS_DDL + "".join(
    ROLLUP_DDL_TEMPLATE.format(table=resolution.table) for resolution in ROLLUP_RESOLUTIONS
)


def _ssl_context(settings: Settings) -> Optional[ssl.SSLContext]:
    if not settings.pgssl:
        return None
    # Managed Postgres hosts commonly present certificates we cannot verify.
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


async def get_pool(settings: Optional[Settings] = None) -> asyncpg.pool.Pool:
    """
    Lazily create and return a connection pool.
    """
    global _pool
    if _pool is None:
        settings = settings or get_settings()
        _pool = await asyncpg.create_pool(
            dsn=settings.postgres_dsn,
            min_size=settings.pool_min_size,
            max_size=settings.pool_max_size,
            statement_cache_size=200,
            ssl=_ssl_context(settings),
        )
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def ensure_schema(pool) -> None:
    """
    Create the base table and the four rollup tables if they are missing.
    """
    async with pool.acquire() as conn:
        await conn.execute(SCHEMA_SQL)
