import logging
import math
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Tuple, Union

from .errors import IngestFailure
from .metrics import ingest_failures, observations_ingested
from .rollups import refresh_rollups
from .schemas import Observation, finite_or_none, to_utc

logger = logging.getLogger(__name__)

TIME_KEYS: Tuple[str, ...] = ("time", "dateutc", "dateUTC", "date")

# Canonical field -> accepted source keys, in lookup order. The vendor names
# are the ones the Ambient Weather device API reports.
FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "temp_f": ("temp_f", "tempf"),
    "dew_point_f": ("dew_point_f", "dewPoint", "dewpointf", "dewpoint"),
    "humidity": ("humidity",),
    "pressure_rel_inhg": ("pressure_rel_inhg", "baromrelin", "baromrel"),
    "wind_speed_mph": ("wind_speed_mph", "windspeedmph", "windSpeed"),
    "wind_gust_mph": ("wind_gust_mph", "windgustmph", "windGust"),
    "wind_dir_deg": ("wind_dir_deg", "winddir", "windDir"),
    "daily_rain_in": ("daily_rain_in", "dailyrainin", "dailyRainin"),
    "solar_radiation_w_m2": ("solar_radiation_w_m2", "solarradiation", "solarRadiation"),
    "uv_index": ("uv_index", "uv"),
}

# Epoch values above this are milliseconds, below it seconds.
_EPOCH_MS_THRESHOLD = 1e12

Reading = Union[Mapping[str, Any], Observation]


def _first_present(payload: Mapping[str, Any], keys: Tuple[str, ...]) -> Any:
    for key in keys:
        value = payload.get(key)
        if value is not None:
            return value
    return None


def _from_epoch(number: float) -> datetime:
    if not math.isfinite(number):
        raise IngestFailure(f"Timestamp is not finite: {number!r}")
    seconds = number / 1000.0 if number > _EPOCH_MS_THRESHOLD else number
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as exc:
        raise IngestFailure(f"Timestamp out of range: {number!r}") from exc


def parse_timestamp(value: Any) -> datetime:
    """
    Parse a reading timestamp into an aware UTC datetime.

    Accepts datetimes (naive means UTC), epoch seconds or milliseconds (as
    numbers or numeric strings), and ISO-8601 strings.
    """
    if value is None:
        raise IngestFailure("Reading has no timestamp")
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, bool):
        raise IngestFailure(f"Unparseable timestamp: {value!r}")
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError as exc:
            raise IngestFailure(f"Timestamp out of range: {value!r}") from exc
        return _from_epoch(number)
    if isinstance(value, str):
        text = value.strip()
        number = finite_or_none(text)
        if number is not None:
            return _from_epoch(number)
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            return to_utc(datetime.fromisoformat(text))
        except ValueError as exc:
            raise IngestFailure(f"Unparseable timestamp: {value!r}") from exc
    raise IngestFailure(f"Unparseable timestamp: {value!r}")


def normalize_reading(reading: Reading) -> Observation:
    """
    Map a source reading onto the fixed observation schema. Unknown keys are
    ignored; non-numeric or non-finite values become absent.
    """
    if isinstance(reading, Observation):
        return reading
    if not isinstance(reading, Mapping):
        raise IngestFailure(f"Reading must be a mapping, got {type(reading).__name__}")
    timestamp = parse_timestamp(_first_present(reading, TIME_KEYS))
    fields = {field: _first_present(reading, aliases) for field, aliases in FIELD_ALIASES.items()}
    return Observation(time=timestamp, **fields)


def unwrap_device_payload(payload: Any) -> Mapping[str, Any]:
    """
    Pull the latest reading out of a device API response: a list of devices,
    a single device carrying ``lastData``, or a bare reading.
    """
    if isinstance(payload, list):
        if not payload:
            raise IngestFailure("Device payload contains no devices")
        payload = payload[0]
    if isinstance(payload, Mapping) and isinstance(payload.get("lastData"), Mapping):
        return payload["lastData"]
    if isinstance(payload, Mapping):
        return payload
    raise IngestFailure(f"Unexpected device payload type: {type(payload).__name__}")


async def ingest_observation(store, reading: Reading) -> Observation:
    """
    Upsert one reading by timestamp and recompute the rollup buckets covering
    it, as a single unit of work. Returns the stored observation.
    """
    try:
        obs = normalize_reading(reading)
    except IngestFailure as exc:
        ingest_failures.inc()
        logger.warning("Rejected reading: %s", exc)
        raise

    try:
        async with store.unit_of_work() as session:
            await session.upsert_observation(obs)
            buckets = await refresh_rollups(session, obs.time)
    except Exception as exc:
        ingest_failures.inc()
        logger.warning("Failed to store observation %s: %s", obs.time.isoformat(), exc)
        raise IngestFailure(f"Store write failed for {obs.time.isoformat()}: {exc}") from exc

    observations_ingested.inc()
    logger.info(
        "Upserted %s temp=%s wind=%s gust=%s (%d rollup buckets)",
        obs.time.isoformat(),
        obs.temp_f,
        obs.wind_speed_mph,
        obs.wind_gust_mph,
        len(buckets),
    )
    return obs


async def ingest_payload(store, payload: Any) -> Observation:
    try:
        reading = unwrap_device_payload(payload)
    except IngestFailure as exc:
        ingest_failures.inc()
        logger.warning("Rejected device payload: %s", exc)
        raise
    return await ingest_observation(store, reading)
