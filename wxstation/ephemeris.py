"""
Sun and moon positions, rise/set times and lunar phase for a station.

Positions and sun times come from ``suncalc`` (the SunCalc algorithms).
Angles are returned in degrees; azimuths are compass bearings measured
clockwise from north in [0, 360).
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Final, Optional

import numpy as np
from suncalc import get_position, get_times
from suncalc.suncalc import getMoonPosition, moon_coords, sun_coords, to_days

from .config import Settings, get_settings
from .schemas import to_utc

SUN_DISTANCE_KM: Final[float] = 149598000.0

FULL_MOON_STEP: Final[timedelta] = timedelta(minutes=10)
FULL_MOON_HORIZON: Final[timedelta] = timedelta(days=30)
FULL_MOON_TOLERANCE: Final[float] = 0.001

# Upper phase bounds (fraction of the synodic cycle) for each named phase.
PHASE_NAMES: Final[tuple] = (
    (0.03, "New"),
    (0.22, "Waxing Crescent"),
    (0.28, "First Quarter"),
    (0.47, "Waxing Gibbous"),
    (0.53, "Full"),
    (0.72, "Waning Gibbous"),
    (0.78, "Last Quarter"),
    (0.97, "Waning Crescent"),
)


@dataclass(slots=True)
class SunPosition:
    azimuth_deg: float
    altitude_deg: float


@dataclass(slots=True)
class SunTimes:
    solar_noon: datetime
    sunrise: Optional[datetime]
    sunset: Optional[datetime]
    day_length: Optional[timedelta]


@dataclass(slots=True)
class MoonPosition:
    azimuth_deg: float
    altitude_deg: float
    distance_km: float
    parallactic_angle_deg: float


@dataclass(slots=True)
class MoonIllumination:
    fraction: float
    phase: float
    angle_deg: float


@dataclass(slots=True)
class EphemerisOverlay:
    at: datetime
    sun: SunPosition
    sun_times: SunTimes
    moon: MoonPosition
    moon_illumination: MoonIllumination
    moon_phase_name: str
    next_full_moon: Optional[datetime]


def _compass_deg(azimuth: float) -> float:
    # suncalc measures azimuth from south, positive westward.
    return (math.degrees(float(azimuth)) + 180.0) % 360.0


def _utc_or_none(value: Any) -> Optional[datetime]:
    """
    Normalize a suncalc time (naive UTC ``datetime`` or pandas ``Timestamp``)
    to an aware datetime; NaT, returned when the sun never crosses the
    requested altitude, becomes None.
    """
    if not isinstance(value, datetime) or value != value:
        return None
    return datetime.fromtimestamp(to_utc(value).timestamp(), tz=timezone.utc)


def sun_position(when: datetime, lat: float, lon: float) -> SunPosition:
    position = get_position(to_utc(when), lon, lat)
    return SunPosition(
        azimuth_deg=_compass_deg(position["azimuth"]),
        altitude_deg=math.degrees(float(position["altitude"])),
    )


def sun_times(when: datetime, lat: float, lon: float) -> SunTimes:
    """
    Solar noon, sunrise and sunset for the solar day nearest ``when``.
    Sunrise and sunset are None while the sun stays above or below the horizon.
    """
    # Polar day and night come back as NaN hour angles.
    with np.errstate(invalid="ignore"):
        times = get_times(to_utc(when), lon, lat, times=[(-0.833, "sunrise", "sunset")])
    sunrise = _utc_or_none(times["sunrise"])
    sunset = _utc_or_none(times["sunset"])
    return SunTimes(
        solar_noon=_utc_or_none(times["solar_noon"]),
        sunrise=sunrise,
        sunset=sunset,
        day_length=sunset - sunrise if sunrise is not None and sunset is not None else None,
    )


def moon_position(when: datetime, lat: float, lon: float) -> MoonPosition:
    position = getMoonPosition(to_utc(when), lat, lon)
    return MoonPosition(
        azimuth_deg=_compass_deg(position["azimuth"]),
        altitude_deg=math.degrees(float(position["altitude"])),
        distance_km=float(position["distance"]),
        parallactic_angle_deg=math.degrees(float(position["parallacticAngle"])),
    )


def moon_illumination(when: datetime) -> MoonIllumination:
    """
    Illuminated fraction and phase, where phase runs 0 (new) through 0.5
    (full) back to 1 (new).

    Same formula as suncalc's ``getMoonIllumination``, which returns the
    inclination as a one-element tuple in 0.1.3 and cannot compute the phase.
    """
    days = to_days(to_utc(when))
    sun = sun_coords(days)
    moon = moon_coords(days)
    sun_dec, sun_ra = float(sun["dec"]), float(sun["ra"])
    moon_dec, moon_ra, moon_distance = float(moon["dec"]), float(moon["ra"]), float(moon["dist"])

    cos_phi = math.sin(sun_dec) * math.sin(moon_dec) + math.cos(sun_dec) * math.cos(
        moon_dec
    ) * math.cos(sun_ra - moon_ra)
    phi = math.acos(max(-1.0, min(1.0, cos_phi)))
    inc = math.atan2(SUN_DISTANCE_KM * math.sin(phi), moon_distance - SUN_DISTANCE_KM * math.cos(phi))
    angle = math.atan2(
        math.cos(sun_dec) * math.sin(sun_ra - moon_ra),
        math.sin(sun_dec) * math.cos(moon_dec)
        - math.cos(sun_dec) * math.sin(moon_dec) * math.cos(sun_ra - moon_ra),
    )
    sign = -1.0 if angle < 0 else 1.0
    return MoonIllumination(
        fraction=(1.0 + math.cos(inc)) / 2.0,
        phase=0.5 + 0.5 * inc * sign / math.pi,
        angle_deg=math.degrees(angle),
    )


def moon_phase_name(phase: float) -> str:
    phase = phase % 1.0
    for upper, name in PHASE_NAMES:
        if phase < upper:
            return name
    return "New"


def next_full_moon(
    start: datetime,
    step: timedelta = FULL_MOON_STEP,
    horizon: timedelta = FULL_MOON_HORIZON,
    tolerance: float = FULL_MOON_TOLERANCE,
) -> Optional[datetime]:
    """
    Scan forward from ``start`` in fixed steps for the instant whose phase is
    closest to 0.5, stopping early once within ``tolerance``. The scan never
    looks beyond ``horizon``; the result can be off by up to one step.
    """
    if not timedelta(0) < step <= FULL_MOON_STEP:
        raise ValueError("step must be positive and at most 10 minutes")
    if not timedelta(0) < horizon <= FULL_MOON_HORIZON:
        raise ValueError("horizon must be positive and at most 30 days")
    current = to_utc(start)
    limit = current + horizon
    best: Optional[datetime] = None
    best_error = math.inf
    while current <= limit:
        error = abs(moon_illumination(current).phase - 0.5)
        if error < best_error:
            best, best_error = current, error
            if error <= tolerance:
                break
        current += step
    return best


def compute_overlay(
    when: datetime,
    lat: float,
    lon: float,
    step: timedelta = FULL_MOON_STEP,
    horizon: timedelta = FULL_MOON_HORIZON,
    tolerance: float = FULL_MOON_TOLERANCE,
) -> EphemerisOverlay:
    at = to_utc(when)
    illumination = moon_illumination(at)
    return EphemerisOverlay(
        at=at,
        sun=sun_position(at, lat, lon),
        sun_times=sun_times(at, lat, lon),
        moon=moon_position(at, lat, lon),
        moon_illumination=illumination,
        moon_phase_name=moon_phase_name(illumination.phase),
        next_full_moon=next_full_moon(at, step=step, horizon=horizon, tolerance=tolerance),
    )


def station_overlay(when: datetime, settings: Optional[Settings] = None) -> EphemerisOverlay:
    """Overlay for the configured station location and full-moon search limits."""
    settings = settings or get_settings()
    return compute_overlay(
        when,
        settings.station_lat,
        settings.station_lon,
        step=timedelta(minutes=settings.full_moon_step_minutes),
        horizon=timedelta(days=settings.full_moon_horizon_days),
        tolerance=settings.full_moon_tolerance,
    )
