"""Sunrise/sunset estimate used to tell a sleeping inverter from a broken one.

Simplified NOAA approach: solar declination plus equation of time, no
atmospheric refraction. Accurate to a few minutes, which is plenty next to
the 30 minute margin applied around the window.
"""

import math
from datetime import datetime
from typing import Optional, Tuple

# Used when no coordinates are configured
FALLBACK_SUNRISE = 6.0
FALLBACK_SUNSET = 19.0
DEFAULT_MARGIN_HOURS = 0.5


def _day_of_year(when: datetime) -> int:
    return when.timetuple().tm_yday


def _utc_offset_hours(when: datetime) -> float:
    if when.tzinfo is None:
        when = when.astimezone()
    offset = when.utcoffset()
    return offset.total_seconds() / 3600.0 if offset else 0.0


def _local_hours(when: datetime) -> float:
    return when.hour + when.minute / 60.0 + when.second / 3600.0


def sunrise_sunset(latitude: Optional[float], longitude: Optional[float],
                   when: datetime) -> Tuple[float, float]:
    """
    Estimate local sunrise and sunset for the day of ``when``.

    Args:
        latitude: Degrees north, None when unknown
        longitude: Degrees east, None when unknown
        when: Timestamp whose date and UTC offset are used

    Returns:
        (sunrise, sunset) as fractional hours in the local time of ``when``.
        Polar day gives (0, 24), polar night (12, 12).
    """
    if latitude is None or longitude is None:
        return FALLBACK_SUNRISE, FALLBACK_SUNSET

    day = _day_of_year(when)
    declination = math.radians(23.45 * math.sin(math.radians(360.0 / 365.0 * (day - 81))))
    lat = math.radians(latitude)

    cos_hour_angle = -math.tan(lat) * math.tan(declination)
    if cos_hour_angle <= -1:
        return 0.0, 24.0
    if cos_hour_angle >= 1:
        return 12.0, 12.0
    hour_angle = math.degrees(math.acos(cos_hour_angle))

    b = 2 * math.pi / 365.0 * (day - 81)
    equation_of_time = 9.87 * math.sin(2 * b) - 7.53 * math.cos(b) - 1.5 * math.sin(b)  # minutes

    solar_noon = 12.0 - longitude / 15.0 + _utc_offset_hours(when) - equation_of_time / 60.0
    return solar_noon - hour_angle / 15.0, solar_noon + hour_angle / 15.0


def is_night(when: datetime, latitude: Optional[float] = None,
             longitude: Optional[float] = None,
             margin: float = DEFAULT_MARGIN_HOURS) -> bool:
    """True when ``when`` lies outside [sunrise - margin, sunset + margin).

    Without coordinates sunrise and sunset are 06:00 and 19:00, so the
    default margin gives a 05:30-19:30 day.
    """
    hours = _local_hours(when)
    sunrise, sunset = sunrise_sunset(latitude, longitude, when)
    return hours < sunrise - margin or hours >= sunset + margin
