"""Geodesic helpers for proximity matching."""

from __future__ import annotations

import math
from typing import Optional

from libertalk.domain.matchmaking.models import WaitingEntry

EARTH_RADIUS_KM = 6_371.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
	"""Return the great-circle distance between two points in kilometres."""

	phi1, phi2 = math.radians(lat1), math.radians(lat2)
	dphi = math.radians(lat2 - lat1)
	dlambda = math.radians(lon2 - lon1)
	a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
	return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def distance_between(a: WaitingEntry, b: WaitingEntry) -> Optional[float]:
	"""Distance in km, or None unless both entries carry a location."""
	if not (a.has_location and b.has_location):
		return None
	return haversine_km(a.lat, a.lon, b.lat, b.lon)  # type: ignore[arg-type]


def valid_coordinates(lat: float, lon: float) -> bool:
	return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0
