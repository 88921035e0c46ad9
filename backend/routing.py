"""
Route distance between the shop and a customer.

Tries OpenRouteService when OPENROUTE_API_KEY is set, then the public OSRM
server, then falls back to the great-circle distance.
"""
import logging
import math
import os
from typing import List, Optional, Tuple

import requests
from pydantic import BaseModel

logger = logging.getLogger(__name__)

OPENROUTE_URL = os.getenv("OPENROUTE_URL", "https://api.openrouteservice.org/v2/directions/driving-car")
OPENROUTE_API_KEY = os.getenv("OPENROUTE_API_KEY")
OSRM_URL = os.getenv("OSRM_URL", "https://router.project-osrm.org/route/v1/driving")
ROUTING_TIMEOUT = float(os.getenv("ROUTING_TIMEOUT", "5"))

SHOP_LAT = float(os.getenv("SHOP_LAT", "18.46483341909941"))
SHOP_LON = float(os.getenv("SHOP_LON", "73.81674169770542"))
DELIVERY_RADIUS_KM = float(os.getenv("DELIVERY_RADIUS_KM", "5"))

EARTH_RADIUS_KM = 6371.0088


class Route(BaseModel):
    distance_km: float
    duration_min: int
    geometry: List[Tuple[float, float]] = []
    success: bool = True
    source: str = "openroute"
    error: Optional[str] = None

    @property
    def distance_meters(self) -> float:
        return self.distance_km * 1000


class RoutingError(Exception):
    pass


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Straight-line distance in kilometers, rounded to 2 decimals."""
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)

    a = (math.sin(d_lat / 2) ** 2 +
         math.cos(lat1_rad) * math.cos(lat2_rad) *
         math.sin(d_lon / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return round(EARTH_RADIUS_KM * c, 2)


def _route_openroute(from_lat, from_lon, to_lat, to_lon) -> Route:
    resp = requests.get(
        OPENROUTE_URL,
        params={"start": f"{from_lon},{from_lat}", "end": f"{to_lon},{to_lat}"},
        headers={"Authorization": OPENROUTE_API_KEY, "Accept": "application/json, application/geo+json"},
        timeout=ROUTING_TIMEOUT,
    )
    if resp.status_code == 403:
        raise RoutingError("OpenRouteService rejected the API key")
    if not resp.ok:
        raise RoutingError(f"OpenRouteService error: {resp.status_code}")

    features = resp.json().get("features") or []
    if not features:
        raise RoutingError("No route found")

    segment = features[0]["properties"]["segments"][0]
    coordinates = features[0].get("geometry", {}).get("coordinates", [])
    return Route(
        distance_km=round(segment["distance"] / 1000, 2),
        duration_min=math.ceil(segment["duration"] / 60),
        geometry=[(c[1], c[0]) for c in coordinates],
        source="openroute",
    )


def osrm_route_url(from_lat, from_lon, to_lat, to_lon) -> str:
    # OSRM takes lon,lat pairs
    return f"{OSRM_URL}/{from_lon},{from_lat};{to_lon},{to_lat}"


def _route_osrm(from_lat, from_lon, to_lat, to_lon) -> Route:
    url = osrm_route_url(from_lat, from_lon, to_lat, to_lon)
    resp = requests.get(url, params={"overview": "full", "geometries": "geojson"}, timeout=ROUTING_TIMEOUT)
    if not resp.ok:
        raise RoutingError(f"OSRM error: {resp.status_code}")

    data = resp.json()
    if data.get("code") != "Ok" or not data.get("routes"):
        raise RoutingError("No route found")

    route = data["routes"][0]
    coordinates = route.get("geometry", {}).get("coordinates", [])
    return Route(
        distance_km=round(route["distance"] / 1000, 2),
        duration_min=math.ceil(route["duration"] / 60),
        geometry=[(c[1], c[0]) for c in coordinates],
        source="osrm",
    )


def get_route(from_lat: float, from_lon: float, to_lat: float, to_lon: float) -> Route:
    """Best available route; never raises for collaborator failures."""
    if OPENROUTE_API_KEY:
        try:
            return _route_openroute(from_lat, from_lon, to_lat, to_lon)
        except (requests.RequestException, RoutingError, KeyError, ValueError) as e:
            logger.warning(f"OpenRouteService failed, falling back to OSRM: {e}")

    try:
        return _route_osrm(from_lat, from_lon, to_lat, to_lon)
    except (requests.RequestException, RoutingError, KeyError, ValueError) as e:
        logger.warning(f"OSRM failed, using straight-line distance: {e}")
        distance = haversine_distance(from_lat, from_lon, to_lat, to_lon)
        return Route(
            distance_km=distance,
            duration_min=math.ceil(distance * 3),
            geometry=[(from_lat, from_lon), (to_lat, to_lon)],
            success=False,
            source="haversine",
            error=str(e),
        )


def route_from_shop(to_lat: float, to_lon: float) -> Route:
    return get_route(SHOP_LAT, SHOP_LON, to_lat, to_lon)
