# maps_utils.py
import logging
import math
from urllib.parse import urlencode

import requests

from config import get_setting

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0


def get_api_key():
    return get_setting("google_api_key")


def distance_km(origin, destination):
    """Great-circle distance between two (lat, lng) pairs."""
    lat1, lng1 = map(math.radians, origin)
    lat2, lng2 = map(math.radians, destination)
    dlat = lat2 - lat1
    dlng = lng2 - lng1
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    return round(2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a)), 2)


def geocode(address):
    """Resolve a pickup address to (lat, lng), or None without a key or a match."""
    key = get_api_key()
    if not key or not address:
        return None
    try:
        r = requests.get(
            "https://maps.googleapis.com/maps/api/geocode/json",
            params={"address": address, "key": key},
            timeout=10,
        )
    except requests.RequestException as e:
        logger.warning("geocode failed for %r: %s", address, e)
        return None
    if r.ok:
        data = r.json()
        if data.get("results"):
            loc = data["results"][0]["geometry"]["location"]
            return loc["lat"], loc["lng"]
    return None


def static_map_url(lat, lng, width=400, height=180, zoom=15):
    """Static map image centred on a pickup point, or None without a key."""
    key = get_api_key()
    if not key:
        return None
    query = urlencode({
        "center": f"{lat},{lng}",
        "zoom": zoom,
        "size": f"{width}x{height}",
        "markers": f"color:red|{lat},{lng}",
        "key": key,
    })
    return f"https://maps.googleapis.com/maps/api/staticmap?{query}"


def directions_url(origin, destination):
    query = urlencode({
        "api": 1,
        "origin": "%s,%s" % origin,
        "destination": "%s,%s" % destination,
        "travelmode": "driving",
    }, safe=",")
    return f"https://www.google.com/maps/dir/?{query}"
