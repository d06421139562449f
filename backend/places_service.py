"""
Google Places lookup for Glimpse

GPS coordinates -> nearby places -> a ContextType to settle the session on.
"""

import logging
import os
from typing import List, Optional

import requests
from dotenv import load_dotenv

from aac_models import ContextType, Place
from tile_catalog import PLACE_TYPE_TO_CONTEXT

load_dotenv()

logger = logging.getLogger(__name__)

PLACES_NEARBY_URL = "https://places.googleapis.com/v1/places:searchNearby"
FIELD_MASK = "places.displayName,places.types,places.formattedAddress"
INCLUDED_TYPES = ["restaurant", "playground", "school", "hospital", "store"]


class PlacesError(Exception):
    """Places lookup failed or returned something unusable."""


class PlacesClient:
    """Thin client for places:searchNearby. Blocking; run it in a worker thread."""

    def __init__(self, api_key: Optional[str] = None, session=None, timeout: float = 5.0):
        self.api_key = api_key or os.environ.get("GOOGLE_PLACES_API_KEY", "")
        self.session = session or requests.Session()
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def search_nearby(self, lat: float, lng: float, radius_m: float = 100.0, max_results: int = 3) -> List[Place]:
        """
        Nearby places, closest first.

        Raises:
            PlacesError: missing key, bad coordinates, HTTP or payload errors
        """
        if not self.api_key:
            raise PlacesError("GOOGLE_PLACES_API_KEY not found in environment")
        if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
            raise PlacesError(f"Invalid coordinates: {lat}, {lng}")

        body = {
            "includedTypes": INCLUDED_TYPES,
            "maxResultCount": max_results,
            "locationRestriction": {
                "circle": {
                    "center": {"latitude": lat, "longitude": lng},
                    "radius": radius_m,
                }
            },
        }
        headers = {
            "Content-Type": "application/json",
            "X-Goog-Api-Key": self.api_key,
            "X-Goog-FieldMask": FIELD_MASK,
        }

        try:
            response = self.session.post(PLACES_NEARBY_URL, json=body, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as e:
            raise PlacesError(f"Places request failed: {e}") from e
        except ValueError as e:
            raise PlacesError(f"Places returned invalid JSON: {e}") from e

        places = []
        for item in data.get("places") or []:
            if not isinstance(item, dict):
                continue
            display_name = item.get("displayName") or {}
            name = display_name.get("text") if isinstance(display_name, dict) else display_name
            if not name:
                continue
            places.append(Place(
                name=str(name),
                types=[str(t) for t in item.get("types") or []],
                address=item.get("formattedAddress"),
            ))

        logger.info(f"📍 {len(places)} places near ({lat:.4f}, {lng:.4f})")
        return places


def context_for_place(place: Place) -> Optional[ContextType]:
    """First place type with a known context, else None."""
    for place_type in place.types:
        context = PLACE_TYPE_TO_CONTEXT.get(place_type)
        if context is not None:
            return context
    return None


def nearest_place(places: List[Place]) -> Optional[Place]:
    """Closest place with a mappable type, else the closest place."""
    if not places:
        return None
    for place in places:
        if context_for_place(place) is not None:
            return place
    return places[0]
