"""
Reverse geocoding (lat/lon -> short address + point-of-interest name) via Nominatim.

Nominatim's usage policy asks for a descriptive User-Agent and at most one request
per second; the store's migration pass paces itself accordingly.
"""
import asyncio
from dataclasses import dataclass
from typing import Any, Optional

import aiohttp

from roadlog.config import (
    GEOCODE_TIMEOUT_SECONDS,
    NOMINATIM_URL,
    NOMINATIM_USER_AGENT,
)
from roadlog.logging_config import get_logger

logger = get_logger("geocode", "geocode.log")

# Nominatim types that describe an address rather than a named place
GENERIC_TYPES = {
    "road", "street", "residential", "suburb", "neighbourhood",
    "city", "town", "village", "hamlet", "county", "state",
    "postcode", "house",
}


@dataclass(frozen=True)
class GeocodeResult:
    address: Optional[str] = None
    poi_name: Optional[str] = None
    poi_type: Optional[str] = None


def short_address(parts: dict) -> Optional[str]:
    """
    "Main St, Springfield, OR" from an address-details mapping.

    Accepts Nominatim keys (road/city/town/village/state) as well as the
    street/city/state keys device placemarks use.
    """
    street = parts.get("street") or parts.get("road")
    if street and parts.get("house_number"):
        street = f"{parts['house_number']} {street}"
    city = parts.get("city") or parts.get("town") or parts.get("village")
    state = parts.get("state")
    out = [str(p) for p in (street, city, state) if p]
    return ", ".join(out) if out else None


def parse_nominatim(data: dict[str, Any]) -> GeocodeResult:
    details = data.get("address")
    address = short_address(details) if isinstance(details, dict) else None
    if not address:
        address = data.get("display_name") or None

    poi_name = None
    poi_type = None
    name = data.get("name")
    kind = data.get("type")
    if name and kind and kind not in GENERIC_TYPES:
        poi_name = str(name)
        poi_type = str(kind)
    return GeocodeResult(address=address, poi_name=poi_name, poi_type=poi_type)


class NominatimReverseGeocoder:
    """
    Reverse geocoder using OpenStreetMap Nominatim.

    lookup() is best-effort: timeouts, HTTP errors and bad payloads all yield None.
    """

    def __init__(self, base_url: str = NOMINATIM_URL, user_agent: str = NOMINATIM_USER_AGENT,
                 timeout_seconds: float = GEOCODE_TIMEOUT_SECONDS, session: Optional[aiohttp.ClientSession] = None):
        self._base_url = base_url
        self._user_agent = user_agent
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def lookup(self, lat: float, lon: float) -> Optional[GeocodeResult]:
        params = {
            "format": "jsonv2",
            "lat": f"{lat:.7f}",
            "lon": f"{lon:.7f}",
            "zoom": "18",
            "addressdetails": "1",
        }
        headers = {"User-Agent": self._user_agent, "Accept": "application/json"}
        try:
            session = await self._get_session()
            async with session.get(self._base_url, params=params, headers=headers) as resp:
                if resp.status != 200:
                    logger.warning(f"[geocode] Nominatim returned {resp.status} for {lat},{lon}")
                    return None
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning(f"[geocode] Lookup failed for {lat},{lon}: {e!r}")
            return None

        if not isinstance(data, dict) or "error" in data:
            return None
        result = parse_nominatim(data)
        if result.poi_name:
            logger.info(f"[geocode] POI lookup: {result.poi_name} ({result.poi_type})")
        return result
