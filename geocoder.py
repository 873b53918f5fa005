"""Best-effort reverse geocoding for ride addresses (Nominatim)."""
from __future__ import annotations

import os
from typing import Dict, Optional, Tuple

import httpx

from dispatch_models import GeoPoint
from ride_views import format_point


NOMINATIM_URL = os.getenv("NOMINATIM_URL", "https://nominatim.openstreetmap.org/reverse")
NOMINATIM_USER_AGENT = os.getenv("NOMINATIM_USER_AGENT", "dispatch-console/0.1")
GEOCODER_TIMEOUT_S = float(os.getenv("GEOCODER_TIMEOUT_S", "5"))


class ReverseGeocoder:
    """Turns coordinates into display addresses.

    Any failure falls back to the formatted coordinate. Only successful
    lookups are cached, so a failed point is tried again next time.
    """

    def __init__(
        self,
        url: str = NOMINATIM_URL,
        user_agent: str = NOMINATIM_USER_AGENT,
        timeout: float = GEOCODER_TIMEOUT_S,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._url = url
        self._user_agent = user_agent
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._cache: Dict[Tuple[float, float], str] = {}

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._transport,
                headers={"User-Agent": self._user_agent},
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def _key(point: GeoPoint) -> Tuple[float, float]:
        return (round(point.lat, 5), round(point.lng, 5))

    def cached(self, point: Optional[GeoPoint]) -> Optional[str]:
        if point is None:
            return None
        return self._cache.get(self._key(point))

    async def reverse(self, point: Optional[GeoPoint]) -> str:
        if point is None:
            return format_point(None)
        key = self._key(point)
        if key in self._cache:
            return self._cache[key]
        try:
            client = await self._ensure_client()
            response = await client.get(
                self._url,
                params={"format": "jsonv2", "lat": point.lat, "lon": point.lng},
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            print(f"[geocoder] reverse lookup failed for {format_point(point)}: {exc}")
            return format_point(point)
        name = data.get("display_name") if isinstance(data, dict) else None
        if not name:
            return format_point(point)
        self._cache[key] = name
        return name
