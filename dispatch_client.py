"""Async client for the remote dispatch service.

This is the only place that knows what the service's responses look like.
Payloads may arrive bare or wrapped under ``data`` and identifiers may be
spelled ``id``, ``driverId``/``rideId`` or ``_id``; every public method
returns the canonical records from ``dispatch_models``.
"""
from __future__ import annotations

import os
from typing import Any, Dict, Iterable, List, Mapping, Optional

import httpx

from dispatch_errors import NetworkFailure, RemoteRejected
from dispatch_models import (
    Ack,
    Availability,
    Driver,
    DriverRide,
    GeoPoint,
    PingOffer,
    Ride,
    RideStatus,
)


DISPATCH_HTTP_TIMEOUT_S = float(os.getenv("DISPATCH_HTTP_TIMEOUT_S", "10"))

DRIVER_ID_KEYS = ("id", "driverId", "_id")
RIDE_ID_KEYS = ("id", "rideId", "_id")
REMAINING_KEYS = ("remainingSeconds", "remaining_seconds", "secondsRemaining", "remainingTime")

# Status spellings seen on the wire that are not enum values.
STATUS_ALIASES: Dict[str, RideStatus] = {
    "PENDING": RideStatus.REQUESTED,
    "PINGED": RideStatus.DRIVER_PINGED,
    "CANCELED": RideStatus.CANCELLED,
}
ONLINE_STATUS_VALUES = {"ONLINE", "ACTIVE", "AVAILABLE"}


# ---------------------------
# Normalization helpers
# ---------------------------

def _unwrap(payload: Any) -> Any:
    """Strip the optional ``{"data": ...}`` envelope."""
    if isinstance(payload, dict) and "data" in payload and isinstance(payload["data"], (dict, list)):
        return payload["data"]
    return payload


def _first(record: Mapping[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        value = record.get(key)
        if value is not None and value != "":
            return value
    return None


def _resolve_id(record: Mapping[str, Any], keys: Iterable[str]) -> Optional[str]:
    value = _first(record, keys)
    if value is None:
        return None
    return str(value)


def _coerce_float(value: Any) -> Optional[float]:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    return result


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes"}
    return value is True or value == 1


def parse_point(value: Any) -> Optional[GeoPoint]:
    if not isinstance(value, Mapping):
        return None
    lat = _coerce_float(_first(value, ("lat", "latitude")))
    lng = _coerce_float(_first(value, ("lng", "lon", "longitude")))
    if lat is None or lng is None:
        return None
    return GeoPoint(lat=lat, lng=lng)


def _flat_point(record: Mapping[str, Any], prefix: str) -> Optional[GeoPoint]:
    lat = _coerce_float(record.get(f"{prefix}Lat"))
    lng = _coerce_float(_first(record, (f"{prefix}Lng", f"{prefix}Lon")))
    if lat is None or lng is None:
        return None
    return GeoPoint(lat=lat, lng=lng)


def parse_status(value: Any) -> Optional[RideStatus]:
    if not isinstance(value, str):
        return None
    key = value.strip().upper()
    if key in STATUS_ALIASES:
        return STATUS_ALIASES[key]
    try:
        return RideStatus(key)
    except ValueError:
        return None


def parse_availability(record: Mapping[str, Any]) -> Availability:
    raw = _first(record, ("availability", "status"))
    if isinstance(raw, str):
        return Availability.ONLINE if raw.strip().upper() in ONLINE_STATUS_VALUES else Availability.OFFLINE
    for key in ("online", "isOnline", "available"):
        if _coerce_bool(record.get(key)):
            return Availability.ONLINE
    return Availability.OFFLINE


def normalize_driver(record: Any) -> Optional[Driver]:
    record = _unwrap(record)
    if not isinstance(record, Mapping):
        return None
    driver_id = _resolve_id(record, DRIVER_ID_KEYS)
    if driver_id is None:
        return None
    location = parse_point(record.get("location")) or parse_point(record)
    name = record.get("name")
    return Driver(
        id=driver_id,
        location=location,
        availability=parse_availability(record),
        name=str(name) if name else None,
    )


def normalize_ride(record: Any) -> Optional[Ride]:
    record = _unwrap(record)
    if not isinstance(record, Mapping):
        return None
    ride_id = _resolve_id(record, RIDE_ID_KEYS)
    status = parse_status(_first(record, ("status", "rideStatus")))
    if ride_id is None or status is None:
        return None
    pickup = parse_point(record.get("pickup")) or _flat_point(record, "pickup")
    drop = (
        parse_point(record.get("drop"))
        or parse_point(record.get("destination"))
        or _flat_point(record, "drop")
    )
    assigned = _first(record, ("assignedDriverId", "assigned_driver_id", "driverId"))
    return Ride(
        id=ride_id,
        pickup=pickup,
        drop=drop,
        status=status,
        assigned_driver_id=str(assigned) if assigned is not None else None,
    )


def normalize_driver_ride(record: Any, driver_id: str) -> Optional[DriverRide]:
    record = _unwrap(record)
    if not isinstance(record, Mapping):
        return None
    ride_id = _resolve_id(record, ("rideId", "id", "_id"))
    if ride_id is None:
        return None
    listed_driver = _first(record, ("driverId", "assignedDriverId"))
    return DriverRide(
        ride_id=ride_id,
        driver_id=str(listed_driver) if listed_driver is not None else driver_id,
        ride_status=parse_status(_first(record, ("rideStatus", "status"))),
        pinged=_coerce_bool(record.get("pinged")),
        currently_assigned=_coerce_bool(record.get("currentlyAssigned")),
        expired=_coerce_bool(record.get("expired")),
        pickup=parse_point(record.get("pickup")) or _flat_point(record, "pickup"),
        drop=(
            parse_point(record.get("drop"))
            or parse_point(record.get("destination"))
            or _flat_point(record, "drop")
        ),
    )


def normalize_ping_status(record: Any, ride_id: str, driver_id: str) -> PingOffer:
    record = _unwrap(record)
    if not isinstance(record, Mapping):
        raise NetworkFailure(f"ping status for ride {ride_id} is not an object")
    remaining_raw = _coerce_float(_first(record, REMAINING_KEYS))
    if remaining_raw is None:
        if not _coerce_bool(record.get("expired")):
            raise NetworkFailure(f"ping status for ride {ride_id} has no remaining time")
        remaining_raw = 0.0
    remaining = max(0, int(remaining_raw))
    if _coerce_bool(record.get("expired")):
        remaining = 0
    return PingOffer(
        ride_id=ride_id,
        driver_id=driver_id,
        remaining_seconds=remaining,
        ride_status=parse_status(_first(record, ("rideStatus", "status"))),
        pinged=_coerce_bool(record.get("pinged")),
        currently_assigned=_coerce_bool(record.get("currentlyAssigned")),
    )


def normalize_ack(payload: Any) -> Ack:
    payload = _unwrap(payload)
    if not isinstance(payload, Mapping):
        return Ack()
    message = payload.get("message")
    return Ack(
        status=parse_status(_first(payload, ("status", "rideStatus"))),
        message=str(message) if message else None,
    )


def _as_list(payload: Any) -> List[Any]:
    payload = _unwrap(payload)
    if isinstance(payload, list):
        return payload
    return []


def _error_message(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        text = response.text.strip()
        return text[:200] or None
    if isinstance(body, dict):
        for key in ("message", "error", "detail"):
            value = body.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None


class DispatchGateway:
    """Typed adapter over the dispatch service's HTTP API."""

    def __init__(
        self,
        base_url: str,
        timeout: float = DISPATCH_HTTP_TIMEOUT_S,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_env(cls) -> "DispatchGateway":
        """Build a gateway from ``DISPATCH_API_BASE``.

        Example: ``DISPATCH_API_BASE=http://localhost:3000/api``
        """
        base_url = (os.getenv("DISPATCH_API_BASE") or "").strip()
        if not base_url:
            raise RuntimeError("Missing required environment variables: DISPATCH_API_BASE")
        return cls(base_url=base_url)

    @property
    def base_url(self) -> str:
        return self._base_url

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
                headers={"Accept": "application/json"},
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        client = await self._ensure_client()
        try:
            response = await client.request(method, path, json=payload)
        except httpx.HTTPError as exc:
            raise NetworkFailure(f"{method} {path} failed: {exc}") from exc

        if response.status_code >= 400:
            remote_message = _error_message(response)
            summary = f"{method} {path} returned {response.status_code}"
            if response.status_code >= 500:
                raise NetworkFailure(summary, remote_message)
            raise RemoteRejected(summary, remote_message, status_code=response.status_code)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise NetworkFailure(f"{method} {path} returned an unreadable body") from exc

    # ---------------------------
    # Drivers
    # ---------------------------
    async def list_drivers(self) -> List[Driver]:
        payload = await self._request("GET", "/drivers")
        drivers: List[Driver] = []
        for record in _as_list(payload):
            driver = normalize_driver(record)
            if driver is None:
                print(f"[dispatch] skipping driver record without id: {record!r}")
                continue
            drivers.append(driver)
        return drivers

    async def register_driver(self, location: GeoPoint, driver_id: Optional[str] = None) -> Driver:
        body: Dict[str, Any] = {"location": location.to_dict()}
        if driver_id:
            body["id"] = driver_id
        payload = await self._request("POST", "/drivers", body)
        driver = normalize_driver(payload)
        if driver is not None:
            return driver
        if driver_id:
            # Service acknowledged without echoing the record.
            return Driver(id=driver_id, location=location, availability=Availability.OFFLINE)
        raise NetworkFailure("driver registration returned no driver id")

    async def set_driver_availability(self, driver_id: str, availability: Availability) -> Ack:
        suffix = "online" if availability is Availability.ONLINE else "offline"
        payload = await self._request("PATCH", f"/drivers/{driver_id}/{suffix}")
        return normalize_ack(payload)

    async def list_rides_for_driver(self, driver_id: str) -> List[DriverRide]:
        payload = await self._request("GET", f"/drivers/{driver_id}/rides")
        entries: List[DriverRide] = []
        for record in _as_list(payload):
            entry = normalize_driver_ride(record, driver_id)
            if entry is None:
                print(f"[dispatch] skipping driver ride record without id: {record!r}")
                continue
            entries.append(entry)
        return entries

    # ---------------------------
    # Rides
    # ---------------------------
    async def create_ride(self, pickup: GeoPoint, drop: Optional[GeoPoint] = None) -> Ride:
        body: Dict[str, Any] = {"pickup": pickup.to_dict()}
        if drop is not None:
            body["drop"] = drop.to_dict()
        payload = await self._request("POST", "/rides", body)
        ride = normalize_ride(payload)
        if ride is None:
            raise NetworkFailure("ride creation returned no usable ride record")
        return ride

    async def list_rides(self) -> List[Ride]:
        payload = await self._request("GET", "/rides")
        rides: List[Ride] = []
        for record in _as_list(payload):
            ride = normalize_ride(record)
            if ride is None:
                print(f"[dispatch] skipping ride record without id or known status: {record!r}")
                continue
            rides.append(ride)
        return rides

    async def accept_ride(self, ride_id: str, driver_id: str) -> Ack:
        payload = await self._request("POST", f"/rides/{ride_id}/accept", {"driverId": driver_id})
        return normalize_ack(payload)

    async def cancel_ride(self, ride_id: str, driver_id: Optional[str] = None) -> Ack:
        path = f"/rides/{ride_id}/cancel"
        if driver_id:
            path = f"{path}/driver/{driver_id}"
        payload = await self._request("POST", path)
        return normalize_ack(payload)

    async def get_ping_status(self, ride_id: str, driver_id: str) -> PingOffer:
        payload = await self._request("GET", f"/rides/{ride_id}/drivers/{driver_id}/ping-status")
        return normalize_ping_status(payload, ride_id, driver_id)
