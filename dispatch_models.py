"""Canonical records shared by the dispatch console core.

Everything above the gateway works with these types only; wire-format
variants are resolved in ``dispatch_client`` before a record is built.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional
import time


class RideStatus(str, Enum):
    REQUESTED = "REQUESTED"
    DRIVER_PINGED = "DRIVER_PINGED"
    ACCEPTED = "ACCEPTED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    COMPLETED = "COMPLETED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_pending(self) -> bool:
        """True while the ride is still being offered to drivers."""
        return self in PENDING_STATUSES


TERMINAL_STATUSES = frozenset({RideStatus.CANCELLED, RideStatus.EXPIRED, RideStatus.COMPLETED})
PENDING_STATUSES = frozenset({RideStatus.REQUESTED, RideStatus.DRIVER_PINGED})
# An offer stops being reconciled once the ride leaves the pending states.
OFFER_CLOSED_STATUSES = TERMINAL_STATUSES | {RideStatus.ACCEPTED}


class Availability(str, Enum):
    ONLINE = "ONLINE"
    OFFLINE = "OFFLINE"


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lng: float

    def to_dict(self) -> Dict[str, float]:
        return {"lat": self.lat, "lng": self.lng}


@dataclass(frozen=True)
class Driver:
    id: str
    location: Optional[GeoPoint]
    availability: Availability
    name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "location": self.location.to_dict() if self.location else None,
            "availability": self.availability.value,
        }


@dataclass(frozen=True)
class Ride:
    id: str
    pickup: Optional[GeoPoint]
    drop: Optional[GeoPoint]
    status: RideStatus
    assigned_driver_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pickup": self.pickup.to_dict() if self.pickup else None,
            "drop": self.drop.to_dict() if self.drop else None,
            "status": self.status.value,
            "assigned_driver_id": self.assigned_driver_id,
        }


@dataclass(frozen=True)
class DriverRide:
    """One entry of the remote per-driver ride listing."""
    ride_id: str
    driver_id: str
    ride_status: Optional[RideStatus]
    pinged: bool = False
    currently_assigned: bool = False
    expired: bool = False
    pickup: Optional[GeoPoint] = None
    drop: Optional[GeoPoint] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ride_id": self.ride_id,
            "driver_id": self.driver_id,
            "ride_status": self.ride_status.value if self.ride_status else None,
            "pinged": self.pinged,
            "currently_assigned": self.currently_assigned,
            "expired": self.expired,
            "pickup": self.pickup.to_dict() if self.pickup else None,
            "drop": self.drop.to_dict() if self.drop else None,
        }


@dataclass(frozen=True)
class PingOffer:
    """Snapshot of the remote ping status for one (ride, driver) pair."""
    ride_id: str
    driver_id: str
    remaining_seconds: int
    ride_status: Optional[RideStatus]
    pinged: bool
    currently_assigned: bool
    fetched_at: float = field(default_factory=time.monotonic)  # local monotonic clock

    @property
    def is_exhausted(self) -> bool:
        return self.remaining_seconds <= 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ride_id": self.ride_id,
            "driver_id": self.driver_id,
            "remaining_seconds": self.remaining_seconds,
            "ride_status": self.ride_status.value if self.ride_status else None,
            "pinged": self.pinged,
            "currently_assigned": self.currently_assigned,
        }


@dataclass(frozen=True)
class Ack:
    """Acknowledgement of a remote mutation."""
    status: Optional[RideStatus] = None
    message: Optional[str] = None
