"""Driver-scoped ride views and dashboard figures.

The two driver views answer different questions and come from different
sources, so they are kept apart:

* ``pinged_view`` - rides in the console's ride collection that are assigned
  to the driver and still waiting on an answer (REQUESTED or DRIVER_PINGED).
  An accepted ride leaves this view and shows up in the managed one.
* ``managed_view`` - entries of the service's per-driver listing flagged
  ``currentlyAssigned``. That flag is reported by the service and is not the
  same thing as ``assigned_driver_id`` matching, so it is never re-derived.
"""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from dispatch_models import Availability, Driver, DriverRide, GeoPoint, Ride, RideStatus


PINGED_VIEW_STATUSES = frozenset({RideStatus.REQUESTED, RideStatus.DRIVER_PINGED})


@dataclass(frozen=True)
class DriverSession:
    """The driver whose rides a console view is scoped to."""
    driver_id: str

    def __post_init__(self) -> None:
        if not self.driver_id or not str(self.driver_id).strip():
            raise ValueError("driver_id is required for a driver session")


def in_pinged_view(ride: Ride, driver_id: str) -> bool:
    return ride.assigned_driver_id == driver_id and ride.status in PINGED_VIEW_STATUSES


def pinged_view(rides: Iterable[Ride], session: DriverSession) -> List[Ride]:
    return [ride for ride in rides if in_pinged_view(ride, session.driver_id)]


def managed_view(listing: Iterable[DriverRide]) -> List[DriverRide]:
    """``listing`` must be the service's listing for a single driver."""
    return [entry for entry in listing if entry.currently_assigned is True]


def most_recent_first(rides: Iterable[Ride]) -> List[Ride]:
    """The service lists rides oldest first."""
    return list(reversed(list(rides)))


def format_point(point: Optional[GeoPoint]) -> str:
    if point is None or (not point.lat and not point.lng):
        return "—"
    return f"{point.lat:.4f}, {point.lng:.4f}"


def dashboard_stats(drivers: Iterable[Driver], rides: Iterable[Ride]) -> Dict[str, Any]:
    drivers = list(drivers)
    rides = list(rides)
    by_status = Counter(ride.status for ride in rides)
    return {
        "drivers_total": len(drivers),
        "drivers_online": sum(1 for d in drivers if d.availability is Availability.ONLINE),
        "rides_total": len(rides),
        "rides_by_status": {status.value: by_status.get(status, 0) for status in RideStatus},
    }
