"""Ride negotiation state machine and the ride collection built on it.

Local transitions (accept, reject, cancel, expire) are only legal from the
pending states. Statuses reported by the dispatch service are merged with
``observe`` and always win, whatever the local state is.
"""
from __future__ import annotations

from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from dispatch_errors import InvalidTransition
from dispatch_models import (
    Ack,
    PENDING_STATUSES,
    PingOffer,
    Ride,
    RideStatus,
)


# target status -> statuses it may be reached from by a local action
LOCAL_TRANSITIONS: Dict[RideStatus, frozenset] = {
    RideStatus.ACCEPTED: PENDING_STATUSES,
    RideStatus.CANCELLED: PENDING_STATUSES,
    RideStatus.EXPIRED: PENDING_STATUSES,
}

# Provisional labels shown while an action waits on the server.
ACCEPTING = "ACCEPTING"
REJECTING = "REJECTING"
CANCELLING = "CANCELLING"

_KEEP = object()


class RideLifecycle:
    """Canonical status of one ride plus any provisional display state."""

    def __init__(self, ride: Ride) -> None:
        self._ride = ride
        self.provisional: Optional[str] = None

    def __repr__(self) -> str:
        return f"RideLifecycle({self._ride.id!r}, {self._ride.status.value}, provisional={self.provisional!r})"

    @property
    def ride(self) -> Ride:
        return self._ride

    @property
    def ride_id(self) -> str:
        return self._ride.id

    @property
    def status(self) -> RideStatus:
        return self._ride.status

    @property
    def display_status(self) -> str:
        return self.provisional or self._ride.status.value

    # ---------------------------
    # Authoritative merges
    # ---------------------------
    def observe(self, status: Optional[RideStatus], assigned_driver_id: object = _KEEP) -> bool:
        """Overwrite local state with a value reported by the service.

        Returns True if the canonical status changed.
        """
        if status is None:
            return False
        self.provisional = None
        changed = status is not self._ride.status
        updates = {"status": status}
        if assigned_driver_id is not _KEEP:
            updates["assigned_driver_id"] = assigned_driver_id
        self._ride = replace(self._ride, **updates)
        return changed

    def merge(self, ride: Ride) -> bool:
        """Take a full ride record from a list refresh."""
        if ride.id != self._ride.id:
            raise ValueError(f"cannot merge ride {ride.id} into {self._ride.id}")
        self._ride = replace(
            self._ride,
            pickup=ride.pickup or self._ride.pickup,
            drop=ride.drop or self._ride.drop,
        )
        return self.observe(ride.status, assigned_driver_id=ride.assigned_driver_id)

    def apply_ack(self, ack: Ack, predicted: RideStatus, assigned_driver_id: object = _KEEP) -> bool:
        """Record a successful action; a status in the ack beats the prediction."""
        return self.observe(ack.status or predicted, assigned_driver_id=assigned_driver_id)

    # ---------------------------
    # Local actions
    # ---------------------------
    def _check(self, target: RideStatus, action: str) -> None:
        if self._ride.status not in LOCAL_TRANSITIONS.get(target, frozenset()):
            raise InvalidTransition(f"cannot {action} ride {self._ride.id}: status is {self._ride.status.value}")

    @staticmethod
    def _check_offer(offer: Optional[PingOffer], action: str, ride_id: str) -> None:
        if offer is not None and offer.is_exhausted:
            raise InvalidTransition(f"cannot {action} ride {ride_id}: the offer has expired")

    def check_accept(self, offer: Optional[PingOffer]) -> None:
        self._check(RideStatus.ACCEPTED, "accept")
        self._check_offer(offer, "accept", self._ride.id)

    def check_reject(self, offer: Optional[PingOffer]) -> None:
        self._check(RideStatus.CANCELLED, "reject")
        self._check_offer(offer, "reject", self._ride.id)

    def check_cancel(self) -> None:
        self._check(RideStatus.CANCELLED, "cancel")

    def can_accept(self, offer: Optional[PingOffer]) -> bool:
        try:
            self.check_accept(offer)
        except InvalidTransition:
            return False
        return True

    def can_reject(self, offer: Optional[PingOffer]) -> bool:
        try:
            self.check_reject(offer)
        except InvalidTransition:
            return False
        return True

    def begin(self, label: str) -> None:
        self.provisional = label

    def abandon(self) -> None:
        """Drop provisional state after a failed action."""
        self.provisional = None

    def expire(self) -> bool:
        """Mark the ride EXPIRED unless a non-pending status is already recorded."""
        if self._ride.status not in LOCAL_TRANSITIONS[RideStatus.EXPIRED]:
            return False
        self.provisional = None
        self._ride = replace(self._ride, status=RideStatus.EXPIRED)
        return True


class RideBook:
    """All rides known to the console, each behind its own lifecycle."""

    def __init__(self) -> None:
        self._lifecycles: Dict[str, RideLifecycle] = {}

    def __len__(self) -> int:
        return len(self._lifecycles)

    def __contains__(self, ride_id: object) -> bool:
        return ride_id in self._lifecycles

    def get(self, ride_id: str) -> Optional[RideLifecycle]:
        return self._lifecycles.get(ride_id)

    def require(self, ride_id: str) -> RideLifecycle:
        lifecycle = self._lifecycles.get(ride_id)
        if lifecycle is None:
            raise InvalidTransition(f"ride {ride_id} is not known to the console")
        return lifecycle

    def merge(self, ride: Ride) -> RideLifecycle:
        lifecycle = self._lifecycles.get(ride.id)
        if lifecycle is None:
            lifecycle = RideLifecycle(ride)
            self._lifecycles[ride.id] = lifecycle
        else:
            lifecycle.merge(ride)
        return lifecycle

    def merge_all(self, rides: Iterable[Ride]) -> int:
        """Merge a list refresh; returns how many statuses changed."""
        changed = 0
        for ride in rides:
            existing = self._lifecycles.get(ride.id)
            before = existing.status if existing is not None else None
            lifecycle = self.merge(ride)
            if lifecycle.status is not before:
                changed += 1
        return changed

    def observe(self, ride_id: str, status: Optional[RideStatus]) -> bool:
        lifecycle = self._lifecycles.get(ride_id)
        if lifecycle is None:
            return False
        return lifecycle.observe(status)

    def rides(self) -> List[Ride]:
        """Snapshots in the order rides were first seen."""
        return [lifecycle.ride for lifecycle in self._lifecycles.values()]
