"""Driver availability with optimistic updates and rollback.

Each driver's availability is either ``Confirmed`` (last value the service
agreed to) or ``Pending`` (an optimistic value waiting on the service, plus
the value to fall back to). A pending mutation settles exactly one way:
success keeps the optimistic value, failure restores the rollback value.

Periodic re-syncs against ``list_drivers`` correct drift, but never for a
driver with a mutation in flight, and never with data fetched before the
latest mutation for that driver started.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Union

from dispatch_client import DispatchGateway
from dispatch_errors import AlreadyInFlight, DispatchError
from dispatch_models import Availability, Driver
from polling import PollSubscription


DRIVER_RESYNC_S = float(os.getenv("DRIVER_RESYNC_S", "10"))


@dataclass(frozen=True)
class Confirmed:
    value: Availability

    @property
    def displayed(self) -> Availability:
        return self.value


@dataclass(frozen=True)
class Pending:
    optimistic: Availability
    rollback: Optional[Availability]

    @property
    def displayed(self) -> Availability:
        return self.optimistic

    def settle(self, ok: bool) -> Optional[Confirmed]:
        if ok:
            return Confirmed(self.optimistic)
        if self.rollback is None:
            return None
        return Confirmed(self.rollback)


AvailabilityField = Union[Confirmed, Pending]


class AvailabilityController:
    def __init__(self, gateway: DispatchGateway, resync_interval_s: float = DRIVER_RESYNC_S) -> None:
        self._gateway = gateway
        self._fields: Dict[str, AvailabilityField] = {}
        self._drivers: Dict[str, Driver] = {}
        # Bumped whenever a mutation starts so a re-sync can tell its data is older.
        self._generation: Dict[str, int] = {}
        self._resync = PollSubscription("availability resync", self.resync_once, resync_interval_s)

    # ---------------------------
    # Reads
    # ---------------------------
    def displayed(self, driver_id: str) -> Optional[Availability]:
        field = self._fields.get(driver_id)
        return field.displayed if field is not None else None

    def field(self, driver_id: str) -> Optional[AvailabilityField]:
        return self._fields.get(driver_id)

    def in_flight(self, driver_id: str) -> bool:
        return isinstance(self._fields.get(driver_id), Pending)

    def drivers(self) -> List[Driver]:
        """Known drivers carrying their displayed availability."""
        result: List[Driver] = []
        for driver_id, driver in self._drivers.items():
            displayed = self.displayed(driver_id) or driver.availability
            if displayed is not driver.availability:
                driver = Driver(id=driver.id, location=driver.location, availability=displayed, name=driver.name)
            result.append(driver)
        return result

    # ---------------------------
    # Authoritative values
    # ---------------------------
    def track(self, driver: Driver) -> None:
        """Record a driver the service just returned (registration or listing)."""
        self._drivers[driver.id] = driver
        if not self.in_flight(driver.id):
            self._fields[driver.id] = Confirmed(driver.availability)

    def apply_authoritative(self, drivers: Iterable[Driver], generations: Optional[Dict[str, int]] = None) -> List[str]:
        """Merge a driver listing; returns ids whose values were suppressed."""
        suppressed: List[str] = []
        for driver in drivers:
            stale = generations is not None and generations.get(driver.id, 0) != self._generation.get(driver.id, 0)
            if self.in_flight(driver.id) or stale:
                # Keep the location fresh but leave availability to the mutation.
                previous = self._drivers.get(driver.id)
                if previous is not None:
                    self._drivers[driver.id] = Driver(
                        id=driver.id,
                        location=driver.location,
                        availability=previous.availability,
                        name=driver.name,
                    )
                suppressed.append(driver.id)
                continue
            self._drivers[driver.id] = driver
            self._fields[driver.id] = Confirmed(driver.availability)
        return suppressed

    async def resync_once(self) -> None:
        generations = dict(self._generation)
        try:
            drivers = await self._gateway.list_drivers()
        except DispatchError as exc:
            print(f"[availability] resync failed: {exc}")
            return
        if not self._resync.alive:
            return
        suppressed = self.apply_authoritative(drivers, generations)
        if suppressed:
            print(f"[availability] resync deferred for drivers with pending changes: {', '.join(suppressed)}")

    def start_resync(self) -> None:
        self._resync.start()

    def stop_resync(self) -> bool:
        return self._resync.cancel()

    async def wait_closed(self) -> None:
        await self._resync.wait_closed()

    # ---------------------------
    # Mutation
    # ---------------------------
    async def set_availability(self, driver_id: str, target: Availability) -> Availability:
        """Optimistically switch a driver to ``target``.

        Raises ``AlreadyInFlight`` without touching anything when a change
        for the same driver is still pending. On a remote failure the
        previous value is restored before the error is re-raised.
        """
        current = self._fields.get(driver_id)
        if isinstance(current, Pending):
            raise AlreadyInFlight(f"availability change for driver {driver_id} is already in progress")

        pending = Pending(optimistic=target, rollback=current.displayed if current is not None else None)
        self._fields[driver_id] = pending
        self._generation[driver_id] = self._generation.get(driver_id, 0) + 1

        ok = False
        try:
            await self._gateway.set_driver_availability(driver_id, target)
            ok = True
        finally:
            # A cancelled call counts as a failure: the old value is shown again.
            self._settle(driver_id, pending, ok)
        return target

    def _settle(self, driver_id: str, pending: Pending, ok: bool) -> None:
        if self._fields.get(driver_id) is not pending:
            return
        settled = pending.settle(ok)
        if settled is None:
            self._fields.pop(driver_id, None)
        else:
            self._fields[driver_id] = settled
            driver = self._drivers.get(driver_id)
            if driver is not None and driver.availability is not settled.value:
                self._drivers[driver_id] = Driver(
                    id=driver.id, location=driver.location, availability=settled.value, name=driver.name
                )
        outcome = "confirmed" if ok else "rolled back"
        shown = settled.value.value if settled is not None else "unknown"
        print(f"[availability] driver={driver_id} {outcome} -> {shown}")
