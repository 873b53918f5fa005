"""In-memory stand-in for ``DispatchGateway`` used across the tests."""
import asyncio
from collections import deque
from dataclasses import replace
from typing import Any, Deque, Dict, List, Optional, Tuple, Union

from dispatch_errors import DispatchError, NetworkFailure
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


def ping(ride_id: str, driver_id: str, remaining: int, status: Optional[RideStatus] = RideStatus.DRIVER_PINGED,
         pinged: bool = True, assigned: bool = False) -> PingOffer:
    return PingOffer(
        ride_id=ride_id,
        driver_id=driver_id,
        remaining_seconds=remaining,
        ride_status=status,
        pinged=pinged,
        currently_assigned=assigned,
    )


class FakeGateway:
    base_url = "fake://dispatch"

    def __init__(self) -> None:
        self.drivers: Dict[str, Driver] = {}
        self.rides: Dict[str, Ride] = {}
        self.driver_rides: Dict[str, List[DriverRide]] = {}
        self.ping_script: Dict[Tuple[str, str], Deque[Union[PingOffer, Exception]]] = {}
        self.calls: List[Tuple[str, Tuple[Any, ...]]] = []
        self.fail_next: Dict[str, DispatchError] = {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.closed = False
        self._ride_seq = 0

    # helpers
    def add_driver(self, driver_id: str, availability: Availability = Availability.OFFLINE) -> Driver:
        driver = Driver(id=driver_id, location=GeoPoint(20.0, 78.0), availability=availability)
        self.drivers[driver_id] = driver
        return driver

    def add_ride(self, ride_id: str, status: RideStatus = RideStatus.REQUESTED,
                 assigned_driver_id: Optional[str] = None) -> Ride:
        ride = Ride(
            id=ride_id,
            pickup=GeoPoint(20.59, 78.96),
            drop=None,
            status=status,
            assigned_driver_id=assigned_driver_id,
        )
        self.rides[ride_id] = ride
        return ride

    def script_pings(self, ride_id: str, driver_id: str, *items: Union[PingOffer, Exception]) -> None:
        self.ping_script.setdefault((ride_id, driver_id), deque()).extend(items)

    def calls_to(self, name: str) -> List[Tuple[Any, ...]]:
        return [args for called, args in self.calls if called == name]

    async def _enter(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        gate = self.gates.get(name)
        if gate is not None:
            await gate.wait()
        error = self.fail_next.pop(name, None)
        if error is not None:
            raise error

    # gateway surface
    async def list_drivers(self) -> List[Driver]:
        await self._enter("list_drivers")
        return list(self.drivers.values())

    async def register_driver(self, location: GeoPoint, driver_id: Optional[str] = None) -> Driver:
        await self._enter("register_driver", location, driver_id)
        driver = Driver(id=driver_id or f"drv-{len(self.drivers) + 1}", location=location,
                        availability=Availability.OFFLINE)
        self.drivers[driver.id] = driver
        return driver

    async def set_driver_availability(self, driver_id: str, availability: Availability) -> Ack:
        await self._enter("set_driver_availability", driver_id, availability)
        driver = self.drivers.get(driver_id)
        if driver is not None:
            self.drivers[driver_id] = replace(driver, availability=availability)
        return Ack()

    async def create_ride(self, pickup: GeoPoint, drop: Optional[GeoPoint] = None) -> Ride:
        await self._enter("create_ride", pickup, drop)
        self._ride_seq += 1
        ride = Ride(id=f"r{self._ride_seq}", pickup=pickup, drop=drop, status=RideStatus.REQUESTED)
        self.rides[ride.id] = ride
        return ride

    async def list_rides(self) -> List[Ride]:
        await self._enter("list_rides")
        return list(self.rides.values())

    async def list_rides_for_driver(self, driver_id: str) -> List[DriverRide]:
        await self._enter("list_rides_for_driver", driver_id)
        return list(self.driver_rides.get(driver_id, []))

    async def accept_ride(self, ride_id: str, driver_id: str) -> Ack:
        await self._enter("accept_ride", ride_id, driver_id)
        ride = self.rides.get(ride_id)
        if ride is not None:
            self.rides[ride_id] = replace(ride, status=RideStatus.ACCEPTED, assigned_driver_id=driver_id)
        return Ack()

    async def cancel_ride(self, ride_id: str, driver_id: Optional[str] = None) -> Ack:
        await self._enter("cancel_ride", ride_id, driver_id)
        ride = self.rides.get(ride_id)
        if ride is not None:
            self.rides[ride_id] = replace(ride, status=RideStatus.CANCELLED)
        for entries in self.driver_rides.values():
            entries[:] = [
                replace(entry, ride_status=RideStatus.CANCELLED, currently_assigned=False) if entry.ride_id == ride_id else entry
                for entry in entries
            ]
        return Ack()

    async def get_ping_status(self, ride_id: str, driver_id: str) -> PingOffer:
        await self._enter("get_ping_status", ride_id, driver_id)
        script = self.ping_script.get((ride_id, driver_id))
        if not script:
            raise NetworkFailure(f"no scripted ping status for {ride_id}/{driver_id}")
        item = script.popleft()
        if isinstance(item, Exception):
            raise item
        return item

    async def aclose(self) -> None:
        self.closed = True
