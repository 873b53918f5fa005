"""Operator-facing façade over the dispatch core.

The console owns every background subscription (ride list refresh, driver
re-sync, per-driver listings, per-offer reconcilers) and tears them all down
in ``close()``. User actions never raise: each returns an ``ActionResult``
and leaves a notification behind, with any optimistic state already undone.
"""
from __future__ import annotations

import itertools
import os
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Set, Tuple

from availability_controller import DRIVER_RESYNC_S, AvailabilityController
from dispatch_client import DispatchGateway
from dispatch_errors import AlreadyInFlight, DispatchError, InvalidTransition
from dispatch_models import Availability, Driver, DriverRide, GeoPoint, PingOffer, Ride, RideStatus
from geocoder import ReverseGeocoder
from ping_reconciler import PING_POLL_INTERVAL_S, OfferView, PingReconciler
from polling import PollSubscription
from ride_lifecycle import ACCEPTING, CANCELLING, REJECTING, RideBook, RideLifecycle
from ride_views import (
    DriverSession,
    dashboard_stats,
    format_point,
    managed_view,
    most_recent_first,
    pinged_view,
)


RIDE_LIST_REFRESH_S = float(os.getenv("RIDE_LIST_REFRESH_S", "5"))
NOTIFICATION_HISTORY = int(os.getenv("NOTIFICATION_HISTORY", "50"))


@dataclass(frozen=True)
class Notification:
    id: int
    message: str
    kind: str  # success | warning | error | info
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "message": self.message, "kind": self.kind, "created_at": self.created_at}


@dataclass(frozen=True)
class ActionResult:
    ok: bool
    message: str
    error: Optional[DispatchError] = None
    data: Optional[Dict[str, Any]] = None

    @property
    def error_kind(self) -> Optional[str]:
        return type(self.error).__name__ if self.error is not None else None

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": self.ok, "message": self.message, "error": self.error_kind, "data": self.data}


class DispatchConsole:
    def __init__(
        self,
        gateway: DispatchGateway,
        geocoder: Optional[ReverseGeocoder] = None,
        ping_interval_s: float = PING_POLL_INTERVAL_S,
        list_refresh_s: float = RIDE_LIST_REFRESH_S,
        resync_interval_s: float = DRIVER_RESYNC_S,
    ) -> None:
        self.gateway = gateway
        self.geocoder = geocoder
        self.rides = RideBook()
        self.availability = AvailabilityController(gateway, resync_interval_s)
        self.notifications: Deque[Notification] = deque(maxlen=NOTIFICATION_HISTORY)
        self._ping_interval_s = ping_interval_s
        self._list_refresh_s = list_refresh_s
        self._reconcilers: Dict[Tuple[str, str], PingReconciler] = {}
        self._driver_listings: Dict[str, List[DriverRide]] = {}
        self._listing_subscriptions: Dict[str, PollSubscription] = {}
        self._ride_refresh = PollSubscription("ride list refresh", self.refresh_rides, list_refresh_s)
        # ride ids with an accept, reject or cancel waiting on the service
        self._ride_actions: Set[str] = set()
        # (ride, driver) offers a poll has seen run out; never cleared
        self._expired_offers: Set[Tuple[str, str]] = set()
        self._notification_ids = itertools.count(1)
        self._closed = False

    # ---------------------------
    # Lifecycle
    # ---------------------------
    def start(self) -> None:
        self.availability.start_resync()
        self._ride_refresh.start()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        subscriptions: List[Any] = [self._ride_refresh]
        self._ride_refresh.cancel()
        self.availability.stop_resync()
        for reconciler in self._reconcilers.values():
            reconciler.stop()
            subscriptions.append(reconciler)
        for subscription in self._listing_subscriptions.values():
            subscription.cancel()
            subscriptions.append(subscription)
        await self.availability.wait_closed()
        for item in subscriptions:
            await item.wait_closed()
        self._reconcilers.clear()
        self._listing_subscriptions.clear()
        await self.gateway.aclose()
        if self.geocoder is not None:
            await self.geocoder.aclose()

    # ---------------------------
    # Notifications
    # ---------------------------
    def notify(self, message: str, kind: str = "info") -> Notification:
        notification = Notification(id=next(self._notification_ids), message=message, kind=kind)
        self.notifications.append(notification)
        return notification

    def _succeeded(self, message: str, kind: str = "success", data: Optional[Dict[str, Any]] = None) -> ActionResult:
        self.notify(message, kind)
        return ActionResult(ok=True, message=message, data=data)

    def _refused(self, exc: DispatchError) -> ActionResult:
        self.notify(exc.message, "warning")
        return ActionResult(ok=False, message=exc.message, error=exc)

    def _failed(self, exc: DispatchError, fallback: str) -> ActionResult:
        message = exc.user_message(fallback)
        print(f"[console] {fallback.lower()}: {exc}")
        self.notify(message, "error")
        return ActionResult(ok=False, message=message, error=exc)

    # ---------------------------
    # Background refreshes
    # ---------------------------
    async def refresh_rides(self) -> bool:
        try:
            rides = await self.gateway.list_rides()
        except DispatchError as exc:
            print(f"[console] ride list refresh failed: {exc}")
            return False
        if self._closed:
            return False
        changed = self.rides.merge_all(rides)
        if changed:
            print(f"[console] ride list refresh: {changed} status change(s)")
        return True

    async def refresh_drivers(self) -> None:
        await self.availability.resync_once()

    async def refresh_driver_listing(self, driver_id: str) -> List[DriverRide]:
        subscription = self._listing_subscriptions.get(driver_id)
        try:
            listing = await self.gateway.list_rides_for_driver(driver_id)
        except DispatchError as exc:
            print(f"[console] ride listing refresh for driver {driver_id} failed: {exc}")
            return self._driver_listings.get(driver_id, [])
        if self._closed or (subscription is not None and not subscription.alive):
            return self._driver_listings.get(driver_id, [])
        self._driver_listings[driver_id] = listing
        for entry in listing:
            self.rides.observe(entry.ride_id, entry.ride_status)
        return listing

    async def track_driver(self, session: DriverSession) -> List[DriverRide]:
        """Fetch the driver's listing now and keep it fresh for the managed view."""
        driver_id = session.driver_id
        existing = self._listing_subscriptions.get(driver_id)
        if existing is not None and existing.alive:
            return self._driver_listings.get(driver_id, [])

        async def tick() -> None:
            await self.refresh_driver_listing(driver_id)

        subscription = PollSubscription(
            f"listing {driver_id}", tick, self._list_refresh_s, initial_delay_s=self._list_refresh_s
        )
        self._listing_subscriptions[driver_id] = subscription
        listing = await self.refresh_driver_listing(driver_id)
        if subscription.alive:
            subscription.start()
        return listing

    def untrack_driver(self, session: DriverSession) -> bool:
        subscription = self._listing_subscriptions.pop(session.driver_id, None)
        self._driver_listings.pop(session.driver_id, None)
        if subscription is None:
            return False
        return subscription.cancel()

    # ---------------------------
    # Offers
    # ---------------------------
    def watch_offer(self, ride_id: str, driver_id: str) -> PingReconciler:
        """Start reconciling an offer, or return the reconciler already doing it.

        A reconciler that has stopped itself is replaced. An offer that has
        already run out comes back latched as expired and is not polled again.
        """
        key = (ride_id, driver_id)
        reconciler = self._reconcilers.get(key)
        if reconciler is not None and reconciler.active:
            return reconciler
        lifecycle = self.rides.require(ride_id)
        reconciler = PingReconciler(
            self.gateway,
            lifecycle,
            driver_id,
            interval_s=self._ping_interval_s,
            offer_expired=key in self._expired_offers,
            on_expired=self._offer_ran_out,
        )
        self._reconcilers[key] = reconciler
        reconciler.start()
        return reconciler

    def _offer_ran_out(self, reconciler: PingReconciler) -> None:
        self._expired_offers.add(reconciler.key)

    def offer_expired(self, ride_id: str, driver_id: str) -> bool:
        return (ride_id, driver_id) in self._expired_offers

    def unwatch_offer(self, ride_id: str, driver_id: str) -> bool:
        reconciler = self._reconcilers.pop((ride_id, driver_id), None)
        if reconciler is None:
            return False
        reconciler.stop()
        return True

    def reconciler(self, ride_id: str, driver_id: str) -> Optional[PingReconciler]:
        return self._reconcilers.get((ride_id, driver_id))

    def offer_view(self, ride_id: str, driver_id: str) -> Optional[OfferView]:
        reconciler = self._reconcilers.get((ride_id, driver_id))
        if reconciler is None:
            return None
        return reconciler.view(in_flight=ride_id in self._ride_actions)

    async def ping_status(self, ride_id: str, driver_id: str) -> PingOffer:
        """One-off lookup; failures propagate to the caller."""
        offer = await self.gateway.get_ping_status(ride_id, driver_id)
        self.rides.observe(ride_id, offer.ride_status)
        return offer

    def _offer_guard(self, ride_id: str, driver_id: str, action: str) -> Optional[PingOffer]:
        if (ride_id, driver_id) in self._expired_offers:
            raise InvalidTransition(f"cannot {action} ride {ride_id}: the offer has expired")
        reconciler = self._reconcilers.get((ride_id, driver_id))
        return reconciler.snapshot if reconciler is not None else None

    def _ensure_idle(self, lifecycle: RideLifecycle) -> None:
        if lifecycle.ride_id in self._ride_actions:
            raise AlreadyInFlight(f"ride {lifecycle.ride_id} already has an action in progress")

    # ---------------------------
    # Ride actions
    # ---------------------------
    async def accept(self, ride_id: str, driver_id: str) -> ActionResult:
        try:
            lifecycle = self.rides.require(ride_id)
            offer = self._offer_guard(ride_id, driver_id, "accept")
            lifecycle.check_accept(offer)
            self._ensure_idle(lifecycle)
        except (InvalidTransition, AlreadyInFlight) as exc:
            return self._refused(exc)

        lifecycle.begin(ACCEPTING)
        self._ride_actions.add(ride_id)
        try:
            ack = await self.gateway.accept_ride(ride_id, driver_id)
        except DispatchError as exc:
            lifecycle.abandon()
            return self._failed(exc, "Failed to accept ride")
        finally:
            self._ride_actions.discard(ride_id)
        lifecycle.apply_ack(ack, RideStatus.ACCEPTED, assigned_driver_id=driver_id)
        return self._succeeded(ack.message or "Ride accepted successfully.", data=lifecycle.ride.to_dict())

    async def reject(self, ride_id: str, driver_id: str) -> ActionResult:
        try:
            lifecycle = self.rides.require(ride_id)
            offer = self._offer_guard(ride_id, driver_id, "reject")
            lifecycle.check_reject(offer)
            self._ensure_idle(lifecycle)
        except (InvalidTransition, AlreadyInFlight) as exc:
            return self._refused(exc)

        lifecycle.begin(REJECTING)
        self._ride_actions.add(ride_id)
        try:
            ack = await self.gateway.cancel_ride(ride_id, driver_id)
        except DispatchError as exc:
            lifecycle.abandon()
            return self._failed(exc, "Failed to reject ride")
        finally:
            self._ride_actions.discard(ride_id)
        lifecycle.apply_ack(ack, RideStatus.CANCELLED)
        return self._succeeded(ack.message or "Ride rejected.", kind="warning", data=lifecycle.ride.to_dict())

    async def cancel(self, ride_id: str, driver_id: Optional[str] = None) -> ActionResult:
        try:
            lifecycle = self.rides.require(ride_id)
            lifecycle.check_cancel()
            self._ensure_idle(lifecycle)
        except (InvalidTransition, AlreadyInFlight) as exc:
            return self._refused(exc)

        lifecycle.begin(CANCELLING)
        self._ride_actions.add(ride_id)
        try:
            ack = await self.gateway.cancel_ride(ride_id, driver_id)
        except DispatchError as exc:
            lifecycle.abandon()
            return self._failed(exc, "Cancel failed")
        finally:
            self._ride_actions.discard(ride_id)
        lifecycle.apply_ack(ack, RideStatus.CANCELLED)
        return self._succeeded(ack.message or "Ride cancelled.", data=lifecycle.ride.to_dict())

    async def cancel_assigned(self, ride_id: str, driver_id: str) -> ActionResult:
        """Cancel a ride the driver is currently managing.

        Allowed from any status as long as the driver's last listing still
        shows the ride as assigned to them; the service has the final word.
        """
        listing = managed_view(self._driver_listings.get(driver_id, []))
        if not any(entry.ride_id == ride_id for entry in listing):
            return self._refused(InvalidTransition(f"cannot cancel ride {ride_id}: it is not assigned to driver {driver_id}"))
        if ride_id in self._ride_actions:
            return self._refused(AlreadyInFlight(f"ride {ride_id} already has an action in progress"))

        lifecycle = self.rides.get(ride_id)
        if lifecycle is not None:
            lifecycle.begin(CANCELLING)
        self._ride_actions.add(ride_id)
        try:
            ack = await self.gateway.cancel_ride(ride_id, driver_id)
        except DispatchError as exc:
            if lifecycle is not None:
                lifecycle.abandon()
            return self._failed(exc, "Cancel failed")
        finally:
            self._ride_actions.discard(ride_id)
        status = ack.status or RideStatus.CANCELLED
        if lifecycle is not None:
            lifecycle.apply_ack(ack, RideStatus.CANCELLED)
        await self.refresh_driver_listing(driver_id)
        return self._succeeded(ack.message or "Ride cancelled.", data={"id": ride_id, "status": status.value})

    async def create_ride(self, pickup: GeoPoint, drop: Optional[GeoPoint] = None) -> ActionResult:
        try:
            ride = await self.gateway.create_ride(pickup, drop)
        except DispatchError as exc:
            return self._failed(exc, "Failed to create ride")
        self.rides.merge(ride)
        return self._succeeded(f"Ride {ride.id} requested.", data=ride.to_dict())

    # ---------------------------
    # Driver actions
    # ---------------------------
    async def register_driver(self, location: GeoPoint, driver_id: Optional[str] = None) -> ActionResult:
        try:
            driver = await self.gateway.register_driver(location, driver_id)
        except DispatchError as exc:
            return self._failed(exc, "Failed to register driver")
        self.availability.track(driver)
        return self._succeeded(f"Driver {driver.id} registered.", data=driver.to_dict())

    async def set_availability(self, driver_id: str, target: Availability) -> ActionResult:
        try:
            await self.availability.set_availability(driver_id, target)
        except AlreadyInFlight as exc:
            return self._refused(exc)
        except DispatchError as exc:
            return self._failed(exc, f"Failed to set {target.value.lower()}")
        kind = "success" if target is Availability.ONLINE else "warning"
        return self._succeeded(f"Driver is now {target.value}", kind=kind, data={"driver_id": driver_id, "availability": target.value})

    # ---------------------------
    # Views
    # ---------------------------
    def drivers(self) -> List[Driver]:
        return self.availability.drivers()

    def ride_table(self) -> List[Ride]:
        return most_recent_first(self.rides.rides())

    def pinged_rides(self, session: DriverSession) -> List[Ride]:
        return pinged_view(self.rides.rides(), session)

    def managed_rides(self, session: DriverSession) -> List[DriverRide]:
        return managed_view(self._driver_listings.get(session.driver_id, []))

    async def managed_rides_with_addresses(self, session: DriverSession) -> List[Dict[str, Any]]:
        entries: List[Dict[str, Any]] = []
        for entry in self.managed_rides(session):
            item = entry.to_dict()
            if self.geocoder is not None:
                item["pickup_address"] = await self.geocoder.reverse(entry.pickup)
                item["drop_address"] = await self.geocoder.reverse(entry.drop)
            else:
                item["pickup_address"] = format_point(entry.pickup)
                item["drop_address"] = format_point(entry.drop)
            entries.append(item)
        return entries

    def stats(self) -> Dict[str, Any]:
        return dashboard_stats(self.drivers(), self.rides.rides())
