"""Keeps one ride offer in step with the dispatch service.

A ``PingReconciler`` polls the ping status of a (ride, driver) pair about
once a second. Every response replaces the previous snapshot; nothing is
interpolated from earlier values. When the offer runs out or the ride leaves
the pending states the reconciler cancels itself, and a fetch that completes
after cancellation is dropped without touching any state.
"""
from __future__ import annotations

import os
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Optional, Tuple

from dispatch_client import DispatchGateway
from dispatch_errors import DispatchError
from dispatch_models import OFFER_CLOSED_STATUSES, PingOffer
from polling import PollSubscription
from ride_lifecycle import RideLifecycle


PING_POLL_INTERVAL_S = float(os.getenv("PING_POLL_INTERVAL_S", "1"))

EXPIRED_LABEL = "Request Expired"


@dataclass(frozen=True)
class OfferView:
    """What an offer card shows."""
    ride_id: str
    driver_id: str
    status_label: str
    remaining_seconds: Optional[int]
    expired: bool
    can_accept: bool
    can_reject: bool
    stale: bool
    watching: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ride_id": self.ride_id,
            "driver_id": self.driver_id,
            "status": self.status_label,
            "remaining_seconds": self.remaining_seconds,
            "expired": self.expired,
            "can_accept": self.can_accept,
            "can_reject": self.can_reject,
            "stale": self.stale,
            "watching": self.watching,
        }


class PingReconciler:
    def __init__(
        self,
        gateway: DispatchGateway,
        lifecycle: RideLifecycle,
        driver_id: str,
        interval_s: float = PING_POLL_INTERVAL_S,
        clock: Callable[[], float] = time.monotonic,
        offer_expired: bool = False,
        on_expired: Optional[Callable[["PingReconciler"], None]] = None,
    ) -> None:
        self.ride_id = lifecycle.ride_id
        self.driver_id = driver_id
        self._gateway = gateway
        self._lifecycle = lifecycle
        self._clock = clock
        self.snapshot: Optional[PingOffer] = None
        # Latched once a poll reports zero seconds left.
        self.offer_expired = offer_expired
        self._on_expired = on_expired
        self.consecutive_failures = 0
        self.last_error: Optional[str] = None
        self._subscription = PollSubscription(
            f"ping {self.ride_id}/{driver_id}", self.poll_once, interval_s
        )

    @property
    def key(self) -> Tuple[str, str]:
        return (self.ride_id, self.driver_id)

    @property
    def lifecycle(self) -> RideLifecycle:
        return self._lifecycle

    @property
    def active(self) -> bool:
        return self._subscription.alive

    def start(self) -> "PingReconciler":
        if self.offer_expired or self._lifecycle.status in OFFER_CLOSED_STATUSES:
            # Nothing left to negotiate.
            self._subscription.cancel()
            return self
        self._subscription.start()
        return self

    def stop(self) -> bool:
        return self._subscription.cancel()

    async def wait_closed(self) -> None:
        await self._subscription.wait_closed()

    async def poll_once(self) -> Optional[PingOffer]:
        """Fetch the authoritative offer state once and fold it in."""
        if not self._subscription.alive:
            return None
        if self._lifecycle.status in OFFER_CLOSED_STATUSES and self._lifecycle.provisional is None:
            # An action response already closed the offer.
            self.stop()
            return None
        try:
            offer = await self._gateway.get_ping_status(self.ride_id, self.driver_id)
        except DispatchError as exc:
            if not self._subscription.alive:
                return None
            self.consecutive_failures += 1
            self.last_error = exc.user_message(exc.message)
            print(
                f"[ping_reconciler] ride={self.ride_id} driver={self.driver_id} "
                f"poll failed ({self.consecutive_failures} in a row): {exc}"
            )
            return None

        if not self._subscription.alive:
            return None

        self.consecutive_failures = 0
        self.last_error = None
        self.snapshot = replace(offer, fetched_at=self._clock())
        self._lifecycle.observe(offer.ride_status)

        if offer.is_exhausted:
            self.offer_expired = True
            if self._on_expired is not None:
                self._on_expired(self)
            if self._lifecycle.expire():
                print(f"[ping_reconciler] ride={self.ride_id} driver={self.driver_id} offer expired")
            self.stop()
        elif offer.ride_status in OFFER_CLOSED_STATUSES:
            print(
                f"[ping_reconciler] ride={self.ride_id} driver={self.driver_id} "
                f"closed with status {offer.ride_status.value}"
            )
            self.stop()
        return offer

    def display_remaining(self, now: Optional[float] = None) -> Optional[int]:
        """Countdown between polls, estimated from the last snapshot.

        Only for display. The next poll replaces it, even if that moves the
        number back up.
        """
        if self.offer_expired:
            return 0
        if self.snapshot is None:
            return None
        now = self._clock() if now is None else now
        elapsed = max(0.0, now - self.snapshot.fetched_at)
        return max(0, self.snapshot.remaining_seconds - int(elapsed))

    def view(self, now: Optional[float] = None, in_flight: bool = False) -> OfferView:
        """``in_flight`` marks an action the caller still has open on this ride."""
        lifecycle = self._lifecycle
        busy = in_flight or lifecycle.provisional is not None
        if self.offer_expired:
            label = EXPIRED_LABEL
        else:
            label = lifecycle.display_status
        return OfferView(
            ride_id=self.ride_id,
            driver_id=self.driver_id,
            status_label=label,
            remaining_seconds=self.display_remaining(now),
            expired=self.offer_expired,
            can_accept=not self.offer_expired and not busy and lifecycle.can_accept(self.snapshot),
            can_reject=not self.offer_expired and not busy and lifecycle.can_reject(self.snapshot),
            stale=self.consecutive_failures > 0,
            watching=self.active,
        )
