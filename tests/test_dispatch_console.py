import asyncio
import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
TESTS_DIR = Path(__file__).resolve().parent
for path in (ROOT_DIR, TESTS_DIR):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from dispatch_console import DispatchConsole  # noqa: E402
from dispatch_errors import NetworkFailure, RemoteRejected  # noqa: E402
from dispatch_models import Availability, DriverRide, GeoPoint, RideStatus  # noqa: E402
from fake_gateway import FakeGateway, ping  # noqa: E402
from ride_views import DriverSession  # noqa: E402


def _console(gateway: FakeGateway, ping_interval_s: float = 10.0) -> DispatchConsole:
    return DispatchConsole(gateway, ping_interval_s=ping_interval_s, list_refresh_s=10.0, resync_interval_s=10.0)


def _run(console: DispatchConsole, scenario):
    async def _inner():
        try:
            return await scenario()
        finally:
            await console.close()

    return asyncio.run(_inner())


def test_accepted_ride_leaves_pinged_view_and_shows_in_managed_view():
    gateway = FakeGateway()
    gateway.add_ride("r1", RideStatus.DRIVER_PINGED, assigned_driver_id="d1")
    gateway.script_pings("r1", "d1", ping("r1", "d1", 8))
    console = _console(gateway, ping_interval_s=0.01)
    session = DriverSession("d1")

    async def scenario():
        await console.refresh_rides()
        before = [r.id for r in console.pinged_rides(session)]
        reconciler = console.watch_offer("r1", "d1")
        await asyncio.sleep(0)
        result = await console.accept("r1", "d1")
        await asyncio.wait_for(reconciler.wait_closed(), timeout=1)

        gateway.driver_rides["d1"] = [
            DriverRide(ride_id="r1", driver_id="d1", ride_status=RideStatus.ACCEPTED, pinged=True,
                       currently_assigned=True),
            DriverRide(ride_id="r0", driver_id="d1", ride_status=RideStatus.DRIVER_PINGED, pinged=True),
        ]
        await console.track_driver(session)
        return before, result, reconciler

    before, result, reconciler = _run(console, scenario)

    assert before == ["r1"]
    assert result.ok is True
    assert result.message == "Ride accepted successfully."
    assert gateway.calls_to("accept_ride") == [("r1", "d1")]
    assert reconciler.active is False

    assert console.rides.require("r1").status is RideStatus.ACCEPTED
    assert "r1" not in [r.id for r in console.pinged_rides(session)]
    assert [entry.ride_id for entry in console.managed_rides(session)] == ["r1"]
    assert console.notifications[-1].kind == "success"


def test_remote_rejection_is_reported_and_state_restored():
    gateway = FakeGateway()
    gateway.add_ride("r1", RideStatus.DRIVER_PINGED, assigned_driver_id="d1")
    gateway.fail_next["accept_ride"] = RemoteRejected("HTTP 409", "Ride already taken", 409)
    console = _console(gateway)

    async def scenario():
        await console.refresh_rides()
        return await console.accept("r1", "d1")

    result = _run(console, scenario)

    assert result.ok is False
    assert result.message == "Ride already taken"
    assert result.error_kind == "RemoteRejected"
    lifecycle = console.rides.require("r1")
    assert lifecycle.status is RideStatus.DRIVER_PINGED
    assert lifecycle.provisional is None
    assert console.notifications[-1].message == "Ride already taken"
    assert console.notifications[-1].kind == "error"


def test_network_failure_uses_fallback_message(capsys):
    gateway = FakeGateway()
    gateway.add_ride("r1", RideStatus.REQUESTED)
    gateway.fail_next["accept_ride"] = NetworkFailure("connect timeout")
    console = _console(gateway)

    async def scenario():
        await console.refresh_rides()
        return await console.accept("r1", "d1")

    result = _run(console, scenario)

    assert result.message == "Failed to accept ride"
    assert result.error_kind == "NetworkFailure"
    assert "[console] failed to accept ride: connect timeout" in capsys.readouterr().out


def test_expired_offer_refuses_accept_even_if_service_still_says_pinged():
    gateway = FakeGateway()
    gateway.add_ride("r1", RideStatus.DRIVER_PINGED, assigned_driver_id="d1")
    gateway.script_pings("r1", "d1", ping("r1", "d1", 1), ping("r1", "d1", 0))
    console = _console(gateway, ping_interval_s=0.01)

    async def scenario():
        await console.refresh_rides()
        reconciler = console.watch_offer("r1", "d1")
        await asyncio.wait_for(reconciler.wait_closed(), timeout=1)
        view = console.offer_view("r1", "d1")
        # a later list refresh overwrites EXPIRED with the service's status
        await console.refresh_rides()
        accept = await console.accept("r1", "d1")
        reject = await console.reject("r1", "d1")
        return view, accept, reject

    view, accept, reject = _run(console, scenario)

    assert view.status_label == "Request Expired"
    assert view.remaining_seconds == 0
    assert view.can_accept is False
    assert console.rides.require("r1").status is RideStatus.DRIVER_PINGED
    for result in (accept, reject):
        assert result.ok is False
        assert result.error_kind == "InvalidTransition"
    assert gateway.calls_to("accept_ride") == []
    assert gateway.calls_to("cancel_ride") == []
    assert console.notifications[-1].kind == "warning"


def test_second_action_while_first_is_pending_is_refused():
    gateway = FakeGateway()
    gateway.add_ride("r1", RideStatus.DRIVER_PINGED, assigned_driver_id="d1")
    console = _console(gateway)

    async def scenario():
        await console.refresh_rides()
        gate = asyncio.Event()
        gateway.gates["accept_ride"] = gate
        first = asyncio.create_task(console.accept("r1", "d1"))
        await asyncio.sleep(0)
        shown = console.rides.require("r1").display_status
        second = await console.reject("r1", "d1")
        gate.set()
        return shown, second, await first

    shown, second, first = _run(console, scenario)

    assert shown == "ACCEPTING"
    assert second.error_kind == "AlreadyInFlight"
    assert first.ok is True
    assert gateway.calls_to("cancel_ride") == []


def test_reject_uses_driver_scoped_cancel():
    gateway = FakeGateway()
    gateway.add_ride("r1", RideStatus.DRIVER_PINGED, assigned_driver_id="d1")
    console = _console(gateway)

    async def scenario():
        await console.refresh_rides()
        return await console.reject("r1", "d1")

    result = _run(console, scenario)

    assert result.ok is True
    assert gateway.calls_to("cancel_ride") == [("r1", "d1")]
    assert console.rides.require("r1").status is RideStatus.CANCELLED
    assert console.notifications[-1].kind == "warning"


def test_cancel_refused_for_closed_ride_and_unknown_ride():
    gateway = FakeGateway()
    gateway.add_ride("r1", RideStatus.COMPLETED)
    console = _console(gateway)

    async def scenario():
        await console.refresh_rides()
        return await console.cancel("r1"), await console.cancel("missing")

    closed, unknown = _run(console, scenario)

    assert closed.error_kind == "InvalidTransition"
    assert unknown.error_kind == "InvalidTransition"
    assert gateway.calls_to("cancel_ride") == []
    assert console.rides.require("r1").status is RideStatus.COMPLETED


def test_cancel_pending_ride():
    gateway = FakeGateway()
    gateway.add_ride("r1", RideStatus.REQUESTED)
    console = _console(gateway)

    async def scenario():
        await console.refresh_rides()
        return await console.cancel("r1")

    result = _run(console, scenario)
    assert result.ok is True
    assert result.data["status"] == "CANCELLED"
    assert gateway.calls_to("cancel_ride") == [("r1", None)]


def test_create_ride_and_register_driver():
    gateway = FakeGateway()
    console = _console(gateway)

    async def scenario():
        ride = await console.create_ride(GeoPoint(20.59, 78.96), GeoPoint(21.0, 79.0))
        second = await console.create_ride(GeoPoint(19.07, 72.87))
        driver = await console.register_driver(GeoPoint(20.0, 78.0), "d5")
        return ride, second, driver

    ride, second, driver = _run(console, scenario)

    assert ride.ok and ride.data["id"] == "r1"
    assert second.message == "Ride r2 requested."
    assert [r.id for r in console.ride_table()] == ["r2", "r1"]
    assert driver.data["id"] == "d5"
    assert [d.id for d in console.drivers()] == ["d5"]
    stats = console.stats()
    assert stats["rides_total"] == 2
    assert stats["drivers_online"] == 0


def test_create_ride_failure_is_notified():
    gateway = FakeGateway()
    gateway.fail_next["create_ride"] = NetworkFailure("HTTP 500", "pickup is outside the service area")
    console = _console(gateway)

    result = _run(console, lambda: console.create_ride(GeoPoint(0.1, 0.1)))

    assert result.ok is False
    assert result.message == "pickup is outside the service area"
    assert len(console.rides) == 0


def test_availability_failure_rolls_back_and_notifies():
    gateway = FakeGateway()
    gateway.add_driver("d1", Availability.OFFLINE)
    gateway.fail_next["set_driver_availability"] = NetworkFailure("timed out")
    console = _console(gateway)

    async def scenario():
        await console.refresh_drivers()
        failed = await console.set_availability("d1", Availability.ONLINE)
        ok = await console.set_availability("d1", Availability.ONLINE)
        return failed, ok

    failed, ok = _run(console, scenario)

    assert failed.ok is False
    assert failed.message == "Failed to set online"
    assert ok.ok is True
    assert ok.message == "Driver is now ONLINE"
    assert console.availability.displayed("d1") is Availability.ONLINE
    assert [n.kind for n in console.notifications] == ["error", "success"]


def test_availability_toggle_refused_while_pending():
    gateway = FakeGateway()
    gateway.add_driver("d1", Availability.OFFLINE)
    console = _console(gateway)

    async def scenario():
        await console.refresh_drivers()
        gate = asyncio.Event()
        gateway.gates["set_driver_availability"] = gate
        first = asyncio.create_task(console.set_availability("d1", Availability.ONLINE))
        await asyncio.sleep(0)
        second = await console.set_availability("d1", Availability.OFFLINE)
        gate.set()
        return second, await first

    second, first = _run(console, scenario)

    assert second.error_kind == "AlreadyInFlight"
    assert first.ok is True
    assert console.availability.displayed("d1") is Availability.ONLINE


def test_driver_listing_refresh_feeds_ride_statuses():
    gateway = FakeGateway()
    gateway.add_ride("r1", RideStatus.DRIVER_PINGED, assigned_driver_id="d1")
    gateway.driver_rides["d1"] = [
        DriverRide(ride_id="r1", driver_id="d1", ride_status=RideStatus.COMPLETED, currently_assigned=True,
                   pickup=GeoPoint(20.59, 78.96)),
    ]
    console = _console(gateway)
    session = DriverSession("d1")

    async def scenario():
        await console.refresh_rides()
        await console.track_driver(session)
        return await console.managed_rides_with_addresses(session)

    entries = _run(console, scenario)

    assert console.rides.require("r1").status is RideStatus.COMPLETED
    assert entries[0]["pickup_address"] == "20.5900, 78.9600"
    assert entries[0]["drop_address"] == "—"
    # completed rides leave the pinged view
    assert console.pinged_rides(session) == []


def test_ping_status_lookup_observes_and_propagates_errors():
    gateway = FakeGateway()
    gateway.add_ride("r1", RideStatus.REQUESTED)
    gateway.script_pings("r1", "d1", ping("r1", "d1", 12), NetworkFailure("timed out"))
    console = _console(gateway)

    async def scenario():
        await console.refresh_rides()
        offer = await console.ping_status("r1", "d1")
        with pytest.raises(NetworkFailure):
            await console.ping_status("r1", "d1")
        return offer

    offer = _run(console, scenario)
    assert offer.remaining_seconds == 12
    assert console.rides.require("r1").status is RideStatus.DRIVER_PINGED


def test_close_stops_every_subscription():
    gateway = FakeGateway()
    gateway.add_ride("r1", RideStatus.DRIVER_PINGED, assigned_driver_id="d1")
    console = _console(gateway, ping_interval_s=0.01)

    async def scenario():
        console.start()
        await console.refresh_rides()
        reconciler = console.watch_offer("r1", "d1")
        await console.track_driver(DriverSession("d1"))
        await asyncio.sleep(0.03)
        await console.close()
        polls = len(gateway.calls_to("get_ping_status"))
        await asyncio.sleep(0.05)
        return reconciler, polls

    reconciler, polls = asyncio.run(scenario())

    assert gateway.closed is True
    assert reconciler.active is False
    assert console.reconciler("r1", "d1") is None
    assert len(gateway.calls_to("get_ping_status")) == polls


def test_in_flight_action_blocks_even_after_poll_clears_label():
    gateway = FakeGateway()
    gateway.add_ride("r1", RideStatus.DRIVER_PINGED, assigned_driver_id="d1")
    console = _console(gateway)

    async def scenario():
        await console.refresh_rides()
        gate = asyncio.Event()
        gateway.gates["accept_ride"] = gate
        first = asyncio.create_task(console.accept("r1", "d1"))
        await asyncio.sleep(0)
        # a ping poll lands while the accept is still open
        console.rides.observe("r1", RideStatus.DRIVER_PINGED)
        second = await console.reject("r1", "d1")
        gate.set()
        return second, await first

    second, first = _run(console, scenario)

    assert second.error_kind == "AlreadyInFlight"
    assert first.ok is True
    assert console.rides.require("r1").status is RideStatus.ACCEPTED


def test_expiry_survives_unwatch_and_list_refresh():
    gateway = FakeGateway()
    gateway.add_ride("r1", RideStatus.DRIVER_PINGED, assigned_driver_id="d1")
    gateway.script_pings("r1", "d1", ping("r1", "d1", 1), ping("r1", "d1", 0))
    console = _console(gateway, ping_interval_s=0.01)

    async def scenario():
        await console.refresh_rides()
        reconciler = console.watch_offer("r1", "d1")
        await asyncio.wait_for(reconciler.wait_closed(), timeout=1)
        assert console.unwatch_offer("r1", "d1") is True
        await console.refresh_rides()
        accept = await console.accept("r1", "d1")
        rewatched = console.watch_offer("r1", "d1")
        await asyncio.sleep(0.03)
        return accept, rewatched

    accept, rewatched = _run(console, scenario)

    assert console.rides.require("r1").status is RideStatus.DRIVER_PINGED
    assert accept.ok is False
    assert accept.error_kind == "InvalidTransition"
    assert gateway.calls_to("accept_ride") == []
    assert console.offer_expired("r1", "d1") is True
    assert rewatched.offer_expired is True
    assert rewatched.view().status_label == "Request Expired"
    assert rewatched.view().remaining_seconds == 0
    assert len(gateway.calls_to("get_ping_status")) == 2


def test_watch_replaces_reconciler_that_stopped_itself():
    gateway = FakeGateway()
    gateway.add_ride("r1", RideStatus.DRIVER_PINGED, assigned_driver_id="d1")
    gateway.script_pings("r1", "d1", ping("r1", "d1", 9, status=RideStatus.CANCELLED))
    console = _console(gateway)

    async def scenario():
        await console.refresh_rides()
        first = console.watch_offer("r1", "d1")
        await asyncio.wait_for(first.wait_closed(), timeout=1)
        # the service puts the ride back on offer
        gateway.add_ride("r1", RideStatus.DRIVER_PINGED, assigned_driver_id="d1")
        await console.refresh_rides()
        gateway.script_pings("r1", "d1", ping("r1", "d1", 7))
        second = console.watch_offer("r1", "d1")
        await asyncio.sleep(0)
        return first, second

    first, second = _run(console, scenario)

    assert first.active is False
    assert second is not first
    assert second.snapshot.remaining_seconds == 7
    assert second.offer_expired is False
    assert len(gateway.calls_to("get_ping_status")) == 2


def test_offer_view_blocks_actions_while_console_action_is_open():
    gateway = FakeGateway()
    gateway.add_ride("r1", RideStatus.DRIVER_PINGED, assigned_driver_id="d1")
    gateway.script_pings("r1", "d1", ping("r1", "d1", 8))
    console = _console(gateway)

    async def scenario():
        await console.refresh_rides()
        reconciler = console.watch_offer("r1", "d1")
        await asyncio.sleep(0)
        gate = asyncio.Event()
        gateway.gates["accept_ride"] = gate
        pending = asyncio.create_task(console.accept("r1", "d1"))
        await asyncio.sleep(0)
        # a poll lands while the accept is still open
        console.rides.observe("r1", RideStatus.DRIVER_PINGED)
        during = console.offer_view("r1", "d1")
        bare = reconciler.view()
        gate.set()
        result = await pending
        return during, bare, result

    during, bare, result = _run(console, scenario)

    assert bare.can_accept is True
    assert during.can_accept is False
    assert during.can_reject is False
    assert during.status_label == "DRIVER_PINGED"
    assert result.ok is True


def test_offer_counts_down_to_request_expired_then_refuses_locally():
    gateway = FakeGateway()
    console = _console(gateway)
    countdown = [ping("r1", "d1", remaining) for remaining in range(10, 0, -1)]
    gateway.script_pings("r1", "d1", *countdown, ping("r1", "d1", 0))

    async def scenario():
        created = await console.create_ride(GeoPoint(20.59, 78.96))
        reconciler = console.watch_offer("r1", "d1")
        await asyncio.sleep(0)
        first = console.offer_view("r1", "d1")
        seen = [reconciler.snapshot.remaining_seconds]
        for _ in range(10):
            await reconciler.poll_once()
            seen.append(reconciler.snapshot.remaining_seconds)
        accept = await console.accept("r1", "d1")
        reject = await console.reject("r1", "d1")
        return created, first, seen, console.offer_view("r1", "d1"), accept, reject

    created, first, seen, last, accept, reject = _run(console, scenario)

    assert created.data["id"] == "r1"
    assert created.data["pickup"] == {"lat": 20.59, "lng": 78.96}
    assert first.remaining_seconds == 10
    assert seen == [10, 9, 8, 7, 6, 5, 4, 3, 2, 1, 0]
    assert len(gateway.calls_to("get_ping_status")) == 11
    assert last.status_label == "Request Expired"
    assert last.remaining_seconds == 0
    assert last.can_accept is False
    assert last.watching is False
    for result in (accept, reject):
        assert result.ok is False
        assert result.error_kind == "InvalidTransition"
    assert gateway.calls_to("accept_ride") == []
    assert gateway.calls_to("cancel_ride") == []


def _managed_listing(gateway: FakeGateway) -> None:
    gateway.add_ride("r1", RideStatus.ACCEPTED, assigned_driver_id="d1")
    gateway.add_ride("r2", RideStatus.DRIVER_PINGED, assigned_driver_id="d1")
    gateway.driver_rides["d1"] = [
        DriverRide(ride_id="r1", driver_id="d1", ride_status=RideStatus.ACCEPTED, pinged=True,
                   currently_assigned=True),
        DriverRide(ride_id="r2", driver_id="d1", ride_status=RideStatus.DRIVER_PINGED, pinged=True),
    ]


def test_driver_can_cancel_a_managed_ride():
    gateway = FakeGateway()
    _managed_listing(gateway)
    console = _console(gateway)
    session = DriverSession("d1")

    async def scenario():
        await console.refresh_rides()
        await console.track_driver(session)
        plain = await console.cancel("r1", "d1")
        managed = await console.cancel_assigned("r1", "d1")
        return plain, managed

    plain, managed = _run(console, scenario)

    assert plain.error_kind == "InvalidTransition"
    assert managed.ok is True
    assert managed.message == "Ride cancelled."
    assert managed.data == {"id": "r1", "status": "CANCELLED"}
    assert gateway.calls_to("cancel_ride") == [("r1", "d1")]
    assert console.rides.require("r1").status is RideStatus.CANCELLED
    assert console.rides.require("r1").provisional is None
    assert console.managed_rides(session) == []
    assert len(gateway.calls_to("list_rides_for_driver")) == 2


def test_managed_cancel_refuses_rides_not_assigned_to_driver():
    gateway = FakeGateway()
    _managed_listing(gateway)
    console = _console(gateway)

    async def scenario():
        await console.refresh_rides()
        await console.track_driver(DriverSession("d1"))
        other_driver = await console.cancel_assigned("r1", "d2")
        not_managed = await console.cancel_assigned("r2", "d1")
        return other_driver, not_managed

    other_driver, not_managed = _run(console, scenario)

    for result in (other_driver, not_managed):
        assert result.ok is False
        assert result.error_kind == "InvalidTransition"
    assert gateway.calls_to("cancel_ride") == []


def test_managed_cancel_failure_keeps_ride_assigned():
    gateway = FakeGateway()
    _managed_listing(gateway)
    gateway.fail_next["cancel_ride"] = RemoteRejected("HTTP 409", "Ride already started", 409)
    console = _console(gateway)
    session = DriverSession("d1")

    async def scenario():
        await console.refresh_rides()
        await console.track_driver(session)
        return await console.cancel_assigned("r1", "d1")

    result = _run(console, scenario)

    assert result.ok is False
    assert result.message == "Ride already started"
    lifecycle = console.rides.require("r1")
    assert lifecycle.status is RideStatus.ACCEPTED
    assert lifecycle.provisional is None
    assert [entry.ride_id for entry in console.managed_rides(session)] == ["r1"]
