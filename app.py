"""
Dispatch Console Service — operator API (FastAPI)

Purpose
=======
Let operators register drivers, request rides and drive the ride-offer
workflow of a remote dispatch service, while the console keeps its own view
of rides and driver availability reconciled with that service.

Key features
------------
- Per-offer reconciliation polls (1 s) with local expiry and countdown.
- Optimistic driver availability toggles with rollback on failure.
- Driver-scoped "pinged" and "managed" ride views; drivers can cancel a
  ride they are managing.
- Background ride list refresh (5 s) and driver re-sync (10 s).

Run
---
$ DISPATCH_API_BASE=http://localhost:3000/api uvicorn app:app --reload --port 8080

Environment
-----------
- PYTHON >= 3.10
- pip install fastapi uvicorn httpx
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, HTTPException, Request

from dispatch_client import DispatchGateway, parse_point
from dispatch_console import ActionResult, DispatchConsole
from dispatch_errors import DispatchError, RemoteRejected
from dispatch_models import Availability, GeoPoint
from geocoder import ReverseGeocoder
from ride_views import DriverSession, format_point


# Status codes for refused or failed actions, keyed by error class name.
ACTION_ERROR_STATUS: Dict[str, int] = {
    "InvalidTransition": 409,
    "AlreadyInFlight": 409,
    "RemoteRejected": 422,
    "NetworkFailure": 502,
}

app = FastAPI(title="Dispatch Console")


@app.on_event("startup")
async def init_console() -> None:
    console: Optional[DispatchConsole] = getattr(app.state, "console", None)
    if console is None:
        try:
            gateway = DispatchGateway.from_env()
        except RuntimeError as exc:
            print(f"[startup] dispatch gateway not configured: {exc}")
            app.state.console = None
            return
        console = DispatchConsole(gateway, geocoder=ReverseGeocoder())
        app.state.console = console
    console.start()
    print(f"[startup] dispatch console polling {console.gateway.base_url}")


@app.on_event("shutdown")
async def shutdown_console() -> None:
    console: Optional[DispatchConsole] = getattr(app.state, "console", None)
    if console is not None:
        await console.close()


def _get_console(request: Request) -> DispatchConsole:
    console = getattr(request.app.state, "console", None)
    if console is None:
        raise HTTPException(status_code=503, detail="dispatch service not configured")
    return console


def _action_response(result: ActionResult) -> Dict[str, Any]:
    if result.ok:
        return result.to_dict()
    status_code = ACTION_ERROR_STATUS.get(result.error_kind or "", 400)
    raise HTTPException(status_code=status_code, detail=result.message)


def _require_point(payload: Dict[str, Any], key: str) -> GeoPoint:
    point = parse_point(payload.get(key))
    if point is None:
        raise HTTPException(status_code=400, detail=f"{key} must be an object with lat and lng")
    return point


def _session(driver_id: str) -> DriverSession:
    try:
        return DriverSession(driver_id=driver_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


# ---------------------------
# Health & dashboard
# ---------------------------
@app.get("/v1/health")
async def health(request: Request):
    console = getattr(request.app.state, "console", None)
    return {"ok": console is not None, "configured": console is not None}


@app.get("/api/stats")
async def stats(request: Request):
    return _get_console(request).stats()


@app.get("/api/notifications")
async def notifications(request: Request, since: int = 0):
    console = _get_console(request)
    return [n.to_dict() for n in console.notifications if n.id > since]


# ---------------------------
# Drivers
# ---------------------------
@app.get("/api/drivers")
async def list_drivers(request: Request):
    console = _get_console(request)
    return [
        {**driver.to_dict(), "pending": console.availability.in_flight(driver.id)}
        for driver in console.drivers()
    ]


@app.post("/api/drivers")
async def register_driver(request: Request, payload: Optional[Dict[str, Any]] = Body(None)):
    console = _get_console(request)
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="invalid payload")
    location = _require_point(payload, "location")
    driver_id = str(payload.get("id") or "").strip() or None
    return _action_response(await console.register_driver(location, driver_id))


@app.post("/api/drivers/{driver_id}/availability")
async def set_driver_availability(request: Request, driver_id: str, payload: Optional[Dict[str, Any]] = Body(None)):
    console = _get_console(request)
    raw = payload.get("availability") if isinstance(payload, dict) else None
    try:
        target = Availability(str(raw or "").strip().upper())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="availability must be ONLINE or OFFLINE") from exc
    return _action_response(await console.set_availability(driver_id, target))


@app.get("/api/drivers/{driver_id}/rides/pinged")
async def pinged_rides(request: Request, driver_id: str):
    console = _get_console(request)
    return [ride.to_dict() for ride in console.pinged_rides(_session(driver_id))]


@app.get("/api/drivers/{driver_id}/rides/managed")
async def managed_rides(request: Request, driver_id: str):
    console = _get_console(request)
    session = _session(driver_id)
    await console.track_driver(session)
    return await console.managed_rides_with_addresses(session)


@app.post("/api/drivers/{driver_id}/rides/{ride_id}/cancel")
async def cancel_managed_ride(request: Request, driver_id: str, ride_id: str):
    console = _get_console(request)
    return _action_response(await console.cancel_assigned(ride_id, driver_id))


@app.delete("/api/drivers/{driver_id}/tracking")
async def untrack_driver(request: Request, driver_id: str):
    console = _get_console(request)
    return {"ok": console.untrack_driver(_session(driver_id))}


# ---------------------------
# Rides
# ---------------------------
@app.get("/api/rides")
async def list_rides(request: Request):
    console = _get_console(request)
    rows = []
    for ride in console.ride_table():
        row = ride.to_dict()
        row["pickup_label"] = format_point(ride.pickup)
        row["drop_label"] = format_point(ride.drop)
        rows.append(row)
    return rows


@app.post("/api/rides")
async def create_ride(request: Request, payload: Optional[Dict[str, Any]] = Body(None)):
    console = _get_console(request)
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="invalid payload")
    pickup = _require_point(payload, "pickup")
    drop = None
    if payload.get("drop") is not None:
        drop = _require_point(payload, "drop")
    return _action_response(await console.create_ride(pickup, drop))


@app.post("/api/rides/{ride_id}/cancel")
async def cancel_ride(request: Request, ride_id: str, payload: Optional[Dict[str, Any]] = Body(None)):
    console = _get_console(request)
    driver_id = None
    if isinstance(payload, dict):
        driver_id = str(payload.get("driver_id") or "").strip() or None
    return _action_response(await console.cancel(ride_id, driver_id))


# ---------------------------
# Offers
# ---------------------------
@app.post("/api/rides/{ride_id}/drivers/{driver_id}/watch")
async def watch_offer(request: Request, ride_id: str, driver_id: str):
    console = _get_console(request)
    if ride_id not in console.rides:
        await console.refresh_rides()
    if ride_id not in console.rides:
        raise HTTPException(status_code=404, detail="unknown ride")
    console.watch_offer(ride_id, driver_id)
    return console.offer_view(ride_id, driver_id).to_dict()


@app.get("/api/rides/{ride_id}/drivers/{driver_id}/offer")
async def offer_view(request: Request, ride_id: str, driver_id: str):
    console = _get_console(request)
    view = console.offer_view(ride_id, driver_id)
    if view is None:
        raise HTTPException(status_code=404, detail="offer is not being watched")
    return view.to_dict()


@app.delete("/api/rides/{ride_id}/drivers/{driver_id}/watch")
async def unwatch_offer(request: Request, ride_id: str, driver_id: str):
    console = _get_console(request)
    return {"ok": console.unwatch_offer(ride_id, driver_id)}


@app.post("/api/rides/{ride_id}/drivers/{driver_id}/accept")
async def accept_ride(request: Request, ride_id: str, driver_id: str):
    console = _get_console(request)
    return _action_response(await console.accept(ride_id, driver_id))


@app.post("/api/rides/{ride_id}/drivers/{driver_id}/reject")
async def reject_ride(request: Request, ride_id: str, driver_id: str):
    console = _get_console(request)
    return _action_response(await console.reject(ride_id, driver_id))


@app.get("/api/rides/{ride_id}/drivers/{driver_id}/ping-status")
async def ping_status(request: Request, ride_id: str, driver_id: str):
    console = _get_console(request)
    try:
        offer = await console.ping_status(ride_id, driver_id)
    except RemoteRejected as exc:
        raise HTTPException(status_code=422, detail=exc.user_message("Failed to fetch status")) from exc
    except DispatchError as exc:
        raise HTTPException(status_code=502, detail=exc.user_message("Failed to fetch status")) from exc
    return offer.to_dict()
