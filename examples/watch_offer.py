#!/usr/bin/env python3
"""
Ride offer watcher - run this locally against a dispatch service.
Usage: DISPATCH_API_BASE=http://localhost:3000/api python watch_offer.py RIDE_ID DRIVER_ID
"""

import sys
import asyncio
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from dispatch_client import DispatchGateway  # noqa: E402
from dispatch_errors import DispatchError  # noqa: E402
from ping_reconciler import PingReconciler  # noqa: E402
from ride_lifecycle import RideBook  # noqa: E402


async def watch(ride_id: str, driver_id: str) -> None:
    gateway = DispatchGateway.from_env()
    book = RideBook()
    try:
        print("=" * 60)
        print(f"Ride {ride_id} / driver {driver_id}")
        print(f"Service: {gateway.base_url}")
        print("=" * 60)

        try:
            book.merge_all(await gateway.list_rides())
        except DispatchError as e:
            print(f"✗ could not load rides: {e.user_message(e.message)}")
            return
        if ride_id not in book:
            print(f"✗ ride {ride_id} not found")
            return

        reconciler = PingReconciler(gateway, book.require(ride_id), driver_id).start()
        last = None
        while reconciler.active:
            view = reconciler.view()
            line = f"{view.status_label:<16} remaining={view.remaining_seconds} stale={view.stale}"
            if line != last:
                print(line)
                last = line
            await asyncio.sleep(0.25)
        await reconciler.wait_closed()
        print(f"✓ finished: {reconciler.view().status_label}")
    finally:
        await gateway.aclose()


def main() -> None:
    if len(sys.argv) != 3:
        print(__doc__)
        sys.exit(1)
    asyncio.run(watch(sys.argv[1], sys.argv[2]))


if __name__ == "__main__":
    main()
