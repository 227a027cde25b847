"""
Drive a day of journeys against a running TapFare API.

This script demonstrates the tap-in/tap-out flow and the daily cap using the
demo card seeded by ``manage_db.py init``.
"""

import sys

import requests

DEMO_CARD = "4000000000001234"

# (entry, exit) station codes; zone 1 -> 2 -> 3 and back
DEMO_DAY = [
    ("ST001", "ST004"),
    ("ST004", "ST007"),
    ("ST007", "ST001"),
    ("ST002", "ST005"),
]


def tap(base_url: str, action: str, station_code: str, card_number: str = DEMO_CARD) -> dict:
    response = requests.post(
        f"{base_url}/api/journeys/{action}",
        json={"card_number": card_number, "station_code": station_code},
        timeout=10,
    )
    data = response.json()
    if response.status_code >= 400:
        print(f"✗ {action} at {station_code} failed: {data.get('error')} - {data.get('message')}")
        return {}
    return data


def ride(base_url: str = "http://localhost:8000"):
    """Make each demo journey in turn and print what was charged."""
    for entry, exit_ in DEMO_DAY:
        if not tap(base_url, "tap-in", entry):
            return
        result = tap(base_url, "tap-out", exit_)
        if not result:
            return

        cap_note = " (daily cap reached)" if result["daily_cap_reached"] else ""
        print(
            f"{result['entry_station_name']} → {result['exit_station_name']}: "
            f"{result['zones_transited']} zones, fare £{result['base_fare']}, "
            f"charged £{result['fare_amount']}, balance £{result['current_balance']}, "
            f"spent today £{result['daily_spend']}{cap_note}"
        )


def show_usage():
    print("=" * 60)
    print("JOURNEY DEMO")
    print("=" * 60)
    print("\nRuns a day of journeys on the demo card against a live API.")
    print("\nUsage:")
    print("  python ride_demo.py               # Show this help")
    print("  python ride_demo.py run [URL]     # Ride against URL (default localhost:8000)")
    print("\nExample - tap in via curl:")
    print('  curl -X POST http://localhost:8000/api/journeys/tap-in \\')
    print('    -H "Content-Type: application/json" \\')
    print(f'    -d \'{{"card_number": "{DEMO_CARD}", "station_code": "ST001"}}\'')
    print("\n" + "=" * 60)


if __name__ == "__main__":
    if len(sys.argv) > 1 and sys.argv[1].lower() == "run":
        ride(sys.argv[2] if len(sys.argv) > 2 else "http://localhost:8000")
    else:
        show_usage()
