#!/usr/bin/env python3
"""
Database management utility for the TapFare system.

Usage:
    python manage_db.py init            - Create tables, seed stations and the demo account
    python manage_db.py show            - Show all stations by zone
    python manage_db.py add_station     - Add a new station
    python manage_db.py station_status  - Change a station's operational status
    python manage_db.py top_up          - Top up a user's balance
    python manage_db.py sweep           - Resolve journeys abandoned without a tap-out
    python manage_db.py reset           - Delete the database and re-seed it
"""

import sys
import os
from decimal import Decimal, InvalidOperation
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from tapfare.config import Settings
from tapfare.database import DatabaseManager, StationStatus
from tapfare.exceptions import TapFareError
from tapfare.logging_config import configure_logging
from tapfare.main import build_components


def init_database():
    """Initialize database with the default station network."""
    print("Initializing database...")
    db = DatabaseManager(Settings().DATABASE_URL)
    db.init_default_data()
    print("Database initialized successfully!")
    show_stations()


def show_stations():
    """Display all stations."""
    db = DatabaseManager(Settings().DATABASE_URL)
    stations = db.get_all_stations()

    print("\n" + "="*56)
    print("STATIONS")
    print("="*56)
    print(f"{'Code':<8} {'Name':<24} {'Zone':<6} {'Status':<12}")
    print("-"*56)

    for station in stations:
        print(f"{station.station_code:<8} {station.name:<24} {station.zone_number:<6} {station.status.value:<12}")

    print("-"*56)
    print(f"Total stations: {len(stations)}")

    settings = Settings()
    print(f"\nBase fare: £{settings.BASE_FARE}  Per zone: £{settings.PER_ZONE_CHARGE}")
    print(f"Daily cap: £{settings.DAILY_CAP_AMOUNT}  Incomplete penalty: £{settings.INCOMPLETE_JOURNEY_PENALTY}")
    print("="*56)


def add_station():
    """Add a new station interactively."""
    print("\nADD NEW STATION")
    print("-"*30)

    try:
        db = DatabaseManager(Settings().DATABASE_URL)
        code = input("Station code: ").strip()
        name = input("Station name: ").strip()
        zone_number = int(input("Zone number: "))

        db.add_station(code, name, zone_number)
        print(f"\n✓ Station {code} added to Zone {zone_number}")
        show_stations()

    except ValueError as e:
        print(f"Invalid input: {e}")


def change_station_status():
    """Set a station to ACTIVE, MAINTENANCE or CLOSED."""
    components = build_components(Settings())
    code = input("Station code: ").strip()
    choices = ", ".join(s.value for s in StationStatus)
    raw = input(f"New status ({choices}): ").strip().upper()

    try:
        new_status = StationStatus(raw)
    except ValueError:
        print(f"Unknown status: {raw}")
        return

    station = components.stations.set_status(code, new_status)
    if station is None:
        print(f"Station {code} not found")
        return
    print(f"✓ Station {code} is now {station.status.value}")


def top_up():
    """Credit a user's balance."""
    components = build_components(Settings())
    try:
        user_id = int(input("User id: "))
        amount = Decimal(input("Amount (£): "))
    except (ValueError, InvalidOperation):
        print("Invalid input! Please enter numbers only.")
        return

    try:
        result = components.accounts.top_up(user_id, amount)
    except TapFareError as e:
        print(f"Top-up failed: {e.message}")
        return
    print(f"✓ New balance for user {user_id}: £{result.balance}")


def sweep():
    """Run the abandoned-journey sweep once."""
    components = build_components(Settings())
    report = components.journeys.sweep_incomplete_journeys()
    print(f"Resolved: {report.processed}")
    if report.skipped:
        print(f"Skipped (penalty unpaid): {report.skipped}")
    if report.failed:
        print(f"Failed: {report.failed}")


def reset_database():
    """Reset database to defaults."""
    confirm = input("Are you sure you want to delete all journeys and balances? (yes/no): ")

    if confirm.lower() == 'yes':
        database_url = Settings().DATABASE_URL
        if database_url.startswith("sqlite:///"):
            db_path = database_url[len("sqlite:///"):]
            if os.path.exists(db_path):
                os.remove(db_path)
                print("Database deleted.")
        else:
            print("Reset only supports SQLite databases.")
            return

        init_database()
        print("Database reset to defaults!")
    else:
        print("Reset cancelled.")


def main():
    """Main entry point."""
    if len(sys.argv) < 2:
        print(__doc__)
        return

    settings = Settings()
    configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)
    command = sys.argv[1].lower()

    commands = {
        'init': init_database,
        'show': show_stations,
        'add_station': add_station,
        'station_status': change_station_status,
        'top_up': top_up,
        'sweep': sweep,
        'reset': reset_database,
    }

    if command in commands:
        commands[command]()
    else:
        print(f"Unknown command: {command}")
        print(__doc__)


if __name__ == "__main__":
    main()
