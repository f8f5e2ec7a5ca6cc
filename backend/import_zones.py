"""
Import pickup zones from a GeoJSON file into the database.

Each Polygon feature becomes (or replaces) one pickup zone:
- properties.id -> id (azure, pink, green, yellow resolve in that order)
- properties.name / color / description -> display fields
- properties.morning_pickup_time ... evening_pickup_end -> pickup windows ("HH:MM")
- geometry.coordinates[0] -> polygon ring, [lng, lat] vertices

Usage:
    python import_zones.py [path/to/zones.geojson]
"""
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from database import SessionLocal, init_db
from errors import PickupError
import db_service

DEFAULT_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "data", "pickup_zones.geojson")


def main():
    """Main entry point."""
    path = sys.argv[1] if len(sys.argv) > 1 else DEFAULT_PATH

    # Create tables if they don't exist
    init_db()

    db = SessionLocal()
    try:
        added = db_service.seed_sessions(db)
        if added:
            print(f"Created {added} default class sessions")

        count = db_service.import_zones_from_geojson(db, path)
        print(f"\nImport complete: {count} zones from {path}")

        for zone in db_service.get_zones(db):
            print(f"  {zone.display_order}. {zone.id:<8} {zone.name} ({len(zone.polygon)} vertices)")
    except PickupError as e:
        print(f"Import failed: {e}")
        sys.exit(1)
    finally:
        db.close()


if __name__ == "__main__":
    main()
