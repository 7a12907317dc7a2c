"""
Initialize the gateway database schema
Creates all tables and, optionally, seeds the global download PIN
Usage: python scripts/init_db.py [download_pin]
"""
import sys
import os

# Add parent directory to path to import backend modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.database import Base, init_db
from core.gateway import GatewayError, get_gateway


def init_database(download_pin=None):
    """Create all tables in the database"""
    print("Creating tables...")

    try:
        init_db()
        print("✓ Tables created successfully!")
        print("\nCreated tables:")
        for name in sorted(Base.metadata.tables):
            print(f"  - {name}")
    except Exception as e:
        print(f"✗ Error creating tables: {e}")
        sys.exit(1)

    if download_pin:
        try:
            get_gateway().set_download_pin(download_pin)
            print("✓ Global download PIN set")
        except GatewayError as e:
            print(f"✗ Error setting download PIN: {e}")
            sys.exit(1)


if __name__ == "__main__":
    init_database(sys.argv[1] if len(sys.argv) > 1 else None)
