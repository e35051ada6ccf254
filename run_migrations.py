"""Run database migrations with detailed output"""
import sys
from alembic import command
from alembic.config import Config

print("=" * 60)
print("Running Database Migrations")
print("=" * 60)

try:
    from hypemarket.config import settings
    db_url = settings.DATABASE_URL
    if "@" in db_url:
        # Mask credentials in the displayed URL
        scheme, rest = db_url.split("://", 1)
        db_url = f"{scheme}://***@{rest.split('@', 1)[1]}"
    print(f"Database URL configured: {db_url[:80]}")
except Exception as e:
    print(f"ERROR loading configuration: {e}")
    sys.exit(1)

print("-" * 60)

try:
    alembic_cfg = Config("alembic.ini")
    command.upgrade(alembic_cfg, "head")
    print("Migrations completed successfully")
except Exception as e:
    print(f"Migration failed: {e}")
    print("Common issues:")
    print("1. DATABASE_URL not set or incorrect")
    print("2. Database connection timeout")
    print("3. Tables already exist (try: alembic downgrade base)")
    import traceback
    traceback.print_exc()
    sys.exit(1)
