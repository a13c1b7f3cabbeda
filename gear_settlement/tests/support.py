import os
import sys
import tempfile
import unittest
from datetime import datetime, timedelta
from pathlib import Path


os.environ.setdefault("GEAR_SETTLEMENT_DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("SESSION_SIGNING_SECRET", "x" * 48)
os.environ.setdefault("SETTLEMENT_ADMIN_IDS", "admin-1")

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from db.base import Base  # noqa: E402
from db.session import build_engine, build_session_factory  # noqa: E402
from models import settlement_models  # noqa: E402,F401
from services import rental_service  # noqa: E402
from services.listing_service import upsert_listing  # noqa: E402

BASE_TIME = datetime(2030, 1, 7, 10, 0, 0)

OWNER = "owner-1"
RENTER = "renter-1"
OTHER_RENTER = "renter-2"
STRANGER = "stranger-1"
ADMIN = "admin-1"


def at(days: float = 0, hours: float = 0) -> datetime:
    return BASE_TIME + timedelta(days=days, hours=hours)


class SettlementTestCase(unittest.TestCase):
    """Each test gets its own SQLite file so two sessions can race on it."""

    def setUp(self):
        self._tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmpdir.cleanup)
        self.db_url = f"sqlite+pysqlite:///{Path(self._tmpdir.name) / 'settlement.db'}"
        self.engine = build_engine(self.db_url)
        self.addCleanup(self.engine.dispose)
        Base.metadata.create_all(self.engine)
        self.Session = build_session_factory(self.engine)
        self.db = self.new_session()

    def new_session(self):
        session = self.Session()
        self.addCleanup(session.close)
        return session

    def add_listing(self, gear_id=1, owner_id=OWNER, daily_rate=10, deposit_amount=50):
        return upsert_listing(
            self.db,
            gear_id,
            owner_id=owner_id,
            title=f"Gear {gear_id}",
            daily_rate=daily_rate,
            deposit_amount=deposit_amount,
        )

    def create_rental(self, renter_id=RENTER, gear_id=1, start_day=0, days=3, protection_type="standard"):
        return rental_service.create_rental_request(
            self.db,
            renter_id,
            gear_id,
            at(start_day),
            at(start_day + days),
            "Campus gate",
            protection_type,
        )

    def active_rental(self, **kwargs):
        rental = self.create_rental(**kwargs)
        return rental_service.approve_rental(self.db, rental.RentalID, OWNER)
