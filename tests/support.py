"""Shared helpers for the test suite"""
from sqlalchemy.exc import OperationalError

from points_service.db import build_engine, make_session_factory
from points_service.migrations import migrate
from points_service.models import Base

HASH_KEY = "pwFHCqoQZGmho4w6"
HASH_IV = "EkRm7iFT261dpevs"
MERCHANT_ID = "3002607"

def fresh_store():
    """Migrated in-memory database and a session factory bound to it."""
    engine = build_engine("sqlite://")
    migrate(engine)
    return engine, make_session_factory(engine)

def reset_database(engine):
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            if table.name != "schema_version":
                conn.execute(table.delete())

class FakeClock:
    def __init__(self, now: float = 1_760_846_400.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

class FlakySessions:
    """Session factory whose first `failures` calls fail like a lock wait timeout."""

    def __init__(self, factory, failures: int):
        self.factory = factory
        self.failures = failures
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise OperationalError("UPDATE point_accounts", {}, Exception("Lock wait timeout exceeded"))
        return self.factory()

async def no_sleep(delay: float):
    return None
