"""
Numbered schema migrations, each applied exactly once and recorded in schema_version
"""
import logging
import time

from sqlalchemy import select

from points_service.models import (
    Base, User, Account, LedgerEntry, DedupRecord, PaymentOrder, EmailVerificationToken,
    SchemaVersion,
)

logger = logging.getLogger(__name__)

def _create_core_tables(conn):
    tables = [
        User.__table__,
        Account.__table__,
        LedgerEntry.__table__,
        DedupRecord.__table__,
        PaymentOrder.__table__,
        EmailVerificationToken.__table__,
    ]
    Base.metadata.create_all(bind=conn, tables=tables)

# Append new entries; never edit an applied one
MIGRATIONS = [
    (1, "create core tables", _create_core_tables),
]

def applied_versions(engine) -> set:
    with engine.connect() as conn:
        return set(conn.execute(select(SchemaVersion.version)).scalars())

def migrate(engine) -> list:
    """Apply pending migrations in order; returns the versions applied by this call."""
    SchemaVersion.__table__.create(bind=engine, checkfirst=True)
    done = applied_versions(engine)
    applied = []

    for version, description, apply in MIGRATIONS:
        if version in done:
            continue
        with engine.begin() as conn:
            apply(conn)
            conn.execute(SchemaVersion.__table__.insert().values(
                version=version, description=description, applied_at=int(time.time()),
            ))
        logger.info(f"Applied schema migration {version}: {description}")
        applied.append(version)

    return applied

def current_version(engine) -> int:
    return max(applied_versions(engine), default=0)
