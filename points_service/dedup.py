import logging
import time
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from points_service.models import DedupRecord

logger = logging.getLogger(__name__)

BUCKET_SECONDS = 60

def bucket_for(ts: float) -> int:
    return int(ts // BUCKET_SECONDS)

@dataclass(frozen=True)
class DedupKey:
    account_id: str
    link_id: str
    platform: str
    bucket: int

class DedupGuard:
    """Uniqueness of (account, link, bucket, platform) is the only lock between racing charges."""

    def is_claimed(self, db: Session, key: DedupKey) -> bool:
        found = db.execute(
            select(DedupRecord.account_id).where(
                DedupRecord.account_id == key.account_id,
                DedupRecord.link_id == key.link_id,
                DedupRecord.bucket_minute == key.bucket,
                DedupRecord.platform == key.platform,
            )
        ).first()
        return found is not None

    def try_claim(self, db: Session, key: DedupKey, now: int = None) -> bool:
        """Insert the record in the caller's transaction.

        Returns False when another charge already holds the key; the whole transaction
        has then been rolled back, so nothing else written in it survives.
        """
        db.add(DedupRecord(
            account_id=key.account_id,
            link_id=key.link_id,
            bucket_minute=key.bucket,
            platform=key.platform,
            created_at=int(now if now is not None else time.time()),
        ))
        try:
            db.flush()
        except IntegrityError:
            db.rollback()
            logger.info(f"Dedup key already claimed: {key}")
            return False
        return True
