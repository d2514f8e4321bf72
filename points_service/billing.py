import logging
import time
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError

from common.error_handling import InsufficientBalance, InsufficientPoints, InvalidPlatform
from points_service.db import store_errors
from points_service.dedup import DedupGuard, DedupKey, bucket_for
from points_service.ledger import apply_delta

logger = logging.getLogger(__name__)

PLATFORM_COSTS = {"ipa": 5, "apk": 3}

def cost_for(platform: str) -> int:
    try:
        return PLATFORM_COSTS[platform]
    except KeyError:
        raise InvalidPlatform(platform)

@dataclass
class BillingResult:
    deduped: bool
    cost: int = 0
    ledger_id: Optional[str] = None
    balance_after: Optional[int] = None

    @property
    def charged(self) -> bool:
        return not self.deduped

    def to_response(self) -> dict:
        if self.deduped:
            return {"ok": True, "deduped": True}
        return {"ok": True, "charged": True, "cost": self.cost,
                "ledger_id": self.ledger_id, "balance": self.balance_after}

class BillingService:
    def __init__(self, session_factory, guard: DedupGuard = None, clock=time.time):
        self.session_factory = session_factory
        self.guard = guard or DedupGuard()
        self.clock = clock

    def bill(self, account_id: str, link_id: str, platform: str) -> BillingResult:
        """Charge one download; a repeat within the same minute is a success with no charge."""
        platform = platform.strip().lower()
        cost = cost_for(platform)
        now = int(self.clock())
        key = DedupKey(account_id, link_id, platform, bucket_for(now))

        with store_errors("billing.bill"):
            with self.session_factory() as db:
                if self.guard.is_claimed(db, key):
                    logger.info(f"Download already billed: {key}")
                    return BillingResult(deduped=True)

                try:
                    charge = apply_delta(db, account_id, -cost, "download", link_id=link_id,
                                         platform=platform, bucket=key.bucket, now=now)
                except InsufficientBalance as e:
                    db.rollback()
                    raise InsufficientPoints(account_id, e.balance, cost)

                # The key is only claimed once the charge has gone through
                if not self.guard.try_claim(db, key, now=now):
                    return BillingResult(deduped=True)

                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    logger.info(f"Lost dedup race at commit: {key}")
                    return BillingResult(deduped=True)

        logger.info(f"Billed {cost} points for {platform} download", extra={
            "account_id": account_id, "link_id": link_id, "ledger_id": charge.ledger_id,
        })
        return BillingResult(deduped=False, cost=cost, ledger_id=charge.ledger_id,
                             balance_after=charge.balance_after)
