"""
Append-only points ledger with a balance projection kept in the same transaction.

Every balance change goes through `apply_delta`: a conditional UPDATE on the balance row
(`balance + delta >= 0`) followed by the ledger insert, both inside the caller's session.
No code path reads a balance, computes, and writes it back.
"""
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Optional, List

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from common.error_handling import (
    AccountNotFound, AccountExists, InsufficientBalance, InvalidAmount, DuplicateLedgerEntry,
)
from points_service.db import store_errors
from points_service.models import Account, LedgerEntry

logger = logging.getLogger(__name__)

@dataclass
class LedgerResult:
    ledger_id: str
    balance_after: int

@dataclass
class AuditResult:
    account_id: str
    balance: int
    ledger_sum: int

    @property
    def consistent(self) -> bool:
        return self.balance == self.ledger_sum

def _require_points(value, field: str = "delta", positive: bool = False) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidAmount(f"{field} must be an integer number of points", field=field)
    if value == 0 or (positive and value < 0):
        raise InvalidAmount(f"{field} must be {'positive' if positive else 'non-zero'}", field=field)
    return value

def find_by_idempotency_key(db: Session, key: str) -> Optional[LedgerEntry]:
    return db.execute(select(LedgerEntry).where(LedgerEntry.idempotency_key == key)).scalar_one_or_none()

def apply_delta(
    db: Session,
    account_id: str,
    delta: int,
    reason: str,
    link_id: str = None,
    platform: str = None,
    bucket: int = None,
    idempotency_key: str = None,
    now: int = None,
) -> LedgerResult:
    """Apply one movement inside the caller's transaction. The caller commits."""
    _require_points(delta)
    now = int(now if now is not None else time.time())

    if idempotency_key:
        existing = find_by_idempotency_key(db, idempotency_key)
        if existing is not None:
            raise DuplicateLedgerEntry(idempotency_key, LedgerResult(existing.id, existing.balance_after))

    moved = db.execute(
        update(Account)
        .where(Account.id == account_id, Account.balance + delta >= 0)
        .values(balance=Account.balance + delta, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if moved.rowcount == 0:
        balance = db.execute(select(Account.balance).where(Account.id == account_id)).scalar_one_or_none()
        if balance is None:
            raise AccountNotFound(account_id)
        raise InsufficientBalance(account_id, balance, -delta)

    balance_after = db.execute(select(Account.balance).where(Account.id == account_id)).scalar_one()
    entry = LedgerEntry(
        id=str(uuid.uuid4()),
        account_id=account_id,
        delta=delta,
        reason=reason,
        link_id=link_id,
        platform=platform,
        bucket_minute=bucket,
        balance_after=balance_after,
        idempotency_key=idempotency_key,
        created_at=now,
    )
    db.add(entry)
    try:
        db.flush()
    except IntegrityError:
        # A concurrent writer used the same key between our check and insert
        db.rollback()
        existing = find_by_idempotency_key(db, idempotency_key) if idempotency_key else None
        if existing is None:
            raise
        raise DuplicateLedgerEntry(idempotency_key, LedgerResult(existing.id, existing.balance_after))

    return LedgerResult(ledger_id=entry.id, balance_after=balance_after)

class LedgerStore:
    def __init__(self, session_factory, clock=time.time):
        self.session_factory = session_factory
        self.clock = clock

    def apply_delta(self, account_id: str, delta: int, reason: str, link_id: str = None,
                    platform: str = None, bucket: int = None, idempotency_key: str = None) -> LedgerResult:
        with store_errors("ledger.apply_delta"):
            with self.session_factory() as db:
                result = apply_delta(db, account_id, delta, reason, link_id=link_id, platform=platform,
                                     bucket=bucket, idempotency_key=idempotency_key, now=self.clock())
                db.commit()

        logger.info(f"Ledger {reason}: account={account_id} delta={delta} balance={result.balance_after}",
                    extra={"account_id": account_id, "ledger_id": result.ledger_id})
        return result

    def open_account(self, account_id: str, user_id: str = None, initial_balance: int = 0) -> int:
        if initial_balance:
            _require_points(initial_balance, field="initial_balance", positive=True)
        now = int(self.clock())

        with store_errors("ledger.open_account"):
            with self.session_factory() as db:
                if db.get(Account, account_id) is not None:
                    raise AccountExists(account_id)
                db.add(Account(id=account_id, user_id=user_id, balance=0, updated_at=now))
                try:
                    db.flush()
                except IntegrityError:
                    db.rollback()
                    raise AccountExists(account_id)
                if initial_balance:
                    apply_delta(db, account_id, initial_balance, "opening", now=now)
                db.commit()

        logger.info(f"Opened account {account_id} with {initial_balance} points")
        return initial_balance

    def credit(self, account_id: str, amount: int, memo: Optional[str] = None) -> LedgerResult:
        _require_points(amount, field="amount", positive=True)
        return self.apply_delta(account_id, amount, f"recharge:{memo or ''}")

    def get_balance(self, account_id: str) -> int:
        with store_errors("ledger.get_balance"):
            with self.session_factory() as db:
                balance = db.execute(select(Account.balance).where(Account.id == account_id)).scalar_one_or_none()
        if balance is None:
            raise AccountNotFound(account_id)
        return balance

    def list_entries(self, account_id: str, limit: int = 50, offset: int = 0) -> List[LedgerEntry]:
        """Newest first. Entries within the same second come back in store order."""
        with store_errors("ledger.list_entries"):
            with self.session_factory() as db:
                if db.get(Account, account_id) is None:
                    raise AccountNotFound(account_id)
                return list(db.execute(
                    select(LedgerEntry)
                    .where(LedgerEntry.account_id == account_id)
                    .order_by(LedgerEntry.created_at.desc())
                    .limit(limit)
                    .offset(offset)
                ).scalars())

    def audit(self, account_id: str) -> AuditResult:
        with store_errors("ledger.audit"):
            with self.session_factory() as db:
                balance = db.execute(select(Account.balance).where(Account.id == account_id)).scalar_one_or_none()
                if balance is None:
                    raise AccountNotFound(account_id)
                total = db.execute(
                    select(func.coalesce(func.sum(LedgerEntry.delta), 0)).where(LedgerEntry.account_id == account_id)
                ).scalar_one()

        result = AuditResult(account_id=account_id, balance=balance, ledger_sum=int(total))
        if not result.consistent:
            logger.error(f"Balance projection drift on {account_id}: balance={balance} ledger_sum={total}")
        return result
