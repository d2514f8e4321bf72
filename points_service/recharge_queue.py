"""
Reconciliation of verified "payment completed" notifications into ledger credits.

The in-flight map keeps one running attempt per trade number; a concurrent delivery
waits on it rather than starting a second one.
Exactly-once crediting comes from the store: the credit carries the unique ledger key
`recharge:<trade_no>` and the order moves PENDING -> PAID in the same transaction.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, Optional, Set

from common.error_handling import (
    AccountNotFound, DuplicateLedgerEntry, OrderNotFound, ReconciliationFailed,
)
from common.retry import RECHARGE_RETRY_CONFIG, RetryConfig, retry_async
from common.tracing import reconciliation_tracer
from points_service.db import store_errors
from points_service.ledger import apply_delta
from points_service.models import PaymentOrder
from points_service.orders import GatewayResult, OrderStatus, OrderStore, mark_paid

logger = logging.getLogger(__name__)

def credit_key(trade_no: str) -> str:
    return f"recharge:{trade_no}"

@dataclass
class PaidNotification:
    trade_no: str
    gateway: GatewayResult

@dataclass
class ReconciliationOutcome:
    trade_no: str
    status: str
    ledger_id: Optional[str] = None
    balance_after: Optional[int] = None
    credited: bool = False

class ReconciliationQueue:
    def __init__(self, session_factory, orders: OrderStore = None, retry_config: RetryConfig = RECHARGE_RETRY_CONFIG,
                 clock=time.time):
        self.session_factory = session_factory
        self.orders = orders or OrderStore(session_factory, clock=clock)
        self.retry_config = retry_config
        self.clock = clock
        self.in_flight: Dict[str, asyncio.Task] = {}
        self.tasks: Set[asyncio.Task] = set()

    def _settle(self, notification: PaidNotification) -> ReconciliationOutcome:
        trade_no = notification.trade_no
        now = int(self.clock())

        with store_errors("recharge.settle"):
            with self.session_factory() as db:
                order = db.get(PaymentOrder, trade_no)
                if order is None:
                    raise OrderNotFound(trade_no)

                if order.status == OrderStatus.FAILED.value:
                    return ReconciliationOutcome(trade_no, order.status)
                if order.status == OrderStatus.PAID.value:
                    mark_paid(db, trade_no, notification.gateway, order.ledger_id, order.balance_after, now)
                    db.commit()
                    return ReconciliationOutcome(trade_no, order.status, order.ledger_id, order.balance_after)

                account_id, points, amount = order.account_id, order.points, order.amount
                paid_amount = notification.gateway.trade_amt
                if paid_amount is not None and paid_amount != amount:
                    logger.warning(f"Order {trade_no} paid {paid_amount}, expected {amount}")

                credited = True
                key = credit_key(trade_no)
                try:
                    entry = apply_delta(db, account_id, points, key, idempotency_key=key, now=now)
                except DuplicateLedgerEntry as e:
                    entry = e.entry
                    credited = False
                    logger.info(f"Credit for {trade_no} already in the ledger as {entry.ledger_id}")

                mark_paid(db, trade_no, notification.gateway, entry.ledger_id, entry.balance_after, now)
                db.commit()

        if credited:
            logger.info(f"Credited {points} points to {account_id} for {trade_no}",
                        extra={"ledger_id": entry.ledger_id, "balance_after": entry.balance_after})
        return ReconciliationOutcome(trade_no, OrderStatus.PAID.value, entry.ledger_id, entry.balance_after, credited)

    async def _settle_in_thread(self, notification: PaidNotification) -> ReconciliationOutcome:
        return await asyncio.to_thread(self._settle, notification)

    async def process(self, notification: PaidNotification) -> ReconciliationOutcome:
        """Settle one notification.

        A delivery for a trade number that is already being worked on waits for that attempt
        and gets its outcome, or its ReconciliationFailed once the retry budget is spent.
        """
        trade_no = notification.trade_no
        running = self.in_flight.get(trade_no)
        if running is not None:
            logger.info(f"Joining in-flight reconciliation for {trade_no}")
            return await asyncio.shield(running)

        running = asyncio.get_running_loop().create_task(self._reconcile(notification))
        self.in_flight[trade_no] = running
        try:
            return await running
        finally:
            if self.in_flight.get(trade_no) is running:
                del self.in_flight[trade_no]

    async def _reconcile(self, notification: PaidNotification) -> ReconciliationOutcome:
        trade_no = notification.trade_no
        with reconciliation_tracer.start_span("recharge.reconcile") as span:
            span.add_tag("merchant_trade_no", trade_no)
            try:
                outcome = await retry_async(self._settle_in_thread, self.retry_config, notification)
            except AccountNotFound:
                logger.error(f"Account for order {trade_no} does not exist; marking order FAILED")
                self.orders.mark_failed(trade_no, notification.gateway)
                outcome = ReconciliationOutcome(trade_no, OrderStatus.FAILED.value)
            except Exception as e:
                if not self.retry_config.is_retryable(e):
                    raise
                logger.error(f"Giving up on {trade_no} after {self.retry_config.max_attempts} attempts: {e}")
                raise ReconciliationFailed(trade_no, e) from e
            span.add_tag("order.status", outcome.status)
            span.add_tag("credited", outcome.credited)
            return outcome

    def submit(self, notification: PaidNotification) -> asyncio.Task:
        """Fire-and-forget; the task stays referenced until it finishes."""
        task = asyncio.get_running_loop().create_task(self._run_detached(notification))
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task

    async def _run_detached(self, notification: PaidNotification):
        try:
            return await self.process(notification)
        except Exception:
            logger.exception(f"Background reconciliation for {notification.trade_no} failed")
            return None

    async def drain(self, timeout: float = None):
        """Wait for submitted work, e.g. on shutdown."""
        if not self.tasks:
            return
        pending = list(self.tasks)
        logger.info(f"Draining {len(pending)} reconciliation task(s)")
        await asyncio.wait(pending, timeout=timeout)
