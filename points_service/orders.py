"""
Payment order state machine: PENDING -> PAID | FAILED.

Transitions are conditional UPDATEs guarded by `status = 'PENDING'`, so two writers racing
on one order cannot both win and a terminal order never moves again.
"""
import json
import logging
import time
from dataclasses import dataclass, fields
from enum import Enum
from typing import Optional, Sequence

from sqlalchemy import update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from common.error_handling import DuplicateTradeNo, OrderNotFound
from points_service.db import store_errors
from points_service.models import PaymentOrder

logger = logging.getLogger(__name__)

class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"

TERMINAL = (OrderStatus.PAID.value, OrderStatus.FAILED.value)

def _to_int(value) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None

def _to_str(value) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None

@dataclass
class GatewayResult:
    """Echo fields the gateway sends back; any of them may be absent."""
    rtn_code: Optional[str] = None
    rtn_msg: Optional[str] = None
    payment_type: Optional[str] = None
    payment_method: Optional[str] = None
    trade_no: Optional[str] = None
    trade_amt: Optional[int] = None
    payment_date: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: dict) -> "GatewayResult":
        return cls(
            rtn_code=_to_str(payload.get("RtnCode")),
            rtn_msg=_to_str(payload.get("RtnMsg")),
            payment_type=_to_str(payload.get("PaymentType") or payload.get("ChoosePayment")),
            payment_method=_to_str(payload.get("ChoosePayment") or payload.get("PaymentType")),
            trade_no=_to_str(payload.get("TradeNo")),
            trade_amt=_to_int(payload.get("TradeAmt")),
            payment_date=_to_str(payload.get("PaymentDate")),
        )

    def present(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}

    def fill_missing(self) -> dict:
        """Values that only land on columns that are still NULL."""
        return {name: func.coalesce(getattr(PaymentOrder, name), value) for name, value in self.present().items()}

def mark_paid(db: Session, trade_no: str, gateway: GatewayResult, ledger_id: str, balance_after: int,
              now: int) -> bool:
    """Transition inside the caller's transaction. Returns True only for the call that moved the order."""
    moved = db.execute(
        update(PaymentOrder)
        .where(PaymentOrder.merchant_trade_no == trade_no, PaymentOrder.status == OrderStatus.PENDING.value)
        .values(status=OrderStatus.PAID.value, ledger_id=ledger_id, balance_after=balance_after,
                paid_at=now, updated_at=now, **gateway.present())
        .execution_options(synchronize_session=False)
    )
    if moved.rowcount:
        return True

    # Repeat delivery for a paid order: only echo fields that are still empty get filled
    extra = gateway.fill_missing()
    if extra:
        db.execute(
            update(PaymentOrder)
            .where(PaymentOrder.merchant_trade_no == trade_no, PaymentOrder.status == OrderStatus.PAID.value)
            .values(updated_at=now, **extra)
            .execution_options(synchronize_session=False)
        )
    return False

class OrderStore:
    def __init__(self, session_factory, clock=time.time):
        self.session_factory = session_factory
        self.clock = clock

    def create(self, trade_no: str, account_id: str, points: int, amount: int, description: str = None,
               item_name: str = None, custom_fields: Sequence[str] = ()) -> PaymentOrder:
        now = int(self.clock())
        custom = list(custom_fields) + [None] * (3 - len(custom_fields))
        order = PaymentOrder(
            merchant_trade_no=trade_no,
            account_id=account_id,
            points=points,
            amount=amount,
            currency="TWD",
            description=description,
            item_name=item_name,
            custom_field1=custom[0],
            custom_field2=custom[1],
            custom_field3=custom[2],
            status=OrderStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )
        with store_errors("orders.create"):
            with self.session_factory() as db:
                if db.get(PaymentOrder, trade_no) is not None:
                    raise DuplicateTradeNo(trade_no)
                db.add(order)
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    raise DuplicateTradeNo(trade_no)

        logger.info(f"Created order {trade_no} for {points} points", extra={"account_id": account_id})
        return order

    def find(self, trade_no: str) -> Optional[PaymentOrder]:
        with store_errors("orders.find"):
            with self.session_factory() as db:
                return db.get(PaymentOrder, trade_no)

    def get(self, trade_no: str) -> PaymentOrder:
        order = self.find(trade_no)
        if order is None:
            raise OrderNotFound(trade_no)
        return order

    def record_payment_info(self, trade_no: str, gateway: GatewayResult, raw: dict = None) -> bool:
        """Store payment instructions (bank code, virtual account...). Never changes status."""
        now = int(self.clock())
        raw_json = json.dumps(raw, ensure_ascii=False, sort_keys=True) if raw is not None else None

        with store_errors("orders.record_payment_info"):
            with self.session_factory() as db:
                values = dict(gateway.present())
                if raw_json is not None:
                    values["raw_payment_info"] = raw_json
                moved = db.execute(
                    update(PaymentOrder)
                    .where(PaymentOrder.merchant_trade_no == trade_no, PaymentOrder.status == OrderStatus.PENDING.value)
                    .values(updated_at=now, **values)
                    .execution_options(synchronize_session=False)
                )
                if not moved.rowcount:
                    extra = gateway.fill_missing()
                    if raw_json is not None:
                        extra["raw_payment_info"] = func.coalesce(PaymentOrder.raw_payment_info, raw_json)
                    moved = db.execute(
                        update(PaymentOrder)
                        .where(PaymentOrder.merchant_trade_no == trade_no)
                        .values(updated_at=now, **extra)
                        .execution_options(synchronize_session=False)
                    )
                db.commit()
        return bool(moved.rowcount)

    def record_raw_notify(self, trade_no: str, raw: dict):
        now = int(self.clock())
        with store_errors("orders.record_raw_notify"):
            with self.session_factory() as db:
                db.execute(
                    update(PaymentOrder)
                    .where(PaymentOrder.merchant_trade_no == trade_no)
                    .values(raw_notify=json.dumps(raw, ensure_ascii=False, sort_keys=True), updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                db.commit()

    def mark_paid(self, trade_no: str, gateway: GatewayResult, ledger_id: str, balance_after: int) -> bool:
        with store_errors("orders.mark_paid"):
            with self.session_factory() as db:
                moved = mark_paid(db, trade_no, gateway, ledger_id, balance_after, int(self.clock()))
                db.commit()
        if moved:
            logger.info(f"Order {trade_no} marked PAID", extra={"ledger_id": ledger_id})
        return moved

    def mark_failed(self, trade_no: str, gateway: GatewayResult = None) -> bool:
        gateway = gateway or GatewayResult()
        now = int(self.clock())
        with store_errors("orders.mark_failed"):
            with self.session_factory() as db:
                moved = db.execute(
                    update(PaymentOrder)
                    .where(PaymentOrder.merchant_trade_no == trade_no, PaymentOrder.status == OrderStatus.PENDING.value)
                    .values(status=OrderStatus.FAILED.value, updated_at=now, **gateway.present())
                    .execution_options(synchronize_session=False)
                )
                db.commit()
        if moved.rowcount:
            logger.info(f"Order {trade_no} marked FAILED", extra={"rtn_code": gateway.rtn_code})
        return bool(moved.rowcount)

def to_view(order: PaymentOrder) -> dict:
    raw_info = json.loads(order.raw_payment_info) if order.raw_payment_info else None
    return {
        "merchantTradeNo": order.merchant_trade_no,
        "status": order.status,
        "points": order.points,
        "amount": order.amount,
        "currency": order.currency,
        "rtnCode": order.rtn_code,
        "rtnMsg": order.rtn_msg,
        "paymentType": order.payment_type,
        "paymentMethod": order.payment_method,
        "tradeNo": order.trade_no,
        "tradeAmt": order.trade_amt,
        "paymentDate": order.payment_date,
        "paidAt": order.paid_at,
        "ledgerId": order.ledger_id,
        "balanceAfter": order.balance_after,
        "createdAt": order.created_at,
        "updatedAt": order.updated_at,
        "rawPaymentInfo": raw_info,
    }
