from sqlalchemy import (
    Column, Integer, String, BigInteger, Boolean, Text, ForeignKey, CheckConstraint,
    UniqueConstraint, Index,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# Timestamps are unix seconds

class User(Base):
    __tablename__ = "users"
    id = Column(String(64), primary_key=True)
    email = Column(String(254), unique=True)
    is_email_verified = Column(Boolean, nullable=False, default=False)
    created_at = Column(BigInteger, nullable=False)

class Account(Base):
    __tablename__ = "point_accounts"
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_point_accounts_balance"),)
    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), index=True)
    balance = Column(BigInteger, nullable=False, default=0)
    updated_at = Column(BigInteger, nullable=False)

class LedgerEntry(Base):
    __tablename__ = "point_ledger"
    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_point_ledger_idempotency_key"),
        Index("ix_point_ledger_account_created", "account_id", "created_at"),
    )
    id = Column(String(36), primary_key=True)
    account_id = Column(String(64), ForeignKey("point_accounts.id"), nullable=False)
    delta = Column(BigInteger, nullable=False)
    reason = Column(String(255), nullable=False)
    link_id = Column(String(64))
    platform = Column(String(16))
    bucket_minute = Column(BigInteger)
    balance_after = Column(BigInteger)
    idempotency_key = Column(String(128))
    created_at = Column(BigInteger, nullable=False)

class DedupRecord(Base):
    __tablename__ = "point_dedupe"
    account_id = Column(String(64), primary_key=True)
    link_id = Column(String(64), primary_key=True)
    bucket_minute = Column(BigInteger, primary_key=True)
    platform = Column(String(16), primary_key=True)
    created_at = Column(BigInteger, nullable=False)

class PaymentOrder(Base):
    __tablename__ = "ecpay_orders"
    merchant_trade_no = Column(String(20), primary_key=True)
    account_id = Column(String(64), nullable=False, index=True)
    points = Column(BigInteger, nullable=False)
    amount = Column(BigInteger, nullable=False)
    currency = Column(String(8), nullable=False, default="TWD")
    description = Column(String(200))
    item_name = Column(String(400))
    custom_field1 = Column(String(50))
    custom_field2 = Column(String(50))
    custom_field3 = Column(String(50))
    status = Column(String(16), nullable=False, default="PENDING")  # PENDING|PAID|FAILED
    rtn_code = Column(String(16))
    rtn_msg = Column(String(200))
    payment_type = Column(String(50))
    payment_method = Column(String(50))
    trade_no = Column(String(20))
    trade_amt = Column(BigInteger)
    payment_date = Column(String(20))
    paid_at = Column(BigInteger)
    ledger_id = Column(String(36))
    balance_after = Column(BigInteger)
    raw_notify = Column(Text)
    raw_payment_info = Column(Text)
    created_at = Column(BigInteger, nullable=False)
    updated_at = Column(BigInteger, nullable=False)

class EmailVerificationToken(Base):
    __tablename__ = "email_verification_tokens"
    user_id = Column(String(64), ForeignKey("users.id"), primary_key=True)
    token_hash = Column(String(64), nullable=False, index=True)
    expires_at = Column(BigInteger, nullable=False)
    created_at = Column(BigInteger, nullable=False)

class SchemaVersion(Base):
    __tablename__ = "schema_version"
    version = Column(Integer, primary_key=True)
    description = Column(String(200), nullable=False)
    applied_at = Column(BigInteger, nullable=False)
