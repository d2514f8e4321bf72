"""
One-time email verification tokens.

One row per user: issuing again replaces the previous token. Rows are looked up by the
SHA-256 of the token and deleted on consumption, whether it succeeds or has expired.
"""
import logging
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy import select, delete, update
from sqlalchemy.exc import IntegrityError

from common.security import sha256_hex
from common.settings import settings
from points_service.db import store_errors
from points_service.models import EmailVerificationToken, User

logger = logging.getLogger(__name__)

MIN_TTL_SECONDS = 60

class ConsumeStatus(str, Enum):
    SUCCESS = "success"
    EXPIRED = "expired"
    INVALID = "invalid"

@dataclass
class IssuedToken:
    token: str
    expires_at: int

@dataclass
class ConsumeResult:
    status: ConsumeStatus
    user_id: Optional[str] = None

class VerificationTokenStore:
    def __init__(self, session_factory, clock=time.time, default_ttl: int = None):
        self.session_factory = session_factory
        self.clock = clock
        self.default_ttl = default_ttl or settings.email_verification_ttl_seconds

    def ensure_user(self, user_id: str, email: str = None) -> User:
        now = int(self.clock())
        with store_errors("verification.ensure_user"):
            with self.session_factory() as db:
                user = db.get(User, user_id)
                if user is None:
                    user = User(id=user_id, email=email, is_email_verified=False, created_at=now)
                    db.add(user)
                elif email and user.email != email:
                    user.email = email
                    user.is_email_verified = False
                db.commit()
                return user

    def issue(self, user_id: str, ttl_seconds: int = None) -> IssuedToken:
        token = uuid.uuid4().hex
        now = int(self.clock())
        expires_at = now + max(MIN_TTL_SECONDS, ttl_seconds or self.default_ttl)
        row = dict(user_id=user_id, token_hash=sha256_hex(token), expires_at=expires_at, created_at=now)

        with store_errors("verification.issue"):
            with self.session_factory() as db:
                db.merge(EmailVerificationToken(**row))
                try:
                    db.commit()
                except IntegrityError:
                    # Lost an insert race for the same user; the row exists now, so overwrite it
                    db.rollback()
                    db.merge(EmailVerificationToken(**row))
                    db.commit()

        logger.info(f"Issued verification token for user {user_id}", extra={"expires_at": expires_at})
        return IssuedToken(token=token, expires_at=expires_at)

    def consume(self, token: str) -> ConsumeResult:
        token = (token or "").strip()
        if not token:
            return ConsumeResult(ConsumeStatus.INVALID)
        token_hash = sha256_hex(token)
        now = int(self.clock())

        with store_errors("verification.consume"):
            with self.session_factory() as db:
                record = db.execute(
                    select(EmailVerificationToken.user_id, EmailVerificationToken.expires_at)
                    .where(EmailVerificationToken.token_hash == token_hash)
                ).first()
                if record is None:
                    return ConsumeResult(ConsumeStatus.INVALID)

                # The delete is the redemption: only one consumer can remove the row
                removed = db.execute(
                    delete(EmailVerificationToken)
                    .where(EmailVerificationToken.user_id == record.user_id,
                           EmailVerificationToken.token_hash == token_hash)
                    .execution_options(synchronize_session=False)
                )
                db.commit()

        if not removed.rowcount:
            return ConsumeResult(ConsumeStatus.INVALID)
        if record.expires_at < now:
            logger.info(f"Expired verification token for user {record.user_id}")
            return ConsumeResult(ConsumeStatus.EXPIRED)
        return ConsumeResult(ConsumeStatus.SUCCESS, record.user_id)

    def mark_verified(self, user_id: str):
        with store_errors("verification.mark_verified"):
            with self.session_factory() as db:
                db.execute(
                    update(User).where(User.id == user_id).values(is_email_verified=True)
                    .execution_options(synchronize_session=False)
                )
                db.execute(
                    delete(EmailVerificationToken).where(EmailVerificationToken.user_id == user_id)
                    .execution_options(synchronize_session=False)
                )
                db.commit()
        logger.info(f"User {user_id} verified their email")

    def is_verified(self, user_id: str) -> bool:
        with store_errors("verification.is_verified"):
            with self.session_factory() as db:
                user = db.get(User, user_id)
                return bool(user and user.is_email_verified)
