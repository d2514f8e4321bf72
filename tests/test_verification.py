"""
Email verification tokens: single active token per user, single use, expiry
"""
import unittest

from common.security import sha256_hex
from points_service.models import EmailVerificationToken
from points_service.verification import ConsumeStatus, VerificationTokenStore
from tests.support import FakeClock, fresh_store


class TestVerificationTokens(unittest.TestCase):

    def setUp(self):
        self.engine, self.sessions = fresh_store()
        self.clock = FakeClock()
        self.tokens = VerificationTokenStore(self.sessions, clock=self.clock, default_ttl=3600)
        self.tokens.ensure_user("user-1", "user1@example.com")

    def test_issue_and_consume(self):
        issued = self.tokens.issue("user-1")

        self.assertEqual(len(issued.token), 32)
        self.assertEqual(issued.expires_at, int(self.clock()) + 3600)

        result = self.tokens.consume(issued.token)
        self.assertEqual(result.status, ConsumeStatus.SUCCESS)
        self.assertEqual(result.user_id, "user-1")

    def test_only_the_hash_is_stored(self):
        issued = self.tokens.issue("user-1")

        with self.sessions() as db:
            row = db.get(EmailVerificationToken, "user-1")
        self.assertEqual(row.token_hash, sha256_hex(issued.token))
        self.assertNotEqual(row.token_hash, issued.token)

    def test_token_is_single_use(self):
        issued = self.tokens.issue("user-1")

        self.assertEqual(self.tokens.consume(issued.token).status, ConsumeStatus.SUCCESS)
        self.assertEqual(self.tokens.consume(issued.token).status, ConsumeStatus.INVALID)

    def test_reissue_invalidates_previous_token(self):
        """The older token stops working as soon as a new one is issued"""
        old = self.tokens.issue("user-1")
        new = self.tokens.issue("user-1")

        self.assertEqual(self.tokens.consume(old.token).status, ConsumeStatus.INVALID)
        self.assertEqual(self.tokens.consume(new.token).status, ConsumeStatus.SUCCESS)

    def test_expired_token_is_deleted(self):
        issued = self.tokens.issue("user-1", ttl_seconds=120)
        self.clock.advance(121)

        self.assertEqual(self.tokens.consume(issued.token).status, ConsumeStatus.EXPIRED)
        self.assertEqual(self.tokens.consume(issued.token).status, ConsumeStatus.INVALID)
        with self.sessions() as db:
            self.assertIsNone(db.get(EmailVerificationToken, "user-1"))

    def test_token_valid_until_expiry_second(self):
        issued = self.tokens.issue("user-1", ttl_seconds=120)
        self.clock.advance(120)
        self.assertEqual(self.tokens.consume(issued.token).status, ConsumeStatus.SUCCESS)

    def test_minimum_ttl(self):
        issued = self.tokens.issue("user-1", ttl_seconds=5)
        self.assertEqual(issued.expires_at, int(self.clock()) + 60)

    def test_unknown_and_blank_tokens(self):
        self.assertEqual(self.tokens.consume("0" * 32).status, ConsumeStatus.INVALID)
        self.assertEqual(self.tokens.consume("  ").status, ConsumeStatus.INVALID)

    def test_mark_verified(self):
        issued = self.tokens.issue("user-1")
        result = self.tokens.consume(issued.token)
        self.tokens.mark_verified(result.user_id)

        self.assertTrue(self.tokens.is_verified("user-1"))

    def test_changing_email_resets_verification(self):
        self.tokens.mark_verified("user-1")
        self.tokens.ensure_user("user-1", "new@example.com")
        self.assertFalse(self.tokens.is_verified("user-1"))


if __name__ == "__main__":
    unittest.main()
