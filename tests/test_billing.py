"""
Download billing: per-platform cost, per-minute dedup and balance checks
"""
import unittest

from common.error_handling import AccountNotFound, InsufficientPoints, InvalidPlatform
from points_service.billing import BillingService, cost_for
from points_service.dedup import DedupGuard, DedupKey, bucket_for
from points_service.ledger import LedgerStore
from tests.support import FakeClock, fresh_store


class TestBilling(unittest.TestCase):

    def setUp(self):
        self.engine, self.sessions = fresh_store()
        self.clock = FakeClock(1_760_846_400.0)  # exactly on a minute boundary
        self.ledger = LedgerStore(self.sessions, clock=self.clock)
        self.billing = BillingService(self.sessions, clock=self.clock)
        self.ledger.open_account("acct-1", initial_balance=10)

    def test_platform_costs(self):
        self.assertEqual(cost_for("ipa"), 5)
        self.assertEqual(cost_for("apk"), 3)
        with self.assertRaises(InvalidPlatform):
            cost_for("exe")

    def test_same_minute_is_billed_once(self):
        """Balance 10, apk twice in one minute: charged 3 then deduped"""
        first = self.billing.bill("acct-1", "link-1", "apk")
        self.clock.advance(30)
        second = self.billing.bill("acct-1", "link-1", "apk")

        self.assertTrue(first.charged)
        self.assertEqual(first.cost, 3)
        self.assertEqual(first.to_response(), {"ok": True, "charged": True, "cost": 3,
                                               "ledger_id": first.ledger_id, "balance": 7})
        self.assertTrue(second.deduped)
        self.assertEqual(second.to_response(), {"ok": True, "deduped": True})
        self.assertEqual(self.ledger.get_balance("acct-1"), 7)

    def test_next_minute_is_a_new_charge(self):
        self.billing.bill("acct-1", "link-1", "apk")
        self.clock.advance(60)
        again = self.billing.bill("acct-1", "link-1", "apk")

        self.assertTrue(again.charged)
        self.assertEqual(self.ledger.get_balance("acct-1"), 4)

    def test_ipa_costs_five(self):
        result = self.billing.bill("acct-1", "link-2", "ipa")

        self.assertEqual(result.cost, 5)
        self.assertEqual(self.ledger.get_balance("acct-1"), 5)

    def test_platforms_and_links_are_separate_keys(self):
        self.billing.bill("acct-1", "link-1", "apk")
        other_platform = self.billing.bill("acct-1", "link-1", "ipa")

        self.assertTrue(other_platform.charged)
        self.assertEqual(self.ledger.get_balance("acct-1"), 2)

    def test_insufficient_points_does_not_claim_key(self):
        """A failed charge leaves the minute open for a retry after top-up"""
        self.ledger.apply_delta("acct-1", -8, "manual")

        with self.assertRaises(InsufficientPoints) as ctx:
            self.billing.bill("acct-1", "link-1", "apk")
        self.assertEqual(ctx.exception.code, "INSUFFICIENT_POINTS")
        self.assertEqual(ctx.exception.required, 3)
        self.assertEqual(self.ledger.get_balance("acct-1"), 2)

        self.ledger.credit("acct-1", 5)
        retry = self.billing.bill("acct-1", "link-1", "apk")
        self.assertTrue(retry.charged)
        self.assertEqual(self.ledger.get_balance("acct-1"), 4)

    def test_unknown_account(self):
        with self.assertRaises(AccountNotFound):
            self.billing.bill("nobody", "link-1", "apk")

    def test_charge_entry_records_download_details(self):
        self.billing.bill("acct-1", "link-9", "IPA")

        entry = self.ledger.list_entries("acct-1")[0]
        self.assertEqual(entry.reason, "download")
        self.assertEqual(entry.delta, -5)
        self.assertEqual(entry.link_id, "link-9")
        self.assertEqual(entry.platform, "ipa")
        self.assertEqual(entry.bucket_minute, bucket_for(self.clock()))

    def test_ledger_stays_consistent(self):
        for link in ("a", "b", "a", "c"):
            self.billing.bill("acct-1", link, "apk")
        self.assertTrue(self.ledger.audit("acct-1").consistent)
        self.assertEqual(self.ledger.get_balance("acct-1"), 1)


class TestDedupGuard(unittest.TestCase):

    def setUp(self):
        self.engine, self.sessions = fresh_store()
        self.guard = DedupGuard()

    def test_bucket_is_the_unix_minute(self):
        self.assertEqual(bucket_for(119.9), 1)
        self.assertEqual(bucket_for(120), 2)

    def test_second_claim_loses(self):
        key = DedupKey("acct-1", "link-1", "apk", 100)

        with self.sessions() as db:
            self.assertTrue(self.guard.try_claim(db, key, now=6000))
            db.commit()
        with self.sessions() as db:
            self.assertTrue(self.guard.is_claimed(db, key))
            self.assertFalse(self.guard.try_claim(db, key, now=6001))


if __name__ == "__main__":
    unittest.main()
