import unittest
from unittest.mock import patch

from backend import billing
from backend.billing import (
    BillingConflictError,
    BillingNotFoundError,
    Breakdown,
    DesignNotFoundError,
    NegotiationLimitError,
    ProfileNotFoundError,
    RequestNotFoundError,
)
from backend.config import Settings
from backend.db import (
    DesignRecord,
    InMemoryDbClient,
    ProfileRecord,
    RequestRecord,
    StaleRecordError,
    UserRecord,
)
from scripts.backfill_invoice_numbers import BackfillConflictError, backfill
from shared.types import BillingStatus, ProfileRole


def seed_design(db, design_id="design-1", with_profile=True):
    db.save_user(UserRecord(user_id="client-1", subject="sub-client", first_name="Ana", last_name="Cruz", email="ana@example.test"))
    db.save_user(UserRecord(user_id="designer-1", subject="sub-designer"))
    db.save_request(
        RequestRecord(
            request_id=f"req-{design_id}",
            client_id="client-1",
            request_title="Team Jersey",
            description="Blue jerseys for the league",
        )
    )
    db.save_design(
        DesignRecord(
            design_id=design_id,
            request_id=f"req-{design_id}",
            client_id="client-1",
            designer_id="designer-1",
        )
    )
    if with_profile:
        db.save_profile(ProfileRecord(user_id="designer-1", role=ProfileRole.DESIGNER))


class BillingWorkflowTests(unittest.TestCase):
    def setUp(self):
        self.db = InMemoryDbClient()
        self.settings = Settings(negotiation_max_rounds=5, billing_write_retries=3)
        # 10 shirts at 80 + 100 revision + 100 designer = 1000
        self.record = billing.create_billing(
            self.db,
            "design-1",
            total_shirts=10,
            printing_fee=80,
            revision_fee=100,
            designer_fee=100,
        )

    def test_create_billing_computes_starting_amount(self):
        self.assertEqual(self.record.starting_amount, 1000)
        self.assertEqual(self.record.status, BillingStatus.PENDING)
        self.assertEqual(self.record.negotiation_rounds, 0)
        self.assertEqual(self.record.negotiation_history, [])
        self.assertEqual(self.record.invoice_no, 1)

    def test_create_billing_is_idempotent_per_design(self):
        again = billing.create_billing(
            self.db, "design-1", total_shirts=99, printing_fee=1
        )
        self.assertEqual(again.billing_id, self.record.billing_id)
        self.assertEqual(again.starting_amount, 1000)
        self.assertEqual(len(self.db.billings), 1)

    def test_negotiation_scenario(self):
        entry = billing.submit_negotiation(
            self.db, "design-1", 800, "client-1", settings=self.settings
        )
        self.assertEqual(entry.amount, 200)
        self.assertEqual(entry.added_by, "client-1")

        record = self.db.find_billing_by_design("design-1")
        self.assertEqual(record.final_amount, 0)
        self.assertEqual(record.status, BillingStatus.PENDING)
        self.assertEqual(record.negotiation_rounds, 1)
        self.assertEqual(len(record.negotiation_history), 1)

    def test_negotiation_delta_includes_addons_and_may_be_negative(self):
        billing.apply_addons(self.db, "design-1", 50, 20, settings=self.settings)
        entry = billing.submit_negotiation(
            self.db, "design-1", 1200, settings=self.settings
        )
        self.assertEqual(entry.amount, 1070 - 1200)
        self.assertIsNone(entry.added_by)

    def test_negotiation_clears_previous_finalization(self):
        billing.approve_bill(self.db, "design-1", settings=self.settings)
        billing.submit_negotiation(self.db, "design-1", 900, settings=self.settings)
        record = self.db.find_billing_by_design("design-1")
        self.assertEqual(record.final_amount, 0)
        self.assertEqual(record.status, BillingStatus.PENDING)
        self.assertFalse(record.is_finalized)
        self.assertIsNone(record.resolved_final_amount)

    def test_each_round_appends_one_entry(self):
        for expected in range(1, 6):
            billing.submit_negotiation(
                self.db, "design-1", 1000 - expected * 10, settings=self.settings
            )
            record = self.db.find_billing_by_design("design-1")
            self.assertEqual(record.negotiation_rounds, expected)
            self.assertEqual(len(record.negotiation_history), expected)

    def test_sixth_negotiation_fails_without_mutation(self):
        for _ in range(5):
            billing.submit_negotiation(self.db, "design-1", 900, settings=self.settings)
        before = self.db.find_billing_by_design("design-1")

        with self.assertRaises(NegotiationLimitError) as ctx:
            billing.submit_negotiation(self.db, "design-1", 850, settings=self.settings)
        self.assertEqual(str(ctx.exception), "Maximum negotiation rounds reached (5).")

        after = self.db.find_billing_by_design("design-1")
        self.assertEqual(after.negotiation_rounds, 5)
        self.assertEqual(len(after.negotiation_history), 5)
        self.assertEqual(after.version, before.version)

    def test_negotiation_without_billing_raises_not_found(self):
        with self.assertRaises(BillingNotFoundError):
            billing.submit_negotiation(self.db, "missing", 100, settings=self.settings)

    def test_stale_write_is_retried_against_fresh_state(self):
        original_update = self.db.update_billing
        calls = {"n": 0}

        def flaky_update(billing_id, changes, *, expected_version=None):
            calls["n"] += 1
            if calls["n"] == 1:
                raise StaleRecordError(billing_id)
            return original_update(
                billing_id, changes, expected_version=expected_version
            )

        with patch.object(self.db, "update_billing", side_effect=flaky_update):
            billing.submit_negotiation(self.db, "design-1", 900, settings=self.settings)

        self.assertEqual(calls["n"], 2)
        record = self.db.find_billing_by_design("design-1")
        self.assertEqual(record.negotiation_rounds, 1)

    def test_racing_writer_cannot_exceed_round_cap(self):
        for _ in range(4):
            billing.submit_negotiation(self.db, "design-1", 900, settings=self.settings)
        original_update = self.db.update_billing
        raced = {"done": False}

        def racing_update(billing_id, changes, *, expected_version=None):
            if not raced["done"]:
                # Another request takes the last round between our read and write.
                raced["done"] = True
                current = self.db.get_billing(billing_id)
                original_update(
                    billing_id,
                    {
                        "negotiation_rounds": current.negotiation_rounds + 1,
                        "negotiation_history": current.negotiation_history
                        + current.negotiation_history[-1:],
                    },
                )
            return original_update(
                billing_id, changes, expected_version=expected_version
            )

        with patch.object(self.db, "update_billing", side_effect=racing_update):
            with self.assertRaises(NegotiationLimitError):
                billing.submit_negotiation(
                    self.db, "design-1", 800, settings=self.settings
                )
        self.assertEqual(
            self.db.find_billing_by_design("design-1").negotiation_rounds, 5
        )

    def test_exhausted_retries_raise_conflict(self):
        with patch.object(
            self.db, "update_billing", side_effect=StaleRecordError("x")
        ):
            with self.assertRaises(BillingConflictError):
                billing.approve_bill(self.db, "design-1", settings=self.settings)

    def test_approve_without_prior_final_uses_starting_amount_plus_addons(self):
        billing.apply_addons(self.db, "design-1", 50, 20, settings=self.settings)
        result = billing.approve_bill(self.db, "design-1", settings=self.settings)
        self.assertEqual(result.final_amount, 1070)
        self.assertEqual(result.billing_id, self.record.billing_id)
        record = self.db.find_billing_by_design("design-1")
        self.assertEqual(record.status, BillingStatus.APPROVED)
        self.assertEqual(record.final_amount, 1070)
        self.assertTrue(record.is_finalized)

    def test_approve_with_prior_final_amount_adds_addons(self):
        self.db.update_billing(
            self.record.billing_id,
            {"final_amount": 500.0, "addons_shirt_price": 50.0, "addons_fee": 20.0},
        )
        result = billing.approve_bill(self.db, "design-1", settings=self.settings)
        self.assertEqual(result.final_amount, 570)

    def test_approve_keeps_creation_timestamp(self):
        before = self.db.find_billing_by_design("design-1")
        billing.approve_bill(self.db, "design-1", settings=self.settings)
        after = self.db.find_billing_by_design("design-1")
        self.assertEqual(after.created_at, before.created_at)
        self.assertGreaterEqual(after.updated_at, before.updated_at)

    def test_approve_missing_billing(self):
        with self.assertRaises(BillingNotFoundError):
            billing.approve_bill(self.db, "missing", settings=self.settings)

    def test_update_final_amount_overrides_and_bills(self):
        for _ in range(3):
            billing.submit_negotiation(self.db, "design-1", 900, settings=self.settings)
        record = billing.update_final_amount(self.db, self.record.billing_id, 750)
        self.assertEqual(record.final_amount, 750)
        self.assertEqual(record.status, BillingStatus.BILLED)
        self.assertEqual(record.negotiation_rounds, 3)

    def test_update_final_amount_missing_billing(self):
        with self.assertRaises(BillingNotFoundError):
            billing.update_final_amount(self.db, "missing", 750)

    def test_apply_addons_reopens_bill(self):
        billing.approve_bill(self.db, "design-1", settings=self.settings)
        record = billing.apply_addons(self.db, "design-1", 30, 5, settings=self.settings)
        self.assertEqual(record.addons_shirt_price, 30)
        self.assertEqual(record.addons_fee, 5)
        self.assertEqual(record.status, BillingStatus.PENDING)
        self.assertEqual(record.final_amount, 1000)


class BillingQueryTests(unittest.TestCase):
    def setUp(self):
        self.db = InMemoryDbClient()

    def test_breakdown_for_missing_billing_is_zeroed(self):
        breakdown = billing.get_billing_breakdown(self.db, "nope")
        self.assertEqual(breakdown, Breakdown(0, 0, 0, 0, 0))

    def test_breakdown_total_is_starting_amount(self):
        billing.create_billing(
            self.db, "design-1", total_shirts=4, printing_fee=150, revision_fee=50
        )
        billing.submit_negotiation(self.db, "design-1", 400)
        breakdown = billing.get_billing_breakdown(self.db, "design-1")
        self.assertEqual(breakdown.shirt_count, 4)
        self.assertEqual(breakdown.print_fee, 150)
        self.assertEqual(breakdown.revision_fee, 50)
        self.assertEqual(breakdown.designer_fee, 0)
        self.assertEqual(breakdown.total, 650)

    def test_invoice_numbers_follow_creation_order(self):
        for design_id in ("d1", "d2", "d3"):
            seed_design(self.db, design_id)
            billing.create_billing(self.db, design_id, total_shirts=1, printing_fee=10)
        numbers = [
            billing.get_billing_by_design(self.db, d).invoice_no
            for d in ("d1", "d2", "d3")
        ]
        self.assertEqual(numbers, [1, 2, 3])

    def test_legacy_records_are_ranked_by_creation_time(self):
        for index, design_id in enumerate(("d1", "d2", "d3")):
            seed_design(self.db, design_id)
            record = billing.create_billing(
                self.db, design_id, total_shirts=1, printing_fee=10
            )
            self.db.update_billing(record.billing_id, {"invoice_no": None})
            self.db.billings[record.billing_id].created_at = 1000.0 + index
        self.assertEqual(billing.get_billing_by_design(self.db, "d3").invoice_no, 3)
        self.assertEqual(billing.get_billing_by_design(self.db, "d1").invoice_no, 1)

    def test_legacy_rank_matches_backfilled_number(self):
        records = []
        for design_id in ("d1", "d2"):
            seed_design(self.db, design_id)
            records.append(
                billing.create_billing(
                    self.db, design_id, total_shirts=1, printing_fee=10
                )
            )
        self.db.update_billing(records[0].billing_id, {"invoice_no": None})
        shown = billing.get_billing_by_design(self.db, "d1").invoice_no
        self.assertEqual(shown, 1)

        self.assertEqual(backfill(self.db, dry_run=False), 1)
        self.assertEqual(self.db.get_billing(records[0].billing_id).invoice_no, shown)
        self.assertEqual(self.db.get_billing(records[1].billing_id).invoice_no, 2)

        seed_design(self.db, "d3")
        newest = billing.create_billing(self.db, "d3", total_shirts=1, printing_fee=10)
        self.assertEqual(newest.invoice_no, 3)

    def test_backfill_refuses_to_reuse_an_issued_number(self):
        records = []
        for design_id in ("d1", "d2"):
            seed_design(self.db, design_id)
            records.append(
                billing.create_billing(
                    self.db, design_id, total_shirts=1, printing_fee=10
                )
            )
        # d1 was issued #2 out of band, so d2's rank is taken.
        self.db.update_billing(records[1].billing_id, {"invoice_no": None})
        self.db.update_billing(records[0].billing_id, {"invoice_no": 2})

        with self.assertRaises(BackfillConflictError):
            backfill(self.db, dry_run=False)
        self.assertIsNone(self.db.get_billing(records[1].billing_id).invoice_no)

    def test_enriched_billing_carries_request_and_breakdown(self):
        seed_design(self.db, "d1")
        billing.create_billing(
            self.db, "d1", total_shirts=2, printing_fee=100, designer_fee=300
        )
        detail = billing.get_billing_by_design(self.db, "d1")
        self.assertEqual(detail.request_title, "Team Jersey")
        self.assertEqual(detail.request_description, "Blue jerseys for the league")
        self.assertEqual(detail.breakdown.total, 500)
        self.assertTrue(detail.created_at.endswith("+00:00"))

    def test_enriched_billing_requires_every_link(self):
        with self.assertRaises(BillingNotFoundError):
            billing.get_billing_by_design(self.db, "d1")

        billing.create_billing(self.db, "d1", total_shirts=1, printing_fee=1)
        with self.assertRaises(DesignNotFoundError):
            billing.get_billing_by_design(self.db, "d1")

        seed_design(self.db, "d1", with_profile=False)
        with self.assertRaises(ProfileNotFoundError):
            billing.get_billing_by_design(self.db, "d1")

        self.db.requests.clear()
        with self.assertRaises(RequestNotFoundError):
            billing.get_billing_by_design(self.db, "d1")

    def test_client_info_by_design(self):
        self.assertIsNone(billing.get_client_info_by_design(self.db, "d1"))
        seed_design(self.db, "d1")
        info = billing.get_client_info_by_design(self.db, "d1")
        self.assertEqual(info.first_name, "Ana")
        self.assertIsNone(info.phone)

        self.db.save_profile(
            ProfileRecord(
                user_id="client-1",
                role=ProfileRole.CLIENT,
                phone="0917",
                address="Cebu",
            )
        )
        info = billing.get_client_info_by_design(self.db, "d1")
        self.assertEqual(info.phone, "0917")
        self.assertEqual(info.address, "Cebu")

    def test_list_billings_in_creation_order(self):
        for design_id in ("d1", "d2"):
            billing.create_billing(self.db, design_id, total_shirts=1, printing_fee=1)
        self.assertEqual(
            [r.design_id for r in billing.list_billings(self.db)], ["d1", "d2"]
        )


if __name__ == "__main__":
    unittest.main()
