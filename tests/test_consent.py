import unittest
from datetime import datetime, timezone
from consent import (
    CONFIRMED, DISCLOSURES, REVIEWING, AcknowledgmentSet, ConsentGate, Disclosure, OrderReview,
)
from ledger import OrderLedgerCalculator


def _all_acknowledged():
    return {d.id: True for d in DISCLOSURES}


class TestConsentGate(unittest.TestCase):

    def test_all_disclosures_are_mandatory(self):
        self.assertEqual(len(DISCLOSURES), 6)
        self.assertTrue(all(d.mandatory for d in DISCLOSURES))

    def test_readiness_requires_every_mandatory_ack(self):
        acks = _all_acknowledged()
        self.assertTrue(ConsentGate.evaluate_disclosure_readiness(acks))
        acks["refund"] = False
        self.assertFalse(ConsentGate.evaluate_disclosure_readiness(acks))

    def test_final_readiness_requires_consent(self):
        acks = _all_acknowledged()
        self.assertFalse(ConsentGate.evaluate_final_readiness(acks, DISCLOSURES, final_consent=False))
        self.assertTrue(ConsentGate.evaluate_final_readiness(acks, DISCLOSURES, final_consent=True))

    def test_optional_disclosures_do_not_block(self):
        disclosures = [Disclosure("a", "A", "", mandatory=True), Disclosure("b", "B", "")]
        self.assertTrue(ConsentGate.evaluate_disclosure_readiness({"a": True}, disclosures))

    def test_progress(self):
        acks = {"risk": True, "price": True, "tat": False}
        self.assertEqual(ConsentGate.progress(acks), (2, 6))


class TestAcknowledgmentSet(unittest.TestCase):

    def test_toggle(self):
        acks = AcknowledgmentSet()
        self.assertTrue(acks.toggle("risk"))
        self.assertFalse(acks.toggle("risk"))

    def test_from_dict_only_accepts_true(self):
        acks = AcknowledgmentSet.from_dict({"acknowledged": {"risk": "yes", "tat": True}, "final_consent": 1})
        self.assertEqual(acks.acknowledged, {"risk": False, "tat": True})
        self.assertFalse(acks.final_consent)

    def test_from_none(self):
        acks = AcknowledgmentSet.from_dict(None)
        self.assertEqual(acks.to_dict(), {"acknowledged": {}, "final_consent": False})


class TestOrderReview(unittest.TestCase):

    def setUp(self):
        self.line = OrderLedgerCalculator.order_line(2, "222.00")
        self.review = OrderReview(self.line)

    def _make_ready(self):
        for d in DISCLOSURES:
            self.review.toggle(d.id)
        self.review.set_final_consent(True)

    def test_confirm_blocked_until_ready(self):
        self.assertFalse(self.review.confirm())
        self.assertEqual(self.review.status, REVIEWING)
        self.assertIsNone(self.review.authorized_at)

    def test_confirm_records_timestamp_once(self):
        self._make_ready()
        moment = datetime(2024, 5, 1, 10, 30, tzinfo=timezone.utc)
        self.assertTrue(self.review.confirm(now=moment))
        self.assertEqual(self.review.status, CONFIRMED)
        self.assertEqual(self.review.authorized_at, moment.isoformat())

        # Повторне підтвердження не змінює час авторизації
        self.assertFalse(self.review.confirm(now=datetime(2025, 1, 1, tzinfo=timezone.utc)))
        self.assertEqual(self.review.authorized_at, moment.isoformat())

    def test_ticking_boxes_does_not_record_timestamp(self):
        self._make_ready()
        self.assertTrue(self.review.is_ready)
        self.assertIsNone(self.review.authorized_at)

    def test_no_changes_after_confirmation(self):
        self._make_ready()
        self.review.confirm()
        self.assertFalse(self.review.toggle("risk"))
        self.assertFalse(self.review.set_final_consent(False))
        self.assertTrue(self.review.acknowledgments.acknowledged["risk"])

    def test_unknown_disclosure_is_rejected(self):
        self.assertFalse(self.review.toggle("unknown"))
        self.assertEqual(self.review.acknowledgments.acknowledged, {})

    def test_back_to_edit_keeps_line(self):
        self.review.toggle("risk")
        line = self.review.back_to_edit()
        self.assertEqual(line, self.line)
        self.assertEqual(line.quantity, 2)
        self.assertTrue(self.review.acknowledgments.acknowledged["risk"])

    def test_back_to_edit_unavailable_after_confirmation(self):
        self._make_ready()
        self.review.confirm()
        self.assertIsNone(self.review.back_to_edit())

if __name__ == '__main__':
    unittest.main()
