import unittest
from decimal import Decimal
from unittest.mock import AsyncMock, patch

from bot import api
from ledger import OrderLedgerCalculator


def _response(ok, data=None, message=""):
    return {"ok": ok, "status": 200 if ok else 400, "data": data or {}, "message": message}


class TestBackendClient(unittest.IsolatedAsyncioTestCase):

    async def test_register_returns_token(self):
        with patch.object(api, "_post_json", AsyncMock(return_value=_response(True, {"token": "t1"}))) as post:
            result = await api.register("a@b.co", "secret123")
        post.assert_awaited_once_with("/auth/register", {"email": "a@b.co", "password": "secret123"})
        self.assertEqual(result, {"registered": True, "token": "t1", "message": ""})

    async def test_register_rejected(self):
        with patch.object(api, "_post_json", AsyncMock(return_value=_response(False, message="Email taken"))):
            result = await api.register("a@b.co", "secret123")
        self.assertFalse(result["registered"])
        self.assertEqual(result["message"], "Email taken")

    async def test_verify_email_keeps_previous_token(self):
        with patch.object(api, "_post_json", AsyncMock(return_value=_response(True))) as post:
            result = await api.verify_email("a@b.co", "123456", token="t1")
        post.assert_awaited_once_with("/auth/verify-email", {"email": "a@b.co", "code": "123456"}, token="t1")
        self.assertTrue(result["verified"])
        self.assertEqual(result["token"], "t1")

    async def test_verify_email_failure(self):
        with patch.object(api, "_post_json", AsyncMock(return_value=_response(False, message=api.GENERIC_ERROR))):
            result = await api.verify_email("a@b.co", "000000")
        self.assertFalse(result["verified"])
        self.assertEqual(result["message"], api.GENERIC_ERROR)

    async def test_complete_profile_payload(self):
        profile = {"first_name": "Asha", "last_name": "Rao", "email": "a@b.co", "phone": "1", "source": "friend", "password": "x"}
        with patch.object(api, "_post_json", AsyncMock(return_value=_response(True))) as post:
            result = await api.complete_profile(profile, token="t1")
        payload = post.await_args.args[1]
        self.assertNotIn("password", payload)
        self.assertTrue(result["completed"])

    async def test_submit_order(self):
        line = OrderLedgerCalculator.order_line(2, "222.00")
        totals = OrderLedgerCalculator.recompute(2, "222.00", OrderLedgerCalculator.build_fee_schedule(Decimal("444")))
        reply = _response(True, {"data": {"id": "ORD-7"}})
        with patch.object(api, "_post_json", AsyncMock(return_value=reply)) as post:
            result = await api.submit_order("Pine Labs", line, totals, "539.94", token="t1")

        path, payload = post.await_args.args
        self.assertEqual(path, "/trading/buy")
        self.assertEqual(payload["quantity"], 2)
        self.assertEqual(payload["totalAmount"], "539.94")
        self.assertEqual(payload["totalFees"], "95.94")
        self.assertEqual(result, {"accepted": True, "reference": "ORD-7", "message": ""})

if __name__ == '__main__':
    unittest.main()
