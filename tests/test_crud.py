import json
import os
import shutil
import tempfile
import unittest

import crud
from database import init_db, seed_db
from sequencer import ResumeToken


class TestCrud(unittest.TestCase):

    def setUp(self):
        # Окрема тимчасова БД для кожного тесту
        self.tmp_dir = tempfile.mkdtemp()
        self.db = os.path.join(self.tmp_dir, "test.db")
        init_db(self.db)
        seed_db(self.db)
        self.user_id = crud.get_or_create_user(1001, "tester", db_path=self.db)

    def tearDown(self):
        shutil.rmtree(self.tmp_dir, ignore_errors=True)

    def _snapshot(self, **overrides):
        snapshot = {
            "stock_id": 1,
            "company_name": "Pine Labs",
            "quantity": 2,
            "unit_price": "222.00",
            "amount_due": "539.94",
            "payment_method": "upi",
            "authorized_at": "2024-05-01T10:30:00+00:00",
        }
        snapshot.update(overrides)
        return snapshot

    def test_user_is_created_once(self):
        self.assertEqual(crud.get_or_create_user(1001, "tester", db_path=self.db), self.user_id)
        user = crud.get_user(self.user_id, db_path=self.db)
        self.assertEqual(user["telegram_id"], 1001)
        self.assertEqual(user["kyc_completed"], 0)

    def test_auth_and_kyc_flags(self):
        crud.set_auth(self.user_id, "a@b.co", "tok", db_path=self.db)
        crud.mark_kyc_complete(self.user_id, db_path=self.db)
        user = crud.get_user(self.user_id, db_path=self.db)
        self.assertEqual((user["email"], user["auth_token"], user["kyc_completed"]), ("a@b.co", "tok", 1))

    def test_progress_upsert(self):
        self.assertIsNone(crud.load_progress(self.user_id, "kyc", db_path=self.db))

        crud.save_progress(self.user_id, ResumeToken("kyc", 1, {"pan": "ABCDE1234F"}), db_path=self.db)
        crud.save_progress(self.user_id, ResumeToken("kyc", 2, {"pan": "ABCDE1234F", "aadhaar": "123"}), db_path=self.db)

        token = crud.load_progress(self.user_id, "kyc", db_path=self.db)
        self.assertEqual(token.flow, "kyc")
        self.assertEqual(token.current_index, 2)
        self.assertEqual(token.form["aadhaar"], "123")

    def test_progress_is_per_flow(self):
        crud.save_progress(self.user_id, ResumeToken("kyc", 4, {}), db_path=self.db)
        crud.save_progress(self.user_id, ResumeToken("registration", 1, {}), db_path=self.db)
        crud.clear_progress(self.user_id, "kyc", db_path=self.db)
        self.assertIsNone(crud.load_progress(self.user_id, "kyc", db_path=self.db))
        self.assertEqual(crud.load_progress(self.user_id, "registration", db_path=self.db).current_index, 1)

    def test_seeded_stocks(self):
        stocks = crud.get_stocks(db_path=self.db)
        self.assertEqual(len(stocks), 5)
        self.assertEqual(stocks[0]["company_name"], "Pine Labs")
        self.assertEqual(stocks[0]["price"], "222.00")
        self.assertEqual(crud.get_stock_by_id(stocks[1]["id"], db_path=self.db)["company_name"], "TCS")
        self.assertIsNone(crud.get_stock_by_id(999, db_path=self.db))

    def test_seed_is_repeatable(self):
        seed_db(self.db)
        self.assertEqual(len(crud.get_stocks(db_path=self.db)), 5)

    def test_order_numbering(self):
        first_id, first_num = crud.save_order(self.user_id, self._snapshot(), db_path=self.db)
        second_id, second_num = crud.save_order(self.user_id, self._snapshot(backend_ref="ORD-1"), db_path=self.db)
        self.assertEqual((first_num, second_num), (1, 2))
        self.assertNotEqual(first_id, second_id)

        order = crud.get_order(second_id, db_path=self.db)
        self.assertEqual(order["backend_ref"], "ORD-1")
        self.assertEqual(order["total_payable"], "539.94")
        self.assertEqual(json.loads(order["snapshot_json"])["user_order_num"], 2)

    def test_missing_order(self):
        self.assertIsNone(crud.get_order(42, db_path=self.db))

if __name__ == '__main__':
    unittest.main()
