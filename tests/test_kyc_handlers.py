import unittest
from unittest.mock import AsyncMock, MagicMock, patch

from aiogram.fsm.context import FSMContext
from aiogram.fsm.storage.base import StorageKey
from aiogram.fsm.storage.memory import MemoryStorage

from bot import common, kyc
from bot.esign import SignResult
from flows import KYC_FLOW, build_sequencer
from sequencer import ResumeToken

ESIGN_STEP = 6


def _kyc_form(**overrides):
    form = {
        "documents_acknowledged": True,
        "pan": "ABCDE1234F", "full_name": "Asha Rao", "dob": "1990-04-15",
        "father_name": "Ravi Rao", "residency": "resident",
        "aadhaar": "123456789012", "address_verified_via": "otp",
        "account_number": "123456789012", "ifsc": "HDFC0000123",
        "bank_proof_file": {"name": "proof.pdf", "mime_type": "application/pdf", "size": 1024},
        "demat_accounts": [{"type": "CDSL", "id": "1201234567890123"}],
        "video_started": True,
        "consent_terms": True, "consent_data": True, "consent_esign": True,
        "esign_status": "success",
    }
    form.update(overrides)
    return form


def _callback(data):
    callback = MagicMock()
    callback.data = data
    callback.from_user.id = 555
    callback.answer = AsyncMock()
    callback.message.answer = AsyncMock()
    return callback


def _message(text=""):
    message = MagicMock()
    message.text = text
    message.from_user.id = 555
    message.answer = AsyncMock()
    return message


class TestKycHandlers(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.state = FSMContext(storage=MemoryStorage(), key=StorageKey(bot_id=1, chat_id=1, user_id=555))
        for name in ("save_progress", "mark_kyc_complete", "clear_progress"):
            patcher = patch.object(kyc.crud, name)
            setattr(self, name, patcher.start())
            self.addCleanup(patcher.stop)
        patcher = patch.object(kyc, "show", new_callable=AsyncMock)
        self.show = patcher.start()
        self.addCleanup(patcher.stop)

    async def _open(self, index, form):
        await common.load_flow(self.state, KYC_FLOW, user_id=1, resume=False)
        sequencer = build_sequencer(KYC_FLOW, resume=ResumeToken(KYC_FLOW, index, form))
        await common.store_flow(self.state, KYC_FLOW, sequencer, persist=False)

    async def _current(self):
        return await common.get_flow(self.state, KYC_FLOW)

    async def test_old_step_toggle_is_rejected(self):
        await self._open(ESIGN_STEP, _kyc_form(esign_status=None))
        callback = _callback("kyc:toggle:documents_acknowledged")
        await kyc.process_toggle(callback, self.state)

        sequencer = await self._current()
        self.assertTrue(sequencer.form["documents_acknowledged"])
        self.assertTrue(callback.answer.call_args.kwargs["show_alert"])

    async def test_old_step_field_button_is_rejected(self):
        await self._open(ESIGN_STEP, _kyc_form(esign_status=None))
        callback = _callback("kyc:field:pan")
        await kyc.process_field_button(callback, self.state)

        data = await self.state.get_data()
        self.assertIsNone(data["pending_field"])
        callback.message.answer.assert_not_awaited()

    async def test_old_step_choice_is_rejected(self):
        await self._open(ESIGN_STEP, _kyc_form(esign_status=None))
        await kyc.process_choice(_callback("kyc:set:residency:nri"), self.state)
        self.assertEqual((await self._current()).form["residency"], "resident")

    async def test_pending_field_from_another_step_is_dropped(self):
        await self._open(ESIGN_STEP, _kyc_form(esign_status=None))
        await self.state.update_data(pending_field="pan")
        await kyc.process_field_text(_message("BAD"), self.state)

        sequencer = await self._current()
        self.assertEqual(sequencer.form["pan"], "ABCDE1234F")
        self.assertIsNone((await self.state.get_data())["pending_field"])

    async def test_demat_row_field_belongs_to_demat_step(self):
        await self._open(4, _kyc_form(demat_accounts=[{"type": "NSDL", "id": ""}]))
        await self.state.update_data(pending_field="demat_id.0")
        await kyc.process_field_text(_message(" IN30012345678 "), self.state)

        sequencer = await self._current()
        self.assertEqual(sequencer.form["demat_accounts"][0]["id"], "IN30012345678")

    async def test_bank_proof_outside_its_step_is_not_downloaded(self):
        await self._open(ESIGN_STEP, _kyc_form(esign_status=None))
        message = _message()
        message.document.file_name = "other.pdf"
        message.document.mime_type = "application/pdf"
        message.document.file_size = 2048
        bot = MagicMock()
        bot.download = AsyncMock()
        await kyc.process_bank_proof(message, self.state, bot)

        bot.download.assert_not_awaited()
        self.assertEqual((await self._current()).form["bank_proof_file"]["name"], "proof.pdf")

    async def test_completion_returns_to_broken_step(self):
        # Некоректний PAN на пройденому кроці не дає завершити KYC
        await self._open(ESIGN_STEP, _kyc_form(pan="BAD"))
        callback = _callback("kyc:next")
        await kyc.process_next(callback, self.state)

        self.mark_kyc_complete.assert_not_called()
        self.assertEqual((await self._current()).current_index, 1)
        callback.answer.assert_awaited_once_with("Enter PAN in format AAAAA9999A", show_alert=True)

    async def test_completion_marks_user(self):
        await self._open(ESIGN_STEP, _kyc_form())
        await kyc.process_next(_callback("kyc:next"), self.state)

        self.mark_kyc_complete.assert_called_once_with(1)
        self.clear_progress.assert_called_once_with(1, KYC_FLOW)
        self.assertIsNone(await self._current())

    async def test_esign_needs_every_consent(self):
        await self._open(ESIGN_STEP, _kyc_form(esign_status=None, consent_data=False))
        callback = _callback("kyc:esign")
        with patch.object(kyc.esign, "get_provider") as get_provider:
            await kyc.process_esign(callback, self.state)

        get_provider.assert_not_called()
        callback.answer.assert_awaited_once_with("Tick all three consents before signing.", show_alert=True)

    async def test_esign_success(self):
        await self._open(ESIGN_STEP, _kyc_form(esign_status=None))
        provider = MagicMock()
        provider.sign_document = AsyncMock(return_value=SignResult(success=True, reference="REF1"))
        with patch.object(kyc.esign, "get_provider", return_value=provider):
            await kyc.process_esign(_callback("kyc:esign"), self.state)

        sequencer = await self._current()
        self.assertEqual(sequencer.form["esign_status"], "success")
        self.assertEqual(sequencer.form["esign_reference"], "REF1")
        self.assertFalse((await self.state.get_data())["busy"])

    async def test_late_esign_result_after_leaving_is_ignored(self):
        await self._open(ESIGN_STEP, _kyc_form(esign_status=None))

        async def sign_after_cancel():
            # Користувач натиснув /cancel і знову відкрив /kyc, поки підпис ще йде
            await common.close_screen(self.state)
            await self._open(ESIGN_STEP, _kyc_form(esign_status=None))
            return SignResult(success=True, reference="LATE")

        provider = MagicMock()
        provider.sign_document = sign_after_cancel
        with patch.object(kyc.esign, "get_provider", return_value=provider):
            await kyc.process_esign(_callback("kyc:esign"), self.state)

        sequencer = await self._current()
        self.assertIsNone(sequencer.form["esign_status"])
        self.assertNotIn("esign_reference", sequencer.form)

if __name__ == '__main__':
    unittest.main()
