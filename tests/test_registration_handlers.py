import unittest
from unittest.mock import AsyncMock, MagicMock, patch

from aiogram.fsm.context import FSMContext
from aiogram.fsm.storage.base import StorageKey
from aiogram.fsm.storage.memory import MemoryStorage

from bot import common, registration
from flows import REGISTRATION_FLOW, build_sequencer
from otp import CODE_LENGTH
from sequencer import ResumeToken

REJECTED = {"verified": False, "token": "tok", "message": "Invalid code"}
ACCEPTED = {"verified": True, "token": "tok2", "message": ""}


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
    message.delete = AsyncMock()
    return message


class TestRegistrationHandlers(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.state = FSMContext(storage=MemoryStorage(), key=StorageKey(bot_id=1, chat_id=1, user_id=555))
        for name in ("save_progress", "clear_progress", "set_auth"):
            patcher = patch.object(registration.crud, name)
            patcher.start()
            self.addCleanup(patcher.stop)
        patcher = patch.object(registration, "show", new_callable=AsyncMock)
        patcher.start()
        self.addCleanup(patcher.stop)

    async def _open(self, index, form):
        await common.load_flow(self.state, REGISTRATION_FLOW, user_id=1, resume=False)
        sequencer = build_sequencer(REGISTRATION_FLOW, resume=ResumeToken(REGISTRATION_FLOW, index, form))
        await common.store_flow(self.state, REGISTRATION_FLOW, sequencer, persist=False)
        await self.state.update_data(otp_cells=[""] * CODE_LENGTH, otp_focus=0)

    async def _open_code_step(self):
        await self._open(1, {"email": "a@b.co", "registered": True, "pending_token": "tok"})

    async def _current(self):
        return await common.get_flow(self.state, REGISTRATION_FLOW)

    async def test_code_is_submitted_once_when_full(self):
        await self._open_code_step()
        with patch.object(registration.api, "verify_email", new=AsyncMock(return_value=ACCEPTED)) as verify:
            for digit in "12345":
                await registration.process_code_key(_callback(f"otp:d:{digit}"), self.state)
            verify.assert_not_awaited()

            await registration.process_code_key(_callback("otp:d:6"), self.state)

        verify.assert_awaited_once_with("a@b.co", "123456", token="tok")
        sequencer = await self._current()
        self.assertEqual(sequencer.current_index, 2)
        self.assertTrue(sequencer.form["email_verified"])
        self.assertEqual(sequencer.form["pending_token"], "tok2")

    async def test_overwriting_last_digit_does_not_resubmit(self):
        await self._open_code_step()
        await self.state.update_data(otp_cells=list("123456"), otp_focus=CODE_LENGTH - 1)
        with patch.object(registration.api, "verify_email", new=AsyncMock(return_value=REJECTED)) as verify:
            await registration.process_code_key(_callback("otp:d:7"), self.state)
        verify.assert_not_awaited()

    async def test_rejected_code_clears_cells(self):
        await self._open_code_step()
        with patch.object(registration.api, "verify_email", new=AsyncMock(return_value=REJECTED)):
            await registration.process_code_paste(_message("111111"), self.state)

        data = await self.state.get_data()
        self.assertEqual(data["otp_cells"], [""] * CODE_LENGTH)
        self.assertEqual(data["otp_focus"], 0)
        self.assertFalse(data["busy"])
        self.assertEqual((await self._current()).current_index, 1)

    async def test_new_code_is_submitted_after_rejection(self):
        await self._open_code_step()
        verify = AsyncMock(side_effect=[REJECTED, ACCEPTED])
        with patch.object(registration.api, "verify_email", new=verify):
            await registration.process_code_paste(_message("111111"), self.state)
            await registration.process_code_paste(_message("222 222"), self.state)

        self.assertEqual([c.args[1] for c in verify.await_args_list], ["111111", "222222"])
        self.assertEqual((await self._current()).current_index, 2)

    async def test_full_paste_starts_at_first_cell(self):
        await self._open_code_step()
        await self.state.update_data(otp_cells=["1", "2", "3", "", "", ""], otp_focus=3)
        with patch.object(registration.api, "verify_email", new=AsyncMock(return_value=ACCEPTED)) as verify:
            await registration.process_code_paste(_message("654321"), self.state)
        verify.assert_awaited_once_with("a@b.co", "654321", token="tok")

    async def test_short_paste_fills_from_focus(self):
        await self._open_code_step()
        await self.state.update_data(otp_cells=["1", "2", "3", "", "", ""], otp_focus=3)
        with patch.object(registration.api, "verify_email", new=AsyncMock(return_value=ACCEPTED)) as verify:
            await registration.process_code_paste(_message("456"), self.state)
        verify.assert_awaited_once_with("a@b.co", "123456", token="tok")

    async def test_old_step_field_button_is_rejected(self):
        await self._open(2, {"email": "a@b.co", "registered": True, "email_verified": True})
        callback = _callback("reg:field:password")
        await registration.process_field_button(callback, self.state)

        self.assertIsNone((await self.state.get_data())["pending_field"])
        self.assertTrue(callback.answer.call_args.kwargs["show_alert"])

    async def test_pending_field_from_another_step_is_dropped(self):
        await self._open_code_step()
        await self.state.update_data(pending_field="password")
        await registration.process_field_text(_message("short"), self.state)
        self.assertNotIn("password", (await self._current()).form)

    async def test_registered_account_continues_without_registering(self):
        await self._open(0, {"email": "a@b.co", "registered": True, "pending_token": "tok"})
        with patch.object(registration.api, "register", new=AsyncMock()) as register:
            await registration.process_next(_callback("reg:next"), self.state)

        register.assert_not_awaited()
        self.assertEqual((await self._current()).current_index, 1)

    async def test_new_password_needs_new_registration(self):
        await self._open(0, {"email": "a@b.co", "registered": True, "email_verified": True, "pending_token": "tok"})
        await self.state.update_data(pending_field="password")
        message = _message("another-secret")
        await registration.process_field_text(message, self.state)

        form = (await self._current()).form
        self.assertEqual(form["password"], "another-secret")
        for key in ("registered", "email_verified", "pending_token"):
            self.assertNotIn(key, form)
        message.delete.assert_awaited_once()

    async def test_submit_returns_to_unverified_email(self):
        form = {
            "email": "a@b.co", "registered": True,
            "first_name": "Asha", "last_name": "Rao", "phone": "9876543210", "source": "friend",
        }
        await self._open(2, form)
        with patch.object(registration.api, "complete_profile", new=AsyncMock()) as complete_profile:
            await registration.process_next(_callback("reg:next"), self.state)

        complete_profile.assert_not_awaited()
        self.assertEqual((await self._current()).current_index, 1)

if __name__ == '__main__':
    unittest.main()
