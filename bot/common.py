import logging
from typing import Any, Dict, Optional

from aiogram.exceptions import TelegramBadRequest
from aiogram.fsm.context import FSMContext
from aiogram.types import CallbackQuery, InlineKeyboardMarkup, Message

import crud
from flows import build_sequencer
from sequencer import ResumeToken, StepSequencer

logger = logging.getLogger(__name__)

# Не потрапляють у збережений прогрес
SECRET_FIELDS = {"password"}

FIELD_LABELS = {
    "documents_acknowledged": "Documents",
    "pan": "PAN",
    "full_name": "Full name",
    "dob": "Date of birth",
    "father_name": "Father's name",
    "residency": "Residency",
    "aadhaar": "Aadhaar",
    "address_verified_via": "Address verification",
    "account_number": "Account number",
    "ifsc": "IFSC",
    "bank_proof_file": "Bank proof",
    "demat_accounts": "Demat accounts",
    "video_started": "Video KYC",
    "consent_terms": "Terms consent",
    "consent_data": "Data consent",
    "consent_esign": "eSign consent",
    "esign_status": "eSign",
    "email": "Email",
    "password": "Password",
    "email_verified": "Email verification",
    "first_name": "First name",
    "last_name": "Last name",
    "phone": "Phone",
    "source": "Source",
    "stock_id": "Stock",
    "quantity": "Quantity",
    "unit_price": "Price",
    "state_code": "State",
    "delivery": "Delivery",
    "acknowledgments": "Disclosures",
    "final_consent": "Final consent",
    "payment_method": "Payment method",
}


def error_lines(errors: Dict[str, str]) -> str:
    """Причини невиконання кроку - поруч з назвою поля."""
    if not errors:
        return ""
    lines = []
    for key, message in errors.items():
        base = key.split(".")[0]
        label = FIELD_LABELS.get(base, base)
        if "." in key:
            label = f"{label} #{int(key.split('.')[1]) + 1}"
        lines.append(f"⚠️ <b>{label}:</b> {message}")
    return "\n".join(lines)


def stage_header(sequencer: StepSequencer, title: str) -> str:
    stage = sequencer.state.current_stage
    total = len(sequencer.state.stages)
    return f"<b>{title}</b> - Step {sequencer.current_index + 1}/{total}: <b>{stage.label}</b>\n"


async def load_flow(state: FSMContext, flow: str, user_id: int, resume: bool = True) -> StepSequencer:
    """
    Відкриває сценарій: токен відновлення з БД (якщо є) передається в конструктор.
    Відкриття нового екрана скидає позначку активного запиту та збільшує лічильник сесії.
    """
    token = crud.load_progress(user_id, flow) if resume else None
    sequencer = build_sequencer(flow, resume=token)
    data = await state.get_data()
    await state.update_data(
        user_id=user_id,
        flow=flow,
        session=data.get("session", 0) + 1,
        busy=False,
        pending_field=None,
        **{f"flow_{flow}": {"current_index": sequencer.current_index, "form": sequencer.form}},
    )
    return sequencer


async def get_flow(state: FSMContext, flow: str, on_complete=None) -> Optional[StepSequencer]:
    data = await state.get_data()
    saved = data.get(f"flow_{flow}")
    if saved is None:
        return None
    token = ResumeToken(flow=flow, current_index=saved["current_index"], form=dict(saved["form"]))
    return build_sequencer(flow, resume=token, on_complete=on_complete)


async def store_flow(state: FSMContext, flow: str, sequencer: StepSequencer, persist: bool = True) -> None:
    await state.update_data(**{f"flow_{flow}": {"current_index": sequencer.current_index, "form": sequencer.form}})
    if not persist:
        return
    data = await state.get_data()
    user_id = data.get("user_id")
    if user_id is None:
        return
    token = sequencer.state.to_token(flow)
    token.form = {k: v for k, v in token.form.items() if k not in SECRET_FIELDS}
    crud.save_progress(user_id, token)


async def close_screen(state: FSMContext) -> None:
    """Очищує FSM, але лічильник сесії лише зростає: запізнілі відповіді не впізнають новий екран."""
    data = await state.get_data()
    await state.clear()
    await state.update_data(session=data.get("session", 0) + 1)


async def begin_request(state: FSMContext) -> Optional[int]:
    """
    Один запит у польоті на дію користувача.
    Повертає номер сесії, якщо запит можна починати, інакше None.
    """
    data = await state.get_data()
    if data.get("busy"):
        return None
    await state.update_data(busy=True)
    return data.get("session", 0)


async def end_request(state: FSMContext, session: int) -> bool:
    """Знімає позначку запиту. False - користувач уже пішов з екрана, відповідь треба ігнорувати."""
    data = await state.get_data()
    if data.get("session", 0) != session:
        return False
    await state.update_data(busy=False)
    return True


async def show(target: Any, text: str, markup: Optional[InlineKeyboardMarkup] = None) -> None:
    """Редагує повідомлення з кнопками або надсилає нове."""
    if isinstance(target, CallbackQuery):
        try:
            await target.message.edit_text(text, reply_markup=markup, parse_mode="HTML")
            return
        except TelegramBadRequest as e:
            if "message is not modified" in str(e):
                return
            logger.debug(f"Edit failed, sending new message: {e}")
            await target.message.answer(text, reply_markup=markup, parse_mode="HTML")
            return
    if isinstance(target, Message):
        await target.answer(text, reply_markup=markup, parse_mode="HTML")


def not_command(message: Message) -> bool:
    """Фільтр для текстового введення: команди (/kyc, /buy...) проходять до своїх обробників."""
    return not (message.text or "").startswith("/")


async def field_is_editable(callback: CallbackQuery, sequencer: StepSequencer, key: str) -> bool:
    """Кнопки зі старих повідомлень не змінюють поля інших кроків."""
    if sequencer.owns_field(key):
        return True
    logger.warning(f"User {callback.from_user.id} pressed a stale button for {key} on step {sequencer.current_index + 1}")
    await callback.answer("This button belongs to another step. Use the step buttons to go back.", show_alert=True)
    return False


async def return_to_invalid_stage(state: FSMContext, flow: str, sequencer: StepSequencer, persist: bool = True) -> bool:
    """Якщо пройдений крок більше не виконано, курсор повертається на нього."""
    invalid = sequencer.first_invalid_index()
    if invalid is None:
        return False
    sequencer.jump_to(invalid)
    await store_flow(state, flow, sequencer, persist=persist)
    return True
