import logging

from aiogram import F, Router
from aiogram.exceptions import TelegramBadRequest
from aiogram.filters import Command
from aiogram.fsm.context import FSMContext
from aiogram.types import CallbackQuery, Message
from aiogram.utils.keyboard import InlineKeyboardBuilder

import crud
from bot import api, keyboards
from bot.common import (
    FIELD_LABELS, begin_request, close_screen, end_request, error_lines, field_is_editable, get_flow,
    load_flow, not_command, return_to_invalid_stage, show, stage_header, store_flow,
)
from bot.states import RegistrationFSM
from flows import REGISTRATION_FLOW
from otp import CODE_LENGTH, CodeEntryProtocol
from sequencer import SequenceState, StepSequencer
from validators import SOURCE_OPTIONS, digits_only

logger = logging.getLogger(__name__)
router = Router(name="registration")

ACCOUNT_FIELDS = [("email", "Email"), ("password", "Password")]
PROFILE_FIELDS = [("first_name", "First name"), ("last_name", "Last name"), ("phone", "Phone"), ("email", "Email")]


def _completion_handler(user_id: int):
    def on_complete(state_snapshot: SequenceState) -> None:
        crud.clear_progress(user_id, REGISTRATION_FLOW)
        logger.info(f"Registration completed for user #{user_id}")
    return on_complete


def render(sequencer: StepSequencer, data: dict, banner: str = ""):
    """Текст і клавіатура поточного кроку реєстрації."""
    form = sequencer.form
    text = stage_header(sequencer, "📝 Registration")
    builder = InlineKeyboardBuilder()
    keyboards.add_rail(builder, "reg", sequencer)

    if sequencer.current_index == 0:
        masked = {**form, "password": "•" * len(form.get("password", ""))}
        keyboards.add_field_buttons(builder, "reg", ACCOUNT_FIELDS, masked)
    elif sequencer.current_index == 1:
        return render_code(sequencer, data, banner)
    else:
        keyboards.add_field_buttons(builder, "reg", PROFILE_FIELDS, form)
        keyboards.add_choice_row(
            builder, "reg", "source",
            [(value, value.capitalize()) for value in SOURCE_OPTIONS],
            form.get("source"),
        )

    keyboards.add_nav(builder, "reg", sequencer, next_text="Submit" if sequencer.current_index == 2 else "Continue")
    errors = error_lines(sequencer.errors())
    if errors:
        text += f"\n{errors}\n"
    if banner:
        text += f"\n❌ {banner}"
    return text, builder.as_markup()


def render_code(sequencer: StepSequencer, data: dict, banner: str = ""):
    cells = data.get("otp_cells") or [""] * CODE_LENGTH
    text = stage_header(sequencer, "📝 Registration")
    text += (
        f"\n📧 Enter the 6-digit code sent to <b>{sequencer.form.get('email', '')}</b>.\n"
        "Tap the digits or paste the whole code as a message."
    )
    if banner:
        text += f"\n\n❌ {banner}"
    return text, keyboards.get_otp_kb(cells, data.get("otp_focus", 0), busy=data.get("busy", False))


async def refresh(target, state: FSMContext, sequencer: StepSequencer, banner: str = "") -> None:
    data = await state.get_data()
    if sequencer.is_complete:
        await close_screen(state)
        await show(target, "🎉 <b>Registration complete!</b>\n\nContinue with your KYC using /kyc.")
        return
    if sequencer.current_index == 1:
        await state.set_state(RegistrationFSM.entering_code)
    else:
        await state.set_state(RegistrationFSM.filling)
    text, markup = render(sequencer, data, banner)
    await show(target, text, markup)


@router.message(Command("register"))
async def cmd_register(message: Message, state: FSMContext):
    await close_screen(state)
    user_id = crud.get_or_create_user(message.from_user.id, message.from_user.username or "unknown")
    sequencer = await load_flow(state, REGISTRATION_FLOW, user_id)
    logger.info(f"User {message.from_user.id} opened registration at step {sequencer.current_index + 1}")
    await refresh(message, state, sequencer)


async def _flow_or_expire(callback: CallbackQuery, state: FSMContext, on_complete=None):
    sequencer = await get_flow(state, REGISTRATION_FLOW, on_complete=on_complete)
    if sequencer is None:
        await callback.answer("This session has expired. Use /register again.", show_alert=True)
    return sequencer


@router.callback_query(F.data.startswith("reg:jump:"))
async def process_jump(callback: CallbackQuery, state: FSMContext):
    sequencer = await _flow_or_expire(callback, state)
    if sequencer is None:
        return
    if not sequencer.jump_to(int(callback.data.split(":")[2])):
        await callback.answer("Complete the current step first.")
        return
    await store_flow(state, REGISTRATION_FLOW, sequencer)
    await refresh(callback, state, sequencer)
    await callback.answer()


@router.callback_query(F.data == "reg:locked")
async def process_locked(callback: CallbackQuery):
    await callback.answer("Complete the current step first.")


@router.callback_query(F.data == "reg:back")
async def process_back(callback: CallbackQuery, state: FSMContext):
    sequencer = await _flow_or_expire(callback, state)
    if sequencer is None:
        return
    sequencer.retreat()
    await store_flow(state, REGISTRATION_FLOW, sequencer)
    await refresh(callback, state, sequencer)
    await callback.answer()


@router.callback_query(F.data.startswith("reg:field:"))
async def process_field_button(callback: CallbackQuery, state: FSMContext):
    key = callback.data.split(":")[2]
    sequencer = await _flow_or_expire(callback, state)
    if sequencer is None or not await field_is_editable(callback, sequencer, key):
        return
    await state.update_data(pending_field=key)
    await state.set_state(RegistrationFSM.entering_field)
    await callback.message.answer(f"✍️ Enter <b>{FIELD_LABELS.get(key, key)}</b>:", parse_mode="HTML")
    await callback.answer()


@router.message(RegistrationFSM.entering_field, not_command)
async def process_field_text(message: Message, state: FSMContext):
    data = await state.get_data()
    key = data.get("pending_field")
    sequencer = await get_flow(state, REGISTRATION_FLOW)
    if sequencer is None or not key:
        await message.answer("This session has expired. Use /register again.")
        return
    if not sequencer.owns_field(key):
        logger.warning(f"User {message.from_user.id} sent {key} outside its step")
        await state.update_data(pending_field=None)
        await refresh(message, state, sequencer, banner="That field belongs to another step. Use the step buttons to go back.")
        return

    value = (message.text or "").strip()
    if sequencer.current_index == 0 and (key == "password" or value != sequencer.form.get(key)):
        # Нові облікові дані - нова реєстрація та нове підтвердження пошти
        for stale in ("registered", "email_verified", "pending_token"):
            sequencer.form.pop(stale, None)
    sequencer.form[key] = value
    if key == "password":
        # Пароль не лишаємо в історії чату
        try:
            await message.delete()
        except TelegramBadRequest:
            logger.debug("Could not delete password message")
    else:
        logger.info(f"User {message.from_user.id} set registration field {key}")

    await state.update_data(pending_field=None)
    await store_flow(state, REGISTRATION_FLOW, sequencer)
    await refresh(message, state, sequencer)


@router.callback_query(F.data.startswith("reg:set:"))
async def process_choice(callback: CallbackQuery, state: FSMContext):
    _, _, key, value = callback.data.split(":", 3)
    sequencer = await _flow_or_expire(callback, state)
    if sequencer is None or not await field_is_editable(callback, sequencer, key):
        return
    sequencer.form[key] = value
    await store_flow(state, REGISTRATION_FLOW, sequencer)
    await refresh(callback, state, sequencer)
    await callback.answer()


@router.callback_query(F.data == "reg:next")
async def process_next(callback: CallbackQuery, state: FSMContext):
    data = await state.get_data()
    sequencer = await _flow_or_expire(callback, state, on_complete=_completion_handler(data.get("user_id")))
    if sequencer is None:
        return
    if not sequencer.can_advance():
        errors = sequencer.errors()
        if await return_to_invalid_stage(state, REGISTRATION_FLOW, sequencer):
            logger.warning(f"User {callback.from_user.id} returned to registration step {sequencer.current_index + 1}")
            await refresh(callback, state, sequencer)
        await callback.answer(next(iter(errors.values()), "Complete this step first."), show_alert=True)
        return

    session = await begin_request(state)
    if session is None:
        await callback.answer("Please wait, your request is in progress.")
        return
    await callback.answer()

    user_id = data["user_id"]
    form = sequencer.form

    if sequencer.current_index == 0 and form.get("registered") is not True:
        result = await api.register(form["email"], form["password"])
        if not await end_request(state, session):
            return
        if not result["registered"]:
            logger.warning(f"User {callback.from_user.id} registration rejected")
            await refresh(callback, state, sequencer, banner=result["message"] or "Registration failed. Please try again.")
            return
        form["pending_token"] = result["token"]
        form["registered"] = True
        form.pop("password", None)
        crud.set_auth(user_id, form["email"], result["token"])
        await state.update_data(otp_cells=[""] * CODE_LENGTH, otp_focus=0)

    elif sequencer.current_index == 2:
        result = await api.complete_profile(form, token=form.get("pending_token"))
        if not await end_request(state, session):
            return
        if not result["completed"]:
            logger.warning(f"User {callback.from_user.id} profile completion rejected")
            await refresh(callback, state, sequencer, banner=result["message"] or "Profile completion failed. Please try again.")
            return
    else:
        await end_request(state, session)

    sequencer.advance()
    logger.info(f"User {callback.from_user.id} advanced registration to step {sequencer.current_index + 1}")
    if not sequencer.is_complete:
        await store_flow(state, REGISTRATION_FLOW, sequencer)
    await refresh(callback, state, sequencer)


# --- Введення коду підтвердження ---

async def _protocol(state: FSMContext, completed: list) -> CodeEntryProtocol:
    data = await state.get_data()
    return CodeEntryProtocol(
        length=CODE_LENGTH,
        on_complete=completed.append,
        cells=data.get("otp_cells"),
        focus=data.get("otp_focus", 0),
    )


async def _apply_code_event(target, state: FSMContext, protocol: CodeEntryProtocol, completed: list) -> None:
    await state.update_data(otp_cells=list(protocol.buffer.cells), otp_focus=protocol.focus)
    if completed:
        await submit_code(target, state, completed[0])
        return
    sequencer = await get_flow(state, REGISTRATION_FLOW)
    if sequencer is not None:
        await refresh(target, state, sequencer)


async def submit_code(target, state: FSMContext, code: str) -> None:
    """Надсилає повний код на перевірку. Лише один запит одночасно."""
    sequencer = await get_flow(state, REGISTRATION_FLOW)
    if sequencer is None or sequencer.current_index != 1:
        return
    session = await begin_request(state)
    if session is None:
        return

    await refresh(target, state, sequencer)
    form = sequencer.form
    result = await api.verify_email(form.get("email", ""), code, token=form.get("pending_token"))
    if not await end_request(state, session):
        logger.info("Ignoring verification response for a closed screen")
        return

    user = getattr(target, "from_user", None)
    if not result["verified"]:
        logger.warning(f"User {user.id if user else '?'} entered a rejected verification code")
        # Порожні клітинки: наступний повний код знову надсилається на перевірку
        await state.update_data(otp_cells=[""] * CODE_LENGTH, otp_focus=0)
        await refresh(target, state, sequencer, banner="Email verification failed. Please check your code and try again.")
        return

    form["email_verified"] = True
    if result.get("token"):
        form["pending_token"] = result["token"]
    sequencer.advance()
    logger.info(f"User {user.id if user else '?'} verified email")
    await state.update_data(otp_cells=None, otp_focus=0)
    await store_flow(state, REGISTRATION_FLOW, sequencer)
    await refresh(target, state, sequencer)


@router.callback_query(RegistrationFSM.entering_code, F.data.startswith("otp:"))
async def process_code_key(callback: CallbackQuery, state: FSMContext):
    data = await state.get_data()
    if data.get("busy"):
        await callback.answer("Verifying, please wait...")
        return

    completed: list = []
    protocol = await _protocol(state, completed)
    action = callback.data.split(":")[1]

    if action == "d":
        protocol.on_digit(protocol.focus, callback.data.split(":")[2])
    elif action == "bs":
        protocol.on_backspace(protocol.focus)
    elif action == "left":
        protocol.on_arrow(protocol.focus, -1)
    elif action == "right":
        protocol.on_arrow(protocol.focus, 1)
    elif action == "cell":
        protocol.focus = int(callback.data.split(":")[2])
    elif action == "verify":
        await callback.answer()
        if not protocol.is_filled:
            return
        await submit_code(callback, state, protocol.code)
        return

    await callback.answer()
    await _apply_code_event(callback, state, protocol, completed)


@router.message(RegistrationFSM.entering_code, not_command)
async def process_code_paste(message: Message, state: FSMContext):
    data = await state.get_data()
    if data.get("busy"):
        await message.answer("Verifying, please wait...")
        return
    completed: list = []
    protocol = await _protocol(state, completed)
    text = message.text or ""
    # Повний код вставляється з першої клітинки, де б не був фокус
    start = 0 if len(digits_only(text)) >= CODE_LENGTH else protocol.focus
    protocol.on_paste(start, text)
    await _apply_code_event(message, state, protocol, completed)
