import io
import logging

from aiogram import Bot, F, Router
from aiogram.filters import Command
from aiogram.fsm.context import FSMContext
from aiogram.types import CallbackQuery, InlineKeyboardButton, Message
from aiogram.utils.keyboard import InlineKeyboardBuilder

import crud
import validators
from bot import api, esign, keyboards
from bot.common import (
    FIELD_LABELS, begin_request, close_screen, end_request, error_lines, field_is_editable, get_flow,
    load_flow, not_command, return_to_invalid_stage, show, stage_header, store_flow,
)
from bot.states import KycFSM
from flows import KYC_FLOW
from sequencer import StepSequencer

logger = logging.getLogger(__name__)
router = Router(name="kyc")

DOCUMENTS = [
    "PAN card",
    "Aadhaar card (linked to your mobile number)",
    "Cancelled cheque or bank statement",
    "Demat account Client Master List (CML)",
    "A working camera for video KYC",
]

PAN_FIELDS = [("pan", "PAN"), ("full_name", "Full name"), ("dob", "Date of birth"), ("father_name", "Father's name")]
BANK_FIELDS = [("account_number", "Account number"), ("ifsc", "IFSC")]
ESIGN_CONSENT_LABELS = {
    "consent_terms": "I agree to the account opening terms",
    "consent_data": "I consent to KYC data verification",
    "consent_esign": "I authorize Aadhaar-based eSign",
}

# Нормалізація введених значень перед збереженням у форму
NORMALIZERS = {
    "pan": lambda v: v.strip().upper(),
    "ifsc": lambda v: v.strip().upper(),
    "aadhaar": lambda v: validators.digits_only(v)[:12],
    "account_number": lambda v: validators.digits_only(v),
}


def _completion_handler(user_id: int):
    """Сигнал завершення KYC: позначка в профілі та видалення збереженого прогресу."""
    def on_complete(state_snapshot) -> None:
        crud.mark_kyc_complete(user_id)
        crud.clear_progress(user_id, KYC_FLOW)
        logger.info(f"KYC completed for user #{user_id}")
    return on_complete


def _format_aadhaar(digits: str) -> str:
    return " ".join(digits[i:i + 4] for i in range(0, len(digits), 4))


def render(sequencer: StepSequencer, data: dict, banner: str = ""):
    """Текст і клавіатура поточного кроку KYC."""
    form = sequencer.form
    index = sequencer.current_index
    text = stage_header(sequencer, "🪪 KYC")
    builder = InlineKeyboardBuilder()
    keyboards.add_rail(builder, "kyc", sequencer)

    if index == 0:
        text += "\nKeep these documents ready:\n" + "\n".join(f"• {doc}" for doc in DOCUMENTS) + "\n"
        builder.row(InlineKeyboardButton(
            text=keyboards.checkbox(form.get("documents_acknowledged") is True, "I have all the documents ready"),
            callback_data="kyc:toggle:documents_acknowledged",
        ))
    elif index == 1:
        keyboards.add_field_buttons(builder, "kyc", PAN_FIELDS, form)
        keyboards.add_choice_row(
            builder, "kyc", "residency",
            [("resident", "Resident Indian"), ("nri", "NRI")],
            form.get("residency"),
        )
    elif index == 2:
        shown = {"aadhaar": _format_aadhaar(form.get("aadhaar", ""))}
        keyboards.add_field_buttons(builder, "kyc", [("aadhaar", "Aadhaar")], shown)
        verified = form.get("address_verified_via")
        if verified:
            text += f"\n✅ Address verified via {verified.upper()}\n"
        else:
            builder.row(
                InlineKeyboardButton(text="Verify via OTP", callback_data="kyc:set:address_verified_via:otp"),
                InlineKeyboardButton(text="Verify via DigiLocker", callback_data="kyc:set:address_verified_via:digilocker"),
            )
    elif index == 3:
        keyboards.add_field_buttons(builder, "kyc", BANK_FIELDS, form)
        file_meta = form.get("bank_proof_file")
        if file_meta:
            text += f"\n📎 {file_meta.get('name')} ({file_meta.get('size', 0) // 1024} KB)\n"
        builder.row(InlineKeyboardButton(text="📎 Upload bank proof (PDF/JPG/PNG, max 5MB)", callback_data="kyc:upload"))
    elif index == 4:
        rows = form.get("demat_accounts") or []
        for i, row in enumerate(rows):
            builder.row(
                InlineKeyboardButton(text=row.get("type") or "CDSL/NSDL?", callback_data=f"kyc:demat_type:{i}"),
                InlineKeyboardButton(text=f"✏️ {row.get('id') or 'Client ID'}", callback_data=f"kyc:field:demat_id.{i}"),
                InlineKeyboardButton(text="🗑", callback_data=f"kyc:demat_del:{i}"),
            )
        if len(rows) < validators.MAX_DEMAT_ROWS:
            builder.row(InlineKeyboardButton(text="➕ Add demat account", callback_data="kyc:demat_add"))
    elif index == 5:
        if form.get("video_started"):
            text += "\n🎥 Video session started. Follow the agent's instructions, then continue.\n"
        else:
            builder.row(InlineKeyboardButton(text="🎥 Start video KYC", callback_data="kyc:video"))
    else:
        for key, label in ESIGN_CONSENT_LABELS.items():
            builder.row(InlineKeyboardButton(
                text=keyboards.checkbox(form.get(key) is True, label),
                callback_data=f"kyc:toggle:{key}",
            ))
        status = form.get("esign_status")
        if status == "success":
            text += "\n✅ eSign completed.\n"
        elif data.get("busy"):
            builder.row(InlineKeyboardButton(text="⏳ Signing...", callback_data="kyc:esign"))
        else:
            builder.row(InlineKeyboardButton(text="✍️ Start eSign", callback_data="kyc:esign"))

    keyboards.add_nav(
        builder, "kyc", sequencer,
        next_text="Ready to Complete" if sequencer.state.current_stage.is_terminal else "Continue",
    )
    errors = error_lines(sequencer.errors())
    if errors:
        text += f"\n{errors}\n"
    if banner:
        text += f"\n❌ {banner}"
    return text, builder.as_markup()


async def refresh(target, state: FSMContext, sequencer: StepSequencer, banner: str = "") -> None:
    if sequencer.is_complete:
        await close_screen(state)
        await show(target, "🎉 <b>KYC submitted!</b>\n\nYou can now invest with /buy.")
        return
    await state.set_state(KycFSM.filling)
    data = await state.get_data()
    text, markup = render(sequencer, data, banner)
    await show(target, text, markup)


async def _flow_or_expire(callback: CallbackQuery, state: FSMContext, on_complete=None):
    sequencer = await get_flow(state, KYC_FLOW, on_complete=on_complete)
    if sequencer is None:
        await callback.answer("This session has expired. Use /kyc again.", show_alert=True)
    return sequencer


@router.message(Command("kyc"))
async def cmd_kyc(message: Message, state: FSMContext):
    await close_screen(state)
    user_id = crud.get_or_create_user(message.from_user.id, message.from_user.username or "unknown")
    sequencer = await load_flow(state, KYC_FLOW, user_id)
    logger.info(f"User {message.from_user.id} opened KYC at step {sequencer.current_index + 1}")
    await refresh(message, state, sequencer)


@router.callback_query(F.data == "kyc:locked")
async def process_locked(callback: CallbackQuery):
    await callback.answer("Complete the current step first.")


@router.callback_query(F.data.startswith("kyc:jump:"))
async def process_jump(callback: CallbackQuery, state: FSMContext):
    sequencer = await _flow_or_expire(callback, state)
    if sequencer is None:
        return
    if not sequencer.jump_to(int(callback.data.split(":")[2])):
        await callback.answer("Complete the current step first.")
        return
    await store_flow(state, KYC_FLOW, sequencer)
    await refresh(callback, state, sequencer)
    await callback.answer()


@router.callback_query(F.data == "kyc:back")
async def process_back(callback: CallbackQuery, state: FSMContext):
    sequencer = await _flow_or_expire(callback, state)
    if sequencer is None:
        return
    sequencer.retreat()
    await store_flow(state, KYC_FLOW, sequencer)
    await refresh(callback, state, sequencer)
    await callback.answer()


@router.callback_query(F.data.startswith("kyc:toggle:"))
async def process_toggle(callback: CallbackQuery, state: FSMContext):
    sequencer = await _flow_or_expire(callback, state)
    if sequencer is None:
        return
    key = callback.data.split(":")[2]
    if not await field_is_editable(callback, sequencer, key):
        return
    sequencer.form[key] = not sequencer.form.get(key, False)
    await store_flow(state, KYC_FLOW, sequencer)
    await refresh(callback, state, sequencer)
    await callback.answer()


@router.callback_query(F.data.startswith("kyc:set:"))
async def process_choice(callback: CallbackQuery, state: FSMContext):
    sequencer = await _flow_or_expire(callback, state)
    if sequencer is None:
        return
    _, _, key, value = callback.data.split(":", 3)
    if not await field_is_editable(callback, sequencer, key):
        return
    if key == "address_verified_via" and "aadhaar" in validators.check_address({"aadhaar": sequencer.form.get("aadhaar", "")}):
        await callback.answer("Enter a valid 12-digit Aadhaar number first.", show_alert=True)
        return
    sequencer.form[key] = value
    logger.info(f"User {callback.from_user.id} set KYC {key}={value}")
    await store_flow(state, KYC_FLOW, sequencer)
    await refresh(callback, state, sequencer)
    await callback.answer()


@router.callback_query(F.data.startswith("kyc:field:"))
async def process_field_button(callback: CallbackQuery, state: FSMContext):
    key = callback.data.split(":")[2]
    sequencer = await _flow_or_expire(callback, state)
    if sequencer is None or not await field_is_editable(callback, sequencer, key):
        return
    await state.update_data(pending_field=key)
    await state.set_state(KycFSM.entering_field)
    label = FIELD_LABELS.get(key, "Client ID") if not key.startswith("demat_id.") else "demat Client ID"
    hint = " (YYYY-MM-DD)" if key == "dob" else ""
    await callback.message.answer(f"✍️ Enter <b>{label}</b>{hint}:", parse_mode="HTML")
    await callback.answer()


@router.message(KycFSM.entering_field, not_command)
async def process_field_text(message: Message, state: FSMContext):
    data = await state.get_data()
    key = data.get("pending_field")
    sequencer = await get_flow(state, KYC_FLOW)
    if sequencer is None or not key:
        await message.answer("This session has expired. Use /kyc again.")
        return
    if not sequencer.owns_field(key):
        logger.warning(f"User {message.from_user.id} sent {key} outside its step")
        await state.update_data(pending_field=None)
        await refresh(message, state, sequencer, banner="That field belongs to another step. Use the step buttons to go back.")
        return

    raw = message.text or ""
    if key.startswith("demat_id."):
        i = int(key.split(".")[1])
        rows = sequencer.form.get("demat_accounts") or []
        if i < len(rows):
            rows[i]["id"] = raw.strip()
            sequencer.form["demat_accounts"] = rows
    else:
        value = NORMALIZERS.get(key, str.strip)(raw)
        if key == "aadhaar" and value != sequencer.form.get("aadhaar"):
            # Новий номер потребує нової перевірки адреси
            sequencer.form.pop("address_verified_via", None)
        sequencer.form[key] = value

    logger.info(f"User {message.from_user.id} set KYC field {key}")
    await state.update_data(pending_field=None)
    await store_flow(state, KYC_FLOW, sequencer)
    await refresh(message, state, sequencer)


@router.callback_query(F.data == "kyc:demat_add")
async def process_demat_add(callback: CallbackQuery, state: FSMContext):
    sequencer = await _flow_or_expire(callback, state)
    if sequencer is None:
        return
    if not await field_is_editable(callback, sequencer, "demat_accounts"):
        return
    rows = sequencer.form.get("demat_accounts") or []
    if len(rows) >= validators.MAX_DEMAT_ROWS:
        await callback.answer(f"At most {validators.MAX_DEMAT_ROWS} demat accounts.")
        return
    rows.append({"type": "", "id": ""})
    sequencer.form["demat_accounts"] = rows
    await store_flow(state, KYC_FLOW, sequencer)
    await refresh(callback, state, sequencer)
    await callback.answer()


@router.callback_query(F.data.startswith("kyc:demat_type:"))
async def process_demat_type(callback: CallbackQuery, state: FSMContext):
    sequencer = await _flow_or_expire(callback, state)
    if sequencer is None:
        return
    if not await field_is_editable(callback, sequencer, "demat_accounts"):
        return
    i = int(callback.data.split(":")[2])
    rows = sequencer.form.get("demat_accounts") or []
    if i < len(rows):
        # CDSL -> NSDL -> CDSL
        rows[i]["type"] = "NSDL" if rows[i].get("type") == "CDSL" else "CDSL"
        sequencer.form["demat_accounts"] = rows
        await store_flow(state, KYC_FLOW, sequencer)
    await refresh(callback, state, sequencer)
    await callback.answer()


@router.callback_query(F.data.startswith("kyc:demat_del:"))
async def process_demat_delete(callback: CallbackQuery, state: FSMContext):
    sequencer = await _flow_or_expire(callback, state)
    if sequencer is None:
        return
    if not await field_is_editable(callback, sequencer, "demat_accounts"):
        return
    i = int(callback.data.split(":")[2])
    rows = sequencer.form.get("demat_accounts") or []
    if i < len(rows):
        rows.pop(i)
        sequencer.form["demat_accounts"] = rows
        await store_flow(state, KYC_FLOW, sequencer)
    await refresh(callback, state, sequencer)
    await callback.answer()


@router.callback_query(F.data == "kyc:video")
async def process_video(callback: CallbackQuery, state: FSMContext):
    sequencer = await _flow_or_expire(callback, state)
    if sequencer is None:
        return
    if not await field_is_editable(callback, sequencer, "video_started"):
        return
    sequencer.form["video_started"] = True
    logger.info(f"User {callback.from_user.id} started video KYC")
    await store_flow(state, KYC_FLOW, sequencer)
    await refresh(callback, state, sequencer)
    await callback.answer()


@router.callback_query(F.data == "kyc:upload")
async def process_upload_button(callback: CallbackQuery, state: FSMContext):
    sequencer = await _flow_or_expire(callback, state)
    if sequencer is None:
        return
    if not await field_is_editable(callback, sequencer, "bank_proof_file"):
        return
    await state.set_state(KycFSM.uploading)
    await callback.message.answer("📎 Send your bank proof as a <b>file</b> (PDF, JPG or PNG, up to 5MB).", parse_mode="HTML")
    await callback.answer()


@router.message(KycFSM.uploading, F.document)
async def process_bank_proof(message: Message, state: FSMContext, bot: Bot):
    document = message.document
    file_meta = {
        "name": document.file_name or "",
        "mime_type": document.mime_type or "",
        "size": document.file_size,
    }
    problem = validators.file_error(file_meta)
    if problem:
        logger.warning(f"User {message.from_user.id} sent invalid bank proof: {file_meta}")
        await message.answer(f"⚠️ {problem}")
        return

    sequencer = await get_flow(state, KYC_FLOW)
    if sequencer is None:
        await message.answer("This session has expired. Use /kyc again.")
        return
    if not sequencer.owns_field("bank_proof_file"):
        logger.warning(f"User {message.from_user.id} sent bank proof on step {sequencer.current_index + 1}")
        await refresh(message, state, sequencer, banner="Bank proof belongs to another step. Use the step buttons to go back.")
        return
    session = await begin_request(state)
    if session is None:
        await message.answer("Please wait, your upload is in progress.")
        return

    buffer = io.BytesIO()
    await bot.download(document, destination=buffer)
    user = crud.get_user((await state.get_data())["user_id"])
    uploaded = await api.upload_document(
        file_meta["name"], buffer.getvalue(), file_meta["mime_type"],
        token=user.get("auth_token") if user else None,
    )
    if not await end_request(state, session):
        return

    if not uploaded:
        await refresh(message, state, sequencer, banner="Upload failed. Please try again.")
        return

    sequencer.form["bank_proof_file"] = file_meta
    logger.info(f"User {message.from_user.id} uploaded bank proof {file_meta['name']}")
    await store_flow(state, KYC_FLOW, sequencer)
    await refresh(message, state, sequencer)


@router.message(KycFSM.uploading, not_command)
async def process_bank_proof_not_file(message: Message):
    await message.answer("⚠️ Please send the bank proof as a file (PDF, JPG or PNG).")


@router.callback_query(F.data == "kyc:esign")
async def process_esign(callback: CallbackQuery, state: FSMContext):
    sequencer = await _flow_or_expire(callback, state)
    if sequencer is None:
        return
    if not await field_is_editable(callback, sequencer, "esign_status"):
        return
    if not validators.all_consents_given(sequencer.form):
        await callback.answer("Tick all three consents before signing.", show_alert=True)
        return
    session = await begin_request(state)
    if session is None:
        await callback.answer("Signing is already in progress.")
        return
    await callback.answer()
    await refresh(callback, state, sequencer)

    result = await esign.get_provider().sign_document()
    if not await end_request(state, session):
        logger.info("Ignoring eSign result for a closed screen")
        return

    sequencer = await get_flow(state, KYC_FLOW)
    if sequencer is None:
        return
    if not result.success:
        sequencer.form["esign_status"] = "failed"
        logger.warning(f"User {callback.from_user.id} eSign failed: {result.message}")
        await store_flow(state, KYC_FLOW, sequencer)
        await refresh(callback, state, sequencer, banner=result.message or "eSign failed. Please try again.")
        return

    sequencer.form["esign_status"] = "success"
    sequencer.form["esign_reference"] = result.reference
    logger.info(f"User {callback.from_user.id} completed eSign")
    await store_flow(state, KYC_FLOW, sequencer)
    await refresh(callback, state, sequencer)


@router.callback_query(F.data == "kyc:next")
async def process_next(callback: CallbackQuery, state: FSMContext):
    data = await state.get_data()
    sequencer = await _flow_or_expire(callback, state, on_complete=_completion_handler(data.get("user_id")))
    if sequencer is None:
        return
    if not sequencer.advance():
        errors = sequencer.errors()
        if await return_to_invalid_stage(state, KYC_FLOW, sequencer):
            logger.warning(f"User {callback.from_user.id} returned to KYC step {sequencer.current_index + 1}")
            await refresh(callback, state, sequencer)
        await callback.answer(next(iter(errors.values()), "Complete this step first."), show_alert=True)
        return

    logger.info(f"User {callback.from_user.id} advanced KYC to step {sequencer.current_index + 1}")
    if not sequencer.is_complete:
        await store_flow(state, KYC_FLOW, sequencer)
    await refresh(callback, state, sequencer)
    await callback.answer()
