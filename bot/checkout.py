import json
import logging
from decimal import Decimal

from aiogram import F, Router
from aiogram.filters import Command
from aiogram.fsm.context import FSMContext
from aiogram.types import BufferedInputFile, CallbackQuery, InlineKeyboardButton, Message
from aiogram.utils.keyboard import InlineKeyboardBuilder

import crud
from bot import api, keyboards, receipt
from bot.common import (
    begin_request, close_screen, end_request, error_lines, get_flow, load_flow,
    not_command, show, stage_header, store_flow,
)
from bot.states import CheckoutFSM
from consent import CONFIRMED, DISCLOSURES, REVIEWING, AcknowledgmentSet, ConsentGate, OrderReview
from flows import CHECKOUT_FLOW
from ledger import DELIVERY_METHODS, PAYMENT_METHODS, STAMP_RATES, OrderLedgerCalculator
from sequencer import StepSequencer

logger = logging.getLogger(__name__)
router = Router(name="checkout")

FEE_LABELS = {
    "platform_fee": "Platform Fee (0.5%, min ₹50)",
    "brokerage": "Brokerage (0.2%)",
    "gst": "GST (18% on fees)",
    "stamp_duty": "Stamp Duty",
    "dp_charges": "DP Charges",
    "esign": "eSign Charges",
}


def inr(value) -> str:
    return f"₹{Decimal(value):,.2f}"


def compute(form: dict):
    """Похідні суми з канонічних полів форми: кількість, ціна, штат, спосіб отримання."""
    line = OrderLedgerCalculator.order_line(form.get("quantity", 0), form.get("unit_price", 0))
    schedule = OrderLedgerCalculator.build_fee_schedule(
        line.order_value, form.get("state_code", "MH"), form.get("delivery", "demat"),
    )
    totals = OrderLedgerCalculator.recompute(line.quantity, line.unit_price, schedule)
    return line, schedule, totals


def review_for(form: dict) -> OrderReview:
    line, _, _ = compute(form)
    return OrderReview(
        line,
        DISCLOSURES,
        AcknowledgmentSet.from_dict(form.get("acknowledgments")),
        status=CONFIRMED if form.get("authorized_at") else REVIEWING,
        authorized_at=form.get("authorized_at"),
    )


def totals_block(form: dict) -> str:
    line, schedule, totals = compute(form)
    text = (
        f"\n🏢 <b>{form.get('company_name', '')}</b> @ {inr(line.unit_price)}\n"
        f"Quantity: <b>{line.quantity}</b>\n"
        f"Invest amount: <b>{inr(totals.order_value)}</b> <i>(quantity × price)</i>\n"
    )
    if schedule.components:
        text += "\n<b>Fee breakdown</b>\n"
        for key, amount in schedule.components.items():
            text += f"• {FEE_LABELS.get(key, key)}: {inr(amount)}\n"
    text += (
        f"\nTotal fees & taxes: <b>{inr(totals.total_fees)}</b>\n"
        f"Total payable: <b>{inr(totals.total_payable)}</b>\n"
    )
    if totals.effective_unit_price is not None:
        text += f"Effective price per share: {inr(totals.effective_unit_price)}\n"
    return text


def render(sequencer: StepSequencer, data: dict, banner: str = ""):
    form = sequencer.form
    index = sequencer.current_index
    text = stage_header(sequencer, "🛒 Buy")
    builder = InlineKeyboardBuilder()
    keyboards.add_rail(builder, "co", sequencer)

    if index == 0:
        text += totals_block(form)
        builder.row(InlineKeyboardButton(text=f"✏️ Quantity: {form.get('quantity', 0)}", callback_data="co:qty"))
        keyboards.add_order_options(builder, form)
        keyboards.add_nav(builder, "co", sequencer, next_text="Review Order")
    elif index == 1:
        review = review_for(form)
        text += totals_block(form)
        state_name = STAMP_RATES.get(form.get("state_code"), ("",))[0]
        text += f"Delivery: {DELIVERY_METHODS.get(form.get('delivery'), '')}, State: {state_name}\n"
        acknowledged, required = ConsentGate.progress(review.acknowledgments.acknowledged, DISCLOSURES)
        text += (
            "\n<b>Mandatory Disclosures & Acknowledgements</b>\n"
            + "\n".join(f"• <b>{d.title}</b>: {d.body}" for d in DISCLOSURES)
            + f"\n\nAcknowledged: {acknowledged} of {required}\n"
            + "<i>Timestamp will be recorded upon confirmation for regulatory compliance.</i>\n"
        )
        if review.status == CONFIRMED:
            text += f"\n✅ Authorized at {review.authorized_at}\n"
        keyboards.add_disclosures(
            builder, DISCLOSURES, review.acknowledgments.acknowledged, review.acknowledgments.final_consent,
        )
        confirm_text = "Confirm & Proceed to Payment ➡️" if review.is_ready else "🔒 Confirm & Proceed to Payment"
        row = [InlineKeyboardButton(text="⬅️ Back to Edit Order", callback_data="co:edit")]
        if review.status == CONFIRMED:
            row = [InlineKeyboardButton(text="⬅️ Back", callback_data="co:back")]
            confirm_text = "Proceed to Payment ➡️"
        row.append(InlineKeyboardButton(text=confirm_text, callback_data="co:next"))
        builder.row(*row)
    else:
        _, _, totals = compute(form)
        method = form.get("payment_method")
        text += f"\nTotal payable: <b>{inr(totals.total_payable)}</b>\n"
        if method in PAYMENT_METHODS:
            due = OrderLedgerCalculator.payable_with_method(totals, method)
            text += f"Amount due via {PAYMENT_METHODS[method][0]}: <b>{inr(due)}</b>\n"
        keyboards.add_payment_methods(builder, method)
        keyboards.add_nav(builder, "co", sequencer, next_text="Pay Now" if not data.get("busy") else "⏳ Processing")

    errors = error_lines(sequencer.errors())
    if errors and index != 1:
        text += f"\n{errors}\n"
    if banner:
        text += f"\n❌ {banner}"
    return text, builder.as_markup()


async def refresh(target, state: FSMContext, sequencer: StepSequencer, banner: str = "") -> None:
    await state.set_state(CheckoutFSM.filling)
    data = await state.get_data()
    text, markup = render(sequencer, data, banner)
    await show(target, text, markup)


async def _flow_or_expire(callback: CallbackQuery, state: FSMContext, on_complete=None):
    sequencer = await get_flow(state, CHECKOUT_FLOW, on_complete=on_complete)
    if sequencer is None:
        await callback.answer("This order session has expired. Use /buy again.", show_alert=True)
    return sequencer


def build_snapshot(form: dict) -> dict:
    line, schedule, totals = compute(form)
    method = form["payment_method"]
    acks = AcknowledgmentSet.from_dict(form.get("acknowledgments"))
    return {
        "stock_id": form["stock_id"],
        "company_name": form.get("company_name", ""),
        "quantity": line.quantity,
        "unit_price": str(line.unit_price),
        "order_value": str(totals.order_value),
        "fees": {k: str(v) for k, v in schedule.components.items()},
        "total_fees": str(totals.total_fees),
        "total_payable": str(totals.total_payable),
        "effective_unit_price": str(totals.effective_unit_price),
        "delivery": form.get("delivery"),
        "state_code": form.get("state_code"),
        "payment_method": method,
        "surcharge": str(PAYMENT_METHODS[method][1]),
        "amount_due": str(OrderLedgerCalculator.payable_with_method(totals, method)),
        "acknowledged": sorted(k for k, v in acks.acknowledged.items() if v),
        "authorized_at": form["authorized_at"],
        "backend_ref": form.get("backend_ref"),
    }


@router.message(Command("buy"))
async def cmd_buy(message: Message, state: FSMContext):
    await close_screen(state)
    user_id = crud.get_or_create_user(message.from_user.id, message.from_user.username or "unknown")
    user = crud.get_user(user_id)
    if not user or not user.get("kyc_completed"):
        logger.info(f"User {message.from_user.id} tried to buy without KYC")
        await message.answer("🪪 Complete your KYC first with /kyc.")
        return
    await state.update_data(user_id=user_id)
    await message.answer(
        "📈 <b>Choose a stock to invest in</b>",
        reply_markup=keyboards.get_stocks_kb(crud.get_stocks()),
        parse_mode="HTML",
    )


@router.callback_query(F.data.startswith("co:stock:"))
async def process_stock(callback: CallbackQuery, state: FSMContext):
    stock = crud.get_stock_by_id(int(callback.data.split(":")[2]))
    data = await state.get_data()
    if not stock or "user_id" not in data:
        logger.warning(f"User {callback.from_user.id} clicked invalid stock: {callback.data}")
        await callback.answer("Stock not found. Use /buy again.", show_alert=True)
        return

    # Кошик не відновлюється: кожне оформлення - нова сесія
    sequencer = await load_flow(state, CHECKOUT_FLOW, data["user_id"], resume=False)
    sequencer.form.update({
        "stock_id": stock["id"],
        "company_name": stock["company_name"],
        "unit_price": stock["price"],
        "quantity": 0,
        "state_code": "MH",
        "delivery": "demat",
        "acknowledgments": AcknowledgmentSet().to_dict(),
    })
    logger.info(f"User {callback.from_user.id} started order for {stock['company_name']}")
    await store_flow(state, CHECKOUT_FLOW, sequencer, persist=False)
    await refresh(callback, state, sequencer)
    await callback.answer()


@router.callback_query(F.data == "co:locked")
async def process_locked(callback: CallbackQuery):
    await callback.answer("Complete the current step first.")


@router.callback_query(F.data.startswith("co:jump:"))
async def process_jump(callback: CallbackQuery, state: FSMContext):
    sequencer = await _flow_or_expire(callback, state)
    if sequencer is None:
        return
    if not sequencer.jump_to(int(callback.data.split(":")[2])):
        await callback.answer("Complete the current step first.")
        return
    await store_flow(state, CHECKOUT_FLOW, sequencer, persist=False)
    await refresh(callback, state, sequencer)
    await callback.answer()


@router.callback_query(F.data == "co:back")
async def process_back(callback: CallbackQuery, state: FSMContext):
    sequencer = await _flow_or_expire(callback, state)
    if sequencer is None:
        return
    sequencer.retreat()
    await store_flow(state, CHECKOUT_FLOW, sequencer, persist=False)
    await refresh(callback, state, sequencer)
    await callback.answer()


@router.callback_query(F.data == "co:edit")
async def process_back_to_edit(callback: CallbackQuery, state: FSMContext):
    sequencer = await _flow_or_expire(callback, state)
    if sequencer is None:
        return
    if review_for(sequencer.form).back_to_edit() is None:
        await callback.answer("This order is already confirmed.")
        return
    sequencer.jump_to(0)
    await store_flow(state, CHECKOUT_FLOW, sequencer, persist=False)
    await refresh(callback, state, sequencer)
    await callback.answer()


@router.callback_query(F.data == "co:qty")
async def process_quantity_button(callback: CallbackQuery, state: FSMContext):
    await state.set_state(CheckoutFSM.entering_quantity)
    await callback.message.answer("✍️ Enter the number of shares:")
    await callback.answer()


@router.message(CheckoutFSM.entering_quantity, not_command)
async def process_quantity(message: Message, state: FSMContext):
    sequencer = await get_flow(state, CHECKOUT_FLOW)
    if sequencer is None:
        await message.answer("This order session has expired. Use /buy again.")
        return
    # Нечислове або від'ємне введення - це 0, а не помилка
    quantity = OrderLedgerCalculator.sanitize_quantity(message.text or "")
    _invalidate_authorization(sequencer, "quantity", quantity)
    sequencer.form["quantity"] = quantity
    logger.info(f"User {message.from_user.id} set quantity {quantity}")
    await store_flow(state, CHECKOUT_FLOW, sequencer, persist=False)
    await refresh(message, state, sequencer)


def _invalidate_authorization(sequencer: StepSequencer, key: str, value) -> None:
    """Зміна замовлення після підтвердження скасовує час авторизації (позначки лишаються)."""
    if sequencer.form.get(key) != value and sequencer.form.get("authorized_at"):
        sequencer.form["authorized_at"] = None


@router.callback_query(F.data.startswith("co:set:"))
async def process_choice(callback: CallbackQuery, state: FSMContext):
    sequencer = await _flow_or_expire(callback, state)
    if sequencer is None:
        return
    _, _, key, value = callback.data.split(":", 3)
    if key in ("state_code", "delivery"):
        _invalidate_authorization(sequencer, key, value)
    sequencer.form[key] = value
    await store_flow(state, CHECKOUT_FLOW, sequencer, persist=False)
    await refresh(callback, state, sequencer)
    await callback.answer()


@router.callback_query(F.data.startswith("co:ack:"))
async def process_acknowledge(callback: CallbackQuery, state: FSMContext):
    sequencer = await _flow_or_expire(callback, state)
    if sequencer is None:
        return
    review = review_for(sequencer.form)
    if not review.toggle(callback.data.split(":")[2]):
        await callback.answer("This order is already confirmed.")
        return
    sequencer.form["acknowledgments"] = review.acknowledgments.to_dict()
    await store_flow(state, CHECKOUT_FLOW, sequencer, persist=False)
    await refresh(callback, state, sequencer)
    await callback.answer()


@router.callback_query(F.data == "co:consent")
async def process_final_consent(callback: CallbackQuery, state: FSMContext):
    sequencer = await _flow_or_expire(callback, state)
    if sequencer is None:
        return
    review = review_for(sequencer.form)
    if not review.set_final_consent(not review.acknowledgments.final_consent):
        await callback.answer("This order is already confirmed.")
        return
    sequencer.form["acknowledgments"] = review.acknowledgments.to_dict()
    await store_flow(state, CHECKOUT_FLOW, sequencer, persist=False)
    await refresh(callback, state, sequencer)
    await callback.answer()


def _completion_handler(user_id: int, saved: list):
    def on_complete(state_snapshot) -> None:
        snapshot = build_snapshot(state_snapshot.form)
        saved.append((crud.save_order(user_id, snapshot), snapshot))
        logger.info(f"Order for {snapshot['company_name']} x{snapshot['quantity']} saved for user #{user_id}")
    return on_complete


@router.callback_query(F.data == "co:next")
async def process_next(callback: CallbackQuery, state: FSMContext):
    data = await state.get_data()
    saved: list = []
    sequencer = await _flow_or_expire(callback, state, on_complete=_completion_handler(data.get("user_id"), saved))
    if sequencer is None:
        return
    if not sequencer.can_advance():
        errors = sequencer.errors()
        await callback.answer(next(iter(errors.values()), "Complete this step first."), show_alert=True)
        return

    if sequencer.current_index == 1:
        review = review_for(sequencer.form)
        if review.status == REVIEWING:
            # Момент авторизації = натискання "Confirm", а не позначки
            review.confirm()
            sequencer.form["authorized_at"] = review.authorized_at
            logger.info(f"User {callback.from_user.id} authorized order at {review.authorized_at}")
        sequencer.advance()
        await store_flow(state, CHECKOUT_FLOW, sequencer, persist=False)
        await refresh(callback, state, sequencer)
        await callback.answer()
        return

    if sequencer.current_index == 2:
        await _submit(callback, state, sequencer, saved)
        return

    sequencer.advance()
    await store_flow(state, CHECKOUT_FLOW, sequencer, persist=False)
    await refresh(callback, state, sequencer)
    await callback.answer()


async def _submit(callback: CallbackQuery, state: FSMContext, sequencer: StepSequencer, saved: list) -> None:
    """Передає замовлення на оплату. Лише коли фінальна згода дійсна."""
    form = sequencer.form
    review = review_for(form)
    if review.status != CONFIRMED:
        await callback.answer("Confirm the order on the review step first.", show_alert=True)
        return

    session = await begin_request(state)
    if session is None:
        await callback.answer("Please wait, your order is being submitted.")
        return
    await callback.answer()
    await refresh(callback, state, sequencer)

    data = await state.get_data()
    user = crud.get_user(data["user_id"])
    line, _, totals = compute(form)
    amount_due = OrderLedgerCalculator.payable_with_method(totals, form["payment_method"])
    result = await api.submit_order(
        form.get("company_name", ""), line, totals, str(amount_due),
        token=user.get("auth_token") if user else None,
    )
    if not await end_request(state, session):
        logger.info("Ignoring order response for a closed screen")
        return

    if not result["accepted"]:
        logger.warning(f"User {callback.from_user.id} order rejected: {result['message']}")
        await refresh(callback, state, sequencer, banner=result["message"] or "Order could not be placed. Please try again.")
        return

    form["backend_ref"] = result.get("reference")
    sequencer.advance()
    await close_screen(state)

    (order_id, user_order_num), snapshot = saved[0]
    await show(
        callback,
        f"✅ <b>Order #{user_order_num} placed!</b>\n\n"
        f"{snapshot['company_name']} × {snapshot['quantity']}\n"
        f"Paid via {PAYMENT_METHODS[snapshot['payment_method']][0]}: <b>{inr(snapshot['amount_due'])}</b>\n"
        f"Authorized at: {snapshot['authorized_at']}\n\n"
        "Expected timeline: matching T-0 to T+2, verification T+3 to T+15, transfer T+15 to T+30.",
        keyboards.get_receipt_actions_kb(order_id),
    )


@router.callback_query(F.data.startswith("receipt_img_"))
async def process_receipt_image(callback: CallbackQuery):
    order_id = int(callback.data.split("_")[2])
    order = crud.get_order(order_id)
    user_id = crud.get_or_create_user(callback.from_user.id, callback.from_user.username or "unknown")

    # Чужі замовлення виглядають так само, як відсутні
    if not order or order["user_id"] != user_id:
        logger.warning(f"User {callback.from_user.id} requested missing receipt #{order_id}")
        await callback.answer("Order not found.", show_alert=True)
        return

    await callback.answer("Generating your receipt... ⏳")
    logger.info(f"User {callback.from_user.id} generated image receipt for order #{order_id}")

    snapshot = json.loads(order["snapshot_json"])
    img_io = receipt.generate_receipt_image(snapshot)
    photo = BufferedInputFile(img_io.read(), filename=f"order_receipt_{order_id}.png")

    await callback.message.answer_photo(
        photo=photo,
        caption=f"📸 Receipt for order #{snapshot.get('user_order_num', order_id)}.",
    )
