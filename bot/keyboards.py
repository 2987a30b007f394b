from typing import Dict, List, Optional, Sequence

from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup
from aiogram.utils.keyboard import InlineKeyboardBuilder

from consent import Disclosure
from ledger import DELIVERY_METHODS, PAYMENT_METHODS, STAMP_RATES
from sequencer import StepSequencer

def add_rail(builder: InlineKeyboardBuilder, prefix: str, sequencer: StepSequencer) -> None:
    """Панель кроків: пройдені та поточний крок клікабельні, наступні - заблоковані."""
    buttons = []
    for step in sequencer.rail():
        if step["completed"]:
            text, data = f"✅ {step['index'] + 1}", f"{prefix}:jump:{step['index']}"
        elif step["active"]:
            text, data = f"▶️ {step['index'] + 1}", f"{prefix}:jump:{step['index']}"
        else:
            text, data = f"🔒 {step['index'] + 1}", f"{prefix}:locked"
        buttons.append(InlineKeyboardButton(text=text, callback_data=data))
    builder.row(*buttons)

def add_nav(builder: InlineKeyboardBuilder, prefix: str, sequencer: StepSequencer, next_text: str = "Continue") -> None:
    """Назад / Продовжити. Неактивна кнопка все одно натискається - і показує причину."""
    row = []
    if sequencer.current_index > 0:
        row.append(InlineKeyboardButton(text="⬅️ Back", callback_data=f"{prefix}:back"))
    if sequencer.can_advance():
        row.append(InlineKeyboardButton(text=f"{next_text} ➡️", callback_data=f"{prefix}:next"))
    else:
        row.append(InlineKeyboardButton(text=f"🔒 {next_text}", callback_data=f"{prefix}:next"))
    builder.row(*row)

def checkbox(checked: bool, text: str) -> str:
    return f"{'☑️' if checked else '⬜️'} {text}"

def add_field_buttons(builder: InlineKeyboardBuilder, prefix: str, fields: Sequence[tuple], form: Dict) -> None:
    """Кнопки редагування текстових полів: (ключ, підпис)."""
    for key, label in fields:
        value = form.get(key)
        suffix = f": {value}" if value not in (None, "") else ""
        builder.row(InlineKeyboardButton(text=f"✏️ {label}{suffix}", callback_data=f"{prefix}:field:{key}"))

def add_choice_row(builder: InlineKeyboardBuilder, prefix: str, key: str, options: Sequence[tuple], selected: Optional[str]) -> None:
    """Радіокнопки: (значення, підпис)."""
    buttons = [
        InlineKeyboardButton(
            text=f"{'🔘' if value == selected else '⚪️'} {label}",
            callback_data=f"{prefix}:set:{key}:{value}",
        )
        for value, label in options
    ]
    builder.row(*buttons)

def get_otp_kb(cells: List[str], focus: int, busy: bool = False) -> InlineKeyboardMarkup:
    """Комірки коду (з позначкою фокусу) та цифрова клавіатура."""
    builder = InlineKeyboardBuilder()
    builder.row(*[
        InlineKeyboardButton(
            text=f"[{cell or '·'}]" if i == focus else (cell or "·"),
            callback_data=f"otp:cell:{i}",
        )
        for i, cell in enumerate(cells)
    ])
    for chunk in ("123", "456", "789"):
        builder.row(*[InlineKeyboardButton(text=d, callback_data=f"otp:d:{d}") for d in chunk])
    builder.row(
        InlineKeyboardButton(text="◀️", callback_data="otp:left"),
        InlineKeyboardButton(text="0", callback_data="otp:d:0"),
        InlineKeyboardButton(text="▶️", callback_data="otp:right"),
    )
    verify_text = "⏳ Verifying..." if busy else ("Verify ✅" if all(cells) else "🔒 Verify")
    builder.row(
        InlineKeyboardButton(text="⌫", callback_data="otp:bs"),
        InlineKeyboardButton(text=verify_text, callback_data="otp:verify"),
    )
    builder.row(InlineKeyboardButton(text="⬅️ Back", callback_data="reg:back"))
    return builder.as_markup()

def get_stocks_kb(stocks: List[Dict]) -> InlineKeyboardMarkup:
    """Генерує інлайн-клавіатуру з усіма доступними акціями."""
    builder = InlineKeyboardBuilder()
    for stock in stocks:
        builder.button(text=f"{stock['company_name']} (₹{stock['price']})", callback_data=f"co:stock:{stock['id']}")
    builder.adjust(1)
    return builder.as_markup()

def add_order_options(builder: InlineKeyboardBuilder, form: Dict) -> None:
    add_choice_row(builder, "co", "delivery", list(DELIVERY_METHODS.items()), form.get("delivery"))
    add_choice_row(
        builder, "co", "state_code",
        [(code, code) for code in STAMP_RATES],
        form.get("state_code"),
    )

def add_disclosures(builder: InlineKeyboardBuilder, disclosures: Sequence[Disclosure], acknowledged: Dict[str, bool], final_consent: bool) -> None:
    for d in disclosures:
        title = f"{d.title} *" if d.mandatory else d.title
        builder.row(InlineKeyboardButton(
            text=checkbox(acknowledged.get(d.id) is True, title),
            callback_data=f"co:ack:{d.id}",
        ))
    builder.row(InlineKeyboardButton(
        text=checkbox(final_consent, "I consent and authorize this order"),
        callback_data="co:consent",
    ))

def add_payment_methods(builder: InlineKeyboardBuilder, selected: Optional[str]) -> None:
    for code, (name, surcharge) in PAYMENT_METHODS.items():
        note = f"+₹{surcharge}" if surcharge else "No Fees"
        mark = "🔘" if code == selected else "⚪️"
        builder.row(InlineKeyboardButton(text=f"{mark} {name} ({note})", callback_data=f"co:set:payment_method:{code}"))

def get_receipt_actions_kb(order_id: int) -> InlineKeyboardMarkup:
    """Генерує клавіатуру дій після оформлення замовлення."""
    builder = InlineKeyboardBuilder()
    builder.button(text="📸 Get order receipt", callback_data=f"receipt_img_{order_id}")
    return builder.as_markup()
