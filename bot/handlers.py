"""
Головний роутер бота.

Сценарії мають свої роутери, які збираються тут:
- registration.py - акаунт, підтвердження email (OTP), профіль
- kyc.py - 7 кроків KYC
- checkout.py - замовлення, розкриття інформації, оплата

Обробник невідомих кнопок - в окремому роутері, який підключається останнім.
"""
import logging
from aiogram import Router
from aiogram.types import Message, CallbackQuery
from aiogram.filters import CommandStart, Command
from aiogram.fsm.context import FSMContext

from bot import checkout, kyc, registration
from bot.common import close_screen
import crud

logger = logging.getLogger(__name__)
router = Router(name="main")
fallback_router = Router(name="fallback")

@router.message(CommandStart())
async def cmd_start(message: Message, state: FSMContext):
    await close_screen(state)
    crud.get_or_create_user(message.from_user.id, message.from_user.username or "unknown")
    logger.info(f"User {message.from_user.id} ({message.from_user.username}) started the bot.")
    await message.answer(
        "👋 Welcome to <b>Invest APP</b>!\n\n"
        "1. Create your account with /register\n"
        "2. Complete your KYC with /kyc\n"
        "3. Invest in unlisted shares with /buy\n\n"
        "Your progress is saved, so you can come back at any time. Use /cancel to close the current screen.",
        parse_mode="HTML"
    )

@router.message(Command("cancel"))
async def cmd_cancel(message: Message, state: FSMContext):
    # Очищення FSM закриває екран: відповіді на запити, що ще в польоті, буде проігноровано
    await close_screen(state)
    logger.info(f"User {message.from_user.id} cancelled the current flow.")
    await message.answer("Closed. Your saved progress is kept.")

@fallback_router.callback_query()
async def process_unknown_callback(callback: CallbackQuery):
    logger.warning(f"User {callback.from_user.id} triggered unknown or expired callback: {callback.data}")
    await callback.answer("This button is no longer active. Use /start to begin again.", show_alert=True)

# Порядок важливий: власні обробники router перевіряються раніше за вкладені роутери
router.include_router(registration.router)
router.include_router(kyc.router)
router.include_router(checkout.router)
router.include_router(fallback_router)
