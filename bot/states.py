from aiogram.fsm.state import State, StatesGroup

class RegistrationFSM(StatesGroup):
    """
    Стани чату під час реєстрації.
    Поточний крок визначає StepSequencer; стан чату лише каже, якого введення чекаємо.
    """
    filling = State()         # Екран кроку (кнопки)
    entering_field = State()  # Очікуємо текст для обраного поля
    entering_code = State()   # Клавіатура коду підтвердження email (текст = вставка)

class KycFSM(StatesGroup):
    filling = State()
    entering_field = State()
    uploading = State()       # Очікуємо документ для Bank Proof

class CheckoutFSM(StatesGroup):
    filling = State()
    entering_quantity = State()
