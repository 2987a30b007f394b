import os
import sqlite3
import logging

logger = logging.getLogger(__name__)

DB_PATH = os.getenv("DB_PATH", "investapp.db")

def init_db(db_path: str = DB_PATH) -> None:
    """Ініціалізація бази даних та створення таблиць, якщо вони не існують."""
    conn = sqlite3.connect(db_path)

    # Увімкнення підтримки зовнішніх ключів у SQLite
    conn.execute("PRAGMA foreign_keys = ON;")
    cursor = conn.cursor()

    try:
        # 1. Таблиця користувачів
        # Токен бекенду та прапорець завершеного KYC
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                telegram_id INTEGER UNIQUE NOT NULL,
                username TEXT,
                email TEXT,
                auth_token TEXT,
                kyc_completed INTEGER DEFAULT 0,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        # 2. Прогрес покрокових сценаріїв (токен відновлення)
        # Один рядок на користувача і сценарій
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS flow_progress (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                flow TEXT NOT NULL,
                current_index INTEGER NOT NULL DEFAULT 0,
                form_json TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(user_id, flow),
                FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
            )
        """)

        # 3. Акції, доступні до купівлі
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS stocks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                company_name TEXT NOT NULL UNIQUE,
                price TEXT NOT NULL,
                sort_order INTEGER DEFAULT 0
            )
        """)

        # 4. Підтверджені замовлення (журнал аудиту)
        # Суми зберігаються рядками, щоб не втрачати точність Decimal
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                stock_id INTEGER NOT NULL,
                quantity INTEGER NOT NULL,
                unit_price TEXT NOT NULL,
                total_payable TEXT NOT NULL,
                payment_method TEXT NOT NULL,
                authorized_at TEXT NOT NULL,
                backend_ref TEXT,
                snapshot_json TEXT NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE,
                FOREIGN KEY (stock_id) REFERENCES stocks (id) ON DELETE RESTRICT
            )
        """)

        conn.commit()
        logger.info("Базу даних успішно ініціалізовано.")
    except sqlite3.Error as e:
        logger.error(f"Помилка при ініціалізації бази даних: {e}")
        conn.rollback()
    finally:
        conn.close()

def seed_db(db_path: str = DB_PATH) -> None:
    """Наповнення бази даних початковими (seed) даними: акціями для купівлі."""
    conn = sqlite3.connect(db_path)
    cursor = conn.cursor()

    stocks = [
        # company_name, price, sort_order
        ("Pine Labs", "222.00", 1),
        ("TCS", "35.00", 2),
        ("NSE India", "1850.00", 3),
        ("HDB Financial Services", "1125.50", 4),
        ("Chennai Super Kings", "190.00", 5),
    ]

    try:
        cursor.executemany("""
            INSERT OR IGNORE INTO stocks (company_name, price, sort_order)
            VALUES (?, ?, ?)
        """, stocks)

        conn.commit()
        logger.info("Базу даних успішно наповнено базовими даними.")
    except sqlite3.Error as e:
        logger.error(f"Помилка при наповненні бази даних: {e}")
        conn.rollback()
    finally:
        conn.close()

if __name__ == "__main__":
    # Налаштування логування для автономного запуску
    logging.basicConfig(level=logging.INFO)
    init_db()
    seed_db()
