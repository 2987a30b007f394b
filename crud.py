import sqlite3
import json
from typing import List, Dict, Any, Optional
from database import DB_PATH
from sequencer import ResumeToken

def _connect(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn

def get_or_create_user(telegram_id: int, username: str, db_path: str = DB_PATH) -> int:
    """Знаходить користувача за telegram_id або створює нового. Повертає внутрішній id."""
    conn = _connect(db_path)
    cursor = conn.cursor()
    cursor.execute("SELECT id FROM users WHERE telegram_id = ?", (telegram_id,))
    row = cursor.fetchone()
    if row:
        user_id = row[0]
    else:
        cursor.execute("INSERT INTO users (telegram_id, username) VALUES (?, ?)", (telegram_id, username))
        user_id = cursor.lastrowid
    conn.commit()
    conn.close()
    return user_id

def get_user(user_id: int, db_path: str = DB_PATH) -> Optional[Dict[str, Any]]:
    conn = _connect(db_path)
    row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
    conn.close()
    return dict(row) if row else None

def set_auth(user_id: int, email: str, auth_token: Optional[str], db_path: str = DB_PATH) -> None:
    """Зберігає email та токен бекенду, отримані під час реєстрації."""
    conn = _connect(db_path)
    conn.execute("UPDATE users SET email = ?, auth_token = ? WHERE id = ?", (email, auth_token, user_id))
    conn.commit()
    conn.close()

def mark_kyc_complete(user_id: int, db_path: str = DB_PATH) -> None:
    conn = _connect(db_path)
    conn.execute("UPDATE users SET kyc_completed = 1 WHERE id = ?", (user_id,))
    conn.commit()
    conn.close()

def save_progress(user_id: int, token: ResumeToken, db_path: str = DB_PATH) -> None:
    """Зберігає токен відновлення сценарію (upsert по user_id + flow)."""
    conn = _connect(db_path)
    form_json = json.dumps(token.form, ensure_ascii=False)
    conn.execute("""
        INSERT INTO flow_progress (user_id, flow, current_index, form_json, updated_at)
        VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
        ON CONFLICT(user_id, flow) DO UPDATE SET
            current_index = excluded.current_index,
            form_json = excluded.form_json,
            updated_at = CURRENT_TIMESTAMP
    """, (user_id, token.flow, token.current_index, form_json))
    conn.commit()
    conn.close()

def load_progress(user_id: int, flow: str, db_path: str = DB_PATH) -> Optional[ResumeToken]:
    """Повертає збережений токен відновлення або None, якщо сценарій ще не розпочато."""
    conn = _connect(db_path)
    row = conn.execute(
        "SELECT current_index, form_json FROM flow_progress WHERE user_id = ? AND flow = ?",
        (user_id, flow),
    ).fetchone()
    conn.close()
    if not row:
        return None
    return ResumeToken(flow=flow, current_index=row["current_index"], form=json.loads(row["form_json"]))

def clear_progress(user_id: int, flow: str, db_path: str = DB_PATH) -> None:
    conn = _connect(db_path)
    conn.execute("DELETE FROM flow_progress WHERE user_id = ? AND flow = ?", (user_id, flow))
    conn.commit()
    conn.close()

def get_stocks(db_path: str = DB_PATH) -> List[Dict[str, Any]]:
    """Повертає всі акції, відсортовані за sort_order."""
    conn = _connect(db_path)
    rows = conn.execute("SELECT id, company_name, price FROM stocks ORDER BY sort_order").fetchall()
    conn.close()
    return [dict(row) for row in rows]

def get_stock_by_id(stock_id: int, db_path: str = DB_PATH) -> Optional[Dict[str, Any]]:
    conn = _connect(db_path)
    row = conn.execute("SELECT id, company_name, price FROM stocks WHERE id = ?", (stock_id,)).fetchone()
    conn.close()
    return dict(row) if row else None

def save_order(user_id: int, snapshot: dict, db_path: str = DB_PATH) -> tuple[int, int]:
    """Зберігає підтверджене замовлення та повертає id запису і порядковий номер замовлення користувача."""
    conn = _connect(db_path)
    cursor = conn.cursor()

    cursor.execute("SELECT COUNT(*) FROM orders WHERE user_id = ?", (user_id,))
    user_order_num = cursor.fetchone()[0] + 1

    snapshot['user_order_num'] = user_order_num
    snapshot_json = json.dumps(snapshot, ensure_ascii=False)

    cursor.execute("""
        INSERT INTO orders (user_id, stock_id, quantity, unit_price, total_payable, payment_method,
                            authorized_at, backend_ref, snapshot_json)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (
        user_id,
        snapshot["stock_id"],
        snapshot["quantity"],
        snapshot["unit_price"],
        snapshot["amount_due"],
        snapshot["payment_method"],
        snapshot["authorized_at"],
        snapshot.get("backend_ref"),
        snapshot_json,
    ))
    order_id = cursor.lastrowid
    conn.commit()
    conn.close()
    return order_id, user_order_num

def get_order(order_id: int, db_path: str = DB_PATH) -> Optional[Dict[str, Any]]:
    """Повертає запис про замовлення за ID."""
    conn = _connect(db_path)
    row = conn.execute("SELECT * FROM orders WHERE id = ?", (order_id,)).fetchone()
    conn.close()
    return dict(row) if row else None
