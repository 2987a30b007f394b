import os
import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp

from ledger import OrderLine, Totals

logger = logging.getLogger(__name__)

API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:8888/api")
API_TIMEOUT = float(os.getenv("API_TIMEOUT", "10"))

# Для ядра відмова бекенду і збій мережі - одне й те саме
GENERIC_ERROR = "Something went wrong. Please try again."


def _headers(token: Optional[str]) -> Dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


async def _post_json(path: str, payload: Dict[str, Any], token: Optional[str] = None) -> Dict[str, Any]:
    """
    POST до бекенду. Повертає {"ok": bool, "status": int, "data": dict, "message": str}.
    Не кидає винятків: будь-яка помилка транспорту - це ok=False з загальним повідомленням.
    """
    url = f"{API_BASE_URL}{path}"
    try:
        async with aiohttp.ClientSession() as session:
            async with session.post(
                url,
                json=payload,
                headers=_headers(token),
                timeout=aiohttp.ClientTimeout(total=API_TIMEOUT),
            ) as response:
                try:
                    data = await response.json(content_type=None)
                except ValueError:
                    data = {}
                data = data if isinstance(data, dict) else {}
                ok = 200 <= response.status < 300 and data.get("status", True) is not False
                if not ok:
                    logger.warning(f"Backend rejected {path}: HTTP {response.status} {data.get('message', '')}")
                return {
                    "ok": ok,
                    "status": response.status,
                    "data": data,
                    "message": data.get("message") or ("" if ok else GENERIC_ERROR),
                }
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.error(f"Помилка при зверненні до {url}: {e}")
        return {"ok": False, "status": 0, "data": {}, "message": GENERIC_ERROR}


async def register(email: str, password: str) -> Dict[str, Any]:
    """Реєстрація облікового запису. Токен потрібен для підтвердження email."""
    result = await _post_json("/auth/register", {"email": email, "password": password})
    return {
        "registered": result["ok"],
        "token": result["data"].get("token"),
        "message": result["message"],
    }


async def verify_email(email: str, code: str, token: Optional[str] = None) -> Dict[str, Any]:
    """Перевірка одноразового коду. Будь-яка відповідь, крім успіху, означає "не підтверджено"."""
    result = await _post_json("/auth/verify-email", {"email": email, "code": code}, token=token)
    return {
        "verified": result["ok"],
        "token": result["data"].get("token") or token,
        "message": result["message"] if not result["ok"] else "",
    }


async def complete_profile(profile: Dict[str, str], token: Optional[str] = None) -> Dict[str, Any]:
    payload = {
        "first_name": profile.get("first_name", ""),
        "last_name": profile.get("last_name", ""),
        "email": profile.get("email", ""),
        "phone": profile.get("phone", ""),
        "source": profile.get("source", ""),
    }
    result = await _post_json("/auth/complete-profile", payload, token=token)
    return {"completed": result["ok"], "message": result["message"]}


async def upload_document(filename: str, content: bytes, mime_type: str, token: Optional[str] = None) -> bool:
    """Завантажує вже перевірений файл як непрозорі байти; цікавить лише успіх/невдача."""
    url = f"{API_BASE_URL}/kyc/documents"
    form = aiohttp.FormData()
    form.add_field("file", content, filename=filename, content_type=mime_type)
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    try:
        async with aiohttp.ClientSession() as session:
            async with session.post(url, data=form, headers=headers,
                                    timeout=aiohttp.ClientTimeout(total=API_TIMEOUT)) as response:
                if 200 <= response.status < 300:
                    logger.info(f"Uploaded document {filename} ({len(content)} bytes)")
                    return True
                logger.warning(f"Document upload rejected: HTTP {response.status}")
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.error(f"Помилка при завантаженні документа {filename}: {e}")
    return False


async def submit_order(company_name: str, order_line: OrderLine, totals: Totals,
                       amount_due: str, token: Optional[str] = None) -> Dict[str, Any]:
    """Передає підтверджене замовлення на оплату."""
    payload = {
        "companyName": company_name,
        "quantity": order_line.quantity,
        "price": str(order_line.unit_price),
        "totalAmount": amount_due,
        "orderValue": str(totals.order_value),
        "totalFees": str(totals.total_fees),
    }
    result = await _post_json("/trading/buy", payload, token=token)
    data = result["data"].get("data") or {}
    return {
        "accepted": result["ok"],
        "reference": data.get("id") if isinstance(data, dict) else None,
        "message": result["message"],
    }
