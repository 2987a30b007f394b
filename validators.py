import os
import re
from datetime import date
from typing import Any, Dict

# Шаблони ідентифікаторів (Індія)
PAN_RE = re.compile(r"^[A-Z]{5}[0-9]{4}[A-Z]$")
IFSC_RE = re.compile(r"^[A-Z]{4}0[A-Z0-9]{6}$")
ACCOUNT_RE = re.compile(r"^[0-9]{9,18}$")
AADHAAR_RE = re.compile(r"^[0-9]{12}$")
DEMAT_ID_RE = re.compile(r"^[A-Za-z0-9]{8,16}$")
EMAIL_RE = re.compile(r"[^@\s]+@[^@\s]+\.[^@\s]+")

MAX_FILE_BYTES = 5 * 1024 * 1024
ALLOWED_EXTENSIONS = {".pdf", ".jpg", ".jpeg", ".png"}
ALLOWED_MIME_TYPES = {"application/pdf", "image/jpeg", "image/jpg", "image/png"}

RESIDENCY_OPTIONS = ("resident", "nri")
DEPOSITORIES = ("CDSL", "NSDL")
ADDRESS_VERIFICATION_METHODS = ("otp", "digilocker")
SOURCE_OPTIONS = ("search", "social", "friend", "advisor", "other")
MAX_DEMAT_ROWS = 5
MIN_PASSWORD_LENGTH = 8


def _text(form: Dict[str, Any], key: str) -> str:
    value = form.get(key)
    return str(value).strip() if value is not None else ""


def digits_only(value: str) -> str:
    return re.sub(r"[^0-9]", "", value or "")


def is_valid_pan(pan: str) -> bool:
    return bool(PAN_RE.match((pan or "").upper()))


def is_valid_ifsc(ifsc: str) -> bool:
    return bool(IFSC_RE.match((ifsc or "").upper()))


def is_valid_account_number(account: str) -> bool:
    return bool(ACCOUNT_RE.match(digits_only(account)))


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_RE.search(email or ""))


def is_valid_iso_date(value: str) -> bool:
    try:
        date.fromisoformat(value)
    except (TypeError, ValueError):
        return False
    return True


def file_error(file_meta: Dict[str, Any]) -> str:
    """
    Перевіряє вкладений файл (ім'я, MIME-тип, розмір).
    Розширення та MIME-тип перевіряються незалежно: відмова, якщо не пройшла будь-яка перевірка.
    Повертає порожній рядок, якщо файл прийнятний.
    """
    if not file_meta:
        return "Attach a bank proof document."

    name = str(file_meta.get("name") or "")
    mime = str(file_meta.get("mime_type") or "").lower()
    size = file_meta.get("size")

    ext = os.path.splitext(name)[1].lower()
    if ext not in ALLOWED_EXTENSIONS or mime not in ALLOWED_MIME_TYPES:
        return "Allowed types: PDF, JPG, PNG."
    if size is None or size > MAX_FILE_BYTES:
        return "Max file size is 5MB."
    return ""


# --- Кроки KYC ---

def check_documents(form: Dict[str, Any]) -> Dict[str, str]:
    errors = {}
    if form.get("documents_acknowledged") is not True:
        errors["documents_acknowledged"] = "Confirm that you have the listed documents ready."
    return errors


def check_pan(form: Dict[str, Any]) -> Dict[str, str]:
    errors = {}
    if not is_valid_pan(_text(form, "pan")):
        errors["pan"] = "Enter PAN in format AAAAA9999A"
    if not _text(form, "full_name"):
        errors["full_name"] = "Enter your full name as on PAN."
    if not is_valid_iso_date(_text(form, "dob")):
        errors["dob"] = "Enter date of birth as YYYY-MM-DD."
    if not _text(form, "father_name"):
        errors["father_name"] = "Enter your father's name."
    if form.get("residency") not in RESIDENCY_OPTIONS:
        errors["residency"] = "Select residency status."
    return errors


def check_address(form: Dict[str, Any]) -> Dict[str, str]:
    errors = {}
    if not AADHAAR_RE.match(digits_only(_text(form, "aadhaar"))):
        errors["aadhaar"] = "Enter a valid 12-digit Aadhaar number."
    elif form.get("address_verified_via") not in ADDRESS_VERIFICATION_METHODS:
        errors["address_verified_via"] = "Verify your address via OTP or DigiLocker."
    return errors


def check_bank_proof(form: Dict[str, Any]) -> Dict[str, str]:
    errors = {}
    if not is_valid_account_number(_text(form, "account_number")):
        errors["account_number"] = "Account number must be 9-18 digits."
    if not is_valid_ifsc(_text(form, "ifsc")):
        errors["ifsc"] = "Enter IFSC in format ABCD0XXXXXX"
    message = file_error(form.get("bank_proof_file") or {})
    if message:
        errors["bank_proof_file"] = message
    return errors


def demat_row_error(row: Dict[str, Any]) -> str:
    if row.get("type") not in DEPOSITORIES:
        return "Select depository (CDSL/NSDL)."
    if not DEMAT_ID_RE.match(str(row.get("id") or "").strip()):
        return "Client ID must be 8-16 letters or digits."
    return ""


def check_demat(form: Dict[str, Any]) -> Dict[str, str]:
    rows = form.get("demat_accounts") or []
    if not rows:
        return {"demat_accounts": "Add at least one demat account."}
    if len(rows) > MAX_DEMAT_ROWS:
        return {"demat_accounts": f"At most {MAX_DEMAT_ROWS} demat accounts."}

    errors = {}
    for i, row in enumerate(rows):
        message = demat_row_error(row)
        if message:
            errors[f"demat_accounts.{i}"] = message
    return errors


def check_video_kyc(form: Dict[str, Any]) -> Dict[str, str]:
    if form.get("video_started") is not True:
        return {"video_started": "Start the video KYC session."}
    return {}


ESIGN_CONSENTS = ("consent_terms", "consent_data", "consent_esign")


def all_consents_given(form: Dict[str, Any]) -> bool:
    return all(form.get(key) is True for key in ESIGN_CONSENTS)


def check_esign(form: Dict[str, Any]) -> Dict[str, str]:
    errors = {}
    for key in ESIGN_CONSENTS:
        if form.get(key) is not True:
            errors[key] = "This consent is required."
    # Згода без підпису не завершує крок
    if form.get("esign_status") != "success":
        errors["esign_status"] = "Complete eSign to continue."
    return errors


# --- Кроки реєстрації ---

def check_account(form: Dict[str, Any]) -> Dict[str, str]:
    errors = {}
    if not is_valid_email(_text(form, "email")):
        errors["email"] = "Enter a valid email address."
    # Після прийняття бекендом пароль у формі вже не зберігається
    if form.get("registered") is not True and len(_text(form, "password")) < MIN_PASSWORD_LENGTH:
        errors["password"] = f"Password must be at least {MIN_PASSWORD_LENGTH} characters."
    return errors


def check_email_verified(form: Dict[str, Any]) -> Dict[str, str]:
    if form.get("email_verified") is not True:
        return {"email_verified": "Verify the code sent to your email."}
    return {}


def check_profile(form: Dict[str, Any]) -> Dict[str, str]:
    errors = {}
    if not _text(form, "first_name"):
        errors["first_name"] = "Enter your first name."
    if not _text(form, "last_name"):
        errors["last_name"] = "Enter your last name."
    if not is_valid_email(_text(form, "email")):
        errors["email"] = "Enter a valid email address."
    if not _text(form, "phone"):
        errors["phone"] = "Enter your phone number."
    if not _text(form, "source"):
        errors["source"] = "Tell us how you heard about us."
    return errors
