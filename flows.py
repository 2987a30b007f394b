from typing import Any, Callable, Dict, List, Optional

import validators
from consent import AcknowledgmentSet, ConsentGate, DISCLOSURES
from ledger import DELIVERY_METHODS, PAYMENT_METHODS, STAMP_RATES, OrderLedgerCalculator
from sequencer import ResumeToken, SequenceState, Stage, StepSequencer

KYC_FLOW = "kyc"
REGISTRATION_FLOW = "registration"
CHECKOUT_FLOW = "checkout"


def check_order(form: Dict[str, Any]) -> Dict[str, str]:
    errors = {}
    if not form.get("stock_id"):
        errors["stock_id"] = "Choose a stock."
    if OrderLedgerCalculator.sanitize_quantity(form.get("quantity", 0)) <= 0:
        errors["quantity"] = "Enter a quantity greater than zero."
    if OrderLedgerCalculator.sanitize_price(form.get("unit_price", 0)) <= 0:
        errors["unit_price"] = "Price is not available for this stock."
    if form.get("state_code") not in STAMP_RATES:
        errors["state_code"] = "Select your state."
    if form.get("delivery") not in DELIVERY_METHODS:
        errors["delivery"] = "Select a delivery method."
    return errors


def check_disclosures(form: Dict[str, Any]) -> Dict[str, str]:
    acks = AcknowledgmentSet.from_dict(form.get("acknowledgments"))
    errors = {}
    if not ConsentGate.evaluate_disclosure_readiness(acks.acknowledged, DISCLOSURES):
        errors["acknowledgments"] = "Acknowledge every mandatory disclosure."
    if not acks.final_consent:
        errors["final_consent"] = "Give your final consent to proceed."
    return errors


def check_payment(form: Dict[str, Any]) -> Dict[str, str]:
    if form.get("payment_method") not in PAYMENT_METHODS:
        return {"payment_method": "Select a payment method."}
    return {}


def _stages(rows: List[tuple]) -> List[Stage]:
    last = len(rows) - 1
    return [
        Stage(i, label, check, is_terminal=(i == last), fields=frozenset(fields))
        for i, (label, check, fields) in enumerate(rows)
    ]


KYC_STAGES = _stages([
    ("Documents", validators.check_documents, {"documents_acknowledged"}),
    ("PAN Validation", validators.check_pan, {"pan", "full_name", "dob", "father_name", "residency"}),
    ("Address Verification", validators.check_address, {"aadhaar", "address_verified_via"}),
    ("Bank Proof", validators.check_bank_proof, {"account_number", "ifsc", "bank_proof_file"}),
    ("Demat Account", validators.check_demat, {"demat_accounts", "demat_id"}),
    ("Video KYC", validators.check_video_kyc, {"video_started"}),
    ("eSign & Consent", validators.check_esign, set(validators.ESIGN_CONSENTS) | {"esign_status"}),
])

REGISTRATION_STAGES = _stages([
    ("Account", validators.check_account, {"email", "password"}),
    ("Verify Email", validators.check_email_verified, {"email_verified"}),
    ("Profile", validators.check_profile, {"first_name", "last_name", "phone", "email", "source"}),
])

CHECKOUT_STAGES = _stages([
    ("Order", check_order, {"stock_id", "quantity", "unit_price", "state_code", "delivery"}),
    ("Review & Disclosures", check_disclosures, {"acknowledgments", "final_consent"}),
    ("Payment Mode", check_payment, {"payment_method"}),
])

STAGES_BY_FLOW = {
    KYC_FLOW: KYC_STAGES,
    REGISTRATION_FLOW: REGISTRATION_STAGES,
    CHECKOUT_FLOW: CHECKOUT_STAGES,
}


def build_sequencer(
    flow: str,
    resume: Optional[ResumeToken] = None,
    on_complete: Optional[Callable[[SequenceState], None]] = None,
) -> StepSequencer:
    """Початковий стан залежить лише від аргументів: токен передається явно, а не читається зі сховища."""
    if flow not in STAGES_BY_FLOW:
        raise ValueError(f"Невідомий сценарій: {flow}")
    if resume is not None and resume.flow != flow:
        raise ValueError(f"Токен належить сценарію '{resume.flow}', а не '{flow}'")
    return StepSequencer(STAGES_BY_FLOW[flow], resume=resume, on_complete=on_complete)
