import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from ledger import OrderLine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Disclosure:
    id: str
    title: str
    body: str
    mandatory: bool = False


DISCLOSURES: List[Disclosure] = [
    Disclosure(
        "risk", "Invest APP Risk",
        "I understand that Invest APP are high-risk investments with limited liquidity, no regulatory "
        "oversight for pricing, and potential for significant capital loss. These securities are not "
        "traded on recognized exchanges and may be difficult to sell.",
        mandatory=True,
    ),
    Disclosure(
        "price", "Price Discovery Limitations",
        "I acknowledge that pricing for Invest APP is based on limited market data, private transactions, "
        "and may not reflect true market value. Price discovery is subjective and may vary significantly "
        "between transactions.",
        mandatory=True,
    ),
    Disclosure(
        "settlement", "Off-Market Settlement (DIS/eDIS)",
        "I understand that settlement will occur off-market through Delivery Instruction Slip (DIS) or "
        "electronic DIS (eDIS). This involves manual processing and may take longer than exchange-traded "
        "securities.",
        mandatory=True,
    ),
    Disclosure(
        "tat", "Transfer Timeline (TAT)",
        "I acknowledge that share transfer may take 15-30 business days from payment confirmation, subject "
        "to company registrar processing, documentation verification, and regulatory compliance.",
        mandatory=True,
    ),
    Disclosure(
        "refund", "Refund & Expiry Policy",
        "I understand that if shares are not allocated within 45 days, full refund will be processed within "
        "7 business days. Orders expire after 60 days if unmatched. Partial allocations may result in "
        "proportional refunds.",
        mandatory=True,
    ),
    Disclosure(
        "kyc", "KYC & Compliance",
        "I confirm that my KYC documents are updated and I comply with all regulatory requirements for "
        "Invest APP trading. I understand that non-compliance may result in order cancellation.",
        mandatory=True,
    ),
]


@dataclass
class AcknowledgmentSet:
    acknowledged: Dict[str, bool] = field(default_factory=dict)
    final_consent: bool = False

    def toggle(self, disclosure_id: str) -> bool:
        self.acknowledged[disclosure_id] = not self.acknowledged.get(disclosure_id, False)
        return self.acknowledged[disclosure_id]

    def to_dict(self) -> dict:
        return {"acknowledged": dict(self.acknowledged), "final_consent": self.final_consent}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "AcknowledgmentSet":
        data = data or {}
        return cls(
            acknowledged={k: v is True for k, v in (data.get("acknowledged") or {}).items()},
            final_consent=data.get("final_consent") is True,
        )


class ConsentGate:
    """Обов'язкові розкриття інформації + фінальна згода = єдиний сигнал дозволу на підтвердження."""

    @staticmethod
    def evaluate_disclosure_readiness(acknowledgments: Dict[str, bool], disclosures: Sequence[Disclosure] = DISCLOSURES) -> bool:
        return all(acknowledgments.get(d.id) is True for d in disclosures if d.mandatory)

    @classmethod
    def evaluate_final_readiness(
        cls,
        acknowledgments: Dict[str, bool],
        disclosures: Sequence[Disclosure] = DISCLOSURES,
        final_consent: bool = False,
    ) -> bool:
        return cls.evaluate_disclosure_readiness(acknowledgments, disclosures) and final_consent is True

    @staticmethod
    def progress(acknowledgments: Dict[str, bool], disclosures: Sequence[Disclosure] = DISCLOSURES) -> tuple:
        """(підтверджено, потрібно) для лічильника "Acknowledged: X of Y"."""
        required = sum(1 for d in disclosures if d.mandatory)
        acknowledged = sum(1 for d in disclosures if acknowledgments.get(d.id) is True)
        return acknowledged, required


REVIEWING = "reviewing"
CONFIRMED = "confirmed"


class OrderReview:
    """
    Перегляд замовлення: REVIEWING -> CONFIRMED (термінальний).
    Час авторизації фіксується один раз - у момент підтвердження, а не при кожній позначці.
    """

    def __init__(
        self,
        order_line: OrderLine,
        disclosures: Sequence[Disclosure] = DISCLOSURES,
        acknowledgments: Optional[AcknowledgmentSet] = None,
        status: str = REVIEWING,
        authorized_at: Optional[str] = None,
    ):
        self.order_line = order_line
        self.disclosures = list(disclosures)
        self.acknowledgments = acknowledgments or AcknowledgmentSet()
        self.status = status
        self.authorized_at = authorized_at

    @property
    def is_ready(self) -> bool:
        return ConsentGate.evaluate_final_readiness(
            self.acknowledgments.acknowledged,
            self.disclosures,
            self.acknowledgments.final_consent,
        )

    def toggle(self, disclosure_id: str) -> bool:
        if self.status != REVIEWING:
            return False
        if disclosure_id not in {d.id for d in self.disclosures}:
            return False
        self.acknowledgments.toggle(disclosure_id)
        return True

    def set_final_consent(self, value: bool) -> bool:
        if self.status != REVIEWING:
            return False
        self.acknowledgments.final_consent = bool(value)
        return True

    def confirm(self, now: Optional[datetime] = None) -> bool:
        if self.status != REVIEWING or not self.is_ready:
            return False
        moment = now or datetime.now(timezone.utc)
        self.authorized_at = moment.isoformat()
        self.status = CONFIRMED
        logger.info(f"Order authorized at {self.authorized_at}")
        return True

    def back_to_edit(self) -> Optional[OrderLine]:
        """Повертає рядок замовлення без змін; недоступно після підтвердження."""
        if self.status != REVIEWING:
            return None
        return self.order_line
