import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, Optional, Union

Number = Union[int, float, str, Decimal]

CENT = Decimal("0.01")

# Ставки гербового збору за штатом (від вартості замовлення)
STAMP_RATES = {
    "MH": ("Maharashtra", Decimal("0.002")),
    "DL": ("Delhi", Decimal("0.0015")),
    "KA": ("Karnataka", Decimal("0.002")),
    "GJ": ("Gujarat", Decimal("0.001")),
}

DELIVERY_METHODS = {
    "demat": "Demat Transfer",
    "physical": "Physical Delivery",
}

# code -> (назва, надбавка до суми оплати)
PAYMENT_METHODS = {
    "upi": ("UPI", Decimal("0")),
    "netbanking": ("Net Banking", Decimal("0")),
    "card": ("Credit/Debit Card", Decimal("10.80")),
    "wallet": ("Digital Wallet", Decimal("0")),
}


@dataclass(frozen=True)
class OrderLine:
    quantity: int
    unit_price: Decimal

    @property
    def order_value(self) -> Decimal:
        return OrderLedgerCalculator.round2(self.quantity * self.unit_price)


@dataclass(frozen=True)
class FeeSchedule:
    """Складові комісій. Калькулятор їх лише підсумовує."""
    components: Dict[str, Decimal] = field(default_factory=dict)

    @property
    def total(self) -> Decimal:
        return sum(self.components.values(), Decimal("0"))


@dataclass(frozen=True)
class Totals:
    order_value: Decimal
    total_fees: Decimal
    total_payable: Decimal
    effective_unit_price: Optional[Decimal]


class OrderLedgerCalculator:
    """
    Розрахунок сум замовлення: вартість, комісії, до сплати, ефективна ціна за одиницю.
    Усі значення похідні: обчислюються заново при кожній зміні кількості, нічого не кешується.
    """

    PLATFORM_FEE_RATE = Decimal("0.005")
    PLATFORM_FEE_MIN = Decimal("50")
    BROKERAGE_RATE = Decimal("0.002")
    GST_RATE = Decimal("0.18")
    DP_CHARGES = Decimal("25")
    ESIGN_CHARGE = Decimal("10")

    @staticmethod
    def round2(value: Number) -> Decimal:
        return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)

    @staticmethod
    def sanitize_quantity(raw: Number) -> int:
        """Від'ємне або нечислове введення перетворюється на 0, без помилки. Дробова частина відкидається."""
        if isinstance(raw, bool):
            return 0
        if isinstance(raw, int):
            return max(raw, 0)
        # Лише десятковий запис ASCII-цифрами: "abc5" і "1e3" - не числа
        match = re.fullmatch(r"\+?([0-9]+)(\.[0-9]*)?", str(raw).strip())
        return int(match.group(1)) if match else 0

    @classmethod
    def sanitize_price(cls, raw: Number) -> Decimal:
        text = str(raw).strip()
        if text.startswith("-"):
            return Decimal("0.00")
        cleaned = re.sub(r"[^0-9.]", "", text)
        match = re.match(r"[0-9]*\.?[0-9]*", cleaned)
        try:
            value = Decimal(match.group(0)) if match and match.group(0) not in ("", ".") else Decimal("0")
        except InvalidOperation:
            value = Decimal("0")
        return cls.round2(value)

    @classmethod
    def order_line(cls, quantity: Number, unit_price: Number) -> OrderLine:
        return OrderLine(cls.sanitize_quantity(quantity), cls.sanitize_price(unit_price))

    @classmethod
    def recompute(cls, quantity: Number, unit_price: Number, fee_schedule: Optional[FeeSchedule] = None) -> Totals:
        line = cls.order_line(quantity, unit_price)
        order_value = line.order_value
        total_fees = cls.round2(fee_schedule.total) if fee_schedule else Decimal("0.00")
        total_payable = cls.round2(order_value + total_fees)

        effective = None
        if line.quantity > 0:
            effective = cls.round2(total_payable / line.quantity)

        return Totals(
            order_value=order_value,
            total_fees=total_fees,
            total_payable=total_payable,
            effective_unit_price=effective,
        )

    @classmethod
    def build_fee_schedule(cls, order_value: Number, state_code: str = "MH", delivery: str = "demat") -> FeeSchedule:
        """
        Політика комісій платформи:
        платформа 0.5% (мінімум 50), брокерська 0.2%, GST 18% на обидві,
        гербовий збір за штатом, DP-збори для demat, фіксована плата за eSign.
        """
        if state_code not in STAMP_RATES:
            raise ValueError(f"Невідомий штат: {state_code}")
        if delivery not in DELIVERY_METHODS:
            raise ValueError(f"Невідомий спосіб отримання: {delivery}")

        value = Decimal(str(order_value))
        if value <= 0:
            return FeeSchedule()

        platform_fee = max(cls.PLATFORM_FEE_MIN, value * cls.PLATFORM_FEE_RATE)
        brokerage = value * cls.BROKERAGE_RATE
        gst = (platform_fee + brokerage) * cls.GST_RATE
        stamp_duty = value * STAMP_RATES[state_code][1]
        dp_charges = cls.DP_CHARGES if delivery == "demat" else Decimal("0")

        return FeeSchedule(components={
            "platform_fee": cls.round2(platform_fee),
            "brokerage": cls.round2(brokerage),
            "gst": cls.round2(gst),
            "stamp_duty": cls.round2(stamp_duty),
            "dp_charges": cls.round2(dp_charges),
            "esign": cls.round2(cls.ESIGN_CHARGE),
        })

    @classmethod
    def payable_with_method(cls, totals: Totals, method: str) -> Decimal:
        if method not in PAYMENT_METHODS:
            raise ValueError(f"Невідомий спосіб оплати: {method}")
        return cls.round2(totals.total_payable + PAYMENT_METHODS[method][1])
