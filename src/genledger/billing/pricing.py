"""
Money and Pricing

Fixed-point money helpers, the static credit packages sold through checkout,
and price quotes used as pre-flight estimates for generation requests.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from ..errors import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

USD_TO_MXN = Decimal("17.5")
MARKUP_PERCENT = Decimal("50")

BASE_COSTS_USD = {
    "style": Decimal("0.01"),
    "image": Decimal("0.02"),
    "text": Decimal("0.01"),
    "video_per_second": Decimal("0.05"),
}

DEFAULT_VIDEO_SECONDS = 2

# NUMERIC(14, 2) holds 12 integer digits
MAX_MONEY = Decimal("1e12")


def to_money(value: Any) -> Decimal:
    """
    Convert a value to a 2-digit Decimal.

    Floats are refused so binary rounding never reaches a balance.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationError(f"Money values must be Decimal, int or str, got {type(value).__name__}")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
        if not amount.is_finite() or abs(amount) >= MAX_MONEY:
            raise ValidationError(f"Invalid money value: {value!r}")
        return amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid money value: {value!r}")


def require_positive(value: Any, name: str = "amount") -> Decimal:
    amount = to_money(value)
    if amount <= ZERO:
        raise ValidationError(f"{name} must be greater than zero")
    return amount


@dataclass(frozen=True)
class CreditPackage:
    """A purchasable credit package."""
    package_id: str
    name: str
    base_amount: Decimal
    bonus_amount: Decimal = ZERO

    @property
    def total_amount(self) -> Decimal:
        return self.base_amount + self.bonus_amount

    @property
    def unit_amount_minor(self) -> int:
        """Checkout price in minor units (centavos)."""
        return int((self.base_amount * 100).to_integral_value())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.package_id,
            "name": self.name,
            "amount": str(self.base_amount),
            "bonus": str(self.bonus_amount),
            "total_credits": str(self.total_amount),
        }


CREDIT_PACKAGES: Dict[str, CreditPackage] = {
    pkg.package_id: pkg
    for pkg in (
        CreditPackage("starter", "Starter", Decimal("50.00")),
        CreditPackage("basic", "Basic", Decimal("100.00"), Decimal("20.00")),
        CreditPackage("pro", "Pro", Decimal("250.00"), Decimal("50.00")),
        CreditPackage("premium", "Premium", Decimal("500.00"), Decimal("125.00")),
        CreditPackage("enterprise", "Enterprise", Decimal("1000.00"), Decimal("300.00")),
    )
}


def get_package(package_id: str) -> CreditPackage:
    package = CREDIT_PACKAGES.get(package_id)
    if package is None:
        raise ValidationError(f"Invalid package: {package_id}")
    return package


def list_packages() -> List[CreditPackage]:
    return list(CREDIT_PACKAGES.values())


@dataclass(frozen=True)
class PriceQuote:
    """Provider cost and user price for one unit of work."""
    generation_type: str
    cost_usd: Decimal
    price_mxn: Decimal
    profit_mxn: Decimal


def calculate_price(generation_type: str, duration_seconds: Optional[int] = None) -> PriceQuote:
    """Quote the user price for a generation type."""
    if generation_type == "video":
        seconds = duration_seconds or DEFAULT_VIDEO_SECONDS
        base_usd = BASE_COSTS_USD["video_per_second"] * seconds
    elif generation_type in BASE_COSTS_USD:
        base_usd = BASE_COSTS_USD[generation_type]
    else:
        raise ValidationError(f"Unknown generation type: {generation_type}")

    user_price_usd = base_usd * (1 + MARKUP_PERCENT / 100)
    price_mxn = to_money(user_price_usd * USD_TO_MXN)
    cost_mxn = to_money(base_usd * USD_TO_MXN)

    return PriceQuote(
        generation_type=generation_type,
        cost_usd=base_usd,
        price_mxn=price_mxn,
        profit_mxn=price_mxn - cost_mxn,
    )
