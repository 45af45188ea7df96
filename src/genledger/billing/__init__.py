"""
Billing: money, credit packages, the ledger and payment settlement.
"""

from .pricing import (
    CreditPackage,
    PriceQuote,
    CREDIT_PACKAGES,
    calculate_price,
    get_package,
    list_packages,
    to_money,
)
from .ledger import Ledger, CreditResult, Reconciliation
from .settlement import (
    PaymentSettlement,
    CheckoutSession,
    SettlementResult,
    WebhookResult,
)

__all__ = [
    "CreditPackage",
    "PriceQuote",
    "CREDIT_PACKAGES",
    "calculate_price",
    "get_package",
    "list_packages",
    "to_money",
    "Ledger",
    "CreditResult",
    "Reconciliation",
    "PaymentSettlement",
    "CheckoutSession",
    "SettlementResult",
    "WebhookResult",
]
