"""
Payment Settlement

Turns confirmed Stripe Checkout payments into ledger credits. Both the
checkout-return path and the webhook path end in `settle()`, which credits
through the ledger keyed by the external payment id, so a payment is
credited once however many times it is reported.
"""

import json
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple
import stripe
import structlog

from ..config import Settings
from ..errors import GenLedgerError, NotFound, PaymentProviderError, ValidationError
from ..persistence.models import TransactionKind
from .ledger import Ledger
from .pricing import get_package

logger = structlog.get_logger()

SETTLEMENT_EVENTS = (
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
)


def _field(obj: Any, name: str) -> Any:
    """Read a key from a Stripe object or plain dict, None if absent."""
    if obj is None:
        return None
    try:
        return obj[name]
    except (KeyError, TypeError):
        return None


def payment_id_for(session: Any) -> str:
    """Idempotency key for a session: its payment intent, else the session id."""
    return _field(session, "payment_intent") or _field(session, "id")


def session_refs(session: Any) -> Tuple[Optional[str], Optional[str]]:
    """(user_id, package_id) from session metadata or client_reference_id."""
    metadata = _field(session, "metadata") or {}
    user_id = _field(metadata, "user_id")
    package_id = _field(metadata, "package_id")
    if not (user_id and package_id):
        reference = _field(session, "client_reference_id") or ""
        if ":" in reference:
            user_id, package_id = reference.split(":", 1)
    return user_id, package_id


@dataclass
class CheckoutSession:
    session_id: str
    url: str
    package_id: str
    amount: Decimal
    currency: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "url": self.url,
            "package_id": self.package_id,
            "amount": str(self.amount),
            "currency": self.currency,
        }


@dataclass
class SettlementResult:
    """Outcome of settling one payment."""
    payment_id: str
    user_id: str
    package_id: str
    credited: bool
    duplicate: bool
    balance: Decimal
    amount: Decimal
    bonus: Decimal
    status: str = "paid"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payment_id": self.payment_id,
            "user_id": self.user_id,
            "package_id": self.package_id,
            "credited": self.credited,
            "duplicate": self.duplicate,
            "balance": str(self.balance),
            "amount": str(self.amount),
            "bonus": str(self.bonus),
            "status": self.status,
        }


@dataclass
class WebhookResult:
    """Webhook handling report. The HTTP layer always acknowledges."""
    received: bool = True
    event_type: Optional[str] = None
    event_id: Optional[str] = None
    processed: bool = False
    settlement: Optional[SettlementResult] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "received": self.received,
            "event_type": self.event_type,
            "event_id": self.event_id,
            "processed": self.processed,
            "settlement": self.settlement.to_dict() if self.settlement else None,
            "error": self.error,
        }


class PaymentSettlement:
    """
    Stripe Checkout for credit packages.

    Without an API key the service runs in mock mode: checkout sessions are
    fabricated locally and treated as paid, which keeps development and
    tests off the network.
    """

    def __init__(
        self,
        ledger: Ledger,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        app_url: str = "http://localhost:5173",
        currency: str = "MXN",
    ):
        self.ledger = ledger
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.app_url = app_url.rstrip("/")
        self.currency = currency
        self._mock_sessions: Dict[str, Dict[str, Any]] = {}

        if self.api_key:
            stripe.api_key = self.api_key
            logger.info("stripe_settlement_initialized")
        else:
            logger.warning("stripe_not_configured", mock_mode=True)

    @classmethod
    def from_settings(cls, settings: Settings, ledger: Ledger) -> "PaymentSettlement":
        return cls(
            ledger,
            api_key=settings.stripe_api_key,
            webhook_secret=settings.stripe_webhook_secret,
            app_url=settings.app_url,
            currency=settings.currency,
        )

    @property
    def is_live(self) -> bool:
        return bool(self.api_key)

    def create_checkout(
        self,
        user_id: str,
        package_id: str,
        customer_email: Optional[str] = None,
    ) -> CheckoutSession:
        """Open a checkout session for a package. No ledger effect."""
        if not user_id:
            raise ValidationError("user_id is required")
        package = get_package(package_id)

        if not self.is_live:
            session_id = f"cs_mock_{uuid.uuid4().hex[:16]}"
            self._mock_sessions[session_id] = {
                "id": session_id,
                "payment_intent": None,
                "payment_status": "paid",
                "metadata": {"user_id": user_id, "package_id": package_id},
                "client_reference_id": f"{user_id}:{package_id}",
            }
            return CheckoutSession(
                session_id=session_id,
                url=f"{self.app_url}/credits?session_id={session_id}",
                package_id=package_id,
                amount=package.base_amount,
                currency=self.currency,
            )

        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                line_items=[{
                    "price_data": {
                        "currency": self.currency.lower(),
                        "unit_amount": package.unit_amount_minor,
                        "product_data": {
                            "name": f"{package.name} credit package",
                            "description": f"{package.total_amount} credits",
                        },
                    },
                    "quantity": 1,
                }],
                customer_email=customer_email,
                client_reference_id=f"{user_id}:{package_id}",
                metadata={"user_id": user_id, "package_id": package_id},
                success_url=f"{self.app_url}/credits?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{self.app_url}/credits?cancelled=1",
            )
        except stripe.StripeError as e:
            logger.error("stripe_checkout_create_failed", user_id=user_id, error=str(e))
            raise PaymentProviderError(f"Failed to create checkout session: {e}")

        logger.info(
            "checkout_session_created",
            session_id=session.id,
            user_id=user_id,
            package_id=package_id,
        )
        return CheckoutSession(
            session_id=session.id,
            url=session.url,
            package_id=package_id,
            amount=package.base_amount,
            currency=self.currency,
        )

    def settle(self, payment_id: str, package_id: str, user_id: str) -> SettlementResult:
        """Credit a confirmed payment once. Repeats return duplicate=True."""
        if not payment_id:
            raise ValidationError("payment_id is required")
        package = get_package(package_id)

        result = self.ledger.credit(
            user_id,
            package.base_amount,
            kind=TransactionKind.PURCHASE,
            external_payment_id=payment_id,
            bonus_amount=package.bonus_amount,
            description=f"Purchase of {package.name} package",
            payment_method="stripe",
        )

        logger.info(
            "payment_settled",
            payment_id=payment_id,
            user_id=user_id,
            package_id=package_id,
            duplicate=result.duplicate,
            balance=str(result.balance),
        )
        return SettlementResult(
            payment_id=payment_id,
            user_id=user_id,
            package_id=package_id,
            credited=not result.duplicate,
            duplicate=result.duplicate,
            balance=result.balance,
            amount=package.base_amount,
            bonus=package.bonus_amount,
        )

    def retrieve_session(self, session_id: str) -> Any:
        if not self.is_live:
            session = self._mock_sessions.get(session_id)
            if session is None:
                raise NotFound("Checkout session not found", session_id=session_id)
            return session
        try:
            return stripe.checkout.Session.retrieve(session_id)
        except stripe.InvalidRequestError:
            raise NotFound("Checkout session not found", session_id=session_id)
        except stripe.StripeError as e:
            logger.error("stripe_session_fetch_failed", session_id=session_id, error=str(e))
            raise PaymentProviderError(f"Failed to retrieve checkout session: {e}")

    def get_session_status(self, session_id: str) -> Dict[str, Any]:
        """Provider-side view of a checkout session."""
        session = self.retrieve_session(session_id)
        user_id, package_id = session_refs(session)
        return {
            "session_id": session_id,
            "payment_id": payment_id_for(session),
            "payment_status": _field(session, "payment_status"),
            "user_id": user_id,
            "package_id": package_id,
        }

    def process_payment(self, session_id: str, user_id: Optional[str] = None) -> SettlementResult:
        """Checkout-return path: settle the session if it is paid."""
        session = self.retrieve_session(session_id)
        ref_user, package_id = session_refs(session)
        if not (ref_user and package_id):
            raise ValidationError("Checkout session carries no user/package reference")
        if user_id is not None and ref_user != user_id:
            raise NotFound("Checkout session not found", session_id=session_id)

        status = _field(session, "payment_status")
        if status != "paid":
            logger.info("payment_not_settled", session_id=session_id, status=status)
            package = get_package(package_id)
            return SettlementResult(
                payment_id=payment_id_for(session),
                user_id=ref_user,
                package_id=package_id,
                credited=False,
                duplicate=False,
                balance=self.ledger.get_balance(ref_user),
                amount=package.base_amount,
                bonus=package.bonus_amount,
                status=status or "unknown",
            )

        return self.settle(payment_id_for(session), package_id, ref_user)

    def _construct_event(self, payload: bytes, signature: Optional[str]) -> Any:
        if self.webhook_secret:
            if not signature:
                raise stripe.SignatureVerificationError("Missing Stripe-Signature header", signature)
            return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        logger.warning("stripe_webhook_unverified")
        return stripe.Event.construct_from(json.loads(payload), stripe.api_key)

    def handle_webhook(self, payload: bytes, signature: Optional[str]) -> WebhookResult:
        """Process a webhook delivery. Never raises."""
        try:
            event = self._construct_event(payload, signature)
        except stripe.SignatureVerificationError:
            logger.error("stripe_webhook_signature_invalid")
            return WebhookResult(error="invalid_signature")
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            logger.error("stripe_webhook_malformed", error=str(e))
            return WebhookResult(error="malformed_payload")

        event_type = _field(event, "type")
        event_id = _field(event, "id")
        logger.info("stripe_webhook_received", event_type=event_type, event_id=event_id)

        if event_type not in SETTLEMENT_EVENTS:
            return WebhookResult(event_type=event_type, event_id=event_id)

        session = _field(_field(event, "data"), "object")
        status = _field(session, "payment_status")
        if status != "paid":
            logger.info("payment_not_settled", event_id=event_id, status=status)
            return WebhookResult(event_type=event_type, event_id=event_id)

        user_id, package_id = session_refs(session)
        if not (user_id and package_id):
            logger.error("stripe_webhook_missing_reference", event_id=event_id)
            return WebhookResult(event_type=event_type, event_id=event_id, error="missing_reference")

        try:
            settlement = self.settle(payment_id_for(session), package_id, user_id)
        except GenLedgerError as e:
            logger.error("stripe_webhook_settlement_failed", event_id=event_id, error=e.message)
            return WebhookResult(event_type=event_type, event_id=event_id, error=e.code)
        except Exception as e:
            logger.exception("stripe_webhook_error", event_id=event_id)
            return WebhookResult(event_type=event_type, event_id=event_id, error=str(e))

        return WebhookResult(
            event_type=event_type,
            event_id=event_id,
            processed=True,
            settlement=settlement,
        )
