"""
Payment split and payment processor clients

Amounts are handled as Decimal pounds inside the app and converted to
integer pence only at the processor boundary. Currency is fixed to GBP.
"""
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional, Union

import requests

from config import Settings
from errors import PaymentInitError, ValidationError

logger = logging.getLogger(__name__)

CURRENCY = "gbp"
PENNY = Decimal("0.01")
DEFAULT_FEE_RATE = Decimal("0.05")

Number = Union[Decimal, float, int, str]


def to_decimal(amount: Number) -> Decimal:
    # str() first so floats like 0.1 keep their printed value
    return Decimal(str(amount)).quantize(PENNY, rounding=ROUND_HALF_UP)


def platform_fee(amount: Number, fee_rate: Number = DEFAULT_FEE_RATE) -> Decimal:
    return (to_decimal(amount) * Decimal(str(fee_rate))).quantize(PENNY, rounding=ROUND_HALF_UP)


def club_amount(amount: Number, fee_rate: Number = DEFAULT_FEE_RATE) -> Decimal:
    return to_decimal(amount) - platform_fee(amount, fee_rate)


def split(amount: Number, fee_rate: Number = DEFAULT_FEE_RATE) -> Dict[str, Decimal]:
    """Return amount, platform_fee and club_amount; the last two always sum to the first."""
    total = to_decimal(amount)
    if total <= 0:
        raise ValidationError("Amount must be greater than 0")
    fee = platform_fee(total, fee_rate)
    return {"amount": total, "platform_fee": fee, "club_amount": total - fee}


def to_minor_units(amount: Number) -> int:
    return int((to_decimal(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(pence: int) -> Decimal:
    return (Decimal(pence) / 100).quantize(PENNY)


def format_currency(amount: Number) -> str:
    return f"£{to_decimal(amount):,.2f}"


@dataclass
class PaymentIntent:
    id: str
    client_secret: str
    status: str
    amount: int
    application_fee_amount: Optional[int] = None
    metadata: Optional[Dict[str, str]] = None
    error_message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


class PaymentProcessor(ABC):
    name = "base"

    @abstractmethod
    def create_payment_intent(
        self,
        amount: Number,
        fee_amount: Number,
        metadata: Dict[str, Any],
        receipt_email: Optional[str] = None,
        description: Optional[str] = None,
    ) -> PaymentIntent:
        pass

    @abstractmethod
    def retrieve_payment_intent(self, intent_id: str) -> PaymentIntent:
        pass

    @abstractmethod
    def confirm_payment_intent(self, intent_id: str, payment_method: str) -> PaymentIntent:
        pass


def _intent_from_stripe(data: Dict[str, Any]) -> PaymentIntent:
    last_error = data.get("last_payment_error") or {}
    return PaymentIntent(
        id=data["id"],
        client_secret=data.get("client_secret") or "",
        status=data.get("status", ""),
        amount=int(data.get("amount", 0)),
        application_fee_amount=data.get("application_fee_amount"),
        metadata=data.get("metadata") or {},
        error_message=last_error.get("message"),
    )


class StripeProcessor(PaymentProcessor):
    """Thin client for the Stripe PaymentIntents REST API."""

    name = "stripe"

    def __init__(self, secret_key: str, api_base: str = "https://api.stripe.com/v1", timeout: float = 8.0):
        self.secret_key = secret_key
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout

    def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        try:
            r = requests.request(method, f"{self.api_base}{path}", data=body, headers=headers, timeout=self.timeout)
            data = r.json()
        except (requests.RequestException, ValueError) as e:
            raise PaymentInitError(f"Payment processor unreachable: {e}")
        if r.status_code >= 400:
            error = data.get("error") or {}
            raise PaymentInitError(error.get("message", "Payment processor rejected the request"))
        return data

    def create_payment_intent(self, amount, fee_amount, metadata, receipt_email=None, description=None):
        body: Dict[str, Any] = {
            "amount": to_minor_units(amount),
            "currency": CURRENCY,
            "application_fee_amount": to_minor_units(fee_amount),
            "automatic_payment_methods[enabled]": "true",
        }
        for key, value in metadata.items():
            body[f"metadata[{key}]"] = str(value)
        if receipt_email:
            body["receipt_email"] = receipt_email
        if description:
            body["description"] = description
        return _intent_from_stripe(self._request("POST", "/payment_intents", body))

    def retrieve_payment_intent(self, intent_id):
        return _intent_from_stripe(self._request("GET", f"/payment_intents/{intent_id}"))

    def confirm_payment_intent(self, intent_id, payment_method):
        # Card errors come back as a 402 whose body still describes the intent
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        try:
            r = requests.post(
                f"{self.api_base}/payment_intents/{intent_id}/confirm",
                data={"payment_method": payment_method},
                headers=headers,
                timeout=self.timeout,
            )
            data = r.json()
        except (requests.RequestException, ValueError) as e:
            raise PaymentInitError(f"Payment processor unreachable: {e}")
        if r.status_code >= 400:
            error = data.get("error") or {}
            intent = error.get("payment_intent")
            if intent:
                result = _intent_from_stripe(intent)
                result.error_message = error.get("message", result.error_message)
                return result
            raise PaymentInitError(error.get("message", "Payment confirmation failed"))
        return _intent_from_stripe(data)


# Stripe test payment method that always declines
DECLINED_PAYMENT_METHOD = "pm_card_chargeDeclined"


class MockProcessor(PaymentProcessor):
    """In-memory stand-in used when no Stripe secret key is configured."""

    name = "mock"

    def __init__(self):
        self.intents: Dict[str, PaymentIntent] = {}

    def create_payment_intent(self, amount, fee_amount, metadata, receipt_email=None, description=None):
        intent_id = f"pi_mock_{uuid.uuid4().hex[:24]}"
        intent = PaymentIntent(
            id=intent_id,
            client_secret=f"{intent_id}_secret_mock",
            status="requires_payment_method",
            amount=to_minor_units(amount),
            application_fee_amount=to_minor_units(fee_amount),
            metadata={k: str(v) for k, v in metadata.items()},
        )
        self.intents[intent_id] = intent
        return intent

    def retrieve_payment_intent(self, intent_id):
        intent = self.intents.get(intent_id)
        if intent is None:
            raise PaymentInitError(f"No such payment_intent: '{intent_id}'")
        return intent

    def confirm_payment_intent(self, intent_id, payment_method):
        intent = self.retrieve_payment_intent(intent_id)
        if payment_method == DECLINED_PAYMENT_METHOD:
            intent.status = "requires_payment_method"
            intent.error_message = "Your card was declined."
        else:
            intent.status = "succeeded"
            intent.error_message = None
        return intent


def init_processor(settings: Settings) -> PaymentProcessor:
    if settings.stripe_configured:
        logger.info("Using Stripe payment processor")
        return StripeProcessor(settings.STRIPE_SECRET_KEY, settings.STRIPE_API_BASE, settings.PAYMENT_TIMEOUT_SECONDS)
    logger.warning("STRIPE_SECRET_KEY not configured, payments run against the mock processor")
    return MockProcessor()
