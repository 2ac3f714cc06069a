import hmac
import logging
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, Optional
from urllib.parse import urlencode

from sella import config
from sella.config import PayFastConfig
from sella.payments.signature import SIGNATURE_FIELD, generate_signature

logger = logging.getLogger(__name__)

SANDBOX_URL = "https://sandbox.payfast.co.za/eng/process"
PRODUCTION_URL = "https://www.payfast.co.za/eng/process"

PROVIDER = "PAYFAST"
DELTA_MARKER = "-DELTA-"

# payment_status values posted by the gateway
STATUS_COMPLETE = "COMPLETE"
STATUS_FAILED = "FAILED"
STATUS_CANCELLED = "CANCELLED"


@dataclass
class PaymentValidation:
    is_valid: bool
    order_id: Optional[str] = None
    payment_status: Optional[str] = None
    amount: Decimal = Decimal("0")
    error: Optional[str] = None


def split_customer_name(full_name: str):
    """'Thabo van der Merwe' -> ('Thabo', 'van der Merwe'); 'Thabo' -> ('Thabo', 'Thabo')."""
    first, *rest = (full_name or "").split(" ")
    last = " ".join(rest) or first
    return first, last


def format_amount(amount) -> str:
    return str(Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _parse_amount(raw: Optional[str]) -> Decimal:
    try:
        value = Decimal(str(raw or "0").strip())
    except InvalidOperation:
        return Decimal("0")
    return value if value.is_finite() else Decimal("0")


def delta_reference(original_order_id: str, now_ms: Optional[int] = None) -> str:
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"{original_order_id}{DELTA_MARKER}{now_ms}"


def split_reference(reference: str):
    """Return (actual order id, is delta payment)."""
    if DELTA_MARKER in reference:
        return reference.split(DELTA_MARKER)[0], True
    return reference, False


class PayFastService:
    """Builds signed payment payloads and checks gateway notifications.

    Holds nothing but the credentials it was constructed with.
    """

    def __init__(self, settings: PayFastConfig):
        self.settings = settings

    def sign(self, fields: Dict[str, str]) -> str:
        return generate_signature(fields, self.settings.passphrase or None)

    def create_payment(
        self,
        order_id: str,
        amount,
        customer_email: str,
        customer_name: str,
        item_name: str,
        return_url: str,
        cancel_url: str,
        notify_url: str,
        item_description: str = "",
    ) -> Dict[str, str]:
        first_name, last_name = split_customer_name(customer_name)

        payment_data = {
            "merchant_id": self.settings.merchant_id,
            "merchant_key": self.settings.merchant_key,
            "return_url": return_url,
            "cancel_url": cancel_url,
            "notify_url": notify_url,
            "name_first": first_name,
            "name_last": last_name,
            "email_address": customer_email,
            "m_payment_id": order_id,
            "amount": format_amount(amount),
            "item_name": item_name,
            "item_description": item_description or "",
            "custom_str1": order_id,
            "custom_str2": config.APP_IDENTIFIER,
            "custom_str3": "",
        }

        # the gateway rejects empty fields
        cleaned = {k: v for k, v in payment_data.items() if v not in ("", None)}
        cleaned[SIGNATURE_FIELD] = self.sign(cleaned)
        return cleaned

    def get_payment_url(self) -> str:
        return SANDBOX_URL if self.settings.sandbox else PRODUCTION_URL

    def create_payment_link(self, **params) -> str:
        payment = self.create_payment(**params)
        return f"{self.get_payment_url()}?{urlencode(payment)}"

    def create_delta_payment(
        self,
        original_order_id: str,
        delta_amount,
        customer_email: str,
        customer_name: str,
        return_url: str,
        cancel_url: str,
        notify_url: str,
        now_ms: Optional[int] = None,
    ) -> Dict[str, str]:
        """Payload for a weight-adjustment charge on an already placed order."""
        return self.create_payment(
            order_id=delta_reference(original_order_id, now_ms),
            amount=abs(Decimal(str(delta_amount))),
            customer_email=customer_email,
            customer_name=customer_name,
            item_name=f"Weight Adjustment - Order #{original_order_id}",
            item_description="Additional charge for final weight difference",
            return_url=return_url,
            cancel_url=cancel_url,
            notify_url=notify_url,
        )

    def validate_signature(self, fields: Dict[str, str]) -> bool:
        received = fields.get(SIGNATURE_FIELD)
        if not received:
            return False
        return hmac.compare_digest(str(received).encode("utf-8"), self.sign(fields).encode("utf-8"))

    def validate_payment(self, fields: Dict[str, str]) -> PaymentValidation:
        try:
            if not self.validate_signature(fields):
                return PaymentValidation(is_valid=False, error="Invalid signature")

            if fields.get("merchant_id") != self.settings.merchant_id:
                return PaymentValidation(is_valid=False, error="Invalid merchant ID")

            return PaymentValidation(
                is_valid=True,
                order_id=fields.get("m_payment_id") or fields.get("custom_str1"),
                payment_status=fields.get("payment_status"),
                amount=_parse_amount(fields.get("amount_gross")),
            )
        except Exception:
            logger.exception("PayFast notification validation failed")
            return PaymentValidation(is_valid=False, error="Validation error")
