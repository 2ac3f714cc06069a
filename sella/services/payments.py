import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from sella import config
from sella.models.order import Order
from sella.models.payment import Payment
from sella.models.user import Customer
from sella.payments.payfast import PROVIDER, PayFastService
from sella.services.weights import SETTLE_CHARGE, pending_settlement
from sella.utils.enums import PaymentMethod, PaymentStatus

logger = logging.getLogger(__name__)


class PaymentRequestError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _urls(order_id: str, return_url: Optional[str], cancel_url: Optional[str]) -> dict:
    base = config.APP_URL
    return {
        "return_url": return_url or f"{base}/customer/orders/{order_id}/payment/success",
        "cancel_url": cancel_url or f"{base}/customer/orders/{order_id}/payment/cancelled",
        "notify_url": f"{base}/api/payments/payfast/notify",
    }


def _payer(customer: Optional[Customer]):
    if customer is None:
        return "", "Customer"
    return customer.email, (customer.full_name or "").strip() or "Customer"


def _merchant_name(order: Order) -> str:
    outlet = order.outlet
    if outlet is not None and outlet.merchant is not None:
        return outlet.merchant.name
    return config.APP_NAME


def start_payment(
    db: Session,
    payfast: PayFastService,
    order: Order,
    return_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
) -> dict:
    """Signed form for the order's primary payment, plus its PENDING payments row."""
    if order.payment_method != PaymentMethod.PAYFAST.value:
        raise PaymentRequestError("Order is not payable through PayFast")
    if order.payment_status != PaymentStatus.PENDING.value:
        raise PaymentRequestError("Order payment already processed")

    amount = Decimal(str(order.amount_due))
    email, name = _payer(db.get(Customer, order.customer_id))

    payment_data = payfast.create_payment(
        order_id=order.id,
        amount=amount,
        customer_email=email,
        customer_name=name,
        item_name=f"Order from {_merchant_name(order)}",
        item_description=f"Order #{order.id[-8:]}",
        **_urls(order.id, return_url, cancel_url),
    )

    # one primary payments row per order; a retried checkout reuses it
    payment = (
        db.query(Payment)
        .filter(Payment.provider == PROVIDER, Payment.reference == order.id)
        .first()
    )
    if payment is None:
        db.add(Payment(
            order_id=order.id,
            provider=PROVIDER,
            reference=order.id,
            is_delta=False,
            amount=amount,
            currency=config.CURRENCY,
            status=PaymentStatus.PENDING.value,
        ))
    elif payment.status == PaymentStatus.PENDING.value:
        payment.amount = amount
    db.commit()

    return {
        "paymentUrl": payfast.get_payment_url(),
        "paymentData": payment_data,
        "amount": float(amount),
        "orderId": order.id,
    }


def start_delta_payment(
    db: Session,
    payfast: PayFastService,
    order: Order,
    return_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
) -> dict:
    """Signed form charging the difference of a weighed order over its estimate."""
    settlement = pending_settlement(order)
    if settlement is None:
        raise PaymentRequestError("Order weights are not finalized yet")
    if settlement.action != SETTLE_CHARGE:
        raise PaymentRequestError("No additional charge is due for this order")

    paid = (
        db.query(Payment.id)
        .filter(Payment.order_id == order.id, Payment.is_delta.is_(True),
                Payment.status == PaymentStatus.PAID.value)
        .first()
    )
    if paid:
        raise PaymentRequestError("Weight adjustment already paid")

    email, name = _payer(db.get(Customer, order.customer_id))
    payment_data = payfast.create_delta_payment(
        original_order_id=order.id,
        delta_amount=settlement.amount,
        customer_email=email,
        customer_name=name,
        **_urls(order.id, return_url, cancel_url),
    )

    db.add(Payment(
        order_id=order.id,
        provider=PROVIDER,
        reference=payment_data["m_payment_id"],
        is_delta=True,
        amount=settlement.amount,
        currency=config.CURRENCY,
        status=PaymentStatus.PENDING.value,
    ))
    db.commit()
    logger.info("Delta payment %s of %s created", payment_data["m_payment_id"], settlement.amount)

    return {
        "paymentUrl": payfast.get_payment_url(),
        "paymentData": payment_data,
        "amount": float(settlement.amount),
        "orderId": order.id,
    }
