"""PayFast notification handling.

A notification is applied with conditional updates only: rows already in the
target state are left alone, a PAID payment or order is never moved back, and
the delivery row and reward accrual are created only if missing. Replaying
the same notification therefore changes nothing.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import case, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sella.models.order import Order
from sella.models.payment import Delivery, Payment
from sella.payments.payfast import (
    PROVIDER, STATUS_CANCELLED, STATUS_COMPLETE, STATUS_FAILED, PayFastService, split_reference,
)
from sella.services.audit import add_audit
from sella.services.rewards import accrue_for_order
from sella.utils.enums import DeliveryStatus, OrderStatus, PaymentStatus

logger = logging.getLogger(__name__)


@dataclass
class NotificationOutcome:
    status_code: int
    body: dict
    order_id: Optional[str] = None
    confirmed: bool = False            # primary payment newly marked PAID
    amount: float = 0.0
    effects: Dict[str, bool] = field(default_factory=dict)


def map_gateway_status(gateway_status: Optional[str], current_order_status: str):
    """Gateway payment_status -> (payment status, order status)."""
    if gateway_status == STATUS_COMPLETE:
        new_order_status = current_order_status
        if current_order_status == OrderStatus.PLACED.value:
            new_order_status = OrderStatus.PREPARING.value
        return PaymentStatus.PAID.value, new_order_status
    if gateway_status in (STATUS_FAILED, STATUS_CANCELLED):
        return PaymentStatus.FAILED.value, current_order_status
    return PaymentStatus.PENDING.value, current_order_status


def _update_payment(db: Session, order_id: str, reference: str, new_status: str,
                    provider_ref: Optional[str], now: datetime) -> bool:
    values = {"status": new_status, "updated_at": now}
    if provider_ref:
        values["provider_ref"] = provider_ref
    if new_status == PaymentStatus.PAID.value:
        values["captured_at"] = now

    stmt = (
        update(Payment)
        .where(
            Payment.order_id == order_id,
            Payment.provider == PROVIDER,
            Payment.reference == reference,
            Payment.status != new_status,
            Payment.status != PaymentStatus.PAID.value,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return db.execute(stmt).rowcount > 0


def _update_order(db: Session, order_id: str, new_payment_status: str, now: datetime) -> bool:
    values = {"payment_status": new_payment_status, "updated_at": now}
    if new_payment_status == PaymentStatus.PAID.value:
        # advance PLACED -> PREPARING, never touch a further-advanced status
        values["status"] = case(
            (Order.status == OrderStatus.PLACED.value, OrderStatus.PREPARING.value),
            else_=Order.status,
        )
        values["status_changed_at"] = case(
            (Order.status == OrderStatus.PLACED.value, now),
            else_=Order.status_changed_at,
        )

    stmt = (
        update(Order)
        .where(
            Order.id == order_id,
            Order.payment_status != new_payment_status,
            Order.payment_status != PaymentStatus.PAID.value,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return db.execute(stmt).rowcount > 0


def ensure_delivery(db: Session, order_id: str) -> bool:
    """Create the ASSIGNED delivery row unless the order already has one."""
    exists = db.query(Delivery.id).filter(Delivery.order_id == order_id).first()
    if exists:
        return False
    db.add(Delivery(order_id=order_id, status=DeliveryStatus.ASSIGNED.value))
    db.flush()
    return True


def process_notification(db: Session, payfast: PayFastService, fields: Dict[str, str],
                         now: Optional[datetime] = None) -> NotificationOutcome:
    validation = payfast.validate_payment(fields)
    if not validation.is_valid:
        logger.warning("Invalid PayFast notification: %s", validation.error)
        return NotificationOutcome(400, {"error": "Invalid notification"})

    if not validation.order_id:
        logger.warning("PayFast notification without order id")
        return NotificationOutcome(400, {"error": "No order ID"})

    reference = validation.order_id
    order_id, is_delta = split_reference(reference)

    order = db.get(Order, order_id)
    if order is None:
        logger.warning("PayFast notification for unknown order %s", order_id)
        return NotificationOutcome(404, {"error": "Order not found"})

    now = now or datetime.utcnow()
    current_status = order.status
    new_payment_status, new_order_status = map_gateway_status(validation.payment_status, current_status)
    if is_delta:
        # delta payments never move the order itself
        new_order_status = current_status
    provider_ref = fields.get("pf_payment_id")
    order_total = order.amount_due

    # money for a cancelled order is recorded, but nothing is dispatched or earned
    cancelled = current_status == OrderStatus.CANCELLED.value
    if cancelled and new_payment_status == PaymentStatus.PAID.value:
        logger.warning("Payment received for cancelled order %s, refund required", order_id)

    effects = {"payment_updated": False, "order_updated": False,
               "delivery_created": False, "points_awarded": False}
    failed = False
    try:
        effects["payment_updated"] = _update_payment(db, order_id, reference, new_payment_status, provider_ref, now)
        if not is_delta:
            effects["order_updated"] = _update_order(db, order_id, new_payment_status, now)
            if new_payment_status == PaymentStatus.PAID.value and not cancelled:
                effects["delivery_created"] = ensure_delivery(db, order_id)
                effects["points_awarded"] = accrue_for_order(db, order_id, order_total, commit=False) > 0
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        failed = True
        effects = {k: False for k in effects}
        logger.exception("Failed to apply PayFast notification for order %s", order_id)

    # logged regardless of how the state update went
    try:
        add_audit(
            db, "payments", order_id, "payfast_notification",
            diff={
                "payment_status": new_payment_status,
                "payfast_status": validation.payment_status,
                "order_status": new_order_status,
                "amount": float(validation.amount),
                "is_delta_payment": is_delta,
                "order_cancelled": cancelled,
                "pf_payment_id": provider_ref,
                "applied": not failed,
            },
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to write audit log for order %s", order_id)

    if failed:
        # acknowledged anyway so the gateway does not start a retry storm
        return NotificationOutcome(200, {"success": False, "error": "Failed to update order"}, order_id=order_id)

    logger.info(
        "PayFast notification for %s applied: status=%s delta=%s %s",
        reference, new_payment_status, is_delta, effects,
    )
    confirmed = effects["order_updated"] and new_payment_status == PaymentStatus.PAID.value
    return NotificationOutcome(
        200, {"success": True},
        order_id=order_id,
        confirmed=confirmed,
        amount=float(validation.amount),
        effects=effects,
    )
