"""Final weighing of weight-based order lines.

A line is weighed once: the write is conditional on ``final_weight_g`` still
being NULL, so two concurrent requests cannot both succeed. When the last
weight-based line of an order is weighed the order gets its final total and
a settlement (extra charge, refund or nothing) against the estimate.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sella.models.order import Order, OrderItem
from sella.services.audit import add_audit
from sella.services.orders import grand_total, line_amount, money, vat_for

logger = logging.getLogger(__name__)

DEVIATION_THRESHOLD = Decimal("0.10")

SETTLE_CHARGE = "charge"
SETTLE_REFUND = "refund"
SETTLE_NONE = "none"


@dataclass
class Settlement:
    action: str                  # charge | refund | none
    amount: Decimal = Decimal("0")

    @classmethod
    def from_totals(cls, estimated, final) -> "Settlement":
        diff = money(Decimal(str(final)) - Decimal(str(estimated)))
        if diff > 0:
            return cls(SETTLE_CHARGE, diff)
        if diff < 0:
            return cls(SETTLE_REFUND, -diff)
        return cls(SETTLE_NONE)

    def as_dict(self) -> dict:
        return {"action": self.action, "amount": float(self.amount)}


@dataclass
class FinalizeResult:
    success: bool
    new_line_total: Optional[Decimal] = None
    line_delta: Optional[Decimal] = None
    significant_deviation: bool = False
    order_finalized: bool = False
    grand_total_final: Optional[Decimal] = None
    settlement: Optional[Settlement] = None
    error: Optional[str] = None
    already_finalized: bool = False

    def as_dict(self) -> dict:
        if not self.success:
            return {"success": False, "error": self.error}
        data = {
            "success": True,
            "newLineTotal": float(self.new_line_total),
            "lineDelta": float(self.line_delta),
            "significantDeviation": self.significant_deviation,
            "orderFinalized": self.order_finalized,
        }
        if self.order_finalized:
            data["grandTotalFinal"] = float(self.grand_total_final)
            data["settlement"] = self.settlement.as_dict()
        return data


def is_significant_deviation(est_weight_g: Optional[int], final_weight_g: int) -> bool:
    if not est_weight_g:
        return False
    return abs(final_weight_g - est_weight_g) > DEVIATION_THRESHOLD * est_weight_g


def weighed_line_total(final_weight_g: int, price_per_kg) -> Decimal:
    return line_amount(Decimal(final_weight_g) / 1000 * Decimal(str(price_per_kg)))


def recalc_order_totals(db: Session, order_id: str) -> Optional[Decimal]:
    """Set grand_total_final once every weight-based line is weighed.

    Returns the final total, or None while the order is still estimate-priced.
    """
    # row lock serializes the last lines of one order; the items are read
    # after it, so a line weighed by a transaction that just committed is seen
    order = (
        db.query(Order)
        .filter(Order.id == order_id)
        .with_for_update()
        .populate_existing()
        .one_or_none()
    )
    if order is None:
        return None
    if order.grand_total_final is not None:
        return Decimal(str(order.grand_total_final))

    items = (
        db.query(OrderItem)
        .filter(OrderItem.order_id == order_id)
        .populate_existing()
        .all()
    )
    if any(x.is_weight_based and x.final_weight_g is None for x in items):
        return None

    subtotal = money(sum((x.line_total for x in items), Decimal("0")))
    final_total = grand_total(subtotal, vat_for(subtotal), order.delivery_fee, order.discount_total)

    stmt = (
        update(Order)
        .where(Order.id == order_id, Order.grand_total_final.is_(None))
        .values(grand_total_final=final_total)
        .execution_options(synchronize_session=False)
    )
    db.execute(stmt)
    db.flush()
    db.refresh(order)
    return Decimal(str(order.grand_total_final))


def finalize_weight(db: Session, order_item_id: int, final_weight_g: int, actor_id=None) -> FinalizeResult:
    if final_weight_g is None or final_weight_g <= 0:
        return FinalizeResult(success=False, error="Final weight must be greater than zero")

    item = db.get(OrderItem, order_item_id)
    if item is None:
        return FinalizeResult(success=False, error="Order item not found")
    if not item.is_weight_based or item.price_per_kg is None:
        return FinalizeResult(success=False, error="Order item is not weight-based")
    if item.final_weight_g is not None:
        return FinalizeResult(success=False, error="Item weight already finalized", already_finalized=True)

    new_total = weighed_line_total(final_weight_g, item.price_per_kg)
    order_id = item.order_id
    est_total = Decimal(str(item.line_total_est))
    est_weight_g = item.est_weight_g

    try:
        stmt = (
            update(OrderItem)
            .where(OrderItem.id == order_item_id, OrderItem.final_weight_g.is_(None))
            .values(final_weight_g=final_weight_g, line_total_final=new_total)
            .execution_options(synchronize_session=False)
        )
        if db.execute(stmt).rowcount != 1:
            db.rollback()
            return FinalizeResult(success=False, error="Item weight already finalized", already_finalized=True)
        db.refresh(item)

        final_total = recalc_order_totals(db, order_id)
        settlement = None
        if final_total is not None:
            order = db.get(Order, order_id)
            settlement = Settlement.from_totals(order.grand_total_est, final_total)
            if settlement.action == SETTLE_REFUND:
                add_audit(db, "orders", order_id, "weight_refund_due",
                          diff={"amount": float(settlement.amount),
                                "grand_total_est": float(order.grand_total_est),
                                "grand_total_final": float(final_total)},
                          actor_id=actor_id, actor_role="merchant_admin")

        add_audit(db, "order_items", order_item_id, "finalize_weight",
                  diff={"order_id": order_id,
                        "est_weight_g": est_weight_g,
                        "final_weight_g": final_weight_g,
                        "line_total_final": float(new_total)},
                  actor_id=actor_id, actor_role="merchant_admin")
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Weight finalization failed for item %s", order_item_id)
        return FinalizeResult(success=False, error="Failed to finalize weight")

    logger.info("Item %s weighed at %sg, line total %s", order_item_id, final_weight_g, new_total)
    return FinalizeResult(
        success=True,
        new_line_total=new_total,
        line_delta=new_total - est_total,
        significant_deviation=is_significant_deviation(est_weight_g, final_weight_g),
        order_finalized=final_total is not None,
        grand_total_final=final_total,
        settlement=settlement,
    )


def pending_settlement(order: Order) -> Optional[Settlement]:
    """Settlement for a fully weighed order, None while still estimate-priced."""
    if order.grand_total_final is None:
        return None
    return Settlement.from_totals(order.grand_total_est, order.grand_total_final)
