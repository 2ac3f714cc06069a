"""Order placement.

Totals are recomputed from catalog prices; the client's figures are only
accepted when they agree to within a cent. The order row and its items are
two writes, so a failed item write deletes the order again.
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sella import config
from sella.models.catalog import MerchantOutlet, Product
from sella.models.order import Order, OrderItem
from sella.schemas import CreateOrderRequest
from sella.services.audit import add_audit
from sella.services.rewards import get_or_create_wallet, redeem_points
from sella.utils.enums import OrderStatus, PaymentStatus, UserRole

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
LINE_PRECISION = Decimal("0.0001")
TOTALS_TOLERANCE = Decimal("0.01")


class OrderValidationError(Exception):
    def __init__(self, message: str, details: Optional[List[dict]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or []


class OrderPersistenceError(Exception):
    pass


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def line_amount(value) -> Decimal:
    return Decimal(str(value)).quantize(LINE_PRECISION, rounding=ROUND_HALF_UP)


def vat_for(subtotal) -> Decimal:
    return money(Decimal(str(subtotal)) * config.VAT_RATE)


def grand_total(subtotal, tax_total, delivery_fee, discount_total) -> Decimal:
    return money(
        Decimal(str(subtotal)) + Decimal(str(tax_total))
        + Decimal(str(delivery_fee)) - Decimal(str(discount_total))
    )


def resolve_delivery_window(window: str, now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """'HH:MM - HH:MM' -> (start, end) today, or tomorrow if the start has passed."""
    now = now or datetime.now()
    parts = (window or "").split(" - ")
    if len(parts) != 2:
        raise OrderValidationError(
            "Invalid delivery window",
            [{"field": "delivery_window", "message": "Expected 'HH:MM - HH:MM'"}],
        )
    try:
        start_t, end_t = (datetime.strptime(p.strip(), "%H:%M").time() for p in parts)
    except ValueError:
        raise OrderValidationError(
            "Invalid delivery window",
            [{"field": "delivery_window", "message": "Expected 'HH:MM - HH:MM'"}],
        )

    start = datetime.combine(now.date(), start_t)
    end = datetime.combine(now.date(), end_t)
    if end <= start:
        raise OrderValidationError(
            "Invalid delivery window",
            [{"field": "delivery_window", "message": "Window must end after it starts"}],
        )

    if start < now:
        start += timedelta(days=1)
        end += timedelta(days=1)
    return start, end


def _load_products(db: Session, data: CreateOrderRequest) -> Dict[int, Product]:
    ids = {item.product_id for item in data.items}
    products = (
        db.query(Product)
        .filter(Product.id.in_(ids), Product.is_active.is_(True))
        .all()
    )
    by_id = {p.id: p for p in products}

    problems = [
        {"field": f"items[{idx}].product_id", "message": "Unknown or inactive product"}
        for idx, item in enumerate(data.items)
        if item.product_id not in by_id
    ]
    if problems:
        raise OrderValidationError("Invalid products", problems)

    merchant_ids = {p.merchant_id for p in products}
    if len(merchant_ids) > 1:
        raise OrderValidationError(
            "Items must be from the same merchant",
            [{"field": "items", "message": "Items must be from the same merchant"}],
        )
    return by_id


def _price_lines(data: CreateOrderRequest, products: Dict[int, Product]) -> List[dict]:
    lines: List[dict] = []
    problems = []
    for idx, item in enumerate(data.items):
        p = products[item.product_id]
        qty = int(item.quantity)

        if p.is_weight_based:
            if not item.estimated_weight_g or p.price_per_kg is None:
                problems.append({"field": f"items[{idx}].estimated_weight_g",
                                 "message": "Weight-based items need an estimated weight"})
                continue
            est_weight_g = int(item.estimated_weight_g) * qty
            price_per_kg = Decimal(str(p.price_per_kg))
            total = line_amount(Decimal(est_weight_g) / 1000 * price_per_kg)
            lines.append({
                "product_id": p.id,
                "name_snapshot": item.name or p.name,
                "is_weight_based": True,
                "quantity": qty,
                "est_weight_g": est_weight_g,
                "price_per_kg": price_per_kg,
                "unit_price": None,
                "line_total_est": total,
            })
        else:
            if p.unit_price is None:
                problems.append({"field": f"items[{idx}].product_id",
                                 "message": "Product has no unit price"})
                continue
            unit_price = Decimal(str(p.unit_price))
            lines.append({
                "product_id": p.id,
                "name_snapshot": item.name or p.name,
                "is_weight_based": False,
                "quantity": qty,
                "est_weight_g": None,
                "price_per_kg": None,
                "unit_price": unit_price,
                "line_total_est": line_amount(unit_price * qty),
            })

    if problems:
        raise OrderValidationError("Invalid items", problems)
    return lines


def points_discount(points: int) -> Decimal:
    """Rand value of redeemed reward points (1 point = R0.01)."""
    return money(Decimal(points) / 100)


def _check_client_totals(data: CreateOrderRequest, subtotal: Decimal, tax: Decimal,
                         discount: Decimal, total: Decimal) -> None:
    expected = {
        "subtotal": subtotal,
        "tax_total": tax,
        "discount_total": discount,
        "grand_total_est": total,
    }
    problems = []
    for field, value in expected.items():
        sent = Decimal(str(getattr(data, field)))
        if abs(sent - value) > TOTALS_TOLERANCE:
            problems.append({"field": field, "message": f"Expected {value}, got {sent}"})
    if problems:
        raise OrderValidationError("Order totals do not match", problems)


def _persist_items(db: Session, order: Order, lines: List[dict]) -> None:
    for line in lines:
        db.add(OrderItem(order_id=order.id, **line))
    db.commit()


def _delete_order(db: Session, order_id: str) -> None:
    try:
        db.query(Order).filter(Order.id == order_id).delete(synchronize_session=False)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Compensating delete failed for order %s", order_id)


def _redeem_best_effort(db: Session, customer_id: int, order: Order, points: int) -> bool:
    """Debit the wallet for the order's discount. False if no points were taken."""
    try:
        wallet = get_or_create_wallet(db, customer_id)
        result = redeem_points(db, wallet.id, order.id, points)
        if not result.success:
            logger.warning("Reward redemption for order %s refused: %s", order.id, result.error)
            return False
        order.reward_points_used = points
        db.commit()
        return True
    except Exception:
        db.rollback()
        logger.exception("Reward redemption error for order %s", order.id)
        return False


def _drop_discount(db: Session, order: Order) -> None:
    # the points were not debited, so the order pays full price
    order.discount_total = Decimal("0.00")
    order.reward_points_used = 0
    order.grand_total_est = grand_total(order.subtotal, order.tax_total, order.delivery_fee, 0)
    db.commit()


def reorder_template(db: Session, order: Order) -> dict:
    """Cart lines for ordering the same items again, at today's catalog prices.

    Products that were delisted since are left out and reported by name.
    """
    ids = {it.product_id for it in order.items}
    products = {
        p.id: p
        for p in db.query(Product).filter(Product.id.in_(ids), Product.is_active.is_(True)).all()
    }

    items, unavailable = [], []
    for it in order.items:
        p = products.get(it.product_id)
        if p is None:
            unavailable.append(it.name_snapshot)
            continue
        qty = it.quantity or 1
        if p.is_weight_based:
            if p.price_per_kg is None or not it.est_weight_g:
                unavailable.append(it.name_snapshot)
                continue
            per_unit_g = it.est_weight_g // qty
            price_per_kg = Decimal(str(p.price_per_kg))
            total = line_amount(Decimal(per_unit_g * qty) / 1000 * price_per_kg)
            items.append({
                "product_id": p.id,
                "name": p.name,
                "is_weight_based": True,
                "estimated_weight_g": per_unit_g,
                "quantity": qty,
                "unit_price": None,
                "price_per_kg": float(price_per_kg),
                "estimated_total": float(total),
            })
        else:
            if p.unit_price is None:
                unavailable.append(it.name_snapshot)
                continue
            unit_price = Decimal(str(p.unit_price))
            items.append({
                "product_id": p.id,
                "name": p.name,
                "is_weight_based": False,
                "estimated_weight_g": None,
                "quantity": qty,
                "unit_price": float(unit_price),
                "price_per_kg": None,
                "estimated_total": float(line_amount(unit_price * qty)),
            })

    return {
        "success": True,
        "orderId": order.id,
        "outlet_id": order.outlet_id,
        "items": items,
        "unavailable": unavailable,
    }


def create_order(db: Session, customer_id: int, data: CreateOrderRequest, now: Optional[datetime] = None) -> Order:
    products = _load_products(db, data)
    merchant_id = next(iter(products.values())).merchant_id

    outlet = (
        db.query(MerchantOutlet)
        .filter(MerchantOutlet.merchant_id == merchant_id)
        .order_by(MerchantOutlet.id)
        .first()
    )
    if not outlet:
        raise OrderValidationError(
            "Merchant outlet not found",
            [{"field": "items", "message": "Merchant has no outlet"}],
        )

    window_start, window_end = resolve_delivery_window(data.delivery_window, now)

    lines = _price_lines(data, products)
    subtotal = money(sum((line["line_total_est"] for line in lines), Decimal("0")))
    tax = vat_for(subtotal)
    delivery_fee = money(data.delivery_fee)
    # the only discount is redeemed reward points
    discount = points_discount(data.reward_points_used)
    total = grand_total(subtotal, tax, delivery_fee, discount)
    if total < 0:
        raise OrderValidationError(
            "Discount exceeds order total",
            [{"field": "reward_points_used", "message": "Discount exceeds order total"}],
        )
    _check_client_totals(data, subtotal, tax, discount, total)

    order = Order(
        customer_id=customer_id,
        outlet_id=outlet.id,
        status=OrderStatus.PLACED.value,
        payment_status=PaymentStatus.PENDING.value,
        payment_method=data.payment_method.value,
        subtotal=subtotal,
        tax_total=tax,
        delivery_fee=delivery_fee,
        discount_total=discount,
        grand_total_est=total,
        delivery_window_start=window_start,
        delivery_window_end=window_end,
        delivery_address_id=data.delivery_address_id,
        notes=(data.notes or "").strip() or None,
    )
    try:
        db.add(order)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Order creation error")
        raise OrderPersistenceError("Failed to create order")
    order_id = order.id

    try:
        _persist_items(db, order, lines)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Order items creation error for order %s", order_id)
        _delete_order(db, order_id)
        raise OrderPersistenceError("Failed to create order items")

    if data.reward_points_used > 0:
        if not _redeem_best_effort(db, customer_id, order, data.reward_points_used):
            try:
                _drop_discount(db, order)
            except SQLAlchemyError:
                db.rollback()
                logger.exception("Could not remove unpaid discount from order %s", order_id)
                _delete_order(db, order_id)
                raise OrderPersistenceError("Failed to update order totals")
            total = Decimal(str(order.grand_total_est))

    try:
        add_audit(
            db, "orders", order_id, "create",
            diff={
                "payment_method": order.payment_method,
                "total": float(total),
                "items_count": len(lines),
                "points_redeemed": order.reward_points_used,
            },
            actor_id=customer_id,
            actor_role=UserRole.CUSTOMER.value,
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Audit log write failed for order %s", order_id)

    db.refresh(order)
    logger.info("Order %s created: %s items, total %s", order_id, len(lines), total)
    return order
