from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from sella.db import get_db
from sella.deps import get_current_customer_id
from sella.models.order import Order
from sella.schemas import CreateOrderRequest
from sella.services.orders import OrderPersistenceError, OrderValidationError, create_order, reorder_template
from sella.services.weights import pending_settlement
from sella.telegram.telegram_notify import notifier

router = APIRouter(prefix="/api/orders", tags=["orders"])


def serialize_order(order: Order) -> dict:
    settlement = pending_settlement(order)
    weight_items = order.weight_items()
    return {
        "id": order.id,
        "status": order.status,
        "payment_status": order.payment_status,
        "payment_method": order.payment_method,
        "subtotal": float(order.subtotal),
        "delivery_fee": float(order.delivery_fee),
        "tax_total": float(order.tax_total),
        "discount_total": float(order.discount_total),
        "grand_total_est": float(order.grand_total_est),
        "grand_total_final": float(order.grand_total_final) if order.grand_total_final is not None else None,
        "reward_points_used": order.reward_points_used,
        "delivery_window_start": order.delivery_window_start.isoformat() if order.delivery_window_start else None,
        "delivery_window_end": order.delivery_window_end.isoformat() if order.delivery_window_end else None,
        "created_at": order.created_at.strftime("%Y-%m-%d %H:%M"),
        "weights_finalized": sum(1 for x in weight_items if x.final_weight_g is not None),
        "weight_items": len(weight_items),
        "settlement": settlement.as_dict() if settlement else None,
        "items": [
            {
                "id": it.id,
                "product_id": it.product_id,
                "name": it.name_snapshot,
                "is_weight_based": it.is_weight_based,
                "quantity": it.quantity,
                "est_weight_g": it.est_weight_g,
                "final_weight_g": it.final_weight_g,
                "unit_price": float(it.unit_price) if it.unit_price is not None else None,
                "price_per_kg": float(it.price_per_kg) if it.price_per_kg is not None else None,
                "line_total_est": float(it.line_total_est),
                "line_total_final": float(it.line_total_final) if it.line_total_final is not None else None,
            }
            for it in order.items
        ],
    }


# ----------------------- CREATE -----------------------
@router.post("/create")
def create_order_endpoint(
    payload: CreateOrderRequest,
    background_tasks: BackgroundTasks,
    customer_id: int = Depends(get_current_customer_id),
    db: Session = Depends(get_db),
):
    try:
        order = create_order(db, customer_id, payload)
    except OrderValidationError as e:
        return JSONResponse({"error": e.message, "details": e.details}, status_code=400)
    except OrderPersistenceError as e:
        return JSONResponse({"error": str(e)}, status_code=500)

    items = [
        {"name": it.name_snapshot, "qty": it.quantity, "weight_g": it.est_weight_g,
         "total": float(it.line_total_est)}
        for it in order.items
    ]
    background_tasks.add_task(
        notifier.notify_order_created,
        order_id=order.id,
        total=float(order.grand_total_est),
        payment_method=order.payment_method,
        items=items,
        notes=order.notes,
    )

    return {"success": True, "orderId": order.id, "message": "Order created successfully"}


# ----------------------- STATUS -----------------------
@router.get("/{order_id}")
def order_status(
    order_id: str,
    customer_id: int = Depends(get_current_customer_id),
    db: Session = Depends(get_db),
):
    order = db.get(Order, order_id)
    if not order or order.customer_id != customer_id:
        raise HTTPException(status_code=404, detail="Order not found")
    return serialize_order(order)


# ----------------------- REORDER -----------------------
@router.get("/{order_id}/reorder")
def reorder(
    order_id: str,
    customer_id: int = Depends(get_current_customer_id),
    db: Session = Depends(get_db),
):
    order = db.get(Order, order_id)
    if not order or order.customer_id != customer_id:
        raise HTTPException(status_code=404, detail="Order not found")
    return reorder_template(db, order)
