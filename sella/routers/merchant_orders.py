from datetime import datetime
from typing import Dict, List, Optional, Set

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy import update
from sqlalchemy.orm import Session

from sella.db import get_db
from sella.deps import require_merchant
from sella.models.order import Order
from sella.routers.orders import serialize_order
from sella.schemas import FinalizeWeightRequest, StatusChangeRequest
from sella.services.audit import add_audit
from sella.services.weights import finalize_weight
from sella.telegram.telegram_notify import notifier
from sella.utils.enums import OrderStatus

router = APIRouter(prefix="/api/merchant", tags=["merchant-orders"])

# --------- ALLOWED TRANSITIONS ----------
VALID_NEXT: Dict[str, Set[str]] = {
    OrderStatus.PLACED.value: {OrderStatus.PREPARING.value, OrderStatus.CANCELLED.value},
    OrderStatus.PREPARING.value: {OrderStatus.READY.value, OrderStatus.CANCELLED.value},
    OrderStatus.READY.value: {OrderStatus.OUT_FOR_DELIVERY.value, OrderStatus.CANCELLED.value},
    OrderStatus.OUT_FOR_DELIVERY.value: {OrderStatus.DELIVERED.value, OrderStatus.CANCELLED.value},
    OrderStatus.DELIVERED.value: set(),
    OrderStatus.CANCELLED.value: set(),
}

STATUS_LABELS = {
    OrderStatus.PLACED.value: "New Order",
    OrderStatus.PREPARING.value: "Preparing",
    OrderStatus.READY.value: "Ready",
    OrderStatus.OUT_FOR_DELIVERY.value: "Out for Delivery",
    OrderStatus.DELIVERED.value: "Delivered",
    OrderStatus.CANCELLED.value: "Cancelled",
}


# --------- LIVE QUEUE ----------
@router.get("/orders/live")
def live_orders(
    status: str = Query("all"),
    outlet_id: Optional[int] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    _merchant: str = Depends(require_merchant),
    db: Session = Depends(get_db),
) -> List[dict]:
    q = db.query(Order).order_by(Order.created_at.desc())
    if status != "all":
        q = q.filter(Order.status == status)
    if outlet_id is not None:
        q = q.filter(Order.outlet_id == outlet_id)
    rows = q.limit(limit).all()
    return [
        {
            "id": r.id,
            "created_at": r.created_at.strftime("%Y-%m-%d %H:%M"),
            "status": r.status,
            "status_label": STATUS_LABELS.get(r.status, r.status),
            "payment_status": r.payment_status,
            "payment_method": r.payment_method,
            "grand_total_est": float(r.grand_total_est),
            "grand_total_final": float(r.grand_total_final) if r.grand_total_final is not None else None,
            "items_count": len(r.items),
            "notes": r.notes,
        }
        for r in rows
    ]


# ---------- ORDER DETAIL ----------
@router.get("/orders/{order_id}")
def order_detail(
    order_id: str,
    _merchant: str = Depends(require_merchant),
    db: Session = Depends(get_db),
):
    order = db.get(Order, order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return serialize_order(order)


# ---------- STATUS CHANGE ----------
@router.post("/orders/{order_id}/status")
def change_status(
    order_id: str,
    payload: StatusChangeRequest,
    background_tasks: BackgroundTasks,
    merchant_user: str = Depends(require_merchant),
    db: Session = Depends(get_db),
):
    order = db.get(Order, order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")

    cur = order.status
    new_status = payload.new_status.value
    if new_status == cur:
        return {"success": True, "status": cur}
    if new_status not in VALID_NEXT.get(cur, set()):
        raise HTTPException(status_code=400, detail="Invalid status transition")

    now = datetime.utcnow()
    stmt = (
        update(Order)
        .where(Order.id == order_id, Order.status == cur)
        .values(status=new_status, status_changed_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if db.execute(stmt).rowcount != 1:
        db.rollback()
        raise HTTPException(status_code=409, detail="Order status changed concurrently")

    add_audit(db, "orders", order_id, "status_change",
              diff={"old_status": cur, "new_status": new_status, "note": payload.note},
              actor_id=merchant_user or None, actor_role="merchant_admin")
    db.commit()

    background_tasks.add_task(
        notifier.notify_status_changed, order_id, STATUS_LABELS.get(new_status, new_status)
    )
    return {"success": True, "status": new_status}


# ---------- WEIGHT FINALIZATION ----------
@router.post("/order-items/{item_id}/finalize")
def finalize_item_weight(
    item_id: int,
    payload: FinalizeWeightRequest,
    merchant_user: str = Depends(require_merchant),
    db: Session = Depends(get_db),
):
    result = finalize_weight(db, item_id, payload.final_weight_g, actor_id=merchant_user or None)
    if result.success:
        return result.as_dict()

    if result.already_finalized:
        status_code = 409
    elif result.error == "Order item not found":
        status_code = 404
    elif result.error == "Failed to finalize weight":
        status_code = 500
    else:
        status_code = 400
    return JSONResponse(result.as_dict(), status_code=status_code)
