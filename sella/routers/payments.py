import asyncio
import logging
from functools import partial

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from sella import config
from sella.db import SessionLocal, get_db
from sella.deps import get_current_customer_id, get_payfast
from sella.models.order import Order
from sella.payments.payfast import PayFastService
from sella.schemas import CreatePaymentRequest
from sella.services.payments import PaymentRequestError, start_delta_payment, start_payment
from sella.services.reconciliation import process_notification
from sella.telegram.telegram_notify import notifier

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/payments/payfast", tags=["payments"])


def _customer_order(db: Session, order_id: str, customer_id: int) -> Order:
    order = db.get(Order, order_id)
    if not order or order.customer_id != customer_id:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


# ----------------------- CREATE -----------------------
@router.post("/create")
def create_payment(
    payload: CreatePaymentRequest,
    customer_id: int = Depends(get_current_customer_id),
    payfast: PayFastService = Depends(get_payfast),
    db: Session = Depends(get_db),
):
    order = _customer_order(db, payload.orderId, customer_id)
    try:
        payment = start_payment(db, payfast, order, payload.returnUrl, payload.cancelUrl)
    except PaymentRequestError as e:
        return JSONResponse({"error": e.message}, status_code=e.status_code)
    return {"success": True, "payment": payment}


# ----------------------- DELTA (weight adjustment) -----------------------
@router.post("/delta")
def create_delta_payment(
    payload: CreatePaymentRequest,
    customer_id: int = Depends(get_current_customer_id),
    payfast: PayFastService = Depends(get_payfast),
    db: Session = Depends(get_db),
):
    order = _customer_order(db, payload.orderId, customer_id)
    try:
        payment = start_delta_payment(db, payfast, order, payload.returnUrl, payload.cancelUrl)
    except PaymentRequestError as e:
        return JSONResponse({"error": e.message}, status_code=e.status_code)
    return {"success": True, "payment": payment}


# ----------------------- NOTIFY (gateway callback) -----------------------
@router.get("/notify")
def notify_alive():
    # the gateway pings the endpoint with a bare GET
    return {"status": "PayFast webhook endpoint active"}


def _apply_notification(payfast: PayFastService, fields: dict):
    # own session: after a timeout the request is gone while this still runs
    db = SessionLocal()
    try:
        return process_notification(db, payfast, fields)
    finally:
        db.close()


@router.post("/notify")
async def notify(
    request: Request,
    background_tasks: BackgroundTasks,
    payfast: PayFastService = Depends(get_payfast),
):
    try:
        form = await request.form()
    except Exception:
        logger.warning("Unparseable PayFast notification body")
        return JSONResponse({"error": "Invalid notification"}, status_code=400)

    fields = {k: str(v) for k, v in form.items()}
    logger.info("PayFast notification received for %s", fields.get("m_payment_id"))

    # executor future so a timeout abandons the worker instead of waiting on it
    loop = asyncio.get_running_loop()
    try:
        outcome = await asyncio.wait_for(
            loop.run_in_executor(None, partial(_apply_notification, payfast, fields)),
            timeout=config.PAYFAST_NOTIFY_TIMEOUT,
        )
    except asyncio.TimeoutError:
        logger.error("PayFast notification for %s timed out", fields.get("m_payment_id"))
        return JSONResponse({"success": False, "error": "Processing timeout"}, status_code=200)

    if outcome.confirmed:
        background_tasks.add_task(notifier.notify_payment_confirmed, outcome.order_id, outcome.amount)

    return JSONResponse(outcome.body, status_code=outcome.status_code)
