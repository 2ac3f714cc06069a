from decimal import Decimal

import pytest

from sella.models.order import Order
from sella.models.payment import Payment
from sella.payments.payfast import SANDBOX_URL
from sella.schemas import CreateOrderRequest
from sella.services.orders import create_order
from sella.services.weights import finalize_weight

CREATE = "/api/payments/payfast/create"
DELTA = "/api/payments/payfast/delta"


def test_checkout_form(client, db, payfast, place_order):
    order = place_order()
    resp = client.post(CREATE, json={"orderId": order.id, "returnUrl": "https://sella.test/ok"})
    assert resp.status_code == 200
    payment = resp.json()["payment"]

    assert payment["paymentUrl"] == SANDBOX_URL
    assert payment["amount"] == 150.0
    assert payment["orderId"] == order.id
    data = payment["paymentData"]
    assert data["m_payment_id"] == order.id
    assert data["amount"] == "150.00"
    assert data["item_name"] == "Order from Karoo Butchery"
    assert data["return_url"] == "https://sella.test/ok"
    assert data["cancel_url"].endswith(f"/customer/orders/{order.id}/payment/cancelled")
    assert data["notify_url"].endswith("/api/payments/payfast/notify")
    assert data["email_address"] == "thandi@example.com"
    assert payfast.validate_signature(data)

    db.expire_all()
    row = db.query(Payment).one()
    assert row.reference == order.id
    assert row.status == "PENDING"
    assert row.amount == Decimal("150.00")
    assert row.currency == "ZAR"


def test_retried_checkout_reuses_payment_row(client, db, place_order):
    order = place_order()
    client.post(CREATE, json={"orderId": order.id})
    client.post(CREATE, json={"orderId": order.id})
    db.expire_all()
    assert db.query(Payment).count() == 1


def test_cash_order_not_payable(client, place_order):
    order = place_order(payment_method="COD")
    resp = client.post(CREATE, json={"orderId": order.id})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Order is not payable through PayFast"}


def test_paid_order_not_payable_again(client, db, place_order):
    order = place_order()
    order.payment_status = "PAID"
    db.commit()
    resp = client.post(CREATE, json={"orderId": order.id})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Order payment already processed"}


def test_unknown_order(client):
    assert client.post(CREATE, json={"orderId": "missing"}).status_code == 404
    assert client.post(DELTA, json={"orderId": "missing"}).status_code == 404


def test_missing_order_id_is_400(client):
    resp = client.post(CREATE, json={})
    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid request data"


@pytest.fixture
def wors_order(db, catalog, boerewors_payload):
    return create_order(db, catalog.customer.id, CreateOrderRequest(**boerewors_payload()))


def test_delta_before_weighing(client, wors_order):
    resp = client.post(DELTA, json={"orderId": wors_order.id})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Order weights are not finalized yet"}


def test_delta_for_heavier_order(client, db, payfast, wors_order):
    finalize_weight(db, wors_order.items[0].id, 550)

    resp = client.post(DELTA, json={"orderId": wors_order.id})
    assert resp.status_code == 200
    payment = resp.json()["payment"]
    assert payment["amount"] == 5.16
    data = payment["paymentData"]
    assert data["m_payment_id"].startswith(f"{wors_order.id}-DELTA-")
    assert data["amount"] == "5.16"
    assert data["item_name"] == f"Weight Adjustment - Order #{wors_order.id}"
    assert payfast.validate_signature(data)

    db.expire_all()
    row = db.query(Payment).filter(Payment.is_delta.is_(True)).one()
    assert row.reference == data["m_payment_id"]
    assert row.amount == Decimal("5.16")


def test_no_delta_for_lighter_order(client, db, wors_order):
    finalize_weight(db, wors_order.items[0].id, 400)
    resp = client.post(DELTA, json={"orderId": wors_order.id})
    assert resp.status_code == 400
    assert resp.json() == {"error": "No additional charge is due for this order"}


def test_no_second_delta_once_paid(client, db, wors_order):
    finalize_weight(db, wors_order.items[0].id, 550)
    db.add(Payment(order_id=wors_order.id, provider="PAYFAST", reference=f"{wors_order.id}-DELTA-1",
                   is_delta=True, amount=Decimal("5.16"), status="PAID"))
    db.commit()

    resp = client.post(DELTA, json={"orderId": wors_order.id})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Weight adjustment already paid"}
    db.expire_all()
    assert db.get(Order, wors_order.id).grand_total_final == Decimal("91.91")
