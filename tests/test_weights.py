from decimal import Decimal

import pytest
from sqlalchemy import update

from sella.db import SessionLocal
from sella.models.audit_log import AuditLog
from sella.models.order import Order, OrderItem
from sella.schemas import CreateOrderRequest
from sella.services.orders import create_order
from sella.services.weights import (
    Settlement, finalize_weight, is_significant_deviation, pending_settlement,
)


@pytest.fixture
def wors_order(db, catalog, boerewors_payload):
    return create_order(db, catalog.customer.id, CreateOrderRequest(**boerewors_payload()))


@pytest.fixture
def braai_order(db, catalog, boerewors_payload):
    """500 g boerewors + 1 kg rump: subtotal 245.00, VAT 36.75, total 316.75."""
    payload = boerewors_payload(subtotal=245.0, tax_total=36.75, grand_total_est=316.75)
    payload["items"].append({
        "product_id": catalog.rump.id, "name": "Rump Steak", "is_weight_based": True,
        "estimated_weight_g": 1000, "quantity": 1, "price_per_kg": 200.0, "estimated_total": 200.0,
    })
    return create_order(db, catalog.customer.id, CreateOrderRequest(**payload))


def test_heavier_than_estimate(db, wors_order):
    item = wors_order.items[0]
    result = finalize_weight(db, item.id, 550)

    assert result.success
    assert result.new_line_total == Decimal("49.4945")
    assert result.line_delta == Decimal("4.4995")
    assert result.significant_deviation is False
    assert result.order_finalized is True
    assert result.grand_total_final == Decimal("91.91")
    assert result.settlement == Settlement("charge", Decimal("5.16"))

    db.expire_all()
    item = db.get(OrderItem, item.id)
    assert item.final_weight_g == 550
    assert item.line_total_final == Decimal("49.4945")
    assert db.get(Order, wors_order.id).grand_total_final == Decimal("91.91")


def test_lighter_than_estimate_flags_refund(db, wors_order):
    result = finalize_weight(db, wors_order.items[0].id, 400, actor_id="merchant-1")

    assert result.grand_total_final == Decimal("76.40")
    assert result.settlement == Settlement("refund", Decimal("10.35"))
    assert result.as_dict()["settlement"] == {"action": "refund", "amount": 10.35}

    refund = db.query(AuditLog).filter(AuditLog.action == "weight_refund_due").one()
    assert refund.entity_id == wors_order.id
    assert refund.diff["amount"] == 10.35


def test_exact_weight_settles_nothing(db, wors_order):
    result = finalize_weight(db, wors_order.items[0].id, 500)
    assert result.line_delta == Decimal("0")
    assert result.settlement.action == "none"
    assert result.grand_total_final == Decimal("86.75")


def test_significant_deviation_threshold():
    assert is_significant_deviation(500, 550) is False
    assert is_significant_deviation(500, 551) is True
    assert is_significant_deviation(500, 449) is True
    assert is_significant_deviation(None, 550) is False


def test_weighed_only_once(db, wors_order):
    item_id = wors_order.items[0].id
    assert finalize_weight(db, item_id, 550).success

    again = finalize_weight(db, item_id, 600)
    assert not again.success
    assert again.already_finalized
    assert again.error == "Item weight already finalized"

    db.expire_all()
    assert db.get(OrderItem, item_id).final_weight_g == 550
    assert db.get(Order, wors_order.id).grand_total_final == Decimal("91.91")


def test_lost_race_is_reported_as_already_finalized(db, wors_order):
    item = wors_order.items[0]
    assert item.final_weight_g is None
    # another request weighs the line after this session loaded it
    db.execute(
        update(OrderItem)
        .where(OrderItem.id == item.id)
        .values(final_weight_g=530)
        .execution_options(synchronize_session=False)
    )

    result = finalize_weight(db, item.id, 550)
    assert not result.success
    assert result.already_finalized


@pytest.mark.parametrize("weight", [0, -5])
def test_weight_must_be_positive(db, wors_order, weight):
    result = finalize_weight(db, wors_order.items[0].id, weight)
    assert not result.success
    assert result.error == "Final weight must be greater than zero"


def test_fixed_price_line_rejected(db, place_order):
    order = place_order()
    result = finalize_weight(db, order.items[0].id, 100)
    assert result.error == "Order item is not weight-based"


def test_missing_item(db, catalog):
    assert finalize_weight(db, 12345, 100).error == "Order item not found"


def test_order_final_only_after_last_line(db, braai_order):
    wors, rump = sorted(braai_order.items, key=lambda x: x.product_id)
    assert wors.name_snapshot == "Boerewors"

    first = finalize_weight(db, wors.id, 550)
    assert first.success
    assert first.order_finalized is False
    assert "grandTotalFinal" not in first.as_dict()

    db.expire_all()
    order = db.get(Order, braai_order.id)
    assert order.grand_total_final is None
    assert pending_settlement(order) is None

    second = finalize_weight(db, rump.id, 1000)
    assert second.order_finalized is True
    # 49.4945 + 200 -> 249.49, VAT 37.42, delivery 35
    assert second.grand_total_final == Decimal("321.91")
    assert second.settlement == Settlement("charge", Decimal("5.16"))


def test_last_line_weighed_elsewhere_still_finalizes_order(db, braai_order):
    wors, rump = sorted(braai_order.items, key=lambda x: x.product_id)
    assert rump.final_weight_g is None

    # another merchant session weighs the rump and commits while this
    # session still holds the unweighed copy of that line
    other = SessionLocal()
    try:
        other.execute(
            update(OrderItem)
            .where(OrderItem.id == rump.id, OrderItem.final_weight_g.is_(None))
            .values(final_weight_g=1000, line_total_final=Decimal("200.0000"))
            .execution_options(synchronize_session=False)
        )
        other.commit()
    finally:
        other.close()

    result = finalize_weight(db, wors.id, 550)
    assert result.success
    assert result.order_finalized is True
    assert result.grand_total_final == Decimal("321.91")

    db.expire_all()
    assert db.get(Order, braai_order.id).grand_total_final == Decimal("321.91")


def test_finalization_is_audited(db, wors_order):
    item_id = wors_order.items[0].id
    finalize_weight(db, item_id, 550, actor_id="merchant-1")
    row = db.query(AuditLog).filter(AuditLog.action == "finalize_weight").one()
    assert row.entity == "order_items"
    assert row.entity_id == str(item_id)
    assert row.actor_id == "merchant-1"
    assert row.diff["est_weight_g"] == 500
    assert row.diff["final_weight_g"] == 550


def test_finalize_endpoint(client, db, wors_order):
    item_id = wors_order.items[0].id
    url = f"/api/merchant/order-items/{item_id}/finalize"

    resp = client.post(url, json={"final_weight_g": 550})
    assert resp.status_code == 200
    assert resp.json() == {
        "success": True,
        "newLineTotal": 49.4945,
        "lineDelta": 4.4995,
        "significantDeviation": False,
        "orderFinalized": True,
        "grandTotalFinal": 91.91,
        "settlement": {"action": "charge", "amount": 5.16},
    }

    resp = client.post(url, json={"final_weight_g": 560})
    assert resp.status_code == 409
    assert resp.json() == {"success": False, "error": "Item weight already finalized"}

    detail = client.get(f"/api/orders/{wors_order.id}").json()
    assert detail["grand_total_final"] == 91.91
    assert detail["settlement"] == {"action": "charge", "amount": 5.16}
    assert detail["weights_finalized"] == 1


def test_finalize_endpoint_errors(client, place_order):
    order = place_order()
    resp = client.post("/api/merchant/order-items/999/finalize", json={"final_weight_g": 100})
    assert resp.status_code == 404

    resp = client.post(f"/api/merchant/order-items/{order.items[0].id}/finalize", json={"final_weight_g": 100})
    assert resp.status_code == 400
    assert resp.json()["error"] == "Order item is not weight-based"

    resp = client.post(f"/api/merchant/order-items/{order.items[0].id}/finalize", json={"final_weight_g": 0})
    assert resp.status_code == 400
