import os

# configure before anything imports sella.config / sella.db
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["TELEGRAM_TOKEN"] = ""
os.environ["TELEGRAM_CHAT_IDS"] = ""

from decimal import Decimal
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from sella.config import PayFastConfig
from sella.db import Base, SessionLocal, engine, get_db
from sella.deps import get_current_customer_id, get_payfast, require_merchant
from sella.main import app
from sella.models.catalog import Merchant, MerchantOutlet, Product
from sella.models.user import Customer
from sella.payments.payfast import PayFastService
from sella.schemas import CreateOrderRequest
from sella.services.orders import create_order

# PayFast public sandbox credentials
SANDBOX = PayFastConfig(
    merchant_id="10000100",
    merchant_key="46f0cd694581a",
    passphrase="jt7NOE43FZPn",
    sandbox=True,
)


@pytest.fixture
def db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def payfast():
    return PayFastService(SANDBOX)


@pytest.fixture
def catalog(db):
    butchery = Merchant(name="Karoo Butchery", slug="karoo-butchery")
    deli = Merchant(name="Corner Deli", slug="corner-deli")
    db.add_all([butchery, deli])
    db.flush()
    db.add_all([
        MerchantOutlet(merchant_id=butchery.id, name="Sea Point"),
        MerchantOutlet(merchant_id=deli.id, name="Gardens"),
    ])
    boerewors = Product(merchant_id=butchery.id, name="Boerewors", is_weight_based=True,
                        price_per_kg=Decimal("89.99"))
    rump = Product(merchant_id=butchery.id, name="Rump Steak", is_weight_based=True,
                   price_per_kg=Decimal("200.00"))
    spice = Product(merchant_id=butchery.id, name="Braai Spice", is_weight_based=False,
                    unit_price=Decimal("50.00"))
    cheese = Product(merchant_id=deli.id, name="Gouda", is_weight_based=False,
                     unit_price=Decimal("20.00"))
    customer = Customer(email="thandi@example.com", full_name="Thandi Nkosi")
    db.add_all([boerewors, rump, spice, cheese, customer])
    db.commit()
    return SimpleNamespace(
        butchery=butchery, deli=deli,
        boerewors=boerewors, rump=rump, spice=spice, cheese=cheese,
        customer=customer,
    )


@pytest.fixture
def client(db, payfast, catalog):
    def _get_db():
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()

    customer_id = catalog.customer.id
    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_current_customer_id] = lambda: customer_id
    app.dependency_overrides[require_merchant] = lambda: "merchant-1"
    app.dependency_overrides[get_payfast] = lambda: payfast
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def spice_order_payload(**overrides) -> dict:
    """Checkout body: 2 x R50 spice, VAT 15, delivery 35 -> 150."""
    payload = {
        "delivery_address_id": "addr-1",
        "delivery_window": "10:00 - 12:00",
        "payment_method": "PAYFAST",
        "notes": "Ring the bell",
        "items": [],
        "subtotal": 100.0,
        "delivery_fee": 35.0,
        "tax_total": 15.0,
        "discount_total": 0,
        "grand_total_est": 150.0,
        "reward_points_used": 0,
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def spice_payload(catalog):
    def _make(**overrides):
        data = spice_order_payload(items=[{
            "product_id": catalog.spice.id,
            "name": "Braai Spice",
            "is_weight_based": False,
            "quantity": 2,
            "unit_price": 50.0,
            "estimated_total": 100.0,
        }])
        data.update(overrides)
        return data
    return _make


@pytest.fixture
def place_order(db, catalog, spice_payload):
    """Place an order through the service and return it."""
    def _place(**overrides):
        return create_order(db, catalog.customer.id, CreateOrderRequest(**spice_payload(**overrides)))
    return _place


@pytest.fixture
def boerewors_payload(catalog):
    """500 g boerewors at R89.99/kg: line 44.995, subtotal 45.00, VAT 6.75, total 86.75."""
    def _make(**overrides):
        data = spice_order_payload(
            items=[{
                "product_id": catalog.boerewors.id,
                "name": "Boerewors",
                "is_weight_based": True,
                "estimated_weight_g": 500,
                "quantity": 1,
                "price_per_kg": 89.99,
                "estimated_total": 44.995,
            }],
            subtotal=44.995,
            tax_total=6.74925,
            grand_total_est=86.74425,
        )
        data.update(overrides)
        return data
    return _make


@pytest.fixture
def sign_notification(payfast):
    """Build a signed gateway notification for an m_payment_id."""
    def _sign(m_payment_id: str, payment_status: str = "COMPLETE", amount_gross: str = "150.00", **extra):
        fields = {
            "m_payment_id": m_payment_id,
            "pf_payment_id": "1089250",
            "payment_status": payment_status,
            "item_name": "Order from Karoo Butchery",
            "amount_gross": amount_gross,
            "amount_fee": "-3.45",
            "amount_net": "146.55",
            "custom_str1": m_payment_id,
            "custom_str2": "mini-sixty60",
            "name_first": "Thandi",
            "name_last": "Nkosi",
            "email_address": "thandi@example.com",
            "merchant_id": payfast.settings.merchant_id,
        }
        fields.update(extra)
        fields["signature"] = payfast.sign(fields)
        return fields
    return _sign
