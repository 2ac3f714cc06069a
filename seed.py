# seed.py: reset the schema and load a demo butchery
from decimal import Decimal

from sqlalchemy.orm import configure_mappers

import sella.models  # noqa: F401  make sure every table is registered
from sella.db import Base, engine, SessionLocal
from sella.models.catalog import Merchant, MerchantOutlet, Product
from sella.models.user import Customer
from sella.services.rewards import adjust_points, get_or_create_wallet


def reset_and_seed():
    # === RESET ===
    Base.metadata.drop_all(bind=engine)
    print("All tables dropped")

    configure_mappers()
    Base.metadata.create_all(bind=engine)
    print("All tables created")

    db = SessionLocal()
    try:
        # --- 1. Merchant + outlet ---
        merchant = Merchant(name="Karoo Butchery", slug="karoo-butchery")
        db.add(merchant)
        db.flush()
        db.add(MerchantOutlet(merchant_id=merchant.id, name="Karoo Butchery Sea Point"))

        # --- 2. Products ---
        db.add_all([
            Product(merchant_id=merchant.id, name="Beef Rump Steak", sku="BEEF-RUMP",
                    is_weight_based=True, price_per_kg=Decimal("189.99")),
            Product(merchant_id=merchant.id, name="Boerewors", sku="BOEREWORS",
                    is_weight_based=True, price_per_kg=Decimal("89.99")),
            Product(merchant_id=merchant.id, name="Lamb Chops", sku="LAMB-CHOP",
                    is_weight_based=True, price_per_kg=Decimal("219.00")),
            Product(merchant_id=merchant.id, name="Braai Spice 200g", sku="SPICE-200",
                    is_weight_based=False, unit_price=Decimal("34.99")),
        ])

        # --- 3. Demo customer with some points ---
        customer = Customer(email="demo@sella.co.za", full_name="Thandi Nkosi")
        db.add(customer)
        db.commit()
        print(f"Merchant created: {merchant.name}")

        wallet = get_or_create_wallet(db, customer.id)
        adjust_points(db, wallet.id, 500, "Welcome bonus")
        print(f"Customer created: {customer.email} (500 points)")
    finally:
        db.close()


if __name__ == "__main__":
    reset_and_seed()
