from typing import List, Optional
from decimal import Decimal

from sqlalchemy import String, ForeignKey, Numeric, Boolean
from sqlalchemy.orm import Mapped, mapped_column, relationship

from sella.db import Base


class Merchant(Base):
    __tablename__ = "merchants"
    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(120))
    slug: Mapped[str] = mapped_column(String(120), unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    outlets: Mapped[List["MerchantOutlet"]] = relationship("MerchantOutlet", back_populates="merchant")
    products: Mapped[List["Product"]] = relationship("Product", back_populates="merchant")


class MerchantOutlet(Base):
    __tablename__ = "merchant_outlets"
    id: Mapped[int] = mapped_column(primary_key=True)
    merchant_id: Mapped[int] = mapped_column(ForeignKey("merchants.id"), index=True)
    name: Mapped[str] = mapped_column(String(120))

    merchant: Mapped["Merchant"] = relationship("Merchant", back_populates="outlets")


class Product(Base):
    __tablename__ = "products"
    id: Mapped[int] = mapped_column(primary_key=True)
    merchant_id: Mapped[int] = mapped_column(ForeignKey("merchants.id"), index=True)
    name: Mapped[str] = mapped_column(String(255))
    sku: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # weight-based products (butchery) are priced per kg, the rest per unit
    is_weight_based: Mapped[bool] = mapped_column(Boolean, default=False)
    price_per_kg: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    unit_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)

    merchant: Mapped["Merchant"] = relationship("Merchant", back_populates="products")
