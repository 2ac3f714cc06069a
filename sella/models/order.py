# sella/models/order.py
from typing import List, Optional
from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from sella.db import Base
from sella.utils.enums import OrderStatus, PaymentStatus


def _new_order_id() -> str:
    return str(uuid4())


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_order_id)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id"), index=True)
    outlet_id: Mapped[int] = mapped_column(ForeignKey("merchant_outlets.id"), index=True)

    # === Totals ===
    # grand_total_est = subtotal + tax_total + delivery_fee - discount_total, fixed at placement
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    delivery_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    tax_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    discount_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    grand_total_est: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    # set once every weight-based item has been weighed
    grand_total_final: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)

    # PLACED | PREPARING | READY | OUT_FOR_DELIVERY | DELIVERED | CANCELLED
    status: Mapped[str] = mapped_column(String(24), default=OrderStatus.PLACED.value, index=True)
    status_changed_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    payment_status: Mapped[str] = mapped_column(String(16), default=PaymentStatus.PENDING.value, index=True)
    payment_method: Mapped[str] = mapped_column(String(16))

    delivery_window_start: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    delivery_window_end: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    delivery_address_id: Mapped[str] = mapped_column(String(64))
    notes: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    reward_points_used: Mapped[int] = mapped_column(Integer, default=0)

    items: Mapped[List["OrderItem"]] = relationship(
        "OrderItem", back_populates="order", cascade="all, delete-orphan"
    )
    outlet = relationship("MerchantOutlet")

    @property
    def amount_due(self) -> Decimal:
        return self.grand_total_final if self.grand_total_final is not None else self.grand_total_est

    def weight_items(self) -> List["OrderItem"]:
        return [x for x in self.items if x.is_weight_based]

    def is_fully_weighed(self) -> bool:
        return all(x.final_weight_g is not None for x in self.weight_items())


class OrderItem(Base):
    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)
    product_id: Mapped[int] = mapped_column(Integer)
    name_snapshot: Mapped[str] = mapped_column(String(255))

    is_weight_based: Mapped[bool] = mapped_column(Boolean, default=False)
    quantity: Mapped[int] = mapped_column(Integer, default=1)

    # weight-based lines; est_weight_g is the whole line (per unit x quantity)
    est_weight_g: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    final_weight_g: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    price_per_kg: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)

    # fixed-price lines
    unit_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)

    line_total_est: Mapped[Decimal] = mapped_column(Numeric(12, 4))
    line_total_final: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 4), nullable=True)

    order: Mapped["Order"] = relationship("Order", back_populates="items")

    @property
    def line_total(self) -> Decimal:
        """Final line total where known, otherwise the estimate."""
        if self.is_weight_based and self.line_total_final is not None:
            return Decimal(str(self.line_total_final))
        return Decimal(str(self.line_total_est))
