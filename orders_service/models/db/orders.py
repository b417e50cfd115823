"""SQLAlchemy model for persisted order records.

Single-table layout: ``pk`` and ``sk`` both hold ``ORDER#<orderId>`` and form
the composite primary key, so the database itself rejects a second record
for the same order id.
"""
from __future__ import annotations

from typing import Any

from sqlalchemy import BigInteger, DateTime, Float, JSON, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from orders_service.database import Base


class OrderRecord(Base):
    __tablename__ = "orders"

    pk: Mapped[str] = mapped_column(String(255), primary_key=True)
    sk: Mapped[str] = mapped_column(String(255), primary_key=True)

    order_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    # double precision, the type amounts are normalized to
    amount: Mapped[float] = mapped_column(Float(precision=53), nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)  # epoch millis set at enqueue
    correlation_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    # Pass-through fields from the original request body
    attributes: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    stored_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    def to_item(self) -> dict[str, Any]:
        """Render the record in the JSON shape served by ``GET /orders/{id}``."""
        item: dict[str, Any] = dict(self.attributes or {})
        item.update({
            "PK": self.pk,
            "SK": self.sk,
            "orderId": self.order_id,
            "amount": self.amount,
            "currency": self.currency,
            "createdAt": self.created_at,
        })
        if self.correlation_id is not None:
            item["correlationId"] = self.correlation_id
        return item
