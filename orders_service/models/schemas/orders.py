"""
Pydantic schemas and field normalization for orders.
"""
from __future__ import annotations

import math
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from orders_service.config import ORDER_SETTINGS
from orders_service.errors import InvalidPayload

# Queue message attribute names read by dead-letter tooling
ORDER_ID_ATTRIBUTE = "OrderId"
CORRELATION_ID_ATTRIBUTE = "CorrelationId"

# Body fields owned by the pipeline; everything else is passed through
CORE_FIELDS = frozenset({"orderId", "amount", "currency", "createdAt", "correlationId"})
# Store key columns; never accepted from a body
RESERVED_FIELDS = frozenset({"PK", "SK"})

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")


def normalize_amount(value: Any) -> float:
    """Absent, non-numeric or NaN amounts become 0.

    Negative amounts and amounts too large for a double are rejected.
    """
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, str):
        try:
            value = Decimal(value.strip())
        except InvalidOperation:
            return 0.0
    if not isinstance(value, (int, float, Decimal)):
        return 0.0
    if isinstance(value, Decimal) and value.is_nan():
        return 0.0
    try:
        amount = float(value)
    except OverflowError as e:
        raise InvalidPayload("amount is out of range") from e
    except ValueError:
        return 0.0
    if math.isnan(amount):
        return 0.0
    if amount < 0:
        raise InvalidPayload("amount must be a non-negative number")
    if math.isinf(amount):
        raise InvalidPayload("amount is out of range")
    return amount


def normalize_currency(value: Any) -> str:
    if value is None or (isinstance(value, str) and not value.strip()):
        return ORDER_SETTINGS["default_currency"]
    if not isinstance(value, str):
        raise InvalidPayload("currency must be a string")
    currency = value.strip().upper()
    if not _CURRENCY_RE.match(currency):
        raise InvalidPayload(f"currency '{value}' is not a 3-letter code")
    return currency


def normalize_order_id(value: Any) -> Optional[str]:
    """Return the client supplied order id, or None when one must be generated."""
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise InvalidPayload("orderId must be a string")
    order_id = str(value).strip()
    return order_id or None


def passthrough_fields(body: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in body.items() if k not in CORE_FIELDS and k not in RESERVED_FIELDS}


class OrderMessage(BaseModel):
    """Queue payload. ``orderId`` is the idempotency key for its whole lifetime."""

    order_id: str = Field(alias="orderId", min_length=1)
    amount: float = Field(ge=0)
    currency: str = Field(min_length=1)
    created_at: int = Field(alias="createdAt", description="Epoch millis set at enqueue time")
    correlation_id: str = Field(alias="correlationId")

    model_config = ConfigDict(extra="allow", frozen=True)

    def to_body(self) -> str:
        return self.model_dump_json(by_alias=True)

    def message_attributes(self) -> dict[str, str]:
        return {
            ORDER_ID_ATTRIBUTE: self.order_id,
            CORRELATION_ID_ATTRIBUTE: self.correlation_id,
        }


class OrderAccepted(BaseModel):
    orderId: str


__all__ = [
    "ORDER_ID_ATTRIBUTE",
    "CORRELATION_ID_ATTRIBUTE",
    "CORE_FIELDS",
    "RESERVED_FIELDS",
    "normalize_amount",
    "normalize_currency",
    "normalize_order_id",
    "passthrough_fields",
    "OrderMessage",
    "OrderAccepted",
]
