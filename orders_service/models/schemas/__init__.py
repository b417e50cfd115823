from .base import ErrorResponse
from .orders import OrderMessage, OrderAccepted

__all__ = [
    "ErrorResponse",
    "OrderMessage",
    "OrderAccepted",
]
