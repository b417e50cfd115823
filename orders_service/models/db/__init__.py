from .orders import OrderRecord

__all__ = [
    "OrderRecord",
]
