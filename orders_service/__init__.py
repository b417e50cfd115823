"""Order ingestion pipeline package.

Request acceptance, durable queueing and idempotent persistence of orders.
"""

__all__: list[str] = []
