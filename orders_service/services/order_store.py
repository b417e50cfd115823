"""Order store adapter.

``create_if_absent`` is one INSERT against the composite primary key; a
primary-key violation is the "already exists" outcome. There is no
existence check before the write, so two concurrent deliveries of the same
order can never both create a record.
"""
from __future__ import annotations

import enum
from typing import Any, Callable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from orders_service.config import ORDER_SETTINGS
from orders_service.errors import OrderStoreError
from orders_service.models.db import OrderRecord
from orders_service.models.schemas.orders import passthrough_fields
from orders_service.utils import get_logger

logger = get_logger(__name__)


class CreateOutcome(str, enum.Enum):
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"


def order_key(order_id: str) -> str:
    return f"{ORDER_SETTINGS['key_prefix']}{order_id}"


class OrderStore:
    """Key-addressed order records with create-only writes.

    Constructed once per process around a session factory and shared by the
    API and the worker threads; every call opens and closes its own session.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def create_if_absent(self, order_id: str, fields: dict[str, Any]) -> CreateOutcome:
        """Insert the order unless a record for ``order_id`` already exists.

        ``fields`` is the order message body (camelCase keys). Any store error
        other than the key conflict is raised as ``OrderStoreError``.
        """
        key = order_key(order_id)
        record = OrderRecord(
            pk=key,
            sk=key,
            order_id=order_id,
            amount=fields.get("amount", 0),
            currency=fields.get("currency") or ORDER_SETTINGS["default_currency"],
            created_at=fields.get("createdAt"),
            correlation_id=fields.get("correlationId"),
            attributes=passthrough_fields(fields),
        )
        session = self._session_factory()
        try:
            session.add(record)
            session.commit()
            return CreateOutcome.CREATED
        except IntegrityError as e:
            session.rollback()
            # Only a duplicate key counts as an existing record; NOT NULL or
            # other constraint failures stay errors.
            if self._exists(session, key):
                return CreateOutcome.ALREADY_EXISTS
            raise OrderStoreError(f"Integrity error storing order: {e.orig}", order_id=order_id) from e
        except SQLAlchemyError as e:
            session.rollback()
            raise OrderStoreError(f"Failed to store order: {e}", order_id=order_id) from e
        finally:
            session.close()

    @staticmethod
    def _exists(session: Session, key: str) -> bool:
        try:
            return session.get(OrderRecord, {"pk": key, "sk": key}) is not None
        except SQLAlchemyError as e:
            raise OrderStoreError(f"Failed to check order key: {e}") from e

    def get_by_key(self, order_id: str) -> Optional[dict[str, Any]]:
        """Return the stored item for ``order_id`` or None when absent."""
        key = order_key(order_id)
        session = self._session_factory()
        try:
            record = session.get(OrderRecord, {"pk": key, "sk": key})
            return record.to_item() if record is not None else None
        except SQLAlchemyError as e:
            raise OrderStoreError(f"Failed to read order: {e}", order_id=order_id) from e
        finally:
            session.close()

    def count(self) -> int:
        session = self._session_factory()
        try:
            return session.query(OrderRecord).count()
        except SQLAlchemyError as e:
            raise OrderStoreError(f"Failed to count orders: {e}") from e
        finally:
            session.close()


__all__ = ["OrderStore", "CreateOutcome", "order_key"]
