from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from almoxarifado.db import unit_of_work
from almoxarifado.errors import (
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    StorageUnavailableError,
    ValidationError,
)
from almoxarifado.models import Movement, Product
from almoxarifado.repositories.product_repository import ProductRepository
from almoxarifado.schemas import StockReconciliation
from almoxarifado.services.ledger_service import (
    SAIDA,
    MovementLedger,
    normalize_movement_type,
    validate_quantity,
)
from almoxarifado.services.product_service import ProductService
from almoxarifado.settings import load_settings

LOGGER = logging.getLogger(__name__)


class ProductLockRegistry:
    """One mutex per product id, kept only while someone holds or waits on it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[int, threading.Lock] = {}
        self._waiters: dict[int, int] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, product_id: int) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(product_id, threading.Lock())
            self._waiters[product_id] = self._waiters.get(product_id, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._waiters[product_id] -= 1
                if not self._waiters[product_id]:
                    del self._waiters[product_id]
                    del self._locks[product_id]


PRODUCT_LOCKS = ProductLockRegistry()


@dataclass(frozen=True)
class RecordedMovement:
    """A committed movement with the balance its own transaction wrote."""

    movement: Movement
    stock_after: int
    warning: Optional[str]


def _restock_warning(quantity: int, min_stock: int) -> Optional[str]:
    if quantity < min_stock:
        return "Needs restock"
    return None


class StockService:
    """Stock reconciler: the only writer of ``Product.quantity``."""

    def __init__(
        self,
        db: Session,
        retry_attempts: Optional[int] = None,
        locks: Optional[ProductLockRegistry] = None,
    ):
        self._db = db
        self._products = ProductRepository(db)
        self._registry = ProductService(db)
        self._ledger = MovementLedger(db)
        self._locks = locks if locks is not None else PRODUCT_LOCKS
        if retry_attempts is None:
            retry_attempts = load_settings().movement_retry_attempts
        self._retry_attempts = max(1, int(retry_attempts))

    def record_movement(
        self,
        product_id: int,
        movement_type: str,
        quantity: int,
        user_id: Optional[int],
    ) -> Movement:
        return self.record(product_id, movement_type, quantity, user_id).movement

    def record(
        self,
        product_id: int,
        movement_type: str,
        quantity: int,
        user_id: Optional[int],
    ) -> RecordedMovement:
        quantity = validate_quantity(quantity)
        movement_type = normalize_movement_type(movement_type)
        if user_id is None:
            raise ValidationError("user_id is required")

        with self._locks.hold(product_id):
            for attempt in range(1, self._retry_attempts + 1):
                try:
                    recorded = self._apply(product_id, movement_type, quantity, user_id)
                except StaleDataError:
                    LOGGER.warning(
                        "Concurrent update on product %s (attempt %s/%s)",
                        product_id,
                        attempt,
                        self._retry_attempts,
                    )
                    continue
                except OperationalError as e:
                    LOGGER.exception("Failed to record %s on product %s", movement_type, product_id)
                    raise StorageUnavailableError() from e
                return recorded

        raise ConflictError(
            f"Product {product_id} was modified concurrently; gave up after {self._retry_attempts} attempt(s)"
        )

    def _apply(self, product_id: int, movement_type: str, quantity: int, user_id: int) -> RecordedMovement:
        with unit_of_work(self._db):
            product = self._products.get_for_update(product_id)
            if product is None:
                raise NotFoundError(f"Product {product_id} not found")

            available = int(product.quantity or 0)
            if movement_type == SAIDA:
                new_quantity = available - quantity
                if new_quantity < 0:
                    LOGGER.warning(
                        "Rejected saída of %s on product %s: only %s available",
                        quantity,
                        product_id,
                        available,
                    )
                    raise InsufficientStockError(available=available, requested=quantity)
            else:
                new_quantity = available + quantity
            min_stock = int(product.min_stock or 0)

            movement = self._ledger.append(
                product.id, movement_type, quantity, user_id=user_id, product=product
            )
            self._db.flush()
            product.quantity = new_quantity
            self._db.flush()

        self._db.refresh(movement)
        LOGGER.info(
            "Movement %s recorded: %s %s on product %s (%s -> %s)",
            movement.id,
            movement_type,
            quantity,
            product_id,
            available,
            new_quantity,
        )
        return RecordedMovement(
            movement=movement,
            stock_after=new_quantity,
            warning=_restock_warning(new_quantity, min_stock),
        )

    def restock_warning(self, product: Product) -> Optional[str]:
        return _restock_warning(int(product.quantity or 0), int(product.min_stock or 0))

    def low_stock_products(self) -> list[Product]:
        return self._registry.list_low_stock()

    def reconcile(self, product_id: int) -> StockReconciliation:
        product = self._registry.get(product_id)
        ledger_quantity = self._ledger.ledger_balance(product.id)
        consistent = int(product.quantity) == ledger_quantity
        if not consistent:
            LOGGER.warning(
                "Product %s quantity %s differs from ledger balance %s",
                product.id,
                product.quantity,
                ledger_quantity,
            )
        return StockReconciliation(
            product_id=product.id,
            quantity=int(product.quantity),
            ledger_quantity=ledger_quantity,
            consistent=consistent,
        )
