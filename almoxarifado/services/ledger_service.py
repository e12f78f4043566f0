from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from almoxarifado.errors import NotFoundError, ValidationError
from almoxarifado.models import Movement, Product
from almoxarifado.repositories.movement_repository import MovementRepository
from almoxarifado.repositories.product_repository import ProductRepository

LOGGER = logging.getLogger(__name__)

ENTRADA = "entrada"
SAIDA = "saída"
MOVEMENT_TYPES = (ENTRADA, SAIDA)

_TYPE_ALIASES = {
    "entrada": ENTRADA,
    "saída": SAIDA,
    "saida": SAIDA,
}


def normalize_movement_type(value: Optional[str]) -> str:
    key = (value or "").strip().lower()
    movement_type = _TYPE_ALIASES.get(key)
    if movement_type is None:
        raise ValidationError(
            f"type must be one of {', '.join(MOVEMENT_TYPES)}"
        )
    return movement_type


def validate_quantity(quantity: object) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError("quantity must be an integer")
    if quantity <= 0:
        raise ValidationError("quantity must be positive")
    return quantity


def signed_quantity(movement: Movement) -> int:
    return movement.quantity if movement.type == ENTRADA else -movement.quantity


class MovementLedger:
    """Append-only log of entrada/saída events.

    ``append`` stages a row in the caller's session and never commits or
    touches ``Product.quantity``; committing is the reconciler's job.
    """

    def __init__(self, db: Session):
        self._db = db
        self._products = ProductRepository(db)
        self._movements = MovementRepository(db)

    def _require_product(self, product_id: int) -> Product:
        product = self._products.get(product_id)
        if product is None:
            raise NotFoundError(f"Product {product_id} not found")
        return product

    def append(
        self,
        product_id: int,
        movement_type: str,
        quantity: int,
        user_id: Optional[int] = None,
        product: Optional[Product] = None,
    ) -> Movement:
        quantity = validate_quantity(quantity)
        movement_type = normalize_movement_type(movement_type)
        if user_id is None:
            raise ValidationError("user_id is required")
        if product is None:
            product = self._require_product(product_id)

        movement = Movement(
            product_id=product.id,
            type=movement_type,
            quantity=quantity,
            user_id=user_id,
        )
        self._movements.add(movement)
        return movement

    def list_by_product(self, product_id: int) -> list[Movement]:
        try:
            self._require_product(product_id)
            return self._movements.list_by_product(product_id)
        except OperationalError:
            LOGGER.warning("Storage unavailable, returning empty history for product %s", product_id, exc_info=True)
            return []

    def ledger_balance(self, product_id: int) -> int:
        return self._movements.signed_total_for_product(product_id)
