from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from almoxarifado.db import unit_of_work
from almoxarifado.errors import (
    ConflictError,
    NotFoundError,
    StorageUnavailableError,
    ValidationError,
)
from almoxarifado.models import Product
from almoxarifado.repositories.movement_repository import MovementRepository
from almoxarifado.repositories.product_repository import ProductRepository
from almoxarifado.schemas import ProductCreate, ProductUpdate

LOGGER = logging.getLogger(__name__)

_EDIT_ATTEMPTS = 3


def _clean_description(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value.strip() or None


class ProductService:
    """Product registry: identity, descriptive fields and the min-stock threshold.

    ``quantity`` is never written here; see ``StockService.record_movement``.
    """

    def __init__(self, db: Session):
        self._db = db
        self._products = ProductRepository(db)
        self._movements = MovementRepository(db)

    def _validate_name(self, name: Optional[str]) -> str:
        if name is None or not name.strip():
            raise ValidationError("name must not be empty")
        return name.strip()

    def _validate_min_stock(self, min_stock: int) -> int:
        if min_stock < 0:
            raise ValidationError("min_stock must be >= 0")
        return min_stock

    def get(self, product_id: int) -> Product:
        product = self._products.get(product_id)
        if product is None:
            raise NotFoundError(f"Product {product_id} not found")
        return product

    def create(self, payload: ProductCreate) -> Product:
        name = self._validate_name(payload.name)
        min_stock = self._validate_min_stock(payload.min_stock)

        product = Product(
            name=name,
            description=_clean_description(payload.description),
            quantity=0,
            min_stock=min_stock,
        )
        try:
            with unit_of_work(self._db):
                self._products.add(product)
        except OperationalError as e:
            LOGGER.exception("Failed to create product %r", name)
            raise StorageUnavailableError() from e
        self._db.refresh(product)
        LOGGER.info("Product %s created (%s, min_stock=%s)", product.id, product.name, product.min_stock)
        return product

    def _apply_update(self, product: Product, payload: ProductUpdate, fields: set[str]) -> None:
        if "name" in fields:
            product.name = self._validate_name(payload.name)
        if "min_stock" in fields:
            if payload.min_stock is None:
                raise ValidationError("min_stock must be >= 0")
            product.min_stock = self._validate_min_stock(payload.min_stock)
        if "description" in fields:
            product.description = _clean_description(payload.description)

    def update(self, product_id: int, payload: ProductUpdate) -> Product:
        fields = payload.model_fields_set
        for attempt in range(1, _EDIT_ATTEMPTS + 1):
            try:
                product = self.get(product_id)
                self._apply_update(product, payload, fields)
                self._db.commit()
            except StaleDataError:
                # a movement bumped the version; reload and re-apply the edit
                self._db.rollback()
                LOGGER.warning(
                    "Product %s changed during update (attempt %s/%s)", product_id, attempt, _EDIT_ATTEMPTS
                )
                continue
            except (ValidationError, NotFoundError):
                self._db.rollback()
                raise
            except OperationalError as e:
                self._db.rollback()
                LOGGER.exception("Failed to update product %s", product_id)
                raise StorageUnavailableError() from e
            break
        else:
            raise ConflictError(f"Product {product_id} was modified concurrently; update not applied")
        self._db.refresh(product)
        LOGGER.info("Product %s updated (%s)", product.id, ", ".join(sorted(fields)) or "no fields")
        return product

    def delete(self, product_id: int) -> bool:
        """Soft delete: the product disappears from reads, its ledger stays."""
        for attempt in range(1, _EDIT_ATTEMPTS + 1):
            try:
                product = self.get(product_id)
                kept = self._movements.count_for_product(product.id)
                with unit_of_work(self._db):
                    product.is_active = False
                    product.deleted_at = datetime.now(timezone.utc)
            except StaleDataError:
                LOGGER.warning(
                    "Product %s changed during delete (attempt %s/%s)", product_id, attempt, _EDIT_ATTEMPTS
                )
                continue
            except OperationalError as e:
                LOGGER.exception("Failed to delete product %s", product_id)
                raise StorageUnavailableError() from e
            break
        else:
            raise ConflictError(f"Product {product_id} was modified concurrently; delete not applied")
        LOGGER.info("Product %s deleted, %s movement(s) kept in ledger", product_id, kept)
        return True

    def list(self) -> list[Product]:
        try:
            return self._products.list()
        except OperationalError:
            LOGGER.warning("Storage unavailable, returning empty product list", exc_info=True)
            return []

    def search(self, term: str) -> list[Product]:
        try:
            return self._products.search(term)
        except OperationalError:
            LOGGER.warning("Storage unavailable, returning empty search for %r", term, exc_info=True)
            return []

    def list_low_stock(self) -> list[Product]:
        try:
            return self._products.list_low_stock()
        except OperationalError:
            LOGGER.warning("Storage unavailable, returning empty low-stock list", exc_info=True)
            return []
