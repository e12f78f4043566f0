from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from almoxarifado.models import Product


class ProductRepository:
    def __init__(self, db: Session):
        self._db = db

    def get(self, product_id: int) -> Optional[Product]:
        return self._db.scalar(
            select(Product).where(Product.id == product_id, Product.is_active.is_(True))
        )

    def get_for_update(self, product_id: int) -> Optional[Product]:
        # FOR UPDATE is dropped by dialects without row locks (SQLite).
        return self._db.scalar(
            select(Product)
            .where(Product.id == product_id, Product.is_active.is_(True))
            .with_for_update()
            .execution_options(populate_existing=True)
        )

    def list(self) -> list[Product]:
        return list(
            self._db.scalars(
                select(Product)
                .where(Product.is_active.is_(True))
                .order_by(Product.name, Product.id)
            )
        )

    def search(self, term: str) -> list[Product]:
        t = (term or "").strip()
        if not t:
            return self.list()
        return list(
            self._db.scalars(
                select(Product)
                .where(Product.is_active.is_(True), Product.search_name.contains(t.casefold(), autoescape=True))
                .order_by(Product.name, Product.id)
            )
        )

    def list_low_stock(self) -> list[Product]:
        return list(
            self._db.scalars(
                select(Product)
                .where(Product.is_active.is_(True), Product.quantity < Product.min_stock)
                .order_by(Product.name, Product.id)
            )
        )

    def add(self, product: Product) -> None:
        self._db.add(product)
