from __future__ import annotations

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from almoxarifado.models import Movement


class MovementRepository:
    def __init__(self, db: Session):
        self._db = db

    def add(self, movement: Movement) -> None:
        self._db.add(movement)

    def list_by_product(self, product_id: int) -> list[Movement]:
        return list(
            self._db.scalars(
                select(Movement)
                .where(Movement.product_id == product_id)
                .order_by(Movement.created_at, Movement.id)
            )
        )

    def signed_total_for_product(self, product_id: int) -> int:
        signed = case(
            (Movement.type == "entrada", Movement.quantity),
            else_=-Movement.quantity,
        )
        total = self._db.scalar(
            select(func.coalesce(func.sum(signed), 0)).where(Movement.product_id == product_id)
        )
        return int(total or 0)

    def count_for_product(self, product_id: int) -> int:
        total = self._db.scalar(
            select(func.count(Movement.id)).where(Movement.product_id == product_id)
        )
        return int(total or 0)
