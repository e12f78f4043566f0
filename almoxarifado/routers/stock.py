from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from almoxarifado.audit import log_event
from almoxarifado.deps import require_user, session_dep, stock_service_dep
from almoxarifado.models import User
from almoxarifado.schemas import (
    MovementCreate,
    MovementRead,
    MovementResult,
    ProductRead,
    StockReconciliation,
)
from almoxarifado.services.stock_service import StockService

router = APIRouter(prefix="/stock", tags=["stock"])


@router.post("/movements", response_model=MovementResult, status_code=201)
def record_movement(
    payload: MovementCreate,
    user: User = Depends(require_user),
    service: StockService = Depends(stock_service_dep),
    db: Session = Depends(session_dep),
) -> MovementResult:
    recorded = service.record(
        payload.product_id,
        payload.type,
        payload.quantity,
        user_id=user.id,
    )
    movement_read = MovementRead.model_validate(recorded.movement)
    log_event(
        db,
        user,
        action="movement_create",
        entity_type="movement",
        entity_id=str(movement_read.id),
        detail={
            "product_id": movement_read.product_id,
            "type": movement_read.type,
            "quantity": movement_read.quantity,
        },
    )
    return MovementResult(
        movement=movement_read,
        stock_after=recorded.stock_after,
        warning=recorded.warning,
    )


@router.get("/low", response_model=list[ProductRead])
def low_stock_products(
    user: User = Depends(require_user),
    service: StockService = Depends(stock_service_dep),
) -> list[ProductRead]:
    return [ProductRead.model_validate(p) for p in service.low_stock_products()]


@router.get("/{product_id}/reconcile", response_model=StockReconciliation)
def reconcile_product(
    product_id: int,
    user: User = Depends(require_user),
    service: StockService = Depends(stock_service_dep),
) -> StockReconciliation:
    return service.reconcile(product_id)
