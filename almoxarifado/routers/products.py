from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from almoxarifado.audit import log_event
from almoxarifado.deps import (
    product_service_dep,
    require_admin,
    require_user,
    session_dep,
)
from almoxarifado.models import User
from almoxarifado.schemas import (
    DeleteResult,
    MovementRead,
    ProductCreate,
    ProductRead,
    ProductUpdate,
)
from almoxarifado.services.ledger_service import MovementLedger
from almoxarifado.services.product_service import ProductService

router = APIRouter(prefix="/products", tags=["products"])


@router.get("", response_model=list[ProductRead])
def list_products(
    user: User = Depends(require_user),
    service: ProductService = Depends(product_service_dep),
) -> list[ProductRead]:
    return [ProductRead.model_validate(p) for p in service.list()]


@router.get("/search", response_model=list[ProductRead])
def search_products(
    term: str = "",
    user: User = Depends(require_user),
    service: ProductService = Depends(product_service_dep),
) -> list[ProductRead]:
    return [ProductRead.model_validate(p) for p in service.search(term)]


@router.post("", response_model=ProductRead, status_code=201)
def create_product(
    payload: ProductCreate,
    user: User = Depends(require_user),
    service: ProductService = Depends(product_service_dep),
    db: Session = Depends(session_dep),
) -> ProductRead:
    created = service.create(payload)
    result = ProductRead.model_validate(created)
    log_event(
        db,
        user,
        action="product_create",
        entity_type="product",
        entity_id=str(result.id),
        detail={"name": result.name, "min_stock": result.min_stock},
    )
    return result


@router.get("/{product_id}", response_model=ProductRead)
def get_product(
    product_id: int,
    user: User = Depends(require_user),
    service: ProductService = Depends(product_service_dep),
) -> ProductRead:
    return ProductRead.model_validate(service.get(product_id))


@router.patch("/{product_id}", response_model=ProductRead)
def update_product(
    product_id: int,
    payload: ProductUpdate,
    user: User = Depends(require_user),
    service: ProductService = Depends(product_service_dep),
    db: Session = Depends(session_dep),
) -> ProductRead:
    updated = service.update(product_id, payload)
    result = ProductRead.model_validate(updated)
    log_event(
        db,
        user,
        action="product_update",
        entity_type="product",
        entity_id=str(product_id),
        detail=payload.model_dump(exclude_unset=True),
    )
    return result


@router.delete("/{product_id}", response_model=DeleteResult)
def delete_product(
    product_id: int,
    user: User = Depends(require_admin),
    service: ProductService = Depends(product_service_dep),
    db: Session = Depends(session_dep),
) -> DeleteResult:
    success = service.delete(product_id)
    log_event(
        db,
        user,
        action="product_delete",
        entity_type="product",
        entity_id=str(product_id),
    )
    return DeleteResult(success=success)


@router.get("/{product_id}/movements", response_model=list[MovementRead])
def product_movements(
    product_id: int,
    user: User = Depends(require_user),
    db: Session = Depends(session_dep),
) -> list[MovementRead]:
    ledger = MovementLedger(db)
    return [MovementRead.model_validate(m) for m in ledger.list_by_product(product_id)]
