from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class ProductCreate(BaseModel):
    name: str
    description: Optional[str] = None
    min_stock: int = 0

    model_config = {"extra": "forbid"}


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    min_stock: Optional[int] = None

    model_config = {"extra": "forbid"}


class ProductRead(BaseModel):
    id: int
    name: str
    description: Optional[str]
    quantity: int
    min_stock: int
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class MovementCreate(BaseModel):
    product_id: int
    type: str
    quantity: int


class MovementRead(BaseModel):
    id: int
    product_id: int
    type: str
    quantity: int
    user_id: int
    created_at: datetime

    model_config = {"from_attributes": True}


class MovementResult(BaseModel):
    movement: MovementRead
    stock_after: int
    warning: Optional[str] = None


class StockReconciliation(BaseModel):
    product_id: int
    quantity: int
    ledger_quantity: int
    consistent: bool


class DeleteResult(BaseModel):
    success: bool


class UserRead(BaseModel):
    id: int
    username: str
    role: str

    model_config = {"from_attributes": True}
