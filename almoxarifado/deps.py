from __future__ import annotations

from collections.abc import Generator
from typing import Optional

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from almoxarifado.auth import get_user_by_username
from almoxarifado.db import get_session
from almoxarifado.models import User
from almoxarifado.services.product_service import ProductService
from almoxarifado.services.stock_service import StockService


def session_dep() -> Generator[Session, None, None]:
    db = get_session()
    try:
        yield db
    finally:
        db.close()


def session_user(db: Session, request: Request) -> Optional[User]:
    username = (request.session or {}).get("username")
    if not username:
        return None
    user = get_user_by_username(db, str(username))
    if user is None or not user.is_active:
        return None
    return user


def require_user(request: Request, db: Session = Depends(session_dep)) -> User:
    user = session_user(db, request)
    if user is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user


def require_admin(user: User = Depends(require_user)) -> User:
    if (user.role or "").lower() != "admin":
        raise HTTPException(status_code=403, detail="Admin required")
    return user


def product_service_dep(db: Session = Depends(session_dep)) -> ProductService:
    return ProductService(db)


def stock_service_dep(db: Session = Depends(session_dep)) -> StockService:
    return StockService(db)
