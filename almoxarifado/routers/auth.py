from __future__ import annotations

from fastapi import APIRouter, Depends, Form, HTTPException, Request
from sqlalchemy.orm import Session

from almoxarifado.audit import log_event
from almoxarifado.auth import authenticate
from almoxarifado.deps import require_user, session_dep, session_user
from almoxarifado.models import User
from almoxarifado.schemas import UserRead

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=UserRead)
def login(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    db: Session = Depends(session_dep),
) -> UserRead:
    user = authenticate(db, username=username, password=password)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid username or password")

    request.session["username"] = user.username
    log_event(db, user, action="login", entity_type="auth", entity_id=user.username, detail={})
    return UserRead.model_validate(user)


@router.post("/logout")
def logout(request: Request, db: Session = Depends(session_dep)) -> dict[str, bool]:
    user = session_user(db, request)
    if user is not None:
        log_event(db, user, action="logout", entity_type="auth", entity_id=user.username, detail={})
    request.session.clear()
    return {"success": True}


@router.get("/me", response_model=UserRead)
def me(user: User = Depends(require_user)) -> UserRead:
    return UserRead.model_validate(user)
