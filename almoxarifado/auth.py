from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import os
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from almoxarifado.models import User

LOGGER = logging.getLogger(__name__)

_PBKDF2_ITERATIONS = 200_000


def hash_password(password: str) -> str:
    salt = os.urandom(16)
    dk = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt,
        _PBKDF2_ITERATIONS,
    )
    return "pbkdf2_sha256${}${}${}".format(
        _PBKDF2_ITERATIONS,
        base64.b64encode(salt).decode("ascii"),
        base64.b64encode(dk).decode("ascii"),
    )


def verify_password(password: str, password_hash: str) -> bool:
    try:
        algo, iters_s, salt_b64, hash_b64 = password_hash.split("$", 3)
        if algo != "pbkdf2_sha256":
            return False
        iters = int(iters_s)
        salt = base64.b64decode(salt_b64.encode("ascii"))
        expected = base64.b64decode(hash_b64.encode("ascii"))
    except (ValueError, binascii.Error):
        return False

    dk = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iters)
    return hmac.compare_digest(dk, expected)


def get_user_by_username(db: Session, username: str) -> Optional[User]:
    u = (username or "").strip()
    if not u:
        return None
    return db.scalar(select(User).where(User.username == u))


def authenticate(db: Session, username: str, password: str) -> Optional[User]:
    user = get_user_by_username(db, username)
    if user is None or not user.is_active:
        return None
    if not verify_password(password or "", user.password_hash):
        return None
    return user


def ensure_user(db: Session, username: str, password: str, role: str = "operator") -> Optional[User]:
    """Create the account if missing. An existing account is returned unchanged,
    so a deactivated or demoted user stays that way across restarts.
    """
    username = (username or "").strip()
    if not username:
        return None
    user = get_user_by_username(db, username)
    if user is None:
        user = User(
            username=username,
            password_hash=hash_password(password or ""),
            role=role,
            is_active=True,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        LOGGER.info("Created %s user %r", role, username)
    return user
