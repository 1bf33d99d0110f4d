# models/users_db.py (SQLAlchemy)
from __future__ import annotations
import re
from typing import Optional
from datetime import datetime, timezone

from werkzeug.security import generate_password_hash, check_password_hash
from models.base import session_scope
from models.schema import User

ROLES = {"admin", "manager", "accountant"}
USERNAME_RX = re.compile(r"^[a-z0-9._-]{3,40}$")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def get_user(username: str) -> Optional[dict]:
    if not username:
        return None
    with session_scope() as s:
        u = s.get(User, username)
        if not u:
            return None
        return {
            "username": u.username,
            "password_hash": u.password_hash,
            "role": u.role,
            "created_at": u.created_at,
        }


def verify_password(username: str, password: str) -> bool:
    if not username:
        return False
    with session_scope() as s:
        u = s.get(User, username)
        return bool(u and check_password_hash(u.password_hash, password))


def create_user(username: str, password: str, role: str = "manager") -> bool:
    if not username or not password or role not in ROLES:
        return False
    username = username.strip()
    if not USERNAME_RX.match(username.lower()):
        return False
    with session_scope() as s:
        if s.get(User, username):
            return False
        s.add(User(
            username=username,
            password_hash=generate_password_hash(password),
            role=role,
            created_at=_now_utc(),
        ))
    return True
