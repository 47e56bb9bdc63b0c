"""
Password hashing and bearer tokens.

Passwords are stored as werkzeug salted hashes. Tokens are HS256 JWTs whose
subject is the user id; the HTTP layer re-reads the user on every request,
so a token never carries the role.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import jwt
from werkzeug.security import check_password_hash, generate_password_hash


@dataclass(frozen=True)
class RequestContext:
    """The authenticated caller, handed explicitly to every service call."""

    user_id: int
    name: str
    email: str
    role: str

    @classmethod
    def from_user(cls, user) -> "RequestContext":
        return cls(user_id=user.id, name=user.name, email=user.email, role=user.role)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def hash_password(password: str) -> str:
    return generate_password_hash(password)


def verify_password(password_hash: str, password: str) -> bool:
    return check_password_hash(password_hash, password)


def issue_token(user_id: int, secret: str, algorithm: str, exp_minutes: int) -> str:
    now = datetime.utcnow()
    payload = {
        "sub": str(user_id),
        "iat": now,
        "exp": now + timedelta(minutes=exp_minutes),
    }
    return jwt.encode(payload, secret, algorithm=algorithm)


def decode_token(token: str, secret: str, algorithm: str) -> int:
    """
    Return the user id from a valid token. Raises ``jwt.InvalidTokenError``
    (or a subclass such as ``ExpiredSignatureError``) otherwise.
    """
    payload = jwt.decode(
        token,
        secret,
        algorithms=[algorithm],
        options={"require": ["exp", "sub"]},
    )
    try:
        return int(payload["sub"])
    except (TypeError, ValueError):
        raise jwt.InvalidTokenError("Token subject is not a user id")


def bearer_token(header: Optional[str]) -> Optional[str]:
    if not header or not header.startswith("Bearer "):
        return None
    token = header[len("Bearer "):].strip()
    return token or None
