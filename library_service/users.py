from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy import func, or_, select, update

from .auth import hash_password, verify_password
from .errors import ErrorKind, Outcome, failure, success
from .models import ACTIVE_STATUSES, Borrow, User
from .repository import paginate

logger = logging.getLogger(__name__)


class UserService:
    def __init__(self, session) -> None:
        self.session = session

    def find_by_email(self, email: str) -> Optional[User]:
        return self.session.execute(
            select(User).where(func.lower(User.email) == email.lower())
        ).scalar_one_or_none()

    def register(self, name: str, email: str, password: str, role: str = "member") -> Outcome:
        if self.find_by_email(email) is not None:
            return failure(ErrorKind.CONFLICT, "User already exists")

        user = User(
            name=name,
            email=email,
            password_hash=hash_password(password),
            role=role,
        )
        self.session.add(user)
        self.session.commit()
        logger.info("Registered user %s (%s) as %s", user.id, user.email, user.role)
        return success(user)

    def authenticate(self, email: str, password: str) -> Outcome:
        user = self.find_by_email(email)
        if user is None or not verify_password(user.password_hash, password):
            logger.warning("Failed login for %s", email)
            return failure(ErrorKind.UNAUTHENTICATED, "Invalid credentials")
        return success(user)

    def get_user(self, user_id: int) -> Outcome:
        user = self.session.get(User, user_id)
        if user is None:
            return failure(ErrorKind.NOT_FOUND, "User not found")
        return success(user)

    def active_borrows(self, user_id: int):
        return (
            self.session.execute(
                select(Borrow)
                .where(Borrow.user_id == user_id, Borrow.status.in_(ACTIVE_STATUSES))
                .order_by(Borrow.created_at.desc(), Borrow.id.desc())
            )
            .scalars()
            .all()
        )

    def history(self, user_id: int):
        return (
            self.session.execute(
                select(Borrow)
                .where(Borrow.user_id == user_id)
                .order_by(Borrow.created_at.desc(), Borrow.id.desc())
            )
            .scalars()
            .all()
        )

    def search(self, search: Optional[str] = None, page: int = 1, limit: int = 10) -> Outcome:
        q = select(User)
        if search:
            like = f"%{search}%"
            q = q.where(or_(User.name.ilike(like), User.email.ilike(like)))
        q = q.order_by(User.created_at.desc(), User.id.desc())
        return success(paginate(self.session, q, page, limit))

    def update_user(self, user_id: int, fields: Dict[str, Any]) -> Outcome:
        user = self.session.get(User, user_id)
        if user is None:
            return failure(ErrorKind.NOT_FOUND, "User not found")

        email = fields.get("email")
        if email and email != user.email:
            existing = self.find_by_email(email)
            if existing is not None and existing.id != user.id:
                return failure(ErrorKind.CONFLICT, "Email already exists")

        old_role = user.role
        for attr in ("name", "email", "role"):
            if attr in fields:
                setattr(user, attr, fields[attr])
        self.session.commit()

        if user.role != old_role:
            logger.info("User %s role changed %s -> %s", user.id, old_role, user.role)
        else:
            logger.info("Updated user %s", user.id)
        return success(user)

    def delete_user(self, user_id: int) -> Outcome:
        user = self.session.execute(
            select(User).where(User.id == user_id).with_for_update()
        ).scalar_one_or_none()
        if user is None:
            return failure(ErrorKind.NOT_FOUND, "User not found")

        if self.active_borrows(user_id):
            self.session.rollback()
            return failure(ErrorKind.CONFLICT, "Cannot delete user with active borrowed books")

        self.session.execute(
            update(Borrow)
            .where(Borrow.user_id == user_id)
            .values(user_id=None)
            .execution_options(synchronize_session=False)
        )
        self.session.delete(user)
        self.session.commit()
        logger.info("Deleted user %s", user_id)
        return success(None)

    def stats(self) -> Outcome:
        rows = self.session.execute(
            select(User.role, func.count(User.id)).group_by(User.role)
        ).all()
        counts = {role: count for role, count in rows}
        return success(
            {
                "totalUsers": sum(counts.values()),
                "adminUsers": counts.get("admin", 0),
                "memberUsers": counts.get("member", 0),
            }
        )
