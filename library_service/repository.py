from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, List, Optional

from sqlalchemy import and_, create_engine, event, func, or_, select, update
from sqlalchemy.exc import IntegrityError

from .models import ACTIVE_STATUSES, Book, Borrow, User


def create_library_engine(url: str, **kwargs):
    """
    Build the engine for ``url``.

    SQLite ignores SELECT ... FOR UPDATE, so there every transaction opens
    with BEGIN IMMEDIATE and holds the write lock from its first statement.
    """
    engine = create_engine(url, future=True, **kwargs)
    if engine.dialect.name != "sqlite":
        return engine

    @event.listens_for(engine, "connect")
    def _disable_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


@dataclass
class Page:
    items: List[Any]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    def to_dict(self, serialize: Callable[[Any], dict]) -> dict:
        return {
            "items": [serialize(item) for item in self.items],
            "currentPage": self.page,
            "totalPages": self.total_pages,
            "total": self.total,
        }


def paginate(session, stmt, page: int = 1, limit: Optional[int] = None) -> Page:
    """
    Run ``stmt`` for one page of results. With no limit, every row is
    returned as a single page.
    """
    if limit is None:
        items = list(session.execute(stmt).scalars().all())
        return Page(items, 1, len(items), len(items))

    total = session.execute(
        select(func.count()).select_from(stmt.order_by(None).subquery())
    ).scalar_one()
    items = session.execute(stmt.offset((page - 1) * limit).limit(limit)).scalars().all()
    return Page(list(items), page, limit, total)


def status_filter(status: str, now: datetime):
    """
    Match borrows by their effective status: a ``borrowed`` record past its
    due date counts as overdue even before the sweep has rewritten it.
    """
    if status == "overdue":
        return or_(
            Borrow.status == "overdue",
            and_(Borrow.status == "borrowed", Borrow.due_date < now),
        )
    if status == "borrowed":
        return and_(Borrow.status == "borrowed", Borrow.due_date >= now)
    return Borrow.status == status


class LibraryRepository(ABC):
    """Persistence operations the borrow service depends on."""

    @abstractmethod
    def find_book(self, book_id: int, for_update: bool = False) -> Optional[Book]:
        ...

    @abstractmethod
    def update_book_copies(self, book_id: int, delta: int) -> bool:
        """Shift available copies by ``delta``; False if that would leave 0..total."""

    @abstractmethod
    def lock_user(self, user_id: int) -> Optional[User]:
        ...

    @abstractmethod
    def find_active_borrow(
        self, user_id: int, book_id: int, for_update: bool = False
    ) -> Optional[Borrow]:
        ...

    @abstractmethod
    def count_active_borrows(self, user_id: int) -> int:
        ...

    @abstractmethod
    def insert_borrow(self, borrow: Borrow) -> Optional[Borrow]:
        """Returns None when the user already holds an active borrow of the book."""

    @abstractmethod
    def update_borrow(self, borrow_id: int, expected_statuses, **values) -> bool:
        """Apply ``values`` only if the record is still in one of ``expected_statuses``."""

    @abstractmethod
    def list_borrows(
        self,
        status: Optional[str] = None,
        user_id: Optional[int] = None,
        book_id: Optional[int] = None,
        now: Optional[datetime] = None,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> Page:
        ...

    @abstractmethod
    def mark_overdue(self, now: datetime) -> int:
        ...

    @abstractmethod
    def commit(self) -> None:
        ...

    @abstractmethod
    def rollback(self) -> None:
        ...


class SqlLibraryRepository(LibraryRepository):
    def __init__(self, session) -> None:
        self.session = session

    def find_book(self, book_id, for_update=False):
        q = select(Book).where(Book.id == book_id)
        if for_update:
            q = q.with_for_update()
        return self.session.execute(q).scalar_one_or_none()

    def update_book_copies(self, book_id, delta):
        stmt = update(Book).where(Book.id == book_id)
        if delta < 0:
            stmt = stmt.where(Book.available_copies + delta >= 0)
        else:
            stmt = stmt.where(Book.available_copies + delta <= Book.total_copies)
        stmt = stmt.values(
            available_copies=Book.available_copies + delta,
            updated_at=datetime.utcnow(),
        )
        return self._execute_update(stmt) == 1

    def lock_user(self, user_id):
        return self.session.execute(
            select(User).where(User.id == user_id).with_for_update()
        ).scalar_one_or_none()

    def find_active_borrow(self, user_id, book_id, for_update=False):
        q = select(Borrow).where(
            Borrow.user_id == user_id,
            Borrow.book_id == book_id,
            Borrow.status.in_(ACTIVE_STATUSES),
        )
        if for_update:
            q = q.with_for_update()
        return self.session.execute(q).scalars().first()

    def count_active_borrows(self, user_id):
        return self.session.execute(
            select(func.count(Borrow.id)).where(
                Borrow.user_id == user_id,
                Borrow.status.in_(ACTIVE_STATUSES),
            )
        ).scalar_one()

    def insert_borrow(self, borrow):
        self.session.add(borrow)
        try:
            self.session.flush()
        except IntegrityError:
            # ux_borrow_active_user_book
            return None
        return borrow

    def update_borrow(self, borrow_id, expected_statuses, **values):
        stmt = (
            update(Borrow)
            .where(Borrow.id == borrow_id, Borrow.status.in_(expected_statuses))
            .values(**values)
        )
        return self._execute_update(stmt) == 1

    def list_borrows(self, status=None, user_id=None, book_id=None, now=None, page=1, limit=None):
        q = select(Borrow)
        if status:
            q = q.where(status_filter(status, now or datetime.utcnow()))
        if user_id is not None:
            q = q.where(Borrow.user_id == user_id)
        if book_id is not None:
            q = q.where(Borrow.book_id == book_id)
        q = q.order_by(Borrow.created_at.desc(), Borrow.id.desc())
        return paginate(self.session, q, page, limit)

    def mark_overdue(self, now):
        stmt = (
            update(Borrow)
            .where(Borrow.status == "borrowed", Borrow.due_date < now)
            .values(status="overdue")
        )
        return self._execute_update(stmt)

    def commit(self):
        self.session.commit()

    def rollback(self):
        self.session.rollback()

    def _execute_update(self, stmt) -> int:
        # Conditional UPDATEs are the concurrency guard, so rowcount must be
        # exact: flush pending work, skip ORM sync, then expire loaded rows.
        self.session.flush()
        result = self.session.execute(
            stmt.execution_options(synchronize_session=False)
        )
        self.session.expire_all()
        return result.rowcount
