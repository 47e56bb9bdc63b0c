from datetime import datetime

from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)

Base = declarative_base()

ROLES = ("admin", "member")
BORROW_STATUSES = ("borrowed", "overdue", "returned")
ACTIVE_STATUSES = ("borrowed", "overdue")


class User(Base):
    __tablename__ = "user"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    role = Column(Enum(*ROLES, name="user_role"), nullable=False, default="member")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class Book(Base):
    __tablename__ = "book"
    __table_args__ = (
        CheckConstraint("total_copies >= 1", name="ck_book_total_copies"),
        CheckConstraint("available_copies >= 0", name="ck_book_available_min"),
        CheckConstraint(
            "available_copies <= total_copies", name="ck_book_available_max"
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    author = Column(String(255), nullable=False)
    category = Column(String(100), nullable=False)
    isbn = Column(String(20), unique=True, nullable=False)
    description = Column(Text)
    published_year = Column(Integer)
    total_copies = Column(Integer, nullable=False, default=1)
    available_copies = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(
        DateTime,
        nullable=False,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )


class Borrow(Base):
    """
    One lending of one book to one user.

    user_id / book_id are nulled (not cascaded) when a user or book with only
    returned history is deleted, so fines stay in the ledger.
    """
    __tablename__ = "borrow"
    __table_args__ = (
        # At most one active borrow per user and book.
        Index(
            "ux_borrow_active_user_book",
            "user_id",
            "book_id",
            unique=True,
            sqlite_where=text("status IN ('borrowed', 'overdue')"),
            postgresql_where=text("status IN ('borrowed', 'overdue')"),
        ).ddl_if(dialect=("sqlite", "postgresql")),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("user.id", ondelete="SET NULL"), index=True)
    book_id = Column(Integer, ForeignKey("book.id", ondelete="SET NULL"), index=True)
    borrow_date = Column(DateTime, nullable=False, default=datetime.utcnow)
    due_date = Column(DateTime, nullable=False)
    return_date = Column(DateTime)
    status = Column(
        Enum(*BORROW_STATUSES, name="borrow_status"),
        nullable=False,
        default="borrowed",
    )
    fine = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    user = relationship("User")
    book = relationship("Book")
