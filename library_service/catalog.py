from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy import func, or_, select, update

from .errors import ErrorKind, Outcome, failure, success
from .models import ACTIVE_STATUSES, Book, Borrow
from .repository import paginate

logger = logging.getLogger(__name__)


class CatalogService:
    """Book store: CRUD, search and copy statistics over the ``book`` table."""

    def __init__(self, session) -> None:
        self.session = session

    def _isbn_taken(self, isbn: str, exclude_id: Optional[int] = None) -> bool:
        q = select(Book.id).where(Book.isbn == isbn)
        if exclude_id is not None:
            q = q.where(Book.id != exclude_id)
        return self.session.execute(q).first() is not None

    def _active_borrows(self, book_id: int) -> int:
        return self.session.execute(
            select(func.count(Borrow.id)).where(
                Borrow.book_id == book_id, Borrow.status.in_(ACTIVE_STATUSES)
            )
        ).scalar_one()

    def create_book(self, fields: Dict[str, Any]) -> Outcome:
        if self._isbn_taken(fields["isbn"]):
            return failure(ErrorKind.CONFLICT, "Book with this ISBN already exists")

        total = fields.get("total_copies", 1)
        available = fields.get("available_copies", total)
        if available > total:
            return failure(ErrorKind.VALIDATION, "Available copies cannot exceed total copies")

        book = Book(
            title=fields["title"],
            author=fields["author"],
            category=fields["category"],
            isbn=fields["isbn"],
            description=fields.get("description"),
            published_year=fields.get("published_year"),
            total_copies=total,
            available_copies=available,
        )
        self.session.add(book)
        self.session.commit()
        logger.info("Created book %s (isbn=%s, copies=%s)", book.id, book.isbn, total)
        return success(book)

    def get_book(self, book_id: int) -> Outcome:
        book = self.session.get(Book, book_id)
        if book is None:
            return failure(ErrorKind.NOT_FOUND, "Book not found")
        return success(book)

    def search(
        self,
        search: Optional[str] = None,
        category: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Outcome:
        q = select(Book)
        if search:
            like = f"%{search}%"
            q = q.where(
                or_(
                    Book.title.ilike(like),
                    Book.author.ilike(like),
                    Book.isbn.ilike(like),
                )
            )
        if category:
            q = q.where(Book.category.ilike(f"%{category}%"))
        q = q.order_by(Book.created_at.desc(), Book.id.desc())
        return success(paginate(self.session, q, page, limit))

    def update_book(self, book_id: int, fields: Dict[str, Any]) -> Outcome:
        book = self.session.execute(
            select(Book).where(Book.id == book_id).with_for_update()
        ).scalar_one_or_none()
        if book is None:
            return failure(ErrorKind.NOT_FOUND, "Book not found")

        isbn = fields.get("isbn")
        if isbn and isbn != book.isbn and self._isbn_taken(isbn, exclude_id=book.id):
            self.session.rollback()
            return failure(ErrorKind.CONFLICT, "Book with this ISBN already exists")

        # A change of total copies moves the shelf count by the same amount;
        # copies on loan stay on loan and must fit back on the shelf.
        on_loan = self._active_borrows(book.id)
        total = fields.get("total_copies", book.total_copies)
        if "available_copies" in fields:
            available = fields["available_copies"]
        else:
            available = book.available_copies + (total - book.total_copies)
        if total < on_loan or available < 0:
            self.session.rollback()
            return failure(
                ErrorKind.VALIDATION,
                f"Total copies cannot be less than the {on_loan} copies currently on loan",
            )
        if available > total:
            self.session.rollback()
            return failure(ErrorKind.VALIDATION, "Available copies cannot exceed total copies")
        if available > total - on_loan:
            self.session.rollback()
            return failure(
                ErrorKind.VALIDATION,
                f"Available copies cannot exceed the {total - on_loan} copies not on loan",
            )

        for attr in ("title", "author", "category", "isbn", "description", "published_year"):
            if attr in fields:
                setattr(book, attr, fields[attr])
        book.total_copies = total
        book.available_copies = available

        self.session.commit()
        logger.info("Updated book %s", book.id)
        return success(book)

    def delete_book(self, book_id: int) -> Outcome:
        book = self.session.execute(
            select(Book).where(Book.id == book_id).with_for_update()
        ).scalar_one_or_none()
        if book is None:
            return failure(ErrorKind.NOT_FOUND, "Book not found")

        if self._active_borrows(book_id):
            self.session.rollback()
            return failure(
                ErrorKind.CONFLICT, "Cannot delete a book that is currently borrowed"
            )

        self.session.execute(
            update(Borrow)
            .where(Borrow.book_id == book_id)
            .values(book_id=None)
            .execution_options(synchronize_session=False)
        )
        self.session.delete(book)
        self.session.commit()
        logger.info("Deleted book %s", book_id)
        return success(None)

    def stats(self) -> Outcome:
        total_books, total_copies, available_copies = self.session.execute(
            select(
                func.count(Book.id),
                func.coalesce(func.sum(Book.total_copies), 0),
                func.coalesce(func.sum(Book.available_copies), 0),
            )
        ).one()
        return success(
            {
                "totalBooks": total_books,
                "totalCopies": total_copies,
                "availableCopies": available_copies,
                "borrowedCopies": total_copies - available_copies,
            }
        )
