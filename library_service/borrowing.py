"""
Borrow / return / overdue rules.

Every mutating operation runs as one transaction on the repository: the
checks and the writes either all land or the transaction is rolled back.
Copy counts only ever move through conditional updates, so two requests
racing for the last copy cannot both succeed.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from .errors import ErrorKind, Outcome, failure, success
from .models import ACTIVE_STATUSES, BORROW_STATUSES, Borrow
from .repository import LibraryRepository

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)


def effective_status(status: str, due_date: datetime, now: datetime) -> str:
    if status == "borrowed" and now > due_date:
        return "overdue"
    return status


def compute_fine(due_date: datetime, returned_at: datetime, rate: int) -> int:
    """Whole days late, rounded up (one microsecond late is a full day), times rate."""
    if returned_at <= due_date:
        return 0
    days_late = -((due_date - returned_at) // ONE_DAY)
    return days_late * rate


class BorrowService:
    def __init__(
        self,
        repo: LibraryRepository,
        clock: Callable[[], datetime] = datetime.utcnow,
        loan_days: int = 14,
        fine_per_day: int = 5,
        max_active: int = 5,
    ) -> None:
        self.repo = repo
        self.clock = clock
        self.loan_days = loan_days
        self.fine_per_day = fine_per_day
        self.max_active = max_active

    def _reject(self, kind: ErrorKind, message: str) -> Outcome:
        self.repo.rollback()
        return failure(kind, message)

    def borrow_book(self, ctx, book_id: int) -> Outcome:
        now = self.clock()

        # Serializes the duplicate and limit checks per user.
        self.repo.lock_user(ctx.user_id)

        book = self.repo.find_book(book_id, for_update=True)
        if book is None:
            return self._reject(ErrorKind.NOT_FOUND, "Book not found")
        if book.available_copies <= 0:
            return self._reject(ErrorKind.UNAVAILABLE, "No copies available")
        if self.repo.find_active_borrow(ctx.user_id, book_id) is not None:
            return self._reject(ErrorKind.CONFLICT, "You have already borrowed this book")
        if self.repo.count_active_borrows(ctx.user_id) >= self.max_active:
            return self._reject(
                ErrorKind.LIMIT_EXCEEDED,
                f"Maximum borrow limit reached ({self.max_active} books)",
            )

        if not self.repo.update_book_copies(book_id, -1):
            return self._reject(ErrorKind.UNAVAILABLE, "No copies available")

        borrow = self.repo.insert_borrow(
            Borrow(
                user_id=ctx.user_id,
                book_id=book_id,
                borrow_date=now,
                due_date=now + timedelta(days=self.loan_days),
                status="borrowed",
                fine=0,
                created_at=now,
            )
        )
        if borrow is None:
            return self._reject(ErrorKind.CONFLICT, "You have already borrowed this book")
        self.repo.commit()
        logger.info(
            "User %s borrowed book %s (borrow %s, due %s)",
            ctx.user_id,
            book_id,
            borrow.id,
            borrow.due_date.isoformat(),
        )
        return success(borrow)

    def return_book(self, ctx, book_id: int) -> Outcome:
        now = self.clock()

        borrow = self.repo.find_active_borrow(ctx.user_id, book_id, for_update=True)
        if borrow is None:
            return self._reject(ErrorKind.NOT_FOUND, "No active borrow record found")

        fine = compute_fine(borrow.due_date, now, self.fine_per_day)
        returned = self.repo.update_borrow(
            borrow.id,
            ACTIVE_STATUSES,
            status="returned",
            return_date=now,
            fine=fine,
        )
        if not returned:
            return self._reject(ErrorKind.NOT_FOUND, "No active borrow record found")

        if not self.repo.update_book_copies(book_id, 1):
            logger.error(
                "Book %s already has all copies on the shelf; return of borrow %s rolled back",
                book_id,
                borrow.id,
            )
            return self._reject(ErrorKind.INTERNAL, "Book copy count is inconsistent")

        self.repo.commit()
        logger.info(
            "User %s returned book %s (borrow %s, fine %s)",
            ctx.user_id,
            book_id,
            borrow.id,
            fine,
        )
        return success(borrow)

    def sweep_overdue(self) -> Outcome:
        count = self.repo.mark_overdue(self.clock())
        self.repo.commit()
        logger.info("Overdue sweep marked %s borrow(s) overdue", count)
        return success(count)

    def stats(self) -> Outcome:
        now = self.clock()
        borrows = self.repo.list_borrows().items

        statuses = [effective_status(b.status, b.due_date, now) for b in borrows]
        return success(
            {
                "totalBorrows": len(borrows),
                "activeBorrows": sum(1 for s in statuses if s in ACTIVE_STATUSES),
                "overdueBorrows": statuses.count("overdue"),
                "returnedBorrows": statuses.count("returned"),
                "totalFines": sum(b.fine for b in borrows if b.fine > 0),
            }
        )

    def list_for_user(
        self, ctx, status: Optional[str] = None, page: int = 1, limit: int = 10
    ) -> Outcome:
        if status and status not in BORROW_STATUSES:
            return failure(ErrorKind.VALIDATION, f"Unknown status '{status}'")
        return success(
            self.repo.list_borrows(
                status=status, user_id=ctx.user_id, now=self.clock(), page=page, limit=limit
            )
        )

    def list_all(
        self,
        status: Optional[str] = None,
        user_id: Optional[int] = None,
        book_id: Optional[int] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Outcome:
        if status and status not in BORROW_STATUSES:
            return failure(ErrorKind.VALIDATION, f"Unknown status '{status}'")
        return success(
            self.repo.list_borrows(
                status=status,
                user_id=user_id,
                book_id=book_id,
                now=self.clock(),
                page=page,
                limit=limit,
            )
        )
