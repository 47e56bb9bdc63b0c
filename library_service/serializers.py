"""JSON shapes for API responses (camelCase on the wire)."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from .borrowing import effective_status


def iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def user_to_dict(user) -> dict:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role,
        "createdAt": iso(user.created_at),
    }


def book_to_dict(book) -> dict:
    return {
        "id": book.id,
        "title": book.title,
        "author": book.author,
        "category": book.category,
        "isbn": book.isbn,
        "description": book.description,
        "publishedYear": book.published_year,
        "totalCopies": book.total_copies,
        "availableCopies": book.available_copies,
        "createdAt": iso(book.created_at),
        "updatedAt": iso(book.updated_at),
    }


def borrow_to_dict(borrow, now: datetime, include_user: bool = False) -> dict:
    data = {
        "id": borrow.id,
        "userId": borrow.user_id,
        "bookId": borrow.book_id,
        "borrowDate": iso(borrow.borrow_date),
        "dueDate": iso(borrow.due_date),
        "returnDate": iso(borrow.return_date),
        "status": effective_status(borrow.status, borrow.due_date, now),
        "fine": borrow.fine,
        "book": None,
    }
    if borrow.book is not None:
        data["book"] = {
            "id": borrow.book.id,
            "title": borrow.book.title,
            "author": borrow.book.author,
            "isbn": borrow.book.isbn,
            "category": borrow.book.category,
        }
    if include_user:
        user = borrow.user
        data["user"] = (
            {"id": user.id, "name": user.name, "email": user.email} if user else None
        )
    return data
