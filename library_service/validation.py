"""Request payload checks. Each returns ``(cleaned, error)``; error is None on success."""
from __future__ import annotations

import re
from datetime import date
from typing import Any, Dict, Optional, Tuple

from .models import ROLES

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

MIN_PASSWORD_LENGTH = 6

BOOK_TEXT_FIELDS = {
    "title": "Title",
    "author": "Author",
    "category": "Category",
    "isbn": "ISBN",
}

Cleaned = Tuple[Optional[Dict[str, Any]], Optional[str]]


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return None
    return None


def _clean_name(value: Any) -> Optional[str]:
    if not isinstance(value, str) or len(value.strip()) < 2:
        return None
    return value.strip()


def _clean_email(value: Any) -> Optional[str]:
    if not isinstance(value, str) or not EMAIL_RE.match(value.strip()):
        return None
    return value.strip().lower()


def clean_registration(data: Dict[str, Any]) -> Cleaned:
    name = _clean_name(data.get("name"))
    if name is None:
        return None, "Name must be at least 2 characters"
    email = _clean_email(data.get("email"))
    if email is None:
        return None, "Please provide a valid email"
    password = data.get("password")
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        return None, f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
    return {"name": name, "email": email, "password": password}, None


def clean_login(data: Dict[str, Any]) -> Cleaned:
    email = _clean_email(data.get("email"))
    if email is None:
        return None, "Please provide a valid email"
    password = data.get("password")
    if not isinstance(password, str) or not password:
        return None, "Password is required"
    return {"email": email, "password": password}, None


def clean_user_update(data: Dict[str, Any]) -> Cleaned:
    cleaned: Dict[str, Any] = {}
    if "name" in data:
        name = _clean_name(data["name"])
        if name is None:
            return None, "Name must be at least 2 characters"
        cleaned["name"] = name
    if "email" in data:
        email = _clean_email(data["email"])
        if email is None:
            return None, "Please provide a valid email"
        cleaned["email"] = email
    if "role" in data:
        if data["role"] not in ROLES:
            return None, "Role must be admin or member"
        cleaned["role"] = data["role"]
    return cleaned, None


def clean_book(data: Dict[str, Any], partial: bool = False) -> Cleaned:
    """
    Validate a book payload (camelCase keys) into model attribute names.

    With ``partial`` only the keys present are checked, for updates.
    """
    cleaned: Dict[str, Any] = {}

    for field, label in BOOK_TEXT_FIELDS.items():
        if field not in data:
            if not partial:
                return None, f"{label} is required"
            continue
        value = data[field]
        if not isinstance(value, str) or not value.strip():
            return None, f"{label} cannot be empty"
        cleaned[field] = value.strip()

    if data.get("totalCopies") is not None:
        total = _as_int(data["totalCopies"])
        if total is None or total < 1:
            return None, "Total copies must be at least 1"
        cleaned["total_copies"] = total

    if data.get("availableCopies") is not None:
        available = _as_int(data["availableCopies"])
        if available is None or available < 0:
            return None, "Available copies must be a non-negative integer"
        cleaned["available_copies"] = available

    if "description" in data:
        description = data["description"]
        if description is not None and not isinstance(description, str):
            return None, "Description must be text"
        cleaned["description"] = description.strip() if description else None

    if data.get("publishedYear") is not None:
        year = _as_int(data["publishedYear"])
        if year is None or not 1000 <= year <= date.today().year:
            return None, "Invalid published year"
        cleaned["published_year"] = year

    return cleaned, None


def parse_page_args(args, default_limit: int, max_limit: int) -> Tuple[Optional[Tuple[int, int]], Optional[str]]:
    page = _as_int(args.get("page", 1))
    limit = _as_int(args.get("limit", default_limit))
    if page is None or page < 1:
        return None, "page must be a positive integer"
    if limit is None or limit < 1:
        return None, "limit must be a positive integer"
    return (page, min(limit, max_limit)), None
