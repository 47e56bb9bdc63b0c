import os
import logging
from datetime import datetime
from functools import wraps

import click
import jwt
from flask import Flask, abort, jsonify, request
from flask_cors import CORS
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from werkzeug.exceptions import HTTPException, NotFound

from .auth import RequestContext, bearer_token, decode_token, issue_token
from .borrowing import BorrowService
from .catalog import CatalogService
from .config import Config
from .models import Base, User
from .repository import SqlLibraryRepository, create_library_engine
from .serializers import book_to_dict, borrow_to_dict, user_to_dict
from .users import UserService
from .validation import (
    clean_book,
    clean_login,
    clean_registration,
    clean_user_update,
    parse_page_args,
)

# ---------------------------------------------------------
# Logging
# ---------------------------------------------------------
logging.basicConfig(level=Config.LOG_LEVEL)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------
# Flask + DB setup
# ---------------------------------------------------------

app = Flask(__name__)
app.config.from_object(Config)
CORS(app)

engine = create_library_engine(app.config["SQLALCHEMY_DATABASE_URI"])
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)

# Create tables if not present
Base.metadata.create_all(engine)


# ---------------------------------------------------------
# Helpers
# ---------------------------------------------------------

def require_auth(*roles):
    """
    Resolve the bearer token to a user and pass a RequestContext as the
    view's first argument. With ``roles`` the user's role must be one of them.
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            token = bearer_token(request.headers.get("Authorization"))
            if not token:
                abort(401, description="No token, authorization denied")

            try:
                user_id = decode_token(
                    token, app.config["JWT_SECRET"], app.config["JWT_ALGORITHM"]
                )
            except jwt.InvalidTokenError as e:
                logger.warning("Rejected token on %s: %s", request.path, e)
                abort(401, description="Token is not valid")

            # Re-read so role changes and deletions apply without re-login.
            session = SessionLocal()
            try:
                user = session.get(User, user_id)
                ctx = RequestContext.from_user(user) if user else None
            finally:
                session.close()

            if ctx is None:
                logger.warning("Token for unknown user %s on %s", user_id, request.path)
                abort(401, description="Token is not valid")
            if roles and ctx.role not in roles:
                logger.warning(
                    "User %s (%s) denied access to %s", ctx.user_id, ctx.role, request.path
                )
                abort(403, description="Access denied")

            return func(ctx, *args, **kwargs)

        return wrapper

    return decorator


def unwrap(outcome):
    if not outcome.ok:
        abort(outcome.status_code, description=outcome.message)
    return outcome.value


def json_body():
    data = request.get_json(force=True, silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        abort(400, description="Request body must be a JSON object")
    return data


def validated(cleaner, *args, **kwargs):
    cleaned, error = cleaner(json_body(), *args, **kwargs)
    if error:
        abort(400, description=error)
    return cleaned


def page_args():
    parsed, error = parse_page_args(
        request.args, app.config["DEFAULT_PAGE_SIZE"], app.config["MAX_PAGE_SIZE"]
    )
    if error:
        abort(400, description=error)
    return parsed


def int_arg(name):
    value = request.args.get(name)
    if value in (None, ""):
        return None
    try:
        return int(value)
    except ValueError:
        abort(400, description=f"{name} must be an integer")


def token_for(user):
    return issue_token(
        user.id,
        app.config["JWT_SECRET"],
        app.config["JWT_ALGORITHM"],
        app.config["JWT_EXP_MINUTES"],
    )


def borrow_service(session):
    return BorrowService(
        SqlLibraryRepository(session),
        loan_days=app.config["LOAN_DAYS"],
        fine_per_day=app.config["FINE_PER_DAY"],
        max_active=app.config["MAX_ACTIVE_BORROWS"],
    )


# ---------------------------------------------------------
# Error handlers
# ---------------------------------------------------------

@app.errorhandler(HTTPException)
def handle_http_error(e):
    message = e.description
    if isinstance(e, NotFound) and message == NotFound.description:
        message = "Route not found"
    return jsonify({"message": message}), e.code


@app.errorhandler(SQLAlchemyError)
def handle_db_error(e):
    logger.exception("Database error on %s %s", request.method, request.path)
    return jsonify({"message": "Server error"}), 500


# ---------------------------------------------------------
# Health
# ---------------------------------------------------------

@app.get("/api/health")
def health_check():
    return jsonify(
        {
            "message": "Library Management System API is running!",
            "timestamp": datetime.utcnow().isoformat(),
        }
    )


# ---------------------------------------------------------
# Auth
# ---------------------------------------------------------

@app.post("/api/auth/register")
def register():
    data = validated(clean_registration)

    session = SessionLocal()
    try:
        user = unwrap(UserService(session).register(**data))
        return (
            jsonify(
                {
                    "message": "User registered successfully",
                    "token": token_for(user),
                    "user": user_to_dict(user),
                }
            ),
            201,
        )
    finally:
        session.close()


@app.post("/api/auth/login")
def login():
    data = validated(clean_login)

    session = SessionLocal()
    try:
        user = unwrap(UserService(session).authenticate(data["email"], data["password"]))
        return jsonify(
            {
                "message": "Login successful",
                "token": token_for(user),
                "user": user_to_dict(user),
            }
        )
    finally:
        session.close()


@app.get("/api/auth/profile")
@require_auth()
def profile(ctx):
    session = SessionLocal()
    try:
        users = UserService(session)
        user = unwrap(users.get_user(ctx.user_id))
        now = datetime.utcnow()
        payload = user_to_dict(user)
        payload["borrowedBooks"] = [
            borrow_to_dict(b, now) for b in users.active_borrows(user.id)
        ]
        return jsonify(payload)
    finally:
        session.close()


# ---------------------------------------------------------
# Books
# ---------------------------------------------------------

@app.get("/api/books")
def list_books():
    """
    Paginated catalog.
    - ?search=...    substring of title/author/isbn (case-insensitive)
    - ?category=...  category substring (case-insensitive)
    - ?page, ?limit
    """
    page, limit = page_args()

    session = SessionLocal()
    try:
        result = unwrap(
            CatalogService(session).search(
                search=request.args.get("search"),
                category=request.args.get("category"),
                page=page,
                limit=limit,
            )
        )
        return jsonify(result.to_dict(book_to_dict))
    finally:
        session.close()


@app.get("/api/books/stats")
@require_auth("admin")
def book_stats(ctx):
    session = SessionLocal()
    try:
        return jsonify(unwrap(CatalogService(session).stats()))
    finally:
        session.close()


@app.get("/api/books/<int:book_id>")
def get_book(book_id):
    session = SessionLocal()
    try:
        book = unwrap(CatalogService(session).get_book(book_id))
        return jsonify(book_to_dict(book))
    finally:
        session.close()


@app.post("/api/books")
@require_auth("admin")
def create_book(ctx):
    fields = validated(clean_book)

    session = SessionLocal()
    try:
        book = unwrap(CatalogService(session).create_book(fields))
        return (
            jsonify({"message": "Book created successfully", "book": book_to_dict(book)}),
            201,
        )
    finally:
        session.close()


@app.put("/api/books/<int:book_id>")
@require_auth("admin")
def update_book(ctx, book_id):
    fields = validated(clean_book, partial=True)

    session = SessionLocal()
    try:
        book = unwrap(CatalogService(session).update_book(book_id, fields))
        return jsonify({"message": "Book updated successfully", "book": book_to_dict(book)})
    finally:
        session.close()


@app.delete("/api/books/<int:book_id>")
@require_auth("admin")
def delete_book(ctx, book_id):
    session = SessionLocal()
    try:
        unwrap(CatalogService(session).delete_book(book_id))
        return jsonify({"message": "Book deleted successfully"})
    finally:
        session.close()


# ---------------------------------------------------------
# Borrowing
# ---------------------------------------------------------

@app.post("/api/borrow/<int:book_id>")
@require_auth()
def borrow_book(ctx, book_id):
    session = SessionLocal()
    try:
        borrow = unwrap(borrow_service(session).borrow_book(ctx, book_id))
        return (
            jsonify(
                {
                    "message": "Book borrowed successfully",
                    "borrow": borrow_to_dict(borrow, datetime.utcnow(), include_user=True),
                }
            ),
            201,
        )
    finally:
        session.close()


@app.post("/api/return/<int:book_id>")
@require_auth()
def return_book(ctx, book_id):
    session = SessionLocal()
    try:
        borrow = unwrap(borrow_service(session).return_book(ctx, book_id))
        return jsonify(
            {
                "message": "Book returned successfully",
                "borrow": borrow_to_dict(borrow, datetime.utcnow(), include_user=True),
                "fine": borrow.fine,
            }
        )
    finally:
        session.close()


@app.get("/api/borrow/my")
@require_auth()
def my_borrows(ctx):
    page, limit = page_args()

    session = SessionLocal()
    try:
        result = unwrap(
            borrow_service(session).list_for_user(
                ctx, status=request.args.get("status"), page=page, limit=limit
            )
        )
        now = datetime.utcnow()
        return jsonify(result.to_dict(lambda b: borrow_to_dict(b, now)))
    finally:
        session.close()


@app.get("/api/borrow/all")
@require_auth("admin")
def all_borrows(ctx):
    page, limit = page_args()

    session = SessionLocal()
    try:
        result = unwrap(
            borrow_service(session).list_all(
                status=request.args.get("status"),
                user_id=int_arg("userId"),
                book_id=int_arg("bookId"),
                page=page,
                limit=limit,
            )
        )
        now = datetime.utcnow()
        return jsonify(
            result.to_dict(lambda b: borrow_to_dict(b, now, include_user=True))
        )
    finally:
        session.close()


@app.get("/api/borrow/stats")
@require_auth("admin")
def borrow_stats(ctx):
    session = SessionLocal()
    try:
        return jsonify(unwrap(borrow_service(session).stats()))
    finally:
        session.close()


@app.put("/api/borrow/update-overdue")
@require_auth("admin")
def update_overdue(ctx):
    session = SessionLocal()
    try:
        count = unwrap(borrow_service(session).sweep_overdue())
        return jsonify({"message": "Overdue status updated", "modifiedCount": count})
    finally:
        session.close()


# ---------------------------------------------------------
# User administration
# ---------------------------------------------------------

@app.get("/api/users")
@require_auth("admin")
def list_users(ctx):
    page, limit = page_args()

    session = SessionLocal()
    try:
        result = unwrap(
            UserService(session).search(
                search=request.args.get("search"), page=page, limit=limit
            )
        )
        return jsonify(result.to_dict(user_to_dict))
    finally:
        session.close()


@app.get("/api/users/stats")
@require_auth("admin")
def user_stats(ctx):
    session = SessionLocal()
    try:
        return jsonify(unwrap(UserService(session).stats()))
    finally:
        session.close()


@app.get("/api/users/<int:user_id>")
@require_auth("admin")
def get_user(ctx, user_id):
    session = SessionLocal()
    try:
        users = UserService(session)
        user = unwrap(users.get_user(user_id))
        now = datetime.utcnow()
        return jsonify(
            {
                "user": user_to_dict(user),
                "borrowHistory": [borrow_to_dict(b, now) for b in users.history(user.id)],
            }
        )
    finally:
        session.close()


@app.put("/api/users/<int:user_id>")
@require_auth("admin")
def update_user(ctx, user_id):
    fields = validated(clean_user_update)

    session = SessionLocal()
    try:
        user = unwrap(UserService(session).update_user(user_id, fields))
        return jsonify({"message": "User updated successfully", "user": user_to_dict(user)})
    finally:
        session.close()


@app.delete("/api/users/<int:user_id>")
@require_auth("admin")
def delete_user(ctx, user_id):
    session = SessionLocal()
    try:
        unwrap(UserService(session).delete_user(user_id))
        return jsonify({"message": "User deleted successfully"})
    finally:
        session.close()


# ---------------------------------------------------------
# CLI
# ---------------------------------------------------------

@app.cli.command("create-admin")
@click.option("--name", default="Admin User", show_default=True)
@click.option("--email", required=True)
@click.password_option()
def create_admin(name, email, password):
    """Create an administrator, or promote an existing account by email."""
    email = email.strip().lower()
    session = SessionLocal()
    try:
        users = UserService(session)
        existing = users.find_by_email(email)
        if existing is not None:
            unwrap_cli(users.update_user(existing.id, {"role": "admin"}))
            click.echo(f"Promoted {email} to admin")
        else:
            user = unwrap_cli(users.register(name, email, password, role="admin"))
            click.echo(f"Created admin {user.email} (id={user.id})")
    finally:
        session.close()


def unwrap_cli(outcome):
    if not outcome.ok:
        raise click.ClickException(outcome.message)
    return outcome.value


if __name__ == "__main__":
    port = int(os.getenv("PORT", "5000"))
    app.run(host="0.0.0.0", port=port, debug=True)
