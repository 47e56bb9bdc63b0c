# seed_demo.py
"""
Seed a running library service over HTTP.

Create the admin account first:
    flask --app library_service.app create-admin --email admin@library.com
then run:
    ADMIN_PASSWORD=... python seed_demo.py
"""
import os

import requests

BASE_URL = os.getenv("LIBRARY_BASE_URL", "http://localhost:5000")
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@library.com")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "password123")

MEMBERS = [
    {"name": "John Doe", "email": "user@library.com", "password": "password123"},
    {"name": "Jane Roe", "email": "jane@library.com", "password": "password123"},
]

BOOKS = [
    {
        "isbn": "978-0-7432-7356-5",
        "title": "The Great Gatsby",
        "author": "F. Scott Fitzgerald",
        "category": "Fiction",
        "description": "A classic American novel set in the Jazz Age.",
        "publishedYear": 1925,
    },
    {
        "isbn": "978-0-06-112008-4",
        "title": "To Kill a Mockingbird",
        "author": "Harper Lee",
        "category": "Fiction",
        "publishedYear": 1960,
    },
    {
        "isbn": "978-0-452-28423-4",
        "title": "1984",
        "author": "George Orwell",
        "category": "Dystopian",
        "publishedYear": 1949,
    },
    {
        "isbn": "978-0132350884",
        "title": "Clean Code",
        "author": "Robert C. Martin",
        "category": "Technology",
        "publishedYear": 2008,
    },
    {
        "isbn": "978-0201616224",
        "title": "The Pragmatic Programmer",
        "author": "Andrew Hunt, David Thomas",
        "category": "Technology",
        "publishedYear": 1999,
    },
    {
        "isbn": "978-1491950357",
        "title": "Designing Data-Intensive Applications",
        "author": "Martin Kleppmann",
        "category": "Technology",
        "publishedYear": 2017,
    },
    {
        "isbn": "978-0-553-38016-3",
        "title": "A Brief History of Time",
        "author": "Stephen Hawking",
        "category": "Science",
        "publishedYear": 1988,
    },
]


def check_service(url):
    """Hit /api/health and return True/False."""
    health_url = f"{url.rstrip('/')}/api/health"
    try:
        r = requests.get(health_url, timeout=3)
        print(f"[CHECK] {health_url} -> {r.status_code}")
        return r.ok
    except requests.RequestException as e:
        print(f"[ERROR] service not reachable at {health_url}: {e}")
        return False


def login(email, password):
    resp = requests.post(
        f"{BASE_URL}/api/auth/login",
        json={"email": email, "password": password},
        timeout=5,
    )
    if not resp.ok:
        print(f"  login {email}: {resp.status_code} {resp.text.strip()}")
        return None
    return resp.json()["token"]


def auth(token):
    return {"Authorization": f"Bearer {token}"}


def seed_books(admin_token):
    print("\n== Seeding books ==")
    book_ids = []
    for i, book in enumerate(BOOKS, start=1):
        payload = dict(book)
        # vary copies per title to make availability more interesting
        payload["totalCopies"] = 2 + (i % 4)  # 2–5 copies

        try:
            resp = requests.post(
                f"{BASE_URL}/api/books",
                headers=auth(admin_token),
                json=payload,
                timeout=5,
            )
            print(f"  [{i:02}] {book['title']} -> {resp.status_code}")
            if resp.ok:
                book_ids.append(resp.json()["book"]["id"])
            else:
                print(f"      Body: {resp.text.strip()}")
        except requests.RequestException as e:
            print(f"  [{i:02}] {book['title']} -> FAILED: {e}")
    return book_ids


def seed_members():
    print("\n== Registering members ==")
    tokens = []
    for member in MEMBERS:
        try:
            resp = requests.post(f"{BASE_URL}/api/auth/register", json=member, timeout=5)
            print(f"  {member['email']}: {resp.status_code}")
            if resp.ok:
                tokens.append(resp.json()["token"])
            else:
                # already registered on a previous run
                token = login(member["email"], member["password"])
                if token:
                    tokens.append(token)
        except requests.RequestException as e:
            print(f"  {member['email']}: FAILED -> {e}")
    return tokens


def main():
    print("Checking library service...")
    if not check_service(BASE_URL):
        print(f"\nLibrary service is not reachable at {BASE_URL}.")
        return

    admin_token = login(ADMIN_EMAIL, ADMIN_PASSWORD)
    if not admin_token:
        print("\nAdmin login failed. Run `flask --app library_service.app create-admin` first.")
        return

    book_ids = seed_books(admin_token)
    member_tokens = seed_members()

    # One borrow so the dashboards have something to show
    if book_ids and member_tokens:
        resp = requests.post(
            f"{BASE_URL}/api/borrow/{book_ids[0]}",
            headers=auth(member_tokens[0]),
            timeout=5,
        )
        print(f"\n== Sample borrow of book {book_ids[0]} -> {resp.status_code}")

    print("\nDone.")
    print("Try hitting:")
    print(f"  {BASE_URL}/api/books")


if __name__ == "__main__":
    main()
