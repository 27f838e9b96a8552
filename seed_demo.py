# seed_demo.py
import os

import requests

LIBRARY_BASE_URL = os.getenv("LIBRARY_BASE_URL", "http://localhost:5000")
SERVICE_API_KEY = os.getenv("SERVICE_API_KEY", "dev-service-key")

HEADERS = {"X-API-Key": SERVICE_API_KEY}

STAFF = [
    {
        "firstName": "Admin",
        "lastName": "User",
        "email": "admin@library.com",
        "role": "admin",
    },
    {
        "firstName": "Anna",
        "lastName": "Synovitz",
        "email": "librarian@library.com",
        "role": "librarian",
    },
]

MEMBERS = [
    {
        "firstName": "Alice",
        "lastName": "Reader",
        "email": "alice@example.com",
        "membershipType": "Adult",
    },
    {
        "firstName": "Ben",
        "lastName": "Okafor",
        "email": "ben@example.com",
        "membershipType": "Student",
    },
    {
        "firstName": "Chloe",
        "lastName": "Martin",
        "email": "chloe@example.com",
        "membershipType": "Senior",
    },
]

BOOKS = [
    {
        "isbn": "978-0132350884",
        "title": "Clean Code",
        "author": "Robert C. Martin",
        "genre": "Software",
        "publicationYear": 2008,
    },
    {
        "isbn": "978-0201616224",
        "title": "The Pragmatic Programmer",
        "author": "Andrew Hunt, David Thomas",
        "genre": "Software",
        "publicationYear": 1999,
    },
    {
        "isbn": "978-0441172719",
        "title": "Dune",
        "author": "Frank Herbert",
        "genre": "Science Fiction",
        "publicationYear": 1965,
    },
    {
        "isbn": "978-0590353427",
        "title": "Harry Potter and the Sorcerer's Stone",
        "author": "J.K. Rowling",
        "genre": "Fantasy",
        "publicationYear": 1998,
    },
    {
        "isbn": "978-1491950357",
        "title": "Designing Data-Intensive Applications",
        "author": "Martin Kleppmann",
        "genre": "Software",
        "publicationYear": 2017,
    },
    {
        "isbn": "978-0061120084",
        "title": "To Kill a Mockingbird",
        "author": "Harper Lee",
        "genre": "Fiction",
        "publicationYear": 1960,
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
        print(f"[ERROR] library service not reachable at {health_url}: {e}")
        return False


def post(path, payload=None):
    resp = requests.post(
        f"{LIBRARY_BASE_URL}{path}",
        headers=HEADERS,
        json=payload or {},
        timeout=5,
    )
    if not resp.ok:
        print(f"      Body: {resp.text.strip()}")
    return resp


def seed_people():
    print("\n== Creating staff and members ==")
    member_ids = []
    for person in STAFF + MEMBERS:
        try:
            resp = post("/api/members", person)
            print(f"  {person['email']} -> {resp.status_code}")
            if resp.ok and "role" not in person:
                member_ids.append(resp.json()["userID"])
        except requests.RequestException as e:
            print(f"  {person['email']} -> FAILED: {e}")
    return member_ids


def seed_books():
    print("\n== Seeding books ==")
    book_ids = []
    for i, book in enumerate(BOOKS, start=1):
        payload = dict(book)
        payload["quantity"] = 1 + (i % 3)
        try:
            resp = post("/api/books", payload)
            print(f"  [{i:02}] {book['title']} -> {resp.status_code}")
            if resp.ok:
                book_ids.append(resp.json()["bookID"])
        except requests.RequestException as e:
            print(f"  [{i:02}] {book['title']} -> FAILED: {e}")
    return book_ids


def seed_loans(member_ids, book_ids):
    print("\n== Issuing sample loans ==")
    for member_id, book_id in zip(member_ids, book_ids):
        try:
            resp = post("/api/loans/issue", {"memberID": member_id, "bookID": book_id})
            print(f"  member {member_id} <- book {book_id} -> {resp.status_code}")
        except requests.RequestException as e:
            print(f"  member {member_id} <- book {book_id} -> FAILED: {e}")


def main():
    print("Checking library service...")
    if not check_service(LIBRARY_BASE_URL):
        print("\nLibrary service is not reachable. Start it with: python -m library_service.app")
        return

    member_ids = seed_people()
    book_ids = seed_books()
    seed_loans(member_ids, book_ids)

    print("\nDone.")
    print("Try hitting:")
    print(f"  {LIBRARY_BASE_URL}/api/books")
    print(f"  {LIBRARY_BASE_URL}/api/reports/dashboard")


if __name__ == "__main__":
    main()
