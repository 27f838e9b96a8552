import itertools
from datetime import datetime

import pytest

from library_service import catalog, members
from library_service.app import create_app

API_KEY = "test-service-key"

# fixed clock for engine-level tests
NOW = datetime(2025, 3, 1, 12, 0, 0)


@pytest.fixture
def app(tmp_path):
    # Each test gets its own SQLite file
    db_file = tmp_path / "library_test.db"
    app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_file}",
            "SERVICE_API_KEY": API_KEY,
            "LOG_LEVEL": "WARNING",
        }
    )
    yield app
    app.extensions["library_engine"].dispose()


@pytest.fixture
def client(app):
    client = app.test_client()
    client.environ_base["HTTP_X_API_KEY"] = API_KEY
    return client


@pytest.fixture
def session(app):
    with app.extensions["library_sessions"]() as session:
        yield session


@pytest.fixture
def make_book(session):
    counter = itertools.count(1)

    def _make(**overrides):
        n = next(counter)
        data = {
            "title": f"Book {n}",
            "author": f"Author {n}",
            "isbn": f"978-00000000{n:02d}",
        }
        data.update(overrides)
        book = catalog.create_book(session, data)
        session.commit()
        return book

    return _make


@pytest.fixture
def make_member(session):
    counter = itertools.count(1)

    def _make(**overrides):
        n = next(counter)
        data = {
            "first_name": f"First{n}",
            "last_name": f"Last{n}",
            "email": f"member{n}@example.com",
        }
        data.update(overrides)
        member = members.create_member_direct(session, data, now=NOW)
        session.commit()
        return member

    return _make
