"""Shared test fixtures for hourbook tests."""

from datetime import datetime

import pytest

from hourbook import db
from hourbook.logging_setup import reset_logging
from hourbook.models import Client, ClientDraft, SubClient, SubClientDraft, WorkEntry
from hourbook.store import Ledger


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    reset_logging()


@pytest.fixture
def db_path(tmp_path):
    """Initialize a real SQLite database and return its path."""
    path = tmp_path / "test.db"
    db.init_db(path)
    return path


@pytest.fixture
def db_conn(db_path):
    """Yield a database connection with row factory set."""
    with db.get_db(db_path) as conn:
        yield conn


@pytest.fixture
def ledger(db_conn):
    """An empty ledger persisting to the test database."""
    return Ledger.load(db_conn)


@pytest.fixture
def make_client():
    """Factory fixture that creates Client dataclass instances with defaults."""
    def _make_client(**overrides):
        defaults = {"id": "c1", "name": "Acme", "rate": 120.0}
        defaults.update(overrides)
        return Client(**defaults)
    return _make_client


@pytest.fixture
def make_sub_client():
    def _make_sub_client(**overrides):
        defaults = {"id": "s1", "name": "West", "client_id": "c1"}
        defaults.update(overrides)
        return SubClient(**defaults)
    return _make_sub_client


@pytest.fixture
def make_entry():
    """Factory fixture that creates WorkEntry dataclass instances with defaults."""
    def _make_entry(**overrides):
        defaults = {
            "id": "e1",
            "date": datetime(2024, 3, 15, 9, 30),
            "client_id": "c1",
            "sub_client_id": "s1",
            "hours": 2.0,
            "rate": 50.0,
            "bill": 100.0,
            "project": "Design",
            "task_description": "Wireframes",
        }
        defaults.update(overrides)
        return WorkEntry(**defaults)
    return _make_entry


@pytest.fixture
def acme(ledger):
    """Ledger seeded with client Acme (rate 120) and its sub-client West."""
    client = ledger.add_client(ClientDraft(name="Acme", rate=120.0))
    sub = ledger.add_sub_client(SubClientDraft(name="West", client_id=client.id))
    return client, sub
