import os
from datetime import datetime, timezone

import pytest

from library import Library


@pytest.fixture
def db_file(tmp_path, request):
    # A unique database file per test
    return str(tmp_path / f"test_{request.node.name}.db")


@pytest.fixture
def lib(db_file):
    return Library(db_file=db_file, loan_period_days=14, fine_per_day=10)


@pytest.fixture
def catalog(lib):
    return lib.catalog


@pytest.fixture
def ledger(lib):
    return lib.ledger


@pytest.fixture
def day0():
    return datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def env_db(db_file, monkeypatch):
    """Point everything that resolves the database from the environment at this test's file."""
    monkeypatch.setenv("LIBRARY_DB_FILE", db_file)
    yield db_file
    if os.path.exists(db_file):
        try:
            os.remove(db_file)
        except OSError:
            pass
