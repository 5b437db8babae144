"""Shared pytest fixtures for the storefront tests."""

import pytest

from storefront.database import SQLiteDatabase
from storefront.services import CatalogStore, CredentialStore, OrderService
from storefront.uploads import UploadStore
from storefront.web_server import WebServer


@pytest.fixture
def db(tmp_path):
    """Embedded database in a temporary file (one connection per thread)."""
    database = SQLiteDatabase(str(tmp_path / "shop.db"), busy_timeout_ms=30000, transaction_timeout=30)
    yield database
    database.close()


@pytest.fixture
def credentials(db):
    return CredentialStore(db)


@pytest.fixture
def catalog(db):
    return CatalogStore(db)


@pytest.fixture
def orders(db, catalog):
    return OrderService(db, catalog)


@pytest.fixture
def uploads(tmp_path):
    return UploadStore(str(tmp_path / "uploads"))


@pytest.fixture
def suits(catalog):
    """Two products priced like the checkout scenario."""
    first = catalog.create("Navy Suit", 5100, "Two-piece", "suits")
    second = catalog.create("Grey Suit", 5200, "Three-piece", "suits")
    return first, second


@pytest.fixture
def client(credentials, catalog, orders, uploads):
    server = WebServer(credentials, catalog, orders, uploads)
    server.app.config["TESTING"] = True
    return server.app.test_client()


def count_rows(db, table):
    return db.query_one(f"SELECT COUNT(*) AS n FROM {table}")["n"]
