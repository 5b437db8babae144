"""Tests for the persistence adapter (SQLite backend, placeholder rewriting, backend selection)."""

import os
import threading
import time
from decimal import Decimal

import pytest

from storefront.database import PostgresDatabase, SQLiteDatabase, open_database, to_pyformat
from storefront.errors import (
    ConflictError, StartupError, StoreError, TransientStoreError, ValidationError,
)


def test_execute_returns_generated_id_and_rowcount(db):
    result = db.execute(
        "INSERT INTO users (name, email, password, role) VALUES (?, ?, ?, ?)",
        ("Ana", "ana@example.com", "secret", "customer"),
    )
    assert result.lastrowid == 1
    assert result.rowcount == 1

    row = db.query_one("SELECT name, email FROM users WHERE id = ?", (result.lastrowid,))
    assert row == {"name": "Ana", "email": "ana@example.com"}


def test_query_one_returns_none_when_missing(db):
    assert db.query_one("SELECT * FROM users WHERE id = ?", (99,)) is None
    assert db.query_all("SELECT * FROM users") == []


def test_decimal_columns_round_trip_as_decimal(db):
    db.execute(
        "INSERT INTO products (name, price, description, category, image_url) VALUES (?, ?, ?, ?, ?)",
        ("Tie", Decimal("10.10"), None, None, None),
    )
    price = db.query_one("SELECT price FROM products")["price"]
    assert isinstance(price, Decimal)
    assert price == Decimal("10.10")


def test_transaction_commits_all_writes(db):
    with db.transaction() as tx:
        tx.execute("INSERT INTO users (name, email, password) VALUES (?, ?, ?)", ("A", "a@x.com", "p"))
        tx.execute("INSERT INTO users (name, email, password) VALUES (?, ?, ?)", ("B", "b@x.com", "p"))
    assert len(db.query_all("SELECT id FROM users")) == 2


def test_transaction_rolls_back_on_error(db):
    with pytest.raises(RuntimeError):
        with db.transaction() as tx:
            tx.execute("INSERT INTO users (name, email, password) VALUES (?, ?, ?)", ("A", "a@x.com", "p"))
            raise RuntimeError("boom")
    assert db.query_all("SELECT id FROM users") == []


def test_with_transaction_returns_result(db):
    def work(tx):
        return tx.execute("INSERT INTO users (name, email, password) VALUES (?, ?, ?)", ("A", "a@x.com", "p")).lastrowid

    assert db.with_transaction(work) == 1


def test_unique_violation_becomes_conflict(db):
    db.execute("INSERT INTO users (name, email, password) VALUES (?, ?, ?)", ("A", "a@x.com", "p"))
    with pytest.raises(ConflictError):
        db.execute("INSERT INTO users (name, email, password) VALUES (?, ?, ?)", ("B", "a@x.com", "p"))


def test_check_violation_becomes_validation_error(db):
    with pytest.raises(ValidationError):
        db.execute(
            "INSERT INTO products (name, price) VALUES (?, ?)", ("Free", Decimal("0")),
        )


def test_conflict_inside_transaction_rolls_back_earlier_writes(db):
    db.execute("INSERT INTO users (name, email, password) VALUES (?, ?, ?)", ("A", "a@x.com", "p"))
    with pytest.raises(ConflictError):
        with db.transaction() as tx:
            tx.execute("INSERT INTO users (name, email, password) VALUES (?, ?, ?)", ("B", "b@x.com", "p"))
            tx.execute("INSERT INTO users (name, email, password) VALUES (?, ?, ?)", ("C", "a@x.com", "p"))
    assert [r["email"] for r in db.query_all("SELECT email FROM users")] == ["a@x.com"]


def test_transaction_past_deadline_is_rolled_back(db):
    db.transaction_timeout = 0.05
    with pytest.raises(TransientStoreError):
        with db.transaction() as tx:
            tx.execute("INSERT INTO users (name, email, password) VALUES (?, ?, ?)", ("A", "a@x.com", "p"))
            time.sleep(0.1)
    assert db.query_all("SELECT id FROM users") == []


def test_autocommit_statement_refused_inside_open_transaction(db):
    with pytest.raises(StoreError):
        with db.transaction():
            db.execute("INSERT INTO users (name, email, password) VALUES (?, ?, ?)", ("A", "a@x.com", "p"))
    assert db.query_all("SELECT id FROM users") == []


def test_concurrent_transactions_from_many_threads(db):
    errors = []

    def worker(n):
        try:
            with db.transaction() as tx:
                tx.execute("INSERT INTO users (name, email, password) VALUES (?, ?, ?)",
                           (f"U{n}", f"u{n}@x.com", "p"))
        except Exception as e:  # pragma: no cover - reported below
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(db.query_all("SELECT id FROM users")) == 10


def test_connections_stay_bounded_across_short_lived_threads(tmp_path):
    database = SQLiteDatabase(str(tmp_path / "pool.db"), pool_size=4)
    errors = []

    def read():
        try:
            database.query_all("SELECT id FROM products")
        except Exception as e:  # pragma: no cover - reported below
            errors.append(e)

    try:
        threads = [threading.Thread(target=read) for _ in range(200)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert database.open_connections <= 4
    finally:
        database.close()


def test_connection_goes_back_to_pool_after_a_failed_statement(tmp_path):
    database = SQLiteDatabase(str(tmp_path / "single.db"), pool_size=1, transaction_timeout=1)
    try:
        database.execute("INSERT INTO users (name, email, password) VALUES (?, ?, ?)", ("A", "a@x.com", "p"))
        with pytest.raises(ConflictError):
            database.execute("INSERT INTO users (name, email, password) VALUES (?, ?, ?)", ("B", "a@x.com", "p"))
        with pytest.raises(RuntimeError):
            with database.transaction():
                raise RuntimeError("boom")

        assert len(database.query_all("SELECT id FROM users")) == 1
        assert database.open_connections == 1
    finally:
        database.close()


def test_integer_beyond_64_bits_is_a_validation_error(db):
    with pytest.raises(ValidationError):
        db.query_one("SELECT * FROM products WHERE id = ?", (10 ** 20,))
    with pytest.raises(ValidationError):
        with db.transaction() as tx:
            tx.execute("INSERT INTO users (name, email, password) VALUES (?, ?, ?)", ("A", "a@x.com", "p"))
            tx.query_one("SELECT * FROM orders WHERE id = ?", (10 ** 20,))
    assert db.query_all("SELECT id FROM users") == []


def test_legacy_order_items_table_gets_product_name_column(tmp_path):
    import sqlite3

    path = str(tmp_path / "legacy.db")
    conn = sqlite3.connect(path)
    conn.execute("""
        CREATE TABLE order_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            order_id INTEGER,
            product_id INTEGER,
            quantity INTEGER,
            price_at_time REAL
        )
    """)
    conn.commit()
    conn.close()

    database = SQLiteDatabase(path)
    try:
        columns = [row["name"] for row in database.query_all("PRAGMA table_info(order_items)")]
        assert "product_name" in columns
    finally:
        database.close()


def test_verify_integrity_reports_ok(db):
    ok, message = db.verify_integrity()
    assert ok is True
    assert message


# --- placeholder rewriting for the networked backend ---

def test_to_pyformat_rewrites_qmarks():
    sql = "SELECT * FROM users WHERE email = ? AND role = ?"
    assert to_pyformat(sql) == "SELECT * FROM users WHERE email = %s AND role = %s"


def test_to_pyformat_leaves_literals_and_escapes_percent():
    sql = "SELECT * FROM users WHERE password NOT LIKE 'pbkdf2$%?' AND id = ?"
    assert to_pyformat(sql) == "SELECT * FROM users WHERE password NOT LIKE 'pbkdf2$%%?' AND id = %s"
    assert to_pyformat("SELECT '50%'", escape_percent=False) == "SELECT '50%'"


# --- backend selection ---

def test_open_database_without_url_uses_sqlite(tmp_path):
    config = {"database_url": None, "database_path": str(tmp_path / "data" / "store.db")}
    database = open_database(config)
    try:
        assert isinstance(database, SQLiteDatabase)
        assert database.backend == "sqlite"
        assert os.path.exists(config["database_path"])
    finally:
        database.close()


def test_open_database_ignores_malformed_url(tmp_path):
    config = {"database_url": "not-a-url", "database_path": str(tmp_path / "store.db")}
    database = open_database(config)
    try:
        assert isinstance(database, SQLiteDatabase)
    finally:
        database.close()


def test_open_database_unreachable_server_is_fatal(monkeypatch):
    def refuse(*args, **kwargs):
        import psycopg2
        raise psycopg2.OperationalError("connection refused")

    monkeypatch.setattr("storefront.database.ThreadedConnectionPool", refuse)
    with pytest.raises(StartupError):
        open_database({"database_url": "postgresql://shop:pw@db.invalid:5432/shop"})


def test_open_database_corrupt_file_is_fatal(tmp_path):
    path = tmp_path / "corrupt.db"
    path.write_bytes(b"this is not a database" * 100)
    with pytest.raises(StartupError):
        open_database({"database_url": None, "database_path": str(path)})


@pytest.mark.skipif(not os.getenv("STOREFRONT_TEST_DATABASE_URL"), reason="PostgreSQL não configurado")
def test_postgres_backend_round_trip():
    database = PostgresDatabase(os.environ["STOREFRONT_TEST_DATABASE_URL"], pool_size=2)
    try:
        email = f"pg-{time.time_ns()}@example.com"
        user_id = database.execute(
            "INSERT INTO users (name, email, password) VALUES (?, ?, ?)", ("PG", email, "p"),
        ).lastrowid
        assert isinstance(user_id, int)
        assert database.query_one("SELECT email FROM users WHERE id = ?", (user_id,))["email"] == email
        with pytest.raises(ConflictError):
            database.execute("INSERT INTO users (name, email, password) VALUES (?, ?, ?)", ("PG", email, "p"))
        database.execute("DELETE FROM users WHERE id = ?", (user_id,))
    finally:
        database.close()
