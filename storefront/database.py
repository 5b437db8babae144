# database.py
# Responsável pela conexão e operações com o banco de dados (SQLite local ou PostgreSQL em rede)

import queue
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, TypeVar

import psycopg2
import psycopg2.errors
from psycopg2.extras import RealDictCursor
from psycopg2.pool import ThreadedConnectionPool

from storefront.config import get_database_path, get_database_url
from storefront.errors import (
    ConflictError, StartupError, StoreError, TransientStoreError, ValidationError,
)
from storefront.logger import log_event, log_warning

# Parâmetros posicionais para placeholders '?'
Params = Sequence[Any]
Row = Dict[str, Any]
T = TypeVar("T")

# Valores monetários trafegam como Decimal em ambos os bancos
sqlite3.register_adapter(Decimal, str)
sqlite3.register_converter("DECIMAL", lambda raw: Decimal(raw.decode("utf-8")))


@dataclass
class ExecResult:
    rowcount: int
    lastrowid: Optional[int]


class Transaction:
    """Unidade de trabalho ligada a uma única conexão até o commit/rollback"""

    def __init__(self, db: "Database", conn: Any, deadline: float):
        self._db = db
        self._conn = conn
        self.deadline = deadline
        self.closed = False

    def check_deadline(self) -> None:
        if time.monotonic() > self.deadline:
            raise TransientStoreError("Transação excedeu o tempo limite e foi desfeita")

    def _guard(self) -> None:
        if self.closed:
            raise StoreError("Transação já finalizada")
        self.check_deadline()

    def execute(self, sql: str, params: Params = ()) -> ExecResult:
        self._guard()
        with self._db._errors():
            return self._db._execute(self._conn, sql, params)

    def query_one(self, sql: str, params: Params = ()) -> Optional[Row]:
        self._guard()
        with self._db._errors():
            return self._db._query_one(self._conn, sql, params)

    def query_all(self, sql: str, params: Params = ()) -> List[Row]:
        self._guard()
        with self._db._errors():
            return self._db._query_all(self._conn, sql, params)


class Database:
    """
    Interface comum dos bancos. As instruções SQL usam sempre '?' como placeholder;
    cada backend normaliza a sintaxe e a obtenção do id gerado.
    """

    backend = "abstract"
    driver_error: Tuple[type, ...] = ()

    def __init__(self, transaction_timeout: float = 15.0):
        self.transaction_timeout = transaction_timeout
        # Marca as threads que já seguram uma conexão do pool
        self._held = threading.local()

    # --- operações públicas ---

    def execute(self, sql: str, params: Params = ()) -> ExecResult:
        return self._autocommit(self._execute, sql, params)

    def query_one(self, sql: str, params: Params = ()) -> Optional[Row]:
        return self._autocommit(self._query_one, sql, params)

    def query_all(self, sql: str, params: Params = ()) -> List[Row]:
        return self._autocommit(self._query_all, sql, params)

    @contextmanager
    def transaction(self, readonly: bool = False) -> Iterator[Transaction]:
        """
        Abre uma transação. Commit ao sair normalmente; qualquer exceção
        dentro do bloco provoca rollback antes de ser propagada.
        readonly=True: BEGIN adiado no SQLite, READ ONLY no PostgreSQL.
        """
        with self._errors(), self._session() as conn:
            self._begin(conn, readonly)
            tx = Transaction(self, conn, time.monotonic() + self.transaction_timeout)
            try:
                yield tx
                tx.check_deadline()
                self._commit(conn)
            except BaseException:
                self._rollback_quietly(conn)
                raise
            finally:
                tx.closed = True

    def with_transaction(self, work: Callable[[Transaction], T], readonly: bool = False) -> T:
        with self.transaction(readonly) as tx:
            return work(tx)

    def ping(self) -> None:
        self.query_one("SELECT 1 AS ok")

    def close(self) -> None:
        raise NotImplementedError

    # --- ganchos de cada backend ---

    @contextmanager
    def _connection(self) -> Iterator[Any]:
        raise NotImplementedError
        yield

    def _begin(self, conn: Any, readonly: bool = False) -> None:
        raise NotImplementedError

    def _commit(self, conn: Any) -> None:
        conn.commit()

    def _rollback(self, conn: Any) -> None:
        conn.rollback()

    def _execute(self, conn: Any, sql: str, params: Params) -> ExecResult:
        raise NotImplementedError

    def _query_one(self, conn: Any, sql: str, params: Params) -> Optional[Row]:
        raise NotImplementedError

    def _query_all(self, conn: Any, sql: str, params: Params) -> List[Row]:
        raise NotImplementedError

    def _translate(self, exc: Exception) -> Optional[StoreError]:
        return None

    # --- auxiliares ---

    @contextmanager
    def _session(self) -> Iterator[Any]:
        # Uma conexão por vez em cada thread: dentro de uma transação, use o handle dela
        if getattr(self._held, "active", False):
            raise StoreError("Há uma transação aberta nesta thread; use o handle da transação")
        self._held.active = True
        try:
            with self._connection() as conn:
                yield conn
        finally:
            self._held.active = False

    def _autocommit(self, fn: Callable[[Any, str, Params], T], sql: str, params: Params) -> T:
        with self._errors(), self._session() as conn:
            try:
                result = fn(conn, sql, params)
                self._commit(conn)
            except BaseException:
                self._rollback_quietly(conn)
                raise
            return result

    def _rollback_quietly(self, conn: Any) -> None:
        try:
            self._rollback(conn)
        except self.driver_error as e:
            log_warning(f"Falha ao desfazer transação ({self.backend}): {e}")

    @contextmanager
    def _errors(self) -> Iterator[None]:
        """Traduz erros do driver para a hierarquia StoreError"""
        try:
            yield
        except StoreError:
            raise
        except self.driver_error as exc:
            translated = self._translate(exc)
            if translated is None:
                raise
            raise translated from exc


# ---------------------------------------------------------------------
# SQLite (arquivo local)
# ---------------------------------------------------------------------

SQLITE_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE,
        password TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'customer' CHECK (role IN ('customer', 'admin'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS products (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL UNIQUE,
        price DECIMAL(12,2) NOT NULL CHECK (price > 0),
        description TEXT,
        category TEXT,
        image_url TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS product_images (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        product_id INTEGER NOT NULL,
        url TEXT NOT NULL,
        position INTEGER NOT NULL DEFAULT 0,
        FOREIGN KEY (product_id) REFERENCES products (id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_email TEXT NOT NULL,
        total_amount DECIMAL(12,2) NOT NULL,
        status TEXT NOT NULL DEFAULT 'Pending',
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_items (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        order_id INTEGER NOT NULL,
        product_id INTEGER,
        quantity INTEGER NOT NULL CHECK (quantity > 0),
        price_at_time DECIMAL(12,2) NOT NULL,
        FOREIGN KEY (order_id) REFERENCES orders (id) ON DELETE CASCADE,
        FOREIGN KEY (product_id) REFERENCES products (id) ON DELETE SET NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        order_id INTEGER NOT NULL UNIQUE,
        method TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'Pending' CHECK (status IN ('Pending', 'Confirmed', 'Failed')),
        amount DECIMAL(12,2) NOT NULL,
        payer_email TEXT NOT NULL,
        created_at TEXT NOT NULL,
        FOREIGN KEY (order_id) REFERENCES orders (id) ON DELETE CASCADE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_product_images_product ON product_images (product_id)",
    "CREATE INDEX IF NOT EXISTS idx_order_items_order ON order_items (order_id)",
]

_SQLITE_TRANSIENT_MARKERS = ("locked", "busy", "disk i/o", "unable to open")


class SQLiteDatabase(Database):
    backend = "sqlite"
    driver_error = (sqlite3.Error,)

    def __init__(self, db_path: str, busy_timeout_ms: int = 30000, transaction_timeout: float = 15.0,
                 pool_size: int = 10):
        super().__init__(transaction_timeout)
        self.db_path = db_path
        self.busy_timeout_ms = busy_timeout_ms
        self.pool_size = max(1, int(pool_size))
        # Pool limitado: as threads de cada requisição reaproveitam as mesmas conexões
        self._idle: "queue.LifoQueue[sqlite3.Connection]" = queue.LifoQueue()
        self._connections: List[sqlite3.Connection] = []
        self._pool_lock = threading.Lock()

        try:
            with self._connection() as conn:
                conn.execute("PRAGMA journal_mode=WAL")  # leitores não bloqueiam escritor
            self._init_db()
        except BaseException:
            self.close()
            raise

    @property
    def open_connections(self) -> int:
        with self._pool_lock:
            return len(self._connections)

    def _connect(self) -> sqlite3.Connection:
        # isolation_level=None: o controle de transação é explícito (BEGIN / BEGIN IMMEDIATE)
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.busy_timeout_ms / 1000,
            check_same_thread=False,
            isolation_level=None,
            detect_types=sqlite3.PARSE_DECLTYPES,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
        conn.execute("PRAGMA temp_store=MEMORY")
        return conn

    def _acquire(self) -> sqlite3.Connection:
        try:
            return self._idle.get_nowait()
        except queue.Empty:
            pass
        with self._pool_lock:
            if len(self._connections) < self.pool_size:
                conn = self._connect()
                self._connections.append(conn)
                return conn
        try:
            return self._idle.get(timeout=self.transaction_timeout)
        except queue.Empty:
            raise TransientStoreError("Nenhuma conexão disponível no pool")

    def _init_db(self) -> None:
        with self.transaction() as tx:
            for statement in SQLITE_SCHEMA:
                tx.execute(statement)
            # Migração: bancos antigos não guardavam o nome do produto no item
            columns = [row["name"] for row in tx.query_all("PRAGMA table_info(order_items)")]
            if "product_name" not in columns:
                tx.execute("ALTER TABLE order_items ADD COLUMN product_name TEXT")

    def verify_integrity(self) -> Tuple[bool, str]:
        """Verifica a integridade do banco de dados"""
        try:
            with self._session() as conn:
                result = conn.execute("PRAGMA integrity_check").fetchone()
            if result and result[0] == "ok":
                return True, "Banco de dados íntegro"
            return False, f"Problemas detectados: {result[0] if result else 'desconhecido'}"
        except sqlite3.DatabaseError as e:
            return False, f"Erro ao verificar: {str(e)}"

    def close(self) -> None:
        with self._pool_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._idle = queue.LifoQueue()

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._acquire()
        try:
            yield conn
        finally:
            if conn.in_transaction:
                self._rollback_quietly(conn)
            with self._pool_lock:
                alive = conn in self._connections
            if alive:
                self._idle.put(conn)
            else:
                conn.close()

    def _begin(self, conn: sqlite3.Connection, readonly: bool = False) -> None:
        # Leitura: BEGIN adiado, sem reservar a escrita; escrita: trava já no início
        conn.execute("BEGIN" if readonly else "BEGIN IMMEDIATE")

    def _run(self, conn: sqlite3.Connection, sql: str, params: Params) -> sqlite3.Cursor:
        try:
            return conn.execute(sql, tuple(params))
        except OverflowError as e:
            # INTEGER do SQLite tem 64 bits
            raise ValidationError(f"Valor numérico fora do intervalo: {e}") from e

    def _execute(self, conn: sqlite3.Connection, sql: str, params: Params) -> ExecResult:
        cur = self._run(conn, sql, params)
        return ExecResult(rowcount=cur.rowcount, lastrowid=cur.lastrowid)

    def _query_one(self, conn: sqlite3.Connection, sql: str, params: Params) -> Optional[Row]:
        row = self._run(conn, sql, params).fetchone()
        return dict(row) if row else None

    def _query_all(self, conn: sqlite3.Connection, sql: str, params: Params) -> List[Row]:
        return [dict(row) for row in self._run(conn, sql, params).fetchall()]

    def _translate(self, exc: Exception) -> Optional[StoreError]:
        msg = str(exc)
        if isinstance(exc, sqlite3.IntegrityError):
            if "UNIQUE" in msg:
                return ConflictError(f"Registro duplicado: {msg}")
            return ValidationError(f"Dados inválidos: {msg}")
        if isinstance(exc, sqlite3.OperationalError) and any(m in msg.lower() for m in _SQLITE_TRANSIENT_MARKERS):
            return TransientStoreError(f"Banco de dados ocupado: {msg}")
        return None


# ---------------------------------------------------------------------
# PostgreSQL (rede, multiusuário)
# ---------------------------------------------------------------------

POSTGRES_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id SERIAL PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE,
        password TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'customer' CHECK (role IN ('customer', 'admin'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS products (
        id SERIAL PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        price NUMERIC(12,2) NOT NULL CHECK (price > 0),
        description TEXT,
        category TEXT,
        image_url TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS product_images (
        id SERIAL PRIMARY KEY,
        product_id INTEGER NOT NULL REFERENCES products (id) ON DELETE CASCADE,
        url TEXT NOT NULL,
        position INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id SERIAL PRIMARY KEY,
        user_email TEXT NOT NULL,
        total_amount NUMERIC(12,2) NOT NULL,
        status TEXT NOT NULL DEFAULT 'Pending',
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_items (
        id SERIAL PRIMARY KEY,
        order_id INTEGER NOT NULL REFERENCES orders (id) ON DELETE CASCADE,
        product_id INTEGER REFERENCES products (id) ON DELETE SET NULL,
        quantity INTEGER NOT NULL CHECK (quantity > 0),
        price_at_time NUMERIC(12,2) NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payments (
        id SERIAL PRIMARY KEY,
        order_id INTEGER NOT NULL UNIQUE REFERENCES orders (id) ON DELETE CASCADE,
        method TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'Pending' CHECK (status IN ('Pending', 'Confirmed', 'Failed')),
        amount NUMERIC(12,2) NOT NULL,
        payer_email TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    "ALTER TABLE order_items ADD COLUMN IF NOT EXISTS product_name TEXT",
    "CREATE INDEX IF NOT EXISTS idx_product_images_product ON product_images (product_id)",
    "CREATE INDEX IF NOT EXISTS idx_order_items_order ON order_items (order_id)",
]


def to_pyformat(sql: str, escape_percent: bool = True) -> str:
    """Converte placeholders '?' para '%s', ignorando o conteúdo de literais"""
    out = []
    in_literal = False
    for ch in sql:
        if ch == "'":
            in_literal = not in_literal
            out.append(ch)
        elif ch == "%" and escape_percent:
            out.append("%%")
        elif ch == "?" and not in_literal:
            out.append("%s")
        else:
            out.append(ch)
    return "".join(out)


def _needs_returning(sql: str) -> bool:
    head = sql.lstrip().upper()
    return head.startswith("INSERT") and "RETURNING" not in head


class PostgresDatabase(Database):
    backend = "postgresql"
    driver_error = (psycopg2.Error,)

    def __init__(self, dsn: str, pool_size: int = 10, transaction_timeout: float = 15.0):
        super().__init__(transaction_timeout)
        self._pool = ThreadedConnectionPool(1, pool_size, dsn, cursor_factory=RealDictCursor)
        # O pool do psycopg2 falha quando esgotado; o semáforo faz o chamador esperar
        self._slots = threading.BoundedSemaphore(pool_size)
        self._init_db()

    def _init_db(self) -> None:
        with self.transaction() as tx:
            for statement in POSTGRES_SCHEMA:
                tx.execute(statement)

    def close(self) -> None:
        self._pool.closeall()

    @contextmanager
    def _connection(self) -> Iterator[Any]:
        if not self._slots.acquire(timeout=self.transaction_timeout):
            raise TransientStoreError("Nenhuma conexão disponível no pool")
        conn = None
        broken = False
        try:
            conn = self._pool.getconn()
            yield conn
        except (psycopg2.OperationalError, psycopg2.InterfaceError):
            broken = True
            raise
        finally:
            if conn is not None:
                self._pool.putconn(conn, close=broken or bool(conn.closed))
            self._slots.release()

    def _begin(self, conn: Any, readonly: bool = False) -> None:
        # psycopg2 abre a transação implicitamente; limita o tempo das instruções
        with conn.cursor() as cur:
            if readonly:
                cur.execute("SET TRANSACTION READ ONLY")
            cur.execute("SET LOCAL statement_timeout = %s", (int(self.transaction_timeout * 1000),))

    def _run(self, conn: Any, sql: str, params: Params):
        cur = conn.cursor()
        if params:
            cur.execute(to_pyformat(sql), tuple(params))
        else:
            cur.execute(to_pyformat(sql, escape_percent=False))
        return cur

    def _execute(self, conn: Any, sql: str, params: Params) -> ExecResult:
        returning = _needs_returning(sql)
        if returning:
            sql = f"{sql.rstrip().rstrip(';')} RETURNING id"
        with self._run(conn, sql, params) as cur:
            lastrowid = cur.fetchone()["id"] if returning else None
            return ExecResult(rowcount=cur.rowcount, lastrowid=lastrowid)

    def _query_one(self, conn: Any, sql: str, params: Params) -> Optional[Row]:
        with self._run(conn, sql, params) as cur:
            row = cur.fetchone()
            return dict(row) if row else None

    def _query_all(self, conn: Any, sql: str, params: Params) -> List[Row]:
        with self._run(conn, sql, params) as cur:
            return [dict(row) for row in cur.fetchall()]

    def _translate(self, exc: Exception) -> Optional[StoreError]:
        msg = str(exc).strip()
        if isinstance(exc, psycopg2.errors.UniqueViolation):
            return ConflictError(f"Registro duplicado: {msg}")
        if isinstance(exc, psycopg2.IntegrityError):
            return ValidationError(f"Dados inválidos: {msg}")
        if isinstance(exc, psycopg2.DataError):
            # ex.: total além de NUMERIC(12,2), inteiro fora do intervalo
            return ValidationError(f"Valor fora do intervalo: {msg}")
        if isinstance(exc, (psycopg2.OperationalError, psycopg2.InterfaceError)):
            return TransientStoreError(f"Falha no banco de dados: {msg}")
        return None


# ---------------------------------------------------------------------
# Seleção do backend (uma única vez, na inicialização)
# ---------------------------------------------------------------------

def open_database(config: Dict[str, Any]) -> Database:
    """
    Abre o banco configurado: PostgreSQL quando há uma URL de rede válida,
    senão o arquivo SQLite local. Qualquer falha é fatal (StartupError).
    """
    url = get_database_url(config)
    try:
        if url:
            db: Database = PostgresDatabase(
                url,
                pool_size=config.get("pool_size", 10),
                transaction_timeout=config.get("transaction_timeout", 15.0),
            )
        else:
            db = SQLiteDatabase(
                get_database_path(config),
                busy_timeout_ms=config.get("busy_timeout_ms", 30000),
                transaction_timeout=config.get("transaction_timeout", 15.0),
                pool_size=config.get("pool_size", 10),
            )
            is_ok, msg = db.verify_integrity()
            if not is_ok:
                db.close()
                raise StartupError(msg)
        db.ping()
    except StartupError:
        raise
    except (StoreError, psycopg2.Error, sqlite3.Error, OSError) as e:
        raise StartupError(f"Não foi possível abrir o banco de dados: {e}") from e

    log_event(f"📁 Banco de dados aberto ({db.backend})")
    return db
