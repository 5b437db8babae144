# services.py
# Camada de serviços para regras de negócio

import hashlib
import hmac
import os
from collections.abc import Mapping
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Sequence

from storefront.database import Database, Row, Transaction
from storefront.errors import AuthError, ConflictError, NotFoundError, ValidationError
from storefront.logger import log_event, log_warning
from storefront.models import (
    ORDER_CANCELLED, ORDER_PAID, ORDER_PENDING, PAYMENT_CONFIRMED, PAYMENT_FAILED,
    PAYMENT_PENDING, ROLES, LineItem, Order, OrderItem, Payment, Product, User,
)

# Formato da senha: pbkdf2$<iterações>$<salt hex>$<chave hex>
PASSWORD_TAG = "pbkdf2"
ITERATIONS = 100000
SALT_BYTES = 16
KEY_BYTES = 64
HASH_NAME = "sha512"

CENT = Decimal("0.01")
MAX_PRICE = Decimal("10000000000")  # limite de NUMERIC(12,2)
MAX_QUANTITY = 10000  # unidades por item do pedido
PLACEHOLDER_IMAGE = "https://via.placeholder.com/400"
DEFAULT_CATEGORY = "suits"


def _now() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def to_money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(CENT)


def parse_price(value: Any) -> Decimal:
    """Valida o preço como número positivo e arredonda para centavos"""
    if isinstance(value, bool) or value is None:
        raise ValidationError("Preço é obrigatório")
    try:
        price = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Preço inválido: {value!r}")
    if not price.is_finite() or price >= MAX_PRICE:
        raise ValidationError(f"Preço inválido: {value!r}")
    price = price.quantize(CENT)
    if price <= 0:
        raise ValidationError("Preço deve ser maior que zero")
    return price


def _require_text(value: Any, label: str) -> str:
    text = str(value).strip() if value is not None else ""
    if not text:
        raise ValidationError(f"{label} é obrigatório")
    return text


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class CredentialStore:
    def __init__(self, db: Database):
        self.db = db

    @staticmethod
    def hash(password: str) -> str:
        """Gera o hash PBKDF2 com salt aleatório novo a cada chamada"""
        salt = os.urandom(SALT_BYTES).hex()
        key = hashlib.pbkdf2_hmac(HASH_NAME, password.encode("utf-8"), salt.encode("utf-8"), ITERATIONS, KEY_BYTES)
        return f"{PASSWORD_TAG}${ITERATIONS}${salt}${key.hex()}"

    @staticmethod
    def is_hashed(stored: Optional[str]) -> bool:
        return isinstance(stored, str) and stored.startswith(PASSWORD_TAG + "$")

    @classmethod
    def verify(cls, password: str, stored: Optional[str]) -> bool:
        if not isinstance(password, str) or not isinstance(stored, str) or not stored:
            return False

        if not cls.is_hashed(stored):
            # Compatibilidade: senha legada em texto puro, removida por migrate_legacy()
            return hmac.compare_digest(password.encode("utf-8"), stored.encode("utf-8"))

        try:
            _, iterations, salt, key_hex = stored.split("$")
            rounds = int(iterations)
            expected = bytes.fromhex(key_hex)
        except ValueError:
            return False
        if rounds <= 0 or not expected:
            return False

        calc = hashlib.pbkdf2_hmac(HASH_NAME, password.encode("utf-8"), salt.encode("utf-8"), rounds, len(expected))
        return hmac.compare_digest(calc, expected)

    def _upgrade(self, user_id: int, plaintext: str, current: str) -> bool:
        # Compare-and-set: só grava se o registro ainda tiver o valor lido
        result = self.db.execute(
            "UPDATE users SET password = ? WHERE id = ? AND password = ?",
            (self.hash(plaintext), user_id, current),
        )
        return result.rowcount == 1

    def migrate_legacy(self) -> int:
        """Converte todas as senhas em texto puro para hash. Retorna quantas foram gravadas."""
        migrated = 0
        for row in self.db.query_all("SELECT id, password FROM users"):
            stored = row["password"]
            if stored and not self.is_hashed(stored) and self._upgrade(row["id"], stored, stored):
                migrated += 1
        if migrated:
            log_event(f"🔐 {migrated} senha(s) legada(s) migrada(s) para PBKDF2")
        return migrated

    def register(self, name: str, email: str, password: str, role: str = "customer") -> int:
        name = _require_text(name, "Nome")
        email = _require_text(email, "E-mail")
        if "@" not in email:
            raise ValidationError("E-mail inválido")
        if not isinstance(password, str) or not password:
            raise ValidationError("Senha é obrigatória")
        if role not in ROLES:
            raise ValidationError(f"Perfil inválido: {role}")

        try:
            result = self.db.execute(
                "INSERT INTO users (name, email, password, role) VALUES (?, ?, ?, ?)",
                (name, email, self.hash(password), role),
            )
        except ConflictError as e:
            raise ConflictError("E-mail já cadastrado") from e
        log_event(f"👤 Usuário cadastrado: {email} ({role})")
        return result.lastrowid

    def authenticate(self, email: str, password: str) -> User:
        row = None
        if isinstance(email, str) and isinstance(password, str) and email and password:
            row = self.db.query_one(
                "SELECT id, name, email, password, role FROM users WHERE email = ?", (email.strip(),)
            )
        if not row or not self.verify(password, row["password"]):
            log_warning(f"Falha de login para {email!r}")
            raise AuthError("Credenciais inválidas")

        if not self.is_hashed(row["password"]):
            # Migração preguiçosa no primeiro login bem-sucedido
            self._upgrade(row["id"], password, row["password"])
        return User(**row)

    def ensure_admin(self, email: str, password: str, name: str = "Admin") -> bool:
        """Cria o administrador configurado se ainda não existir"""
        if self.db.query_one("SELECT 1 AS found FROM users WHERE email = ?", (email,)):
            return False
        self.register(name, email, password, role="admin")
        return True


UPDATABLE_FIELDS = ("name", "price", "description", "category")


class CatalogStore:
    def __init__(self, db: Database):
        self.db = db

    @staticmethod
    def _insert_images(tx: Transaction, product_id: int, urls: Sequence[str]) -> None:
        for position, url in enumerate(urls, start=1):
            tx.execute(
                "INSERT INTO product_images (product_id, url, position) VALUES (?, ?, ?)",
                (product_id, url, position),
            )

    def create(self, name: str, price: Any, description: Optional[str] = None,
               category: Optional[str] = None, primary_image_url: Optional[str] = None,
               additional_image_urls: Iterable[str] = ()) -> int:
        name = _require_text(name, "Nome do produto")
        price = parse_price(price)
        primary = primary_image_url or PLACEHOLDER_IMAGE
        extras = [url for url in additional_image_urls if url and url != primary]

        def work(tx: Transaction) -> int:
            product_id = tx.execute(
                "INSERT INTO products (name, price, description, category, image_url) VALUES (?, ?, ?, ?, ?)",
                (name, price, description, category or DEFAULT_CATEGORY, primary),
            ).lastrowid
            self._insert_images(tx, product_id, extras)
            return product_id

        try:
            product_id = self.db.with_transaction(work)
        except ConflictError as e:
            raise ConflictError(f"Já existe um produto chamado '{name}'") from e
        log_event(f"📦 Produto criado: #{product_id} {name} ({price})")
        return product_id

    def update(self, product_id: int, fields: Dict[str, Any], image_urls: Optional[Sequence[str]] = None) -> bool:
        """Atualiza campos do produto; image_urls substitui o conjunto de imagens (primeira = principal)"""
        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Campos não atualizáveis: {', '.join(sorted(unknown))}")

        values: Dict[str, Any] = {}
        for key in UPDATABLE_FIELDS:
            if key not in fields:
                continue
            if key == "name":
                values[key] = _require_text(fields[key], "Nome do produto")
            elif key == "price":
                values[key] = parse_price(fields[key])
            else:
                values[key] = fields[key]

        urls = [url for url in image_urls or [] if url]
        if urls:
            values["image_url"] = urls[0]

        def work(tx: Transaction) -> bool:
            if not tx.query_one("SELECT id FROM products WHERE id = ?", (product_id,)):
                return False
            if values:
                assignments = ", ".join(f"{column} = ?" for column in values)
                tx.execute(f"UPDATE products SET {assignments} WHERE id = ?", (*values.values(), product_id))
            if urls:
                tx.execute("DELETE FROM product_images WHERE product_id = ?", (product_id,))
                self._insert_images(tx, product_id, [url for url in urls[1:] if url != urls[0]])
            return True

        try:
            updated = self.db.with_transaction(work)
        except ConflictError as e:
            raise ConflictError(f"Já existe um produto chamado '{values.get('name')}'") from e
        if updated:
            log_event(f"✏️ Produto #{product_id} atualizado")
        return updated

    def delete(self, product_id: int) -> bool:
        # product_images cai em cascata; itens de pedidos antigos mantêm o snapshot
        deleted = self.db.execute("DELETE FROM products WHERE id = ?", (product_id,)).rowcount > 0
        if deleted:
            log_event(f"🗑️ Produto #{product_id} removido")
        return deleted

    @staticmethod
    def _collect(rows: List[Row]) -> List[Product]:
        products: Dict[int, Product] = {}
        for row in rows:
            product = products.get(row["id"])
            if product is None:
                product = Product(
                    id=row["id"],
                    name=row["name"],
                    price=to_money(row["price"]),
                    description=row["description"],
                    category=row["category"],
                    image_url=row["image_url"],
                    images=[row["image_url"]] if row["image_url"] else [],
                )
                products[row["id"]] = product
            extra = row["extra_url"]
            if extra and extra not in product.images:
                product.images.append(extra)
        return list(products.values())

    _SELECT = """
        SELECT p.id, p.name, p.price, p.description, p.category, p.image_url, i.url AS extra_url
        FROM products p
        LEFT JOIN product_images i ON i.product_id = p.id
    """

    def list(self) -> List[Product]:
        return self._collect(self.db.query_all(self._SELECT + " ORDER BY p.id, i.position, i.id"))

    def get(self, product_id: int) -> Product:
        products = self._collect(
            self.db.query_all(self._SELECT + " WHERE p.id = ? ORDER BY i.position, i.id", (product_id,))
        )
        if not products:
            raise NotFoundError(f"Produto #{product_id} não encontrado")
        return products[0]

    @staticmethod
    def snapshot(tx: Transaction, product_ids: Iterable[int]) -> Dict[int, Row]:
        """Lê nome e preço atuais dos produtos em uma única consulta dentro da transação"""
        ids = sorted(set(product_ids))
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        rows = tx.query_all(f"SELECT id, name, price FROM products WHERE id IN ({placeholders})", ids)
        return {row["id"]: row for row in rows}


# Eventos de liquidação: status do pedido -> status do pagamento
TRANSITIONS = {
    ORDER_PENDING: {ORDER_PAID: PAYMENT_CONFIRMED, ORDER_CANCELLED: PAYMENT_FAILED},
}


class OrderService:
    def __init__(self, db: Database, catalog: CatalogStore):
        self.db = db
        self.catalog = catalog

    @staticmethod
    def _line_item(raw: Any) -> LineItem:
        if isinstance(raw, LineItem):
            item = raw
        elif isinstance(raw, Mapping):
            item = LineItem(product_id=raw.get("product_id"), quantity=raw.get("quantity"))
        else:
            try:
                product_id, quantity = raw
            except (TypeError, ValueError):
                raise ValidationError(f"Item inválido: {raw!r}")
            item = LineItem(product_id=product_id, quantity=quantity)

        if not _is_int(item.product_id):
            raise ValidationError(f"Produto inválido: {item.product_id!r}")
        if not _is_int(item.quantity) or item.quantity <= 0:
            raise ValidationError(f"Quantidade inválida para o produto #{item.product_id}")
        if item.quantity > MAX_QUANTITY:
            raise ValidationError(f"Quantidade acima do limite de {MAX_QUANTITY} para o produto #{item.product_id}")
        return item

    def place_order(self, customer_email: str, line_items: Sequence[Any], payment_method: str) -> int:
        """
        Cria pedido + itens + pagamento em uma única transação.
        Os preços são lidos do catálogo no momento da compra (snapshot).
        """
        email = _require_text(customer_email, "E-mail do cliente")
        method = _require_text(payment_method, "Forma de pagamento")
        if not line_items:
            raise ValidationError("O pedido não tem itens")
        items = [self._line_item(raw) for raw in line_items]

        order_id = self.db.with_transaction(lambda tx: self._create(tx, email, items, method))
        log_event(f"🧾 Pedido #{order_id} criado para {email}")
        return order_id

    def _create(self, tx: Transaction, email: str, items: List[LineItem], method: str) -> int:
        products = self.catalog.snapshot(tx, [item.product_id for item in items])
        missing = sorted({item.product_id for item in items if item.product_id not in products})
        if missing:
            raise NotFoundError(f"Produto(s) não encontrado(s): {', '.join(map(str, missing))}")

        total = sum((to_money(products[item.product_id]["price"]) * item.quantity for item in items), Decimal("0.00"))
        if total >= MAX_PRICE:
            raise ValidationError(f"Total do pedido excede o limite: {total}")
        created_at = _now()

        order_id = tx.execute(
            "INSERT INTO orders (user_email, total_amount, status, created_at) VALUES (?, ?, ?, ?)",
            (email, total, ORDER_PENDING, created_at),
        ).lastrowid
        for item in items:
            self._insert_item(tx, order_id, item, products[item.product_id])
        self._insert_payment(tx, order_id, method, total, email, created_at)
        return order_id

    @staticmethod
    def _insert_item(tx: Transaction, order_id: int, item: LineItem, product: Row) -> None:
        tx.execute(
            "INSERT INTO order_items (order_id, product_id, product_name, quantity, price_at_time) "
            "VALUES (?, ?, ?, ?, ?)",
            (order_id, item.product_id, product["name"], item.quantity, to_money(product["price"])),
        )

    @staticmethod
    def _insert_payment(tx: Transaction, order_id: int, method: str, amount: Decimal,
                        email: str, created_at: str) -> None:
        tx.execute(
            "INSERT INTO payments (order_id, method, status, amount, payer_email, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (order_id, method, PAYMENT_PENDING, amount, email, created_at),
        )

    # --- leitura ---

    @staticmethod
    def _order(row: Row) -> Order:
        return Order(
            id=row["id"],
            email=row["user_email"],
            total=to_money(row["total_amount"]),
            status=row["status"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _item(row: Row) -> OrderItem:
        return OrderItem(
            id=row["id"],
            order_id=row["order_id"],
            product_id=row["product_id"],
            product_name=row["product_name"],
            quantity=row["quantity"],
            price_at_time=to_money(row["price_at_time"]),
        )

    @staticmethod
    def _payment(row: Row) -> Payment:
        return Payment(
            id=row["id"],
            order_id=row["order_id"],
            method=row["method"],
            status=row["status"],
            amount=to_money(row["amount"]),
            payer_email=row["payer_email"],
            created_at=row["created_at"],
        )

    def _load(self, tx: Transaction, where: str = "", params: Sequence[Any] = ()) -> List[Order]:
        orders = {row["id"]: self._order(row) for row in tx.query_all(
            f"SELECT * FROM orders {where} ORDER BY id DESC", params)}
        if not orders:
            return []
        for row in tx.query_all(f"SELECT * FROM order_items WHERE order_id IN (SELECT id FROM orders {where}) "
                                "ORDER BY id", params):
            orders[row["order_id"]].items.append(self._item(row))
        for row in tx.query_all(f"SELECT * FROM payments WHERE order_id IN (SELECT id FROM orders {where})",
                                params):
            orders[row["order_id"]].payment = self._payment(row)
        return list(orders.values())

    def get_order(self, order_id: int) -> Order:
        with self.db.transaction(readonly=True) as tx:
            orders = self._load(tx, "WHERE id = ?", (order_id,))
        if not orders:
            raise NotFoundError(f"Pedido #{order_id} não encontrado")
        return orders[0]

    def list_orders(self) -> List[Order]:
        """Todos os pedidos (mais recentes primeiro) com seus itens"""
        with self.db.transaction(readonly=True) as tx:
            return self._load(tx)

    def list_payments(self) -> List[Dict[str, Any]]:
        rows = self.db.query_all("""
            SELECT p.id, p.order_id, p.method, p.status, p.amount, p.payer_email, p.created_at,
                   o.total_amount AS order_total, o.status AS order_status, o.created_at AS order_date
            FROM payments p
            JOIN orders o ON o.id = p.order_id
            ORDER BY p.id DESC
        """)
        for row in rows:
            row["amount"] = to_money(row["amount"])
            row["order_total"] = to_money(row["order_total"])
        return rows

    def update_status(self, order_id: int, status: str) -> Order:
        """Registra um evento de liquidação (Pending -> Paid/Cancelled); total e itens não mudam"""
        def work(tx: Transaction) -> None:
            row = tx.query_one("SELECT status FROM orders WHERE id = ?", (order_id,))
            if not row:
                raise NotFoundError(f"Pedido #{order_id} não encontrado")
            allowed = TRANSITIONS.get(row["status"], {})
            if status not in allowed:
                raise ValidationError(f"Transição inválida: {row['status']} -> {status}")
            tx.execute("UPDATE orders SET status = ? WHERE id = ?", (status, order_id))
            tx.execute("UPDATE payments SET status = ? WHERE order_id = ?", (allowed[status], order_id))

        self.db.with_transaction(work)
        log_event(f"💳 Pedido #{order_id} -> {status}")
        return self.get_order(order_id)
