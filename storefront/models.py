# models.py
# Definições de dataclasses e modelos de domínio

from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

ROLES = ("customer", "admin")

ORDER_PENDING = "Pending"
ORDER_PAID = "Paid"
ORDER_CANCELLED = "Cancelled"

PAYMENT_PENDING = "Pending"
PAYMENT_CONFIRMED = "Confirmed"
PAYMENT_FAILED = "Failed"


@dataclass
class User:
    id: int
    name: str
    email: str
    password: str
    role: str

    def public(self) -> dict:
        return {"name": self.name, "email": self.email, "role": self.role}


@dataclass
class Product:
    id: int
    name: str
    price: Decimal
    description: Optional[str]
    category: Optional[str]
    image_url: Optional[str]
    images: List[str] = field(default_factory=list)


@dataclass
class LineItem:
    product_id: int
    quantity: int


@dataclass
class OrderItem:
    id: int
    order_id: int
    product_id: Optional[int]
    product_name: Optional[str]
    quantity: int
    price_at_time: Decimal


@dataclass
class Payment:
    id: int
    order_id: int
    method: str
    status: str
    amount: Decimal
    payer_email: str
    created_at: str


@dataclass
class Order:
    id: int
    email: str
    total: Decimal
    status: str
    created_at: str
    items: List[OrderItem] = field(default_factory=list)
    payment: Optional[Payment] = None
