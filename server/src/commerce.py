# commerce.py
"""
Read-only view of the shop's orders, products and user profiles.

The order, product and user tables belong to the e-commerce backend; this
module only answers the questions the eBook layer needs: who owns an order and
is it paid, is a product a downloadable eBook and where is its file, and what
name / contact should appear in a watermark.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy import text
from sqlalchemy.engine import Engine

PAID = "paid"
DIGITAL = "digital"


@dataclass(frozen=True)
class Order:
    id: int
    user_id: int
    order_number: str
    payment_status: str
    product_ids: tuple[int, ...] = field(default_factory=tuple)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PAID


@dataclass(frozen=True)
class Product:
    id: int
    title: str
    product_type: str
    digital_file: str | None

    @property
    def is_ebook(self) -> bool:
        return self.product_type == DIGITAL and bool(self.digital_file)


@dataclass(frozen=True)
class Profile:
    user_id: int
    name: str | None
    email: str | None
    mobile: str | None
    role: str = "customer"

    @property
    def contact(self) -> str | None:
        return self.email or self.mobile


class CommerceGateway:
    def __init__(self, engine: Engine):
        self.engine = engine

    def find_order(self, order_id: int) -> Order | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                text("""
                    SELECT id, user_id, order_number, payment_status
                    FROM Orders WHERE id = :id LIMIT 1
                """),
                {"id": int(order_id)},
            ).first()
            if not row:
                return None
            items = conn.execute(
                text("SELECT product_id FROM OrderItems WHERE order_id = :id ORDER BY id"),
                {"id": int(order_id)},
            ).all()
        return Order(
            id=int(row.id),
            user_id=int(row.user_id),
            order_number=row.order_number or str(row.id),
            payment_status=(row.payment_status or "").lower(),
            product_ids=tuple(int(i.product_id) for i in items),
        )

    def find_product(self, product_id: int) -> Product | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                text("""
                    SELECT id, title, product_type, digital_file
                    FROM Products WHERE id = :id LIMIT 1
                """),
                {"id": int(product_id)},
            ).first()
        if not row:
            return None
        return Product(
            id=int(row.id),
            title=row.title,
            product_type=(row.product_type or "").lower(),
            digital_file=row.digital_file or None,
        )

    def find_profile(self, user_id: int) -> Profile | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                text("SELECT id, name, email, mobile, role FROM Users WHERE id = :id LIMIT 1"),
                {"id": int(user_id)},
            ).first()
        if not row:
            return None
        return Profile(
            user_id=int(row.id),
            name=row.name or None,
            email=row.email or None,
            mobile=row.mobile or None,
            role=row.role or "customer",
        )
