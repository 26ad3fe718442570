from __future__ import annotations

from ..extensions import db
from ims.time_utils import to_utc_z


class Category(db.Model):
    """
    Product category node.

    HIERARCHY DESIGN DECISION:
    Categories are flat rows keyed by id with an explicit, indexed parent_id.
    There is deliberately no parent/children relationship() here:
    - "children of X" is an indexed query on parent_id
    - full path and descendant sets are computed iteratively in
      services/category_service.py
    - deleting a category never cascades; the service rejects deletes while
      children or products still reference it
    """
    __tablename__ = "categories"
    __table_args__ = (
        db.Index("ix_categories_parent_active", "parent_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(32), nullable=False, unique=True)
    name = db.Column(db.String(128), nullable=False, unique=True)
    description = db.Column(db.Text, nullable=True)

    parent_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True, index=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "description": self.description,
            "parent_id": self.parent_id,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class Product(db.Model):
    """
    Product master data.

    SKU is globally unique. Prices are stored in cents.

    STOCK THRESHOLDS:
    - reorder_level: at or below this quantity a warehouse is LOW
    - min_stock_level: at or below this quantity a warehouse is CRITICAL
    Both are evaluated per (product, warehouse) by the stock ledger.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.CheckConstraint("unit_price_cents > 0", name="ck_products_price_positive"),
        db.CheckConstraint("reorder_level >= 0", name="ck_products_reorder_level"),
        db.CheckConstraint("min_stock_level >= 0", name="ck_products_min_stock_level"),
        db.Index("ix_products_category_active", "category_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    sku = db.Column(db.String(64), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    barcode = db.Column(db.String(64), nullable=True, unique=True)

    # Authoritative storage in cents
    unit_price_cents = db.Column(db.Integer, nullable=False)
    cost_price_cents = db.Column(db.Integer, nullable=True)

    reorder_level = db.Column(db.Integer, nullable=False, default=10)
    min_stock_level = db.Column(db.Integer, nullable=False, default=5)

    # Owning side only; products of a category are derived by query
    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True, index=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "description": self.description,
            "barcode": self.barcode,
            "unit_price_cents": self.unit_price_cents,
            "cost_price_cents": self.cost_price_cents,
            "reorder_level": self.reorder_level,
            "min_stock_level": self.min_stock_level,
            "category_id": self.category_id,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Warehouse(db.Model):
    __tablename__ = "warehouses"
    __table_args__ = (
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(32), nullable=False, unique=True)
    name = db.Column(db.String(128), nullable=False)
    address = db.Column(db.String(255), nullable=True)
    city = db.Column(db.String(64), nullable=True)
    country = db.Column(db.String(64), nullable=True)
    capacity = db.Column(db.Integer, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "address": self.address,
            "city": self.city,
            "country": self.country,
            "capacity": self.capacity,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class Supplier(db.Model):
    """Supplier master data (purchase orders reference it by id)."""
    __tablename__ = "suppliers"
    __table_args__ = (
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(32), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)
    contact_name = db.Column(db.String(128), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(32), nullable=True)
    payment_terms = db.Column(db.String(64), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "contact_name": self.contact_name,
            "email": self.email,
            "phone": self.phone,
            "payment_terms": self.payment_terms,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class Customer(db.Model):
    """
    Customer master data.

    NOTE: Sales orders snapshot name/email at creation time. Editing a
    customer here does NOT rewrite historical orders.
    """
    __tablename__ = "customers"
    __table_args__ = (
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False, unique=True)
    first_name = db.Column(db.String(64), nullable=False)
    last_name = db.Column(db.String(64), nullable=False)
    phone = db.Column(db.String(32), nullable=True)
    billing_address = db.Column(db.String(255), nullable=True)
    shipping_address = db.Column(db.String(255), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "full_name": self.full_name,
            "phone": self.phone,
            "billing_address": self.billing_address,
            "shipping_address": self.shipping_address,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
