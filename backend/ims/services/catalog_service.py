# Overview: Service-layer operations for catalog master data (products, warehouses, suppliers, customers).

from __future__ import annotations

import structlog

from ..errors import AlreadyExistsError, InvalidAmountError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Category, Customer, Product, Supplier, Warehouse
from .concurrency import atomic

logger = structlog.get_logger(__name__)


def _normalize_code(value: str) -> str:
    return (value or "").strip().upper()


def create_product(
    sku: str,
    name: str,
    unit_price_cents: int,
    *,
    cost_price_cents: int | None = None,
    reorder_level: int = 10,
    min_stock_level: int = 5,
    category_id: int | None = None,
    description: str | None = None,
    barcode: str | None = None,
    commit: bool = True,
) -> Product:
    """
    Create a product.

    Raises:
        AlreadyExistsError: SKU (or barcode) already used
        InvalidAmountError: price <= 0 or negative stock levels
        NotFoundError: Unknown category
    """
    def _op() -> Product:
        sku_value = _normalize_code(sku)
        if not sku_value:
            raise ValidationError("SKU is required")
        if unit_price_cents is None or unit_price_cents <= 0:
            raise InvalidAmountError("Unit price must be positive", {"unit_price_cents": unit_price_cents})
        if cost_price_cents is not None and cost_price_cents < 0:
            raise InvalidAmountError("Cost price cannot be negative")
        if reorder_level < 0 or min_stock_level < 0:
            raise InvalidAmountError("Stock levels cannot be negative")

        if db.session.query(Product).filter_by(sku=sku_value).first():
            raise AlreadyExistsError(f"Product with SKU {sku_value} already exists", {"sku": sku_value})
        if barcode and db.session.query(Product).filter_by(barcode=barcode).first():
            raise AlreadyExistsError(f"Product with barcode {barcode} already exists", {"barcode": barcode})
        if category_id is not None and not db.session.get(Category, category_id):
            raise NotFoundError("Category", category_id)

        product = Product(
            sku=sku_value,
            name=name,
            description=description,
            barcode=barcode,
            unit_price_cents=unit_price_cents,
            cost_price_cents=cost_price_cents,
            reorder_level=reorder_level,
            min_stock_level=min_stock_level,
            category_id=category_id,
            is_active=True,
        )
        db.session.add(product)
        db.session.flush()
        logger.info("product.created", product_id=product.id, sku=product.sku)
        return product

    return atomic(_op, commit=commit, operation="create_product")


def get_product_by_sku(sku: str) -> Product:
    product = db.session.query(Product).filter_by(sku=_normalize_code(sku)).first()
    if not product:
        raise NotFoundError("Product", sku)
    return product


def update_stock_levels(
    product_id: int,
    *,
    reorder_level: int | None = None,
    min_stock_level: int | None = None,
    commit: bool = True,
) -> Product:
    def _op() -> Product:
        product = db.session.get(Product, product_id)
        if not product:
            raise NotFoundError("Product", product_id)
        if (reorder_level is not None and reorder_level < 0) or (min_stock_level is not None and min_stock_level < 0):
            raise InvalidAmountError("Stock levels cannot be negative")
        if reorder_level is not None:
            product.reorder_level = reorder_level
        if min_stock_level is not None:
            product.min_stock_level = min_stock_level
        db.session.flush()
        return product

    return atomic(_op, commit=commit, operation="update_stock_levels")


def set_product_active(product_id: int, is_active: bool, *, commit: bool = True) -> Product:
    def _op() -> Product:
        product = db.session.get(Product, product_id)
        if not product:
            raise NotFoundError("Product", product_id)
        product.is_active = is_active
        db.session.flush()
        return product

    return atomic(_op, commit=commit, operation="set_product_active")


def create_warehouse(
    code: str,
    name: str,
    *,
    address: str | None = None,
    city: str | None = None,
    country: str | None = None,
    capacity: int | None = None,
    commit: bool = True,
) -> Warehouse:
    """
    Create a warehouse.

    Raises:
        AlreadyExistsError: Code already used
    """
    def _op() -> Warehouse:
        code_value = _normalize_code(code)
        if db.session.query(Warehouse).filter_by(code=code_value).first():
            raise AlreadyExistsError(f"Warehouse with code {code_value} already exists", {"code": code_value})
        if capacity is not None and capacity < 0:
            raise InvalidAmountError("Capacity cannot be negative")

        warehouse = Warehouse(
            code=code_value,
            name=name,
            address=address,
            city=city,
            country=country,
            capacity=capacity,
            is_active=True,
        )
        db.session.add(warehouse)
        db.session.flush()
        logger.info("warehouse.created", warehouse_id=warehouse.id, code=warehouse.code)
        return warehouse

    return atomic(_op, commit=commit, operation="create_warehouse")


def set_warehouse_active(warehouse_id: int, is_active: bool, *, commit: bool = True) -> Warehouse:
    def _op() -> Warehouse:
        warehouse = db.session.get(Warehouse, warehouse_id)
        if not warehouse:
            raise NotFoundError("Warehouse", warehouse_id)
        warehouse.is_active = is_active
        db.session.flush()
        return warehouse

    return atomic(_op, commit=commit, operation="set_warehouse_active")


def create_supplier(
    code: str,
    name: str,
    *,
    contact_name: str | None = None,
    email: str | None = None,
    phone: str | None = None,
    payment_terms: str | None = None,
    commit: bool = True,
) -> Supplier:
    def _op() -> Supplier:
        code_value = _normalize_code(code)
        if db.session.query(Supplier).filter_by(code=code_value).first():
            raise AlreadyExistsError(f"Supplier with code {code_value} already exists", {"code": code_value})
        supplier = Supplier(
            code=code_value,
            name=name,
            contact_name=contact_name,
            email=email,
            phone=phone,
            payment_terms=payment_terms,
            is_active=True,
        )
        db.session.add(supplier)
        db.session.flush()
        logger.info("supplier.created", supplier_id=supplier.id, code=supplier.code)
        return supplier

    return atomic(_op, commit=commit, operation="create_supplier")


def create_customer(
    email: str,
    first_name: str,
    last_name: str,
    *,
    phone: str | None = None,
    billing_address: str | None = None,
    shipping_address: str | None = None,
    commit: bool = True,
) -> Customer:
    """
    Create a customer.

    Raises:
        AlreadyExistsError: Email already used
    """
    def _op() -> Customer:
        email_value = (email or "").strip().lower()
        if db.session.query(Customer).filter_by(email=email_value).first():
            raise AlreadyExistsError(f"Customer with email {email_value} already exists", {"email": email_value})
        customer = Customer(
            email=email_value,
            first_name=first_name,
            last_name=last_name,
            phone=phone,
            billing_address=billing_address,
            shipping_address=shipping_address,
            is_active=True,
        )
        db.session.add(customer)
        db.session.flush()
        logger.info("customer.created", customer_id=customer.id)
        return customer

    return atomic(_op, commit=commit, operation="create_customer")


def update_customer(customer_id: int, *, commit: bool = True, **fields) -> Customer:
    """
    Update customer contact fields.

    Historical sales orders keep their name/email snapshot.
    """
    allowed = {"email", "first_name", "last_name", "phone", "billing_address", "shipping_address", "is_active"}

    def _op() -> Customer:
        customer = db.session.get(Customer, customer_id)
        if not customer:
            raise NotFoundError("Customer", customer_id)
        unknown = set(fields) - allowed
        if unknown:
            raise ValidationError(f"Unknown customer fields: {', '.join(sorted(unknown))}")
        if "email" in fields:
            email_value = (fields["email"] or "").strip().lower()
            clash = db.session.query(Customer).filter(Customer.email == email_value, Customer.id != customer.id).first()
            if clash:
                raise AlreadyExistsError(f"Customer with email {email_value} already exists", {"email": email_value})
            fields["email"] = email_value
        for key, value in fields.items():
            setattr(customer, key, value)
        db.session.flush()
        return customer

    return atomic(_op, commit=commit, operation="update_customer")
