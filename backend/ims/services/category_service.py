# backend/ims/services/category_service.py
"""
Category hierarchy over flat rows.

DESIGN:
Categories carry only parent_id. Children, products, paths and descendant
sets are all derived by indexed queries and iterative walks; nothing
cascades. Deleting a category is rejected while anything still points at it,
and re-parenting is rejected when it would create a cycle.
"""
from __future__ import annotations

import structlog

from ..errors import (
    AlreadyExistsError,
    CategoryHasChildrenError,
    CategoryHasProductsError,
    CircularCategoryReferenceError,
    NotFoundError,
)
from ..extensions import db
from ..models import Category, Product
from .concurrency import atomic

logger = structlog.get_logger(__name__)

PATH_SEPARATOR = " > "


def get_category(category_id: int) -> Category:
    category = db.session.get(Category, category_id)
    if not category:
        raise NotFoundError("Category", category_id)
    return category


def child_categories(parent_id: int | None) -> list[Category]:
    """Direct children (parent_id=None returns the roots)."""
    query = db.session.query(Category)
    if parent_id is None:
        query = query.filter(Category.parent_id.is_(None))
    else:
        query = query.filter(Category.parent_id == parent_id)
    return query.order_by(Category.name.asc()).all()


def category_products(category_id: int, *, include_descendants: bool = False) -> list[Product]:
    ids = [category_id]
    if include_descendants:
        ids.extend(descendant_ids(category_id))
    return (
        db.session.query(Product)
        .filter(Product.category_id.in_(ids))
        .order_by(Product.sku.asc())
        .all()
    )


def ancestor_ids(category_id: int) -> list[int]:
    """Ids from the direct parent up to the root."""
    ancestors = []
    seen = {category_id}
    current = get_category(category_id).parent_id
    while current is not None:
        if current in seen:
            # Corrupt cycle written outside this service
            break
        ancestors.append(current)
        seen.add(current)
        current = get_category(current).parent_id
    return ancestors


def category_path(category_id: int) -> str:
    """Root-to-node names, e.g. "Electronics > Computers > Laptops"."""
    names = [get_category(category_id).name]
    names.extend(get_category(ancestor_id).name for ancestor_id in ancestor_ids(category_id))
    return PATH_SEPARATOR.join(reversed(names))


def descendant_ids(category_id: int) -> list[int]:
    """Breadth-first walk over the parent_id index."""
    get_category(category_id)
    result: list[int] = []
    frontier = [category_id]
    while frontier:
        rows = db.session.query(Category.id).filter(Category.parent_id.in_(frontier)).all()
        frontier = [row.id for row in rows if row.id not in result and row.id != category_id]
        result.extend(frontier)
    return result


def category_tree(parent_id: int | None = None) -> list[dict]:
    """Nested dicts for display; built by repeated child lookups."""
    nodes = []
    for category in child_categories(parent_id):
        node = category.to_dict()
        node["children"] = category_tree(category.id)
        nodes.append(node)
    return nodes


def create_category(
    code: str,
    name: str,
    *,
    parent_id: int | None = None,
    description: str | None = None,
    commit: bool = True,
) -> Category:
    """
    Raises:
        AlreadyExistsError: Code or name taken
        NotFoundError: Unknown parent
    """
    def _op() -> Category:
        code_value = (code or "").strip().upper()
        if db.session.query(Category).filter_by(code=code_value).first():
            raise AlreadyExistsError(f"Category with code {code_value} already exists", {"code": code_value})
        if db.session.query(Category).filter_by(name=name).first():
            raise AlreadyExistsError(f"Category with name {name} already exists", {"name": name})
        if parent_id is not None:
            get_category(parent_id)

        category = Category(code=code_value, name=name, description=description, parent_id=parent_id, is_active=True)
        db.session.add(category)
        db.session.flush()
        logger.info("category.created", category_id=category.id, parent_id=parent_id)
        return category

    return atomic(_op, commit=commit, operation="create_category")


def move_category(category_id: int, new_parent_id: int | None, *, commit: bool = True) -> Category:
    """
    Re-parent a category (None makes it a root).

    Raises:
        CircularCategoryReferenceError: New parent is the category itself or a descendant
    """
    def _op() -> Category:
        category = get_category(category_id)
        if new_parent_id is not None:
            get_category(new_parent_id)
            if new_parent_id == category.id or new_parent_id in descendant_ids(category.id):
                raise CircularCategoryReferenceError(
                    f"Category {category.code} cannot be moved under its own subtree",
                    {"category_id": category.id, "parent_id": new_parent_id},
                )
        category.parent_id = new_parent_id
        db.session.flush()
        logger.info("category.moved", category_id=category.id, parent_id=new_parent_id)
        return category

    return atomic(_op, commit=commit, operation="move_category")


def delete_category(category_id: int, *, commit: bool = True) -> None:
    """
    Delete a leaf category with no products.

    Raises:
        CategoryHasChildrenError: Sub-categories exist
        CategoryHasProductsError: Products still reference it
    """
    def _op() -> None:
        category = get_category(category_id)
        children = db.session.query(Category).filter_by(parent_id=category.id).count()
        if children:
            raise CategoryHasChildrenError(
                f"Category {category.code} has {children} sub-categories",
                {"children": children},
            )
        products = db.session.query(Product).filter_by(category_id=category.id).count()
        if products:
            raise CategoryHasProductsError(
                f"Category {category.code} has {products} products",
                {"products": products},
            )
        db.session.delete(category)
        db.session.flush()
        logger.info("category.deleted", category_id=category_id)

    return atomic(_op, commit=commit, operation="delete_category")
