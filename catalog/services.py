"""
Catalog Service Layer - product and category rules applied before saving.

Products:
    - SKU is upper-cased, unique and immutable
    - Prices rounded half-up to 2 places; compare_at_price must exceed price
    - Slug derived from the name with a numeric suffix on collision
    - Retired with is_active=False, never deleted

Categories:
    - level = parent.level + 1, capped at CATEGORY_MAX_DEPTH
    - path = parent.path + [parent.id]
    - Reparenting walks the new parent's ancestor chain to refuse cycles
"""
import logging
import re
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from django.conf import settings
from django.db import transaction

from core.exceptions import (
    CircularReferenceError,
    ConflictError,
    NotFoundError,
    ServiceValidationError,
)
from core.utils import to_money, unique_slug
from .models import Category, Product, ProductVariant

logger = logging.getLogger(__name__)

CATEGORY_NAME_PATTERN = re.compile(r"^[A-Za-z0-9\s\-']+$")

PRODUCT_UPDATABLE_FIELDS = {
    'name', 'description', 'category_id', 'price', 'compare_at_price',
    'cost_price', 'low_stock_threshold', 'track_inventory', 'allow_backorder',
    'is_active', 'sku',
}


# =============================================================================
# Products
# =============================================================================

def _normalize_sku(sku) -> str:
    sku = (sku or '').strip().upper()
    if not sku:
        raise ServiceValidationError("SKU is required", field='sku')
    return sku


def _validate_pricing(price, compare_at_price=None, cost_price=None) -> Tuple[Decimal, Optional[Decimal], Optional[Decimal]]:
    price = to_money(price, 'price')
    if price <= 0:
        raise ServiceValidationError("Price must be greater than zero", field='price')

    if compare_at_price is not None:
        compare_at_price = to_money(compare_at_price, 'compare_at_price')
        if compare_at_price <= price:
            raise ServiceValidationError(
                "Compare at price must be greater than selling price",
                field='compare_at_price'
            )

    if cost_price is not None:
        cost_price = to_money(cost_price, 'cost_price')
        if cost_price < 0:
            raise ServiceValidationError("Cost price cannot be negative", field='cost_price')

    return price, compare_at_price, cost_price


def _resolve_category(category_id) -> Optional[Category]:
    if category_id is None:
        return None
    category = Category.objects.filter(pk=category_id, is_deleted=False).first()
    if category is None:
        raise NotFoundError('Category', category_id)
    return category


def _validate_stock(stock_quantity, allow_backorder: bool) -> int:
    if isinstance(stock_quantity, bool) or not isinstance(stock_quantity, int):
        raise ServiceValidationError("stock_quantity must be an integer", field='stock_quantity')
    if stock_quantity < 0 and not allow_backorder:
        raise ServiceValidationError(
            "Inventory quantity cannot be negative unless backorder is allowed",
            field='stock_quantity'
        )
    return stock_quantity


def create_product(
    sku: str,
    name: str,
    price,
    description: str = '',
    category_id: Optional[int] = None,
    compare_at_price=None,
    cost_price=None,
    stock_quantity: int = 0,
    low_stock_threshold: int = 10,
    track_inventory: bool = True,
    allow_backorder: bool = False,
) -> Product:
    """
    Create an active product.

    Raises:
        ServiceValidationError: Invalid name, price or stock
        ConflictError: SKU already in use
        NotFoundError: Category does not exist
    """
    sku = _normalize_sku(sku)
    name = (name or '').strip()
    if len(name) < 3 or len(name) > 200:
        raise ServiceValidationError("Product name must be 3-200 characters", field='name')

    price, compare_at_price, cost_price = _validate_pricing(price, compare_at_price, cost_price)
    stock_quantity = _validate_stock(stock_quantity, allow_backorder)
    category = _resolve_category(category_id)

    with transaction.atomic():
        if Product.objects.filter(sku=sku).exists() or ProductVariant.objects.filter(sku=sku).exists():
            raise ConflictError(f"SKU {sku} already exists", field='sku')

        product = Product.objects.create(
            sku=sku,
            name=name,
            slug=unique_slug(Product, name),
            description=description,
            category=category,
            price=price,
            compare_at_price=compare_at_price,
            cost_price=cost_price,
            stock_quantity=stock_quantity,
            low_stock_threshold=low_stock_threshold,
            track_inventory=track_inventory,
            allow_backorder=allow_backorder,
        )

    logger.info(f"Created product {product.sku} ({product.slug})")
    return product


def update_product(product_id: int, **changes) -> Product:
    """
    Apply admin changes to a product.

    The SKU cannot change; the slug follows the name; price rules are
    re-checked against the merged values.
    """
    unknown = set(changes) - PRODUCT_UPDATABLE_FIELDS
    if unknown:
        raise ServiceValidationError(f"Unknown product fields: {', '.join(sorted(unknown))}")

    with transaction.atomic():
        try:
            product = Product.objects.select_for_update().get(pk=product_id)
        except Product.DoesNotExist:
            raise NotFoundError('Product', product_id)

        if 'sku' in changes and _normalize_sku(changes['sku']) != product.sku:
            raise ServiceValidationError("SKU cannot be changed", field='sku')

        if 'name' in changes:
            name = (changes['name'] or '').strip()
            if len(name) < 3 or len(name) > 200:
                raise ServiceValidationError("Product name must be 3-200 characters", field='name')
            if name != product.name:
                product.slug = unique_slug(Product, name, exclude_pk=product.pk)
            product.name = name

        if {'price', 'compare_at_price', 'cost_price'} & set(changes):
            price, compare_at_price, cost_price = _validate_pricing(
                changes.get('price', product.price),
                changes.get('compare_at_price', product.compare_at_price),
                changes.get('cost_price', product.cost_price),
            )
            product.price = price
            product.compare_at_price = compare_at_price
            product.cost_price = cost_price

        if 'category_id' in changes:
            product.category = _resolve_category(changes['category_id'])

        if 'allow_backorder' in changes:
            product.allow_backorder = bool(changes['allow_backorder'])
            _validate_stock(product.stock_quantity, product.allow_backorder)

        for field in ('description', 'low_stock_threshold', 'track_inventory', 'is_active'):
            if field in changes:
                setattr(product, field, changes[field])

        product.save()

    logger.info(f"Updated product {product.sku}: {', '.join(sorted(changes)) or 'no fields'}")
    return product


def deactivate_product(product_id: int) -> Product:
    """Soft delete: historical order lines keep pointing at the row."""
    updated = Product.objects.filter(pk=product_id).update(is_active=False)
    if not updated:
        raise NotFoundError('Product', product_id)
    logger.info(f"Deactivated product {product_id}")
    return Product.objects.get(pk=product_id)


def add_variant(product_id: int, name: str, sku: str, stock_quantity: int = 0, price=None) -> ProductVariant:
    """
    Attach a variant. Its SKU must be unique and differ from the parent SKU.
    """
    sku = _normalize_sku(sku)
    if isinstance(stock_quantity, bool) or not isinstance(stock_quantity, int) or stock_quantity < 0:
        raise ServiceValidationError("Variant stock must be a non-negative integer", field='stock_quantity')
    if price is not None:
        price = to_money(price, 'price')
        if price <= 0:
            raise ServiceValidationError("Variant price must be greater than zero", field='price')

    with transaction.atomic():
        product = Product.objects.filter(pk=product_id).first()
        if product is None:
            raise NotFoundError('Product', product_id)
        if sku == product.sku:
            raise ServiceValidationError("Variant SKU cannot match main product SKU", field='sku')
        if ProductVariant.objects.filter(sku=sku).exists() or Product.objects.filter(sku=sku).exists():
            raise ConflictError(f"SKU {sku} already exists", field='sku')

        variant = ProductVariant.objects.create(
            product=product,
            name=name,
            sku=sku,
            stock_quantity=stock_quantity,
            price=price,
        )

    logger.info(f"Added variant {variant.sku} to {product.sku}")
    return variant


# =============================================================================
# Categories
# =============================================================================

def _max_depth() -> int:
    return getattr(settings, 'CATEGORY_MAX_DEPTH', 5)


def _validate_category_name(name) -> str:
    name = (name or '').strip()
    if len(name) < 2 or len(name) > 100:
        raise ServiceValidationError("Category name must be 2-100 characters", field='name')
    if not CATEGORY_NAME_PATTERN.match(name):
        raise ServiceValidationError(
            "Category name can only contain letters, numbers, spaces, hyphens, and apostrophes",
            field='name'
        )
    return name


def _resolve_parent(parent_id) -> Category:
    parent = Category.objects.filter(pk=parent_id, is_deleted=False).first()
    if parent is None:
        raise NotFoundError('Category', parent_id)
    if not parent.is_active:
        raise ServiceValidationError("Parent category must be active", field='parent_id')
    return parent


def _placement_under(parent: Optional[Category]) -> Tuple[int, str]:
    """Level and path for a node whose parent is ``parent``."""
    if parent is None:
        return 0, '/'
    level = parent.level + 1
    if level > _max_depth():
        raise ServiceValidationError(
            f"Maximum nesting level of {_max_depth()} exceeded",
            field='parent_id'
        )
    return level, Category.build_path(parent.ancestor_ids + [parent.pk])


def create_category(
    name: str,
    parent_id: Optional[int] = None,
    description: str = '',
    display_order: int = 0,
) -> Category:
    """
    Create a category under an existing, active parent (or as a root).

    Raises:
        NotFoundError: Parent missing or deleted
        ServiceValidationError: Bad name, inactive parent, or too deep
    """
    name = _validate_category_name(name)
    parent = _resolve_parent(parent_id) if parent_id is not None else None
    level, path = _placement_under(parent)

    with transaction.atomic():
        category = Category.objects.create(
            name=name,
            slug=unique_slug(Category, name),
            description=description,
            parent=parent,
            level=level,
            path=path,
            display_order=display_order,
        )

    logger.info(f"Created category {category.slug} at level {level}")
    return category


def _assert_not_ancestor(category: Category, new_parent: Category) -> None:
    """
    Refuse the move if ``category`` appears on ``new_parent``'s chain to the
    root. The stored path is checked first, then the parent links are
    followed because descendant paths are not rewritten on a move.
    """
    if new_parent.pk == category.pk or category.pk in new_parent.ancestor_ids:
        raise CircularReferenceError(category.pk, new_parent.pk)

    seen = {new_parent.pk}
    parent_id = new_parent.parent_id
    while parent_id is not None:
        if parent_id == category.pk or parent_id in seen:
            raise CircularReferenceError(category.pk, new_parent.pk)
        seen.add(parent_id)
        parent_id = Category.objects.filter(pk=parent_id).values_list('parent_id', flat=True).first()


def reparent_category(category_id: int, new_parent_id: Optional[int]) -> Category:
    """
    Move a category under a new parent (``None`` makes it a root).

    Only the moved node's level and path are recomputed; its descendants
    keep their stored level/path.

    Raises:
        CircularReferenceError: New parent is the category or one of its descendants
        NotFoundError: Category or parent missing
        ServiceValidationError: Inactive parent or depth exceeded
    """
    with transaction.atomic():
        category = Category.objects.select_for_update().filter(
            pk=category_id, is_deleted=False
        ).first()
        if category is None:
            raise NotFoundError('Category', category_id)

        new_parent = None
        if new_parent_id is not None:
            new_parent = _resolve_parent(new_parent_id)
            _assert_not_ancestor(category, new_parent)

        level, path = _placement_under(new_parent)
        old_parent_id = category.parent_id
        category.parent = new_parent
        category.level = level
        category.path = path
        category.save(update_fields=['parent', 'level', 'path', 'updated_at'])

    logger.info(f"Moved category {category_id} from parent {old_parent_id} to {new_parent_id}")
    return category


def get_descendants(category: Category):
    return Category.objects.filter(
        path__contains=category.descendant_path_marker,
        is_deleted=False
    ).order_by('level', 'display_order', 'name')


def get_ancestors(category: Category) -> List[Category]:
    if not category.ancestor_ids:
        return []
    return list(
        Category.objects.filter(pk__in=category.ancestor_ids, is_deleted=False).order_by('level')
    )


def can_delete_category(category: Category) -> Tuple[bool, Optional[str]]:
    """A category can be deleted only with no live descendants and no products."""
    descendants = get_descendants(category).count()
    if descendants:
        noun = 'category' if descendants == 1 else 'categories'
        return False, f"Category has {descendants} descendant {noun} in its hierarchy"
    if category.products.exists():
        return False, "Category has associated products"
    return True, None


def soft_delete_category(category_id: int) -> Category:
    with transaction.atomic():
        category = Category.objects.select_for_update().filter(
            pk=category_id, is_deleted=False
        ).first()
        if category is None:
            raise NotFoundError('Category', category_id)

        allowed, reason = can_delete_category(category)
        if not allowed:
            raise ConflictError(reason, category_id=category_id)

        category.is_deleted = True
        category.is_active = False
        category.save(update_fields=['is_deleted', 'is_active', 'updated_at'])

    logger.info(f"Soft deleted category {category_id}")
    return category


def get_category_tree(root_id: Optional[int] = None) -> List[Dict]:
    """
    Nested ``{'id', 'name', 'slug', 'level', 'children'}`` dicts for active
    categories. With ``root_id`` the result is that one branch, root included.
    """
    categories = Category.objects.filter(is_active=True, is_deleted=False).order_by(
        'display_order', 'name'
    )
    by_parent: Dict[Optional[int], List[Category]] = {}
    for category in categories:
        by_parent.setdefault(category.parent_id, []).append(category)

    def build(node):
        return {
            'id': node.pk,
            'name': node.name,
            'slug': node.slug,
            'level': node.level,
            'children': [build(child) for child in by_parent.get(node.pk, [])],
        }

    if root_id is None:
        return [build(node) for node in by_parent.get(None, [])]

    root = next((node for node in categories if node.pk == root_id), None)
    if root is None:
        raise NotFoundError('Category', root_id)
    return [build(root)]
