"""
Inventory Ledger - atomic stock reservation and release on Product rows.

Every mutation here is a single conditional UPDATE:

    UPDATE product SET stock_quantity = stock_quantity - q
    WHERE id = ? AND (stock_quantity >= q OR allow_backorder)

so the availability check and the decrement cannot be interleaved by a
concurrent request. Called inside an enclosing transaction.atomic() the
change rolls back with the rest of that transaction.

Reservation failures are never retried here; they surface immediately as
InsufficientStockError.
"""
import logging
from typing import Optional

from django.db import transaction
from django.db.models import F, Q
from django.utils import timezone

from core.exceptions import (
    InsufficientStockError,
    NotFoundError,
    ProductInactiveError,
    ServiceValidationError,
)
from core.utils import require_positive_int
from .models import Product, ProductVariant

logger = logging.getLogger(__name__)


def _get_product(product_id: int) -> Product:
    try:
        return Product.objects.only(
            'id', 'sku', 'track_inventory', 'allow_backorder', 'stock_quantity', 'is_active'
        ).get(pk=product_id)
    except Product.DoesNotExist:
        raise NotFoundError('Product', product_id)


def _current_stock(product_id: int, variant_id: Optional[int] = None) -> Optional[int]:
    if variant_id is not None:
        return (
            ProductVariant.objects.filter(pk=variant_id, product_id=product_id)
            .values_list('stock_quantity', flat=True)
            .first()
        )
    return Product.objects.filter(pk=product_id).values_list('stock_quantity', flat=True).first()


def reserve_stock(product_id: int, quantity: int, variant_id: Optional[int] = None) -> bool:
    """
    Atomically take ``quantity`` units of a product (or one of its variants).

    Raises:
        InsufficientStockError: Stock is short and backorders are not allowed
        NotFoundError: Product or variant does not exist
        ServiceValidationError: Quantity is not a positive integer
    """
    require_positive_int(quantity)
    product = _get_product(product_id)

    if not product.track_inventory:
        logger.info(f"Stock tracking disabled for {product.sku}, skipping reservation")
        return True

    now = timezone.now()
    if variant_id is not None:
        updated = ProductVariant.objects.filter(
            pk=variant_id,
            product_id=product_id,
            stock_quantity__gte=quantity
        ).update(stock_quantity=F('stock_quantity') - quantity, updated_at=now)
    else:
        updated = Product.objects.filter(pk=product_id).filter(
            Q(stock_quantity__gte=quantity) | Q(allow_backorder=True)
        ).update(stock_quantity=F('stock_quantity') - quantity, updated_at=now)

    if not updated:
        available = _current_stock(product_id, variant_id)
        if available is None:
            raise NotFoundError('ProductVariant', variant_id)
        logger.warning(
            f"Reservation rejected for {product.sku}: requested {quantity}, available {available}"
        )
        raise InsufficientStockError(product_id, quantity, available)

    logger.info(
        f"Reserved {quantity} of {product.sku}"
        + (f" (variant {variant_id})" if variant_id is not None else "")
    )
    return True


def release_stock(product_id: int, quantity: int, variant_id: Optional[int] = None) -> bool:
    """
    Atomically give back ``quantity`` units. There is no upper bound check;
    only order cancellation and compensating rollbacks should call this.

    Raises:
        NotFoundError: Product or variant does not exist
    """
    require_positive_int(quantity)
    product = _get_product(product_id)

    if not product.track_inventory:
        logger.info(f"Stock tracking disabled for {product.sku}, skipping release")
        return True

    now = timezone.now()
    if variant_id is not None:
        updated = ProductVariant.objects.filter(pk=variant_id, product_id=product_id).update(
            stock_quantity=F('stock_quantity') + quantity, updated_at=now
        )
        if not updated:
            raise NotFoundError('ProductVariant', variant_id)
    else:
        Product.objects.filter(pk=product_id).update(
            stock_quantity=F('stock_quantity') + quantity, updated_at=now
        )

    logger.info(f"Released {quantity} of {product.sku}")
    return True


def can_purchase(product: Product, quantity: int) -> bool:
    """
    Advisory pre-flight check used before a reservation (e.g. add to cart).
    The reservation itself is the authoritative guard.

    Raises:
        ProductInactiveError: Product is retired
        InsufficientStockError: Tracked stock is short and no backorders
    """
    if not product.is_active:
        raise ProductInactiveError(product.pk)
    if not product.track_inventory:
        return True
    if product.stock_quantity >= quantity or product.allow_backorder:
        return True
    raise InsufficientStockError(product.pk, quantity, max(product.stock_quantity, 0))


def check_availability(product_id: int, quantity: int, variant_id: Optional[int] = None) -> dict:
    """Report whether ``quantity`` could currently be reserved, without raising."""
    product = Product.objects.filter(pk=product_id).first()
    if product is None:
        logger.warning(f"Product {product_id} not found for availability check")
        return {'available': False, 'current_stock': 0}

    if variant_id is not None:
        current_stock = _current_stock(product_id, variant_id)
        if current_stock is None:
            return {'available': False, 'current_stock': 0}
        available = product.is_active and (not product.track_inventory or current_stock >= quantity)
        return {'available': available, 'current_stock': current_stock}

    available = product.is_active and (
        not product.track_inventory
        or product.stock_quantity >= quantity
        or product.allow_backorder
    )
    return {'available': available, 'current_stock': product.stock_quantity}


def add_stock(product_id: int, quantity: int, reason: str = '') -> int:
    """Restock a product and return the new quantity."""
    require_positive_int(quantity)
    with transaction.atomic():
        updated = Product.objects.filter(pk=product_id).update(
            stock_quantity=F('stock_quantity') + quantity, updated_at=timezone.now()
        )
        if not updated:
            raise NotFoundError('Product', product_id)
        new_quantity = _current_stock(product_id)

    logger.info(f"Added {quantity} units to product {product_id} ({reason or 'restock'}), now {new_quantity}")
    return new_quantity


def set_stock(product_id: int, quantity: int) -> Product:
    """
    Overwrite the stock count (admin correction). Negative values are only
    accepted for backorderable products.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ServiceValidationError("quantity must be an integer", field='quantity')

    with transaction.atomic():
        try:
            product = Product.objects.select_for_update().get(pk=product_id)
        except Product.DoesNotExist:
            raise NotFoundError('Product', product_id)

        if quantity < 0 and not product.allow_backorder:
            raise ServiceValidationError(
                "Inventory quantity cannot be negative unless backorder is allowed",
                field='stock_quantity'
            )

        previous = product.stock_quantity
        product.stock_quantity = quantity
        product.save(update_fields=['stock_quantity', 'updated_at'])

    logger.info(f"Stock for {product.sku} set from {previous} to {quantity}")
    return product


def get_low_stock_products(threshold: Optional[int] = None):
    """Active tracked products with positive stock at or below the threshold."""
    queryset = Product.objects.select_related('category').filter(
        is_active=True,
        track_inventory=True,
        stock_quantity__gt=0,
    )
    if threshold is None:
        queryset = queryset.filter(stock_quantity__lte=F('low_stock_threshold'))
    else:
        queryset = queryset.filter(stock_quantity__lte=threshold)
    return queryset.order_by('stock_quantity', 'name')
