"""
Cart Service Layer.

The cart is advisory: adding or updating a line re-validates the requested
quantity against live stock but reserves nothing. Stock is committed only
by orders.services.create_order.

Each mutation locks the cart row inside transaction.atomic() so the stock
read and the cart write belong to the same transaction.
"""
import logging
from typing import Dict, Iterable, List

from django.conf import settings
from django.db import transaction

from catalog.inventory import can_purchase
from catalog.models import Product
from core.exceptions import (
    InsufficientStockError,
    NotFoundError,
    ProductInactiveError,
    ServiceValidationError,
)
from core.utils import CENT, require_positive_int, to_money
from .models import Cart, CartItem

logger = logging.getLogger(__name__)


def _max_item_quantity() -> int:
    return getattr(settings, 'CART_MAX_ITEM_QUANTITY', 99)


def _check_quantity_cap(quantity: int) -> None:
    if quantity > _max_item_quantity():
        raise ServiceValidationError(
            f"Quantity cannot exceed {_max_item_quantity()}",
            field='quantity'
        )


def _get_product(product_id) -> Product:
    product = Product.objects.filter(pk=product_id).first()
    if product is None:
        raise NotFoundError('Product', product_id)
    return product


def _locked_cart(user) -> Cart:
    """Fetch-or-create the user's cart and lock its row. Call inside atomic()."""
    cart, created = Cart.objects.get_or_create(user=user)
    if created:
        logger.info(f"Created cart {cart.pk} for user {user.pk}")
    return Cart.objects.select_for_update().get(pk=cart.pk)


def add_item(user, product_id: int, quantity: int) -> Dict:
    """
    Add ``quantity`` of a product, summing with an existing line.

    Raises:
        NotFoundError: Product does not exist
        ProductInactiveError: Product is retired
        InsufficientStockError: Combined quantity exceeds live stock
        ServiceValidationError: Quantity not positive or above the line cap
    """
    require_positive_int(quantity)

    with transaction.atomic():
        cart = _locked_cart(user)
        product = _get_product(product_id)
        item = cart.items.filter(product=product).first()

        total = quantity + (item.quantity if item else 0)
        _check_quantity_cap(total)
        can_purchase(product, total)

        if item:
            item.quantity = total
            item.price_snapshot = product.price
            item.save(update_fields=['quantity', 'price_snapshot', 'updated_at'])
        else:
            CartItem.objects.create(
                cart=cart,
                product=product,
                quantity=total,
                price_snapshot=product.price
            )
        cart.save(update_fields=['updated_at'])

    logger.info(f"User {user.pk} added {quantity}x {product.sku} to cart (line now {total})")
    return get_cart(user)


def update_item(user, product_id: int, quantity: int) -> Dict:
    """
    Replace a line's quantity. Zero removes the line.

    Raises:
        NotFoundError: Product not in the cart
        ProductInactiveError / InsufficientStockError: Live stock check failed
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
        raise ServiceValidationError("quantity must be a non-negative integer", field='quantity')
    if quantity == 0:
        return remove_item(user, product_id)
    _check_quantity_cap(quantity)

    with transaction.atomic():
        cart = _locked_cart(user)
        item = cart.items.select_related('product').filter(product_id=product_id).first()
        if item is None:
            raise NotFoundError('CartItem', product_id)

        product = item.product
        can_purchase(product, quantity)

        item.quantity = quantity
        item.price_snapshot = product.price
        item.save(update_fields=['quantity', 'price_snapshot', 'updated_at'])
        cart.save(update_fields=['updated_at'])

    logger.info(f"User {user.pk} set {product.sku} quantity to {quantity}")
    return get_cart(user)


def remove_item(user, product_id: int) -> Dict:
    removed, _ = CartItem.objects.filter(cart__user=user, product_id=product_id).delete()
    if removed:
        logger.info(f"User {user.pk} removed product {product_id} from cart")
    return get_cart(user)


def clear_cart(user) -> int:
    """Remove every line; returns how many were removed."""
    removed, _ = CartItem.objects.filter(cart__user=user).delete()
    logger.info(f"Cleared cart of user {user.pk} ({removed} lines)")
    return removed


def _serialize_line(item: CartItem) -> Dict:
    unit_price = item.product.price
    return {
        'product_id': item.product_id,
        'sku': item.product.sku,
        'name': item.product.name,
        'quantity': item.quantity,
        'unit_price': unit_price,
        'price_snapshot': item.price_snapshot,
        'line_total': (unit_price * item.quantity).quantize(CENT),
    }


def get_cart(user) -> Dict:
    """
    Return the cart with live pricing.

    Lines whose product is no longer active are deleted on read.
    ``subtotal`` is computed from current product prices, never from
    ``price_snapshot``.
    """
    cart = Cart.objects.filter(user=user).first()
    if cart is None:
        return {
            'cart_id': None,
            'items': [],
            'item_count': 0,
            'subtotal': to_money(0),
            'removed_product_ids': [],
        }

    items = list(cart.items.select_related('product'))
    stale = [item for item in items if not item.product.is_active]
    if stale:
        CartItem.objects.filter(pk__in=[item.pk for item in stale]).delete()
        logger.info(
            f"Pruned {len(stale)} inactive products from cart {cart.pk}: "
            f"{[item.product_id for item in stale]}"
        )
    live = [item for item in items if item.product.is_active]

    lines = [_serialize_line(item) for item in live]
    subtotal = sum((line['line_total'] for line in lines), to_money(0))
    return {
        'cart_id': cart.pk,
        'items': lines,
        'item_count': sum(line['quantity'] for line in lines),
        'subtotal': subtotal,
        'removed_product_ids': [item.product_id for item in stale],
    }


def merge_items(user, items: Iterable[Dict]) -> Dict:
    """
    Fold a guest cart (``[{'product_id', 'quantity'}, ...]``) into the user's
    cart, summing quantities with existing lines.

    Lines that are missing, inactive or cannot be satisfied are skipped and
    returned under ``'skipped'`` instead of failing the whole merge.
    """
    skipped: List[Dict] = []

    with transaction.atomic():
        cart = _locked_cart(user)
        existing = {item.product_id: item for item in cart.items.all()}

        for entry in items:
            product_id = entry.get('product_id')
            quantity = entry.get('quantity')
            try:
                require_positive_int(quantity)
                product = _get_product(product_id)
                item = existing.get(product.pk)
                total = min(quantity + (item.quantity if item else 0), _max_item_quantity())
                can_purchase(product, total)
            except (NotFoundError, ProductInactiveError, InsufficientStockError, ServiceValidationError) as e:
                skipped.append({'product_id': product_id, 'reason': e.code})
                continue

            if item:
                item.quantity = total
                item.price_snapshot = product.price
                item.save(update_fields=['quantity', 'price_snapshot', 'updated_at'])
            else:
                existing[product.pk] = CartItem.objects.create(
                    cart=cart,
                    product=product,
                    quantity=total,
                    price_snapshot=product.price
                )
        cart.save(update_fields=['updated_at'])

    if skipped:
        logger.warning(f"Cart merge for user {user.pk} skipped {len(skipped)} lines")
    logger.info(f"Merged guest cart into cart {cart.pk}")

    summary = get_cart(user)
    summary['skipped'] = skipped
    return summary


def validate_cart(user) -> Dict:
    """
    Pre-checkout report: every line is checked against live stock without
    modifying anything except pruning inactive products.
    """
    summary = get_cart(user)
    if not summary['items']:
        return {'valid': False, 'errors': ['Cart is empty'], 'cart': summary}

    errors = []
    products = Product.objects.in_bulk([line['product_id'] for line in summary['items']])
    for line in summary['items']:
        try:
            can_purchase(products[line['product_id']], line['quantity'])
        except InsufficientStockError as e:
            errors.append(
                f"Insufficient stock for {line['name']}. Available: {e.available}"
            )
        except ProductInactiveError:
            errors.append(f"Product {line['name']} is no longer available")

    return {'valid': not errors, 'errors': errors, 'cart': summary}
