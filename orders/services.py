"""
Order Service Layer - cart-to-order transition and the status state machine.

create_order runs as one transaction:
1. Lock the user's cart and load its lines (empty cart -> CART_EMPTY)
2. Re-read every product and reserve its stock with a conditional UPDATE
3. Snapshot unit prices into immutable order lines
4. Compute subtotal, tax, shipping and total server side
5. Mint the order number, persist the order as pending, clear the cart

If ANY step fails the transaction rolls back, including every stock
reservation already made for earlier lines. Notifications are queued only
after commit.
"""
import logging
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from carts.models import Cart
from catalog.inventory import release_stock, reserve_stock
from catalog.models import Product
from core.exceptions import (
    CartEmptyError,
    InvalidTransitionError,
    NotFoundError,
    ProductInactiveError,
    ServiceError,
    ServiceValidationError,
)
from core.utils import CENT, to_money
from .models import Order, OrderItem, OrderStatusHistory
from .numbering import generate_order_number

logger = logging.getLogger(__name__)

REQUIRED_ADDRESS_FIELDS = ('full_name', 'address_line1', 'city', 'postal_code', 'country')


# =============================================================================
# Pricing
# =============================================================================

def calculate_shipping(subtotal: Decimal) -> Decimal:
    """Flat shipping by subtotal tier (free over 100.00 by default)."""
    tiers = getattr(settings, 'ORDER_SHIPPING_TIERS', [('100.00', '0.00'), ('50.00', '5.00'), ('0.00', '10.00')])
    for minimum, cost in tiers:
        if subtotal >= Decimal(minimum):
            return to_money(cost)
    return to_money(tiers[-1][1])


def calculate_tax(subtotal: Decimal) -> Decimal:
    return to_money(subtotal * Decimal(str(getattr(settings, 'ORDER_TAX_RATE', '0.10'))))


def validate_order_total(lines: Iterable[Dict], submitted_total, tax=0, shipping=0) -> Decimal:
    """
    Recompute Σ(unit_price × quantity) + tax + shipping and compare it with
    a client-submitted total. A mismatch beyond ORDER_TOTAL_TOLERANCE is
    rejected, never corrected.

    Returns:
        The server-computed total
    """
    tolerance = Decimal(str(getattr(settings, 'ORDER_TOTAL_TOLERANCE', '0.01')))
    try:
        submitted = Decimal(str(submitted_total))
    except (InvalidOperation, ValueError):
        raise ServiceValidationError("Submitted total must be a number", field='total')

    computed = sum(
        (to_money(line['unit_price']) * line['quantity'] for line in lines),
        Decimal('0.00')
    ) + to_money(tax) + to_money(shipping)

    if abs(computed - submitted) > tolerance:
        raise ServiceValidationError(
            f"Order total mismatch: submitted {submitted}, computed {computed}",
            field='total',
            submitted_total=str(submitted),
            computed_total=str(computed)
        )
    return computed


# =============================================================================
# State machine
# =============================================================================

def validate_status_transition(current_status: str, requested_status: str) -> None:
    """
    Raises:
        ServiceValidationError: Unknown status value
        InvalidTransitionError: Target not reachable from the current status
    """
    if requested_status not in Order.Status.values:
        raise ServiceValidationError(f"Invalid order status: {requested_status}", field='status')
    if current_status not in Order.Status.values:
        raise ServiceValidationError(f"Invalid order status: {current_status}", field='status')

    allowed = Order.TRANSITIONS[current_status]
    if requested_status not in allowed:
        raise InvalidTransitionError(current_status, requested_status, [str(s) for s in allowed])


def _lock_order(order_id: int) -> Order:
    order = Order.objects.select_for_update().filter(pk=order_id).first()
    if order is None:
        raise NotFoundError('Order', order_id)
    return order


def _apply_status(order: Order, new_status: str, note: str, changed_by, **extra_fields) -> Order:
    """
    Conditional UPDATE guarded on the status read in this transaction, so a
    concurrent change can never be overwritten.
    """
    current = order.status
    updated = Order.objects.filter(pk=order.pk, status=current).update(
        status=new_status, updated_at=timezone.now(), **extra_fields
    )
    if not updated:
        fresh = Order.objects.values_list('status', flat=True).get(pk=order.pk)
        raise InvalidTransitionError(fresh, new_status, [str(s) for s in Order.TRANSITIONS[fresh]])

    OrderStatusHistory.objects.create(
        order=order,
        status=new_status,
        note=note or f"Status changed from {current} to {new_status}",
        changed_by=changed_by
    )
    order.refresh_from_db()
    return order


def _queue_after_commit(task_name: str, *args) -> None:
    def queue():
        from . import tasks
        try:
            getattr(tasks, task_name).delay(*args)
            logger.info(f"Triggered {task_name} for {args}")
        except Exception as e:
            # Don't fail a committed order if task queuing fails
            logger.error(f"Failed to queue {task_name}: {e}")

    transaction.on_commit(queue)


# =============================================================================
# Orders
# =============================================================================

def _validate_address(address, field: str) -> Dict:
    if not isinstance(address, dict):
        raise ServiceValidationError(f"{field} must be an object", field=field)
    missing = [name for name in REQUIRED_ADDRESS_FIELDS if not str(address.get(name) or '').strip()]
    if missing:
        raise ServiceValidationError(
            f"{field} is missing: {', '.join(missing)}",
            field=field,
            missing=missing
        )
    return address


def create_order(
    user,
    shipping_address: Dict,
    payment_method: str,
    billing_address: Optional[Dict] = None,
    expected_total=None,
) -> Order:
    """
    Turn the user's cart into a pending order, all-or-nothing.

    Raises:
        CartEmptyError: No lines in the cart
        ProductInactiveError: A product was retired since it was added
        InsufficientStockError: A reservation failed
        ServiceValidationError: Bad address, payment method or total mismatch
        SequenceOverflowError / OrderNumberGenerationError: No order number
    """
    _validate_address(shipping_address, 'shipping_address')
    if billing_address is not None:
        _validate_address(billing_address, 'billing_address')
    if payment_method not in Order.PaymentMethod.values:
        raise ServiceValidationError(f"Invalid payment method: {payment_method}", field='payment_method')

    try:
        with transaction.atomic():
            cart = Cart.objects.select_for_update().filter(user=user).first()
            # Lines in product id order keep row-lock order stable across orders.
            cart_items = list(cart.items.order_by('product_id')) if cart else []
            if not cart_items:
                raise CartEmptyError()

            lines = []
            for item in cart_items:
                product = Product.objects.filter(pk=item.product_id).first()
                if product is None:
                    raise NotFoundError('Product', item.product_id)
                if not product.is_active:
                    raise ProductInactiveError(product.pk)

                reserve_stock(product.pk, item.quantity)
                lines.append({
                    'product': product,
                    'quantity': item.quantity,
                    'unit_price': product.price,
                })

            subtotal = sum((line['unit_price'] * line['quantity'] for line in lines), Decimal('0.00'))
            subtotal = subtotal.quantize(CENT)
            tax = calculate_tax(subtotal)
            shipping = calculate_shipping(subtotal)
            total = subtotal + tax + shipping

            if expected_total is not None:
                validate_order_total(lines, expected_total, tax=tax, shipping=shipping)

            order = Order.objects.create(
                order_number=generate_order_number(),
                user=user,
                status=Order.Status.PENDING,
                payment_method=payment_method,
                subtotal=subtotal,
                tax=tax,
                shipping=shipping,
                total=total,
                shipping_address=shipping_address,
                billing_address=billing_address or shipping_address,
            )
            OrderItem.objects.bulk_create([
                OrderItem(
                    order=order,
                    product=line['product'],
                    product_name=line['product'].name,
                    sku=line['product'].sku,
                    quantity=line['quantity'],
                    unit_price=line['unit_price'],
                )
                for line in lines
            ])
            OrderStatusHistory.objects.create(
                order=order,
                status=Order.Status.PENDING,
                note='Order placed',
                changed_by=user
            )

            cart.items.all().delete()
            _queue_after_commit('send_order_confirmation', order.pk)
    except ServiceError as e:
        logger.warning(f"Order creation for user {user.pk} rejected: {e.code}: {e.message}")
        raise

    logger.info(
        f"Order {order.order_number} created: {len(lines)} lines, "
        f"subtotal ${subtotal}, total ${total}"
    )
    return order


def update_order_status(order_id: int, new_status: str, note: str = '', changed_by=None) -> Order:
    """
    Move an order along the transition graph, validated against the status
    persisted right now. ``cancelled`` goes through cancel_order so stock is
    released.
    """
    if new_status == Order.Status.CANCELLED:
        return cancel_order(order_id, reason=note, changed_by=changed_by)

    with transaction.atomic():
        order = _lock_order(order_id)
        previous = order.status
        validate_status_transition(previous, new_status)
        order = _apply_status(order, new_status, note, changed_by)
        _queue_after_commit('send_status_notification', order.pk, new_status)

    logger.info(f"Order {order.order_number} status {previous} -> {new_status}")
    return order


def cancel_order(order_id: int, reason: str = '', changed_by=None) -> Order:
    """
    Cancel an order and give back the stock of every line, in one
    transaction.
    """
    with transaction.atomic():
        order = _lock_order(order_id)
        previous = order.status
        validate_status_transition(previous, Order.Status.CANCELLED)

        order = _apply_status(
            order,
            Order.Status.CANCELLED,
            f"Order cancelled: {reason}" if reason else 'Order cancelled',
            changed_by,
            cancel_reason=reason or '',
        )
        for item in order.items.all():
            release_stock(item.product_id, item.quantity)

        _queue_after_commit('send_status_notification', order.pk, Order.Status.CANCELLED.value)

    logger.info(f"Order {order.order_number} cancelled from {previous}: {reason or 'no reason given'}")
    return order


def update_payment_status(order_id: int, payment_status: str) -> Order:
    """
    Record a payment outcome. Gateway integration lives outside this
    service; only the payment status graph is enforced here.
    """
    if payment_status not in Order.PaymentStatus.values:
        raise ServiceValidationError(f"Invalid payment status: {payment_status}", field='payment_status')

    with transaction.atomic():
        order = _lock_order(order_id)
        current = order.payment_status
        allowed = Order.PAYMENT_TRANSITIONS[current]
        if payment_status not in allowed:
            raise InvalidTransitionError(current, payment_status, [str(s) for s in allowed])

        Order.objects.filter(pk=order.pk, payment_status=current).update(
            payment_status=payment_status, updated_at=timezone.now()
        )
        order.refresh_from_db()

    logger.info(f"Order {order.order_number} payment {current} -> {payment_status}")
    return order


def get_order_summary(order_id: int) -> Dict:
    """
    Get detailed order summary with optimized queries.
    """
    try:
        order = Order.objects.select_related('user').prefetch_related(
            'items', 'status_history'
        ).get(id=order_id)
    except Order.DoesNotExist:
        raise NotFoundError('Order', order_id)

    return {
        'id': order.id,
        'order_number': order.order_number,
        'user_id': order.user_id,
        'status': order.status,
        'payment_status': order.payment_status,
        'subtotal': str(order.subtotal),
        'tax': str(order.tax),
        'shipping': str(order.shipping),
        'total': str(order.total),
        'item_count': len(order.items.all()),
        'items': [
            {
                'product_id': item.product_id,
                'product_name': item.product_name,
                'sku': item.sku,
                'quantity': item.quantity,
                'unit_price': str(item.unit_price),
                'subtotal': str(item.subtotal)
            }
            for item in order.items.all()
        ],
        'status_history': [
            {'status': entry.status, 'note': entry.note, 'at': entry.created_at.isoformat()}
            for entry in order.status_history.all()
        ],
        'cancel_reason': order.cancel_reason or None,
        'created_at': order.created_at.isoformat(),
        'updated_at': order.updated_at.isoformat()
    }
