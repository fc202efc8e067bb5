"""
Celery tasks for order processing.

Tasks:
    - send_order_confirmation: Notification after an order is placed
    - send_status_notification: Notification after a status change
    - cancel_stale_pending_orders: Periodic cleanup releasing held stock
    - generate_daily_order_report: Yesterday's order statistics
"""
import logging
from datetime import timedelta

from celery import shared_task
from django.conf import settings
from django.db.models import Count, Q, Sum
from django.utils import timezone

from core.utils import to_money

logger = logging.getLogger(__name__)

STATUS_NOTIFICATIONS = {
    'confirmed': 'order_confirmed',
    'processing': 'order_processing',
    'shipped': 'order_shipped',
    'delivered': 'order_delivered',
    'cancelled': 'order_cancelled',
}


@shared_task(
    bind=True,
    max_retries=3,
    default_retry_delay=60,
    autoretry_for=(ConnectionError,),
    retry_backoff=True
)
def send_order_confirmation(self, order_id: int):
    """
    Async task triggered after an order is committed.

    Email delivery is an external collaborator; this task assembles the
    confirmation and logs it.

    Returns:
        Dict with confirmation details
    """
    from orders.models import Order

    try:
        order = Order.objects.select_related('user').prefetch_related('items').get(id=order_id)
    except Order.DoesNotExist:
        logger.error(f"Order #{order_id} not found for confirmation")
        return {'status': 'error', 'message': f'Order {order_id} not found'}

    if order.status == Order.Status.CANCELLED:
        logger.warning(f"Order {order.order_number} was cancelled, skipping confirmation")
        return {'status': 'skipped', 'message': f'Order {order_id} is cancelled'}

    items_summary = [
        f"  - {item.quantity}x {item.product_name} @ ${item.unit_price}"
        for item in order.items.all()
    ]
    newline = '\n'
    confirmation_message = f"""
    ===============================================
    ORDER CONFIRMATION - {order.order_number}
    ===============================================
    Customer: {order.user.get_username()}
    Status: {order.status}
    Subtotal: ${order.subtotal}
    Tax: ${order.tax}
    Shipping: ${order.shipping}
    Total: ${order.total}

    Items:
    {newline.join(items_summary)}

    Created: {order.created_at.strftime('%Y-%m-%d %H:%M:%S')}
    ===============================================
    """
    logger.info(confirmation_message)

    return {
        'status': 'success',
        'order_id': order.id,
        'order_number': order.order_number,
        'message': f'Confirmation sent for order {order.order_number}'
    }


@shared_task
def send_status_notification(order_id: int, status: str):
    from orders.models import Order

    notification_type = STATUS_NOTIFICATIONS.get(status)
    if notification_type is None:
        return {'status': 'skipped', 'message': f'No notification for status {status}'}

    order = Order.objects.select_related('user').filter(id=order_id).first()
    if order is None:
        logger.error(f"Order #{order_id} not found for {notification_type} notification")
        return {'status': 'error', 'message': f'Order {order_id} not found'}

    logger.info(
        f"[{notification_type}] Order {order.order_number} for {order.user.get_username()} is now {status}"
    )
    return {'status': 'success', 'type': notification_type, 'order_number': order.order_number}


@shared_task
def cancel_stale_pending_orders():
    """
    Periodic task to cancel orders stuck in pending past the timeout.

    Goes through cancel_order so the reserved stock is released.
    """
    from orders.models import Order
    from orders.services import cancel_order
    from core.exceptions import ServiceError

    timeout = getattr(settings, 'PENDING_ORDER_TIMEOUT_MINUTES', 30)
    threshold = timezone.now() - timedelta(minutes=timeout)
    stale_ids = list(
        Order.objects.filter(
            status=Order.Status.PENDING,
            created_at__lt=threshold
        ).values_list('id', flat=True)
    )

    cancelled = 0
    for order_id in stale_ids:
        try:
            cancel_order(order_id, reason='Order processing timeout')
            cancelled += 1
        except ServiceError as e:
            # Moved on concurrently (e.g. confirmed); leave it alone.
            logger.info(f"Skipped stale order {order_id}: {e.code}")

    if stale_ids:
        logger.warning(f"Found {len(stale_ids)} stale pending orders, cancelled {cancelled}")

    return {'found': len(stale_ids), 'cancelled': cancelled}


@shared_task
def generate_daily_order_report():
    """
    Generate daily order statistics report.

    Scheduled via Celery Beat (see CELERY_BEAT_SCHEDULE).
    """
    from orders.models import Order
    from orders.numbering import get_current_sequence

    yesterday = timezone.localdate() - timedelta(days=1)
    orders = Order.objects.filter(created_at__date=yesterday)

    stats = orders.aggregate(
        total_orders=Count('id'),
        cancelled_orders=Count('id', filter=Q(status=Order.Status.CANCELLED)),
        delivered_orders=Count('id', filter=Q(status=Order.Status.DELIVERED)),
        total_revenue=Sum('total', filter=~Q(status=Order.Status.CANCELLED))
    )
    stats['order_numbers_issued'] = get_current_sequence(yesterday.strftime('%Y%m%d'))
    stats['total_revenue'] = str(to_money(stats['total_revenue'] or 0))

    report = f"""
    ===============================================
    DAILY ORDER REPORT - {yesterday}
    ===============================================
    Total Orders: {stats['total_orders']}
    Delivered: {stats['delivered_orders']}
    Cancelled: {stats['cancelled_orders']}
    Order Numbers Issued: {stats['order_numbers_issued']}
    Total Revenue: ${stats['total_revenue']}
    ===============================================
    """
    logger.info(report)

    return stats
