"""
Order Models - Order, OrderItem, status history and the order-number counter.

Order Status Flow:
    pending -> confirmed -> processing -> shipped -> delivered
    pending | confirmed | processing -> cancelled

Payment status is tracked independently of the order status.
"""
from decimal import Decimal

from django.conf import settings
from django.core.validators import MinValueValidator
from django.db import models

from catalog.models import Product


class Counter(models.Model):
    """
    Atomic daily sequence. One row per key, e.g. ``order_sequence_20240115``;
    a new calendar day starts a new row, so the sequence resets implicitly.
    """
    key = models.CharField(max_length=64, primary_key=True)
    date = models.CharField(max_length=8, help_text="YYYYMMDD")
    value = models.PositiveBigIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Counter'
        verbose_name_plural = 'Counters'
        ordering = ['-date']

    def __str__(self):
        return f"{self.key} = {self.value}"


class Order(models.Model):
    """
    Customer order created from a cart snapshot.

    Line items are immutable once written; totals are computed server side
    at creation and never recalculated from live product prices.
    """

    class Status(models.TextChoices):
        PENDING = 'pending', 'Pending'
        CONFIRMED = 'confirmed', 'Confirmed'
        PROCESSING = 'processing', 'Processing'
        SHIPPED = 'shipped', 'Shipped'
        DELIVERED = 'delivered', 'Delivered'
        CANCELLED = 'cancelled', 'Cancelled'

    class PaymentStatus(models.TextChoices):
        PENDING = 'pending', 'Pending'
        PAID = 'paid', 'Paid'
        FAILED = 'failed', 'Failed'
        REFUNDED = 'refunded', 'Refunded'

    class PaymentMethod(models.TextChoices):
        CREDIT_CARD = 'credit_card', 'Credit card'
        DEBIT_CARD = 'debit_card', 'Debit card'
        PAYPAL = 'paypal', 'PayPal'
        STRIPE = 'stripe', 'Stripe'
        CASH_ON_DELIVERY = 'cash_on_delivery', 'Cash on delivery'

    # Allowed next states for each status.
    TRANSITIONS = {
        Status.PENDING: {Status.CONFIRMED, Status.CANCELLED},
        Status.CONFIRMED: {Status.PROCESSING, Status.CANCELLED},
        Status.PROCESSING: {Status.SHIPPED, Status.CANCELLED},
        Status.SHIPPED: {Status.DELIVERED},
        Status.DELIVERED: set(),
        Status.CANCELLED: set(),
    }

    PAYMENT_TRANSITIONS = {
        PaymentStatus.PENDING: {PaymentStatus.PAID, PaymentStatus.FAILED},
        PaymentStatus.FAILED: {PaymentStatus.PENDING, PaymentStatus.PAID},
        PaymentStatus.PAID: {PaymentStatus.REFUNDED},
        PaymentStatus.REFUNDED: set(),
    }

    order_number = models.CharField(
        max_length=32,
        unique=True,
        help_text="Human-readable PREFIX-YYYYMMDD-SEQUENCE"
    )
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='orders'
    )
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PENDING,
        db_index=True,
        help_text="Current order status"
    )
    payment_status = models.CharField(
        max_length=20,
        choices=PaymentStatus.choices,
        default=PaymentStatus.PENDING,
        db_index=True
    )
    payment_method = models.CharField(
        max_length=32,
        choices=PaymentMethod.choices
    )
    subtotal = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    tax = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    shipping = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    total = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal('0.00'),
        help_text="subtotal + tax + shipping"
    )
    shipping_address = models.JSONField()
    billing_address = models.JSONField(null=True, blank=True)
    cancel_reason = models.TextField(blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Order'
        verbose_name_plural = 'Orders'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['user', 'status'], name='order_user_status_idx'),
            models.Index(fields=['status', 'created_at'], name='order_status_created_idx'),
        ]

    def __str__(self):
        return f"Order {self.order_number} ({self.status})"

    @property
    def allowed_next_statuses(self) -> set:
        return set(self.TRANSITIONS.get(self.status, set()))

    @property
    def can_be_cancelled(self) -> bool:
        return self.Status.CANCELLED in self.allowed_next_statuses

    @property
    def item_count(self) -> int:
        return self.items.count()


class OrderItem(models.Model):
    """
    Immutable line item. Unit price, name and SKU are snapshots taken when
    the order was placed.
    """
    order = models.ForeignKey(
        Order,
        on_delete=models.CASCADE,
        related_name='items',
        help_text="Parent order"
    )
    product = models.ForeignKey(
        Product,
        on_delete=models.PROTECT,  # Prevent deletion of products with orders
        related_name='order_items',
        help_text="Ordered product"
    )
    product_name = models.CharField(max_length=200)
    sku = models.CharField(max_length=64)
    quantity = models.PositiveIntegerField(
        validators=[MinValueValidator(1)],
        help_text="Quantity ordered"
    )
    unit_price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        help_text="Price per unit at time of order"
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = 'Order Item'
        verbose_name_plural = 'Order Items'
        ordering = ['id']

    def __str__(self):
        return f"{self.quantity}x {self.product_name} @ ${self.unit_price}"

    @property
    def subtotal(self) -> Decimal:
        """Calculate item subtotal."""
        return self.quantity * self.unit_price


class OrderStatusHistory(models.Model):
    order = models.ForeignKey(
        Order,
        on_delete=models.CASCADE,
        related_name='status_history'
    )
    status = models.CharField(max_length=20, choices=Order.Status.choices)
    note = models.TextField(blank=True, default='')
    changed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name='+'
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = 'Order Status Change'
        verbose_name_plural = 'Order Status History'
        ordering = ['created_at', 'id']

    def __str__(self):
        return f"{self.order_id} -> {self.status}"
