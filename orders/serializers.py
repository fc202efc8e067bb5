"""
Serializers for order models and order requests.
"""
from rest_framework import serializers
from .models import Order, OrderItem, OrderStatusHistory


class OrderItemSerializer(serializers.ModelSerializer):
    """Order line with its price/name snapshot."""
    subtotal = serializers.DecimalField(
        max_digits=12,
        decimal_places=2,
        read_only=True
    )

    class Meta:
        model = OrderItem
        fields = ['id', 'product_id', 'product_name', 'sku', 'quantity', 'unit_price', 'subtotal']


class OrderStatusHistorySerializer(serializers.ModelSerializer):
    class Meta:
        model = OrderStatusHistory
        fields = ['status', 'note', 'changed_by', 'created_at']


class OrderSerializer(serializers.ModelSerializer):
    """
    Serializer for Order model with nested items and status history.
    Uses prefetch_related for optimized queries.
    """
    items = OrderItemSerializer(many=True, read_only=True)
    status_history = OrderStatusHistorySerializer(many=True, read_only=True)
    allowed_next_statuses = serializers.SerializerMethodField()
    can_be_cancelled = serializers.BooleanField(read_only=True)

    class Meta:
        model = Order
        fields = [
            'id', 'order_number', 'user', 'status', 'payment_status', 'payment_method',
            'subtotal', 'tax', 'shipping', 'total',
            'shipping_address', 'billing_address', 'cancel_reason',
            'items', 'status_history', 'allowed_next_statuses', 'can_be_cancelled',
            'created_at', 'updated_at'
        ]
        read_only_fields = fields

    def get_allowed_next_statuses(self, obj):
        return sorted(obj.allowed_next_statuses)


class OrderListSerializer(serializers.ModelSerializer):
    """Optimized serializer for listing orders."""
    item_count = serializers.SerializerMethodField()

    class Meta:
        model = Order
        fields = [
            'id', 'order_number', 'status', 'payment_status',
            'total', 'item_count', 'created_at'
        ]

    def get_item_count(self, obj):
        # Use prefetched items count if available
        if hasattr(obj, '_prefetched_objects_cache') and 'items' in obj._prefetched_objects_cache:
            return len(obj.items.all())
        return obj.items.count()


class AddressSerializer(serializers.Serializer):
    full_name = serializers.CharField(max_length=200)
    address_line1 = serializers.CharField(max_length=255)
    address_line2 = serializers.CharField(max_length=255, required=False, allow_blank=True)
    city = serializers.CharField(max_length=100)
    state = serializers.CharField(max_length=100, required=False, allow_blank=True)
    postal_code = serializers.CharField(max_length=20)
    country = serializers.CharField(max_length=100)
    phone = serializers.CharField(max_length=30, required=False, allow_blank=True)


class OrderCreateSerializer(serializers.Serializer):
    """
    Checkout request for POST /orders/. Lines come from the caller's cart.

    Request format:
    {
        "shipping_address": {"full_name": "...", "address_line1": "...",
                             "city": "...", "postal_code": "...", "country": "..."},
        "payment_method": "credit_card",
        "billing_address": null,
        "expected_total": "120.97"
    }
    """
    shipping_address = AddressSerializer()
    billing_address = AddressSerializer(required=False, allow_null=True)
    payment_method = serializers.ChoiceField(choices=Order.PaymentMethod.choices)
    expected_total = serializers.DecimalField(
        max_digits=12,
        decimal_places=2,
        required=False,
        allow_null=True
    )


class OrderStatusUpdateSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=Order.Status.choices)
    note = serializers.CharField(max_length=255, required=False, allow_blank=True, default='')


class OrderCancelSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=200, required=False, allow_blank=True, default='')


class PaymentStatusUpdateSerializer(serializers.Serializer):
    payment_status = serializers.ChoiceField(choices=Order.PaymentStatus.choices)
