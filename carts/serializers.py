"""
Serializers for cart requests and the live-priced cart summary.
"""
from rest_framework import serializers


class CartItemWriteSerializer(serializers.Serializer):
    product_id = serializers.IntegerField(min_value=1)
    quantity = serializers.IntegerField(min_value=1)


class CartItemUpdateSerializer(serializers.Serializer):
    quantity = serializers.IntegerField(min_value=0)


class CartMergeSerializer(serializers.Serializer):
    items = CartItemWriteSerializer(many=True)


class CartLineSerializer(serializers.Serializer):
    product_id = serializers.IntegerField()
    sku = serializers.CharField()
    name = serializers.CharField()
    quantity = serializers.IntegerField()
    unit_price = serializers.DecimalField(max_digits=10, decimal_places=2)
    price_snapshot = serializers.DecimalField(max_digits=10, decimal_places=2)
    line_total = serializers.DecimalField(max_digits=12, decimal_places=2)


class CartSummarySerializer(serializers.Serializer):
    """Renders the dict returned by carts.services.get_cart."""
    cart_id = serializers.IntegerField(allow_null=True)
    items = CartLineSerializer(many=True)
    item_count = serializers.IntegerField()
    subtotal = serializers.DecimalField(max_digits=12, decimal_places=2)
    removed_product_ids = serializers.ListField(child=serializers.IntegerField())
    skipped = serializers.ListField(child=serializers.DictField(), required=False)
