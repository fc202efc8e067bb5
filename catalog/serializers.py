"""
Serializers for catalog models.

Write serializers only validate shape; the rules (slugs, paths, price
relations, SKU immutability) are applied by catalog.services.
"""
from rest_framework import serializers

from .models import Category, Product, ProductVariant


class CategorySerializer(serializers.ModelSerializer):
    """Serializer for Category with its materialised ancestor path."""
    ancestor_ids = serializers.ListField(child=serializers.IntegerField(), read_only=True)
    product_count = serializers.SerializerMethodField()

    class Meta:
        model = Category
        fields = [
            'id', 'name', 'slug', 'description', 'parent', 'level',
            'ancestor_ids', 'display_order', 'is_active', 'product_count',
            'created_at', 'updated_at'
        ]
        read_only_fields = fields

    def get_product_count(self, obj):
        """Get count of products in this category."""
        return obj.products.count()


class CategoryMinimalSerializer(serializers.ModelSerializer):
    """Minimal serializer for nested category representation."""
    class Meta:
        model = Category
        fields = ['id', 'name', 'slug']


class CategoryCreateSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=100)
    parent_id = serializers.IntegerField(required=False, allow_null=True, min_value=1)
    description = serializers.CharField(required=False, allow_blank=True, default='')
    display_order = serializers.IntegerField(required=False, min_value=0, default=0)


class CategoryMoveSerializer(serializers.Serializer):
    parent_id = serializers.IntegerField(allow_null=True, min_value=1)


class ProductVariantSerializer(serializers.ModelSerializer):
    class Meta:
        model = ProductVariant
        fields = ['id', 'name', 'sku', 'price', 'stock_quantity']


class ProductSerializer(serializers.ModelSerializer):
    """Serializer for Product with nested category and inventory flags."""
    category = CategoryMinimalSerializer(read_only=True)
    variants = ProductVariantSerializer(many=True, read_only=True)
    is_in_stock = serializers.BooleanField(read_only=True)
    is_low_stock = serializers.BooleanField(read_only=True)
    is_out_of_stock = serializers.BooleanField(read_only=True)
    discount_percentage = serializers.IntegerField(read_only=True)

    class Meta:
        model = Product
        fields = [
            'id', 'sku', 'name', 'slug', 'description', 'category',
            'price', 'compare_at_price', 'discount_percentage',
            'stock_quantity', 'low_stock_threshold', 'track_inventory',
            'allow_backorder', 'is_in_stock', 'is_low_stock', 'is_out_of_stock', 'is_active',
            'variants', 'created_at', 'updated_at'
        ]
        read_only_fields = fields


class ProductWriteSerializer(serializers.Serializer):
    """Input for product create (all required fields) and partial update."""
    sku = serializers.CharField(max_length=64)
    name = serializers.CharField(max_length=200)
    description = serializers.CharField(required=False, allow_blank=True)
    category_id = serializers.IntegerField(required=False, allow_null=True, min_value=1)
    price = serializers.DecimalField(max_digits=12, decimal_places=4)
    compare_at_price = serializers.DecimalField(
        max_digits=12, decimal_places=4, required=False, allow_null=True
    )
    cost_price = serializers.DecimalField(
        max_digits=12, decimal_places=4, required=False, allow_null=True
    )
    stock_quantity = serializers.IntegerField(required=False)
    low_stock_threshold = serializers.IntegerField(required=False, min_value=0)
    track_inventory = serializers.BooleanField(required=False)
    allow_backorder = serializers.BooleanField(required=False)
    is_active = serializers.BooleanField(required=False)
