"""
Django Admin configuration for catalog models.
"""
from django.contrib import admin
from .models import Category, Product, ProductVariant


@admin.register(Category)
class CategoryAdmin(admin.ModelAdmin):
    list_display = ['id', 'name', 'parent', 'level', 'path', 'is_active', 'is_deleted', 'product_count']
    list_filter = ['level', 'is_active', 'is_deleted']
    search_fields = ['name', 'slug']
    ordering = ['path', 'display_order']
    # Tree fields are maintained by catalog.services
    readonly_fields = ['slug', 'level', 'path', 'created_at', 'updated_at']
    raw_id_fields = ['parent']

    def product_count(self, obj):
        return obj.products.count()
    product_count.short_description = 'Products'


class ProductVariantInline(admin.TabularInline):
    model = ProductVariant
    extra = 0
    fields = ['name', 'sku', 'price', 'stock_quantity']


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ['id', 'sku', 'name', 'price', 'stock_quantity', 'is_low_stock', 'category', 'is_active']
    list_filter = ['category', 'is_active', 'track_inventory', 'allow_backorder']
    search_fields = ['sku', 'name', 'description']
    ordering = ['name']
    readonly_fields = ['slug', 'created_at', 'updated_at']
    raw_id_fields = ['category']
    inlines = [ProductVariantInline]

    def is_low_stock(self, obj):
        return obj.is_low_stock
    is_low_stock.boolean = True
    is_low_stock.short_description = 'Low Stock'
