"""
Django Admin configuration for order models.

Orders are read-only here: status and stock changes must go through
orders.services so transitions are validated and stock is released.
"""
from django.contrib import admin
from .models import Counter, Order, OrderItem, OrderStatusHistory


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0
    readonly_fields = ['product', 'product_name', 'sku', 'quantity', 'unit_price', 'subtotal']
    can_delete = False

    def subtotal(self, obj):
        return f"${obj.subtotal}"
    subtotal.short_description = 'Subtotal'


class OrderStatusHistoryInline(admin.TabularInline):
    model = OrderStatusHistory
    extra = 0
    readonly_fields = ['status', 'note', 'changed_by', 'created_at']
    can_delete = False


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ['order_number', 'user', 'status', 'payment_status', 'total', 'item_count', 'created_at']
    list_filter = ['status', 'payment_status', 'payment_method', 'created_at']
    search_fields = ['order_number', 'user__username', 'user__email']
    ordering = ['-created_at']
    readonly_fields = [
        'order_number', 'user', 'status', 'payment_status', 'subtotal', 'tax',
        'shipping', 'total', 'cancel_reason', 'created_at', 'updated_at'
    ]
    inlines = [OrderItemInline, OrderStatusHistoryInline]

    def item_count(self, obj):
        return obj.items.count()
    item_count.short_description = 'Items'


@admin.register(Counter)
class CounterAdmin(admin.ModelAdmin):
    list_display = ['key', 'date', 'value', 'updated_at']
    search_fields = ['key']
    ordering = ['-date']
    readonly_fields = ['key', 'date', 'value', 'created_at', 'updated_at']
