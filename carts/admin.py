"""
Django Admin configuration for cart models.
"""
from django.contrib import admin
from .models import Cart, CartItem


class CartItemInline(admin.TabularInline):
    model = CartItem
    extra = 0
    readonly_fields = ['price_snapshot', 'added_at', 'updated_at']
    raw_id_fields = ['product']


@admin.register(Cart)
class CartAdmin(admin.ModelAdmin):
    list_display = ['id', 'user', 'line_count', 'updated_at']
    search_fields = ['user__username', 'user__email']
    raw_id_fields = ['user']
    inlines = [CartItemInline]

    def line_count(self, obj):
        return obj.items.count()
    line_count.short_description = 'Lines'
