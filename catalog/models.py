"""
Catalog Models - Category hierarchy, products and their inventory ledger.

Models:
    - Category: Tree node with a materialised ancestor path
    - Product: Sellable item carrying its own stock counters
    - ProductVariant: Sub-SKU with an independent stock count

Derived values (slugs, levels, paths, rounded prices) are computed in
catalog.services before saving; the models only hold state and read-only
helpers.
"""
from decimal import Decimal

from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import Q


class Category(models.Model):
    """
    Product category arranged as a tree.

    ``path`` stores the ancestor ids from the root down to the immediate
    parent as ``"/1/4/"`` (``"/"`` for a root). A descendant query is a
    substring match on ``"/<id>/"``.
    """
    name = models.CharField(
        max_length=100,
        db_index=True,
        help_text="Category display name"
    )
    slug = models.SlugField(
        max_length=120,
        unique=True,
        help_text="Unique URL slug derived from the name"
    )
    description = models.TextField(
        blank=True,
        default='',
        max_length=500
    )
    parent = models.ForeignKey(
        'self',
        null=True,
        blank=True,
        on_delete=models.PROTECT,
        related_name='children',
        help_text="Parent category (null for a root)"
    )
    level = models.PositiveSmallIntegerField(
        default=0,
        help_text="Depth in the tree, root is 0"
    )
    path = models.CharField(
        max_length=255,
        default='/',
        db_index=True,
        help_text="Ancestor ids from the root, e.g. /1/4/"
    )
    display_order = models.PositiveIntegerField(default=0)
    is_active = models.BooleanField(default=True, db_index=True)
    is_deleted = models.BooleanField(default=False, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Category'
        verbose_name_plural = 'Categories'
        ordering = ['level', 'display_order', 'name']
        indexes = [
            models.Index(fields=['parent', 'display_order'], name='category_parent_order_idx'),
            models.Index(fields=['is_active', 'is_deleted'], name='category_active_deleted_idx'),
        ]

    def __str__(self):
        return self.name

    @property
    def ancestor_ids(self) -> list:
        return [int(part) for part in self.path.strip('/').split('/') if part]

    @property
    def descendant_path_marker(self) -> str:
        """Substring that appears in the path of every descendant."""
        return f"/{self.pk}/"

    @staticmethod
    def build_path(ancestor_ids) -> str:
        if not ancestor_ids:
            return '/'
        return '/' + '/'.join(str(pk) for pk in ancestor_ids) + '/'


class Product(models.Model):
    """
    Product entity representing items available for sale.

    The inventory ledger lives on the row itself: ``stock_quantity`` is only
    ever changed through single-statement conditional updates in
    catalog.inventory, and may go negative only when ``allow_backorder``.
    Products are never hard-deleted; ``is_active=False`` retires them.
    """
    sku = models.CharField(
        max_length=64,
        unique=True,
        help_text="Immutable business key (upper case)"
    )
    name = models.CharField(
        max_length=200,
        db_index=True,
        help_text="Product name for display and search"
    )
    slug = models.SlugField(
        max_length=220,
        unique=True,
        help_text="Unique slug, regenerated when the name changes"
    )
    description = models.TextField(blank=True, default='')
    category = models.ForeignKey(
        Category,
        null=True,
        blank=True,
        on_delete=models.PROTECT,
        related_name='products'
    )
    price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.01'))],
        help_text="Selling price (must be positive)"
    )
    compare_at_price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        null=True,
        blank=True,
        help_text="Original price; must exceed price when set"
    )
    cost_price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        null=True,
        blank=True
    )
    stock_quantity = models.IntegerField(
        default=0,
        help_text="Units on hand; negative only when backorders are allowed"
    )
    low_stock_threshold = models.PositiveIntegerField(default=10)
    track_inventory = models.BooleanField(
        default=True,
        help_text="When false, stock checks and mutations are skipped"
    )
    allow_backorder = models.BooleanField(default=False)
    is_active = models.BooleanField(
        default=True,
        db_index=True,
        help_text="Whether product is available for ordering"
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Product'
        verbose_name_plural = 'Products'
        ordering = ['name']
        indexes = [
            models.Index(fields=['name', 'is_active'], name='product_name_active_idx'),
            models.Index(fields=['category', 'is_active'], name='product_category_active_idx'),
            models.Index(fields=['stock_quantity'], name='product_stock_idx'),
            models.Index(fields=['price'], name='product_price_idx'),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(stock_quantity__gte=0) | Q(allow_backorder=True),
                name='product_stock_non_negative_unless_backorder'
            ),
        ]

    def __str__(self):
        return f"{self.name} [{self.sku}] (${self.price})"

    @property
    def is_in_stock(self) -> bool:
        if not self.track_inventory:
            return True
        return self.stock_quantity > 0 or self.allow_backorder

    @property
    def is_low_stock(self) -> bool:
        """Check if tracked stock is positive but at or below the threshold."""
        return (
            self.track_inventory
            and 0 < self.stock_quantity <= self.low_stock_threshold
        )

    @property
    def is_out_of_stock(self) -> bool:
        return self.track_inventory and self.stock_quantity <= 0

    @property
    def discount_percentage(self) -> int:
        if self.compare_at_price and self.compare_at_price > self.price:
            ratio = (self.compare_at_price - self.price) / self.compare_at_price
            return int((ratio * 100).quantize(Decimal('1')))
        return 0

    def calculate_discount(self) -> dict:
        if self.compare_at_price and self.compare_at_price > self.price:
            return {
                'amount': self.compare_at_price - self.price,
                'percentage': self.discount_percentage,
            }
        return {'amount': Decimal('0.00'), 'percentage': 0}


class ProductVariant(models.Model):
    """
    Variant of a product (size, colour, ...) with its own SKU and stock.
    Variants never backorder.
    """
    product = models.ForeignKey(
        Product,
        on_delete=models.CASCADE,
        related_name='variants'
    )
    name = models.CharField(max_length=100)
    sku = models.CharField(max_length=64, unique=True)
    price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        null=True,
        blank=True,
        help_text="Overrides the product price when set"
    )
    stock_quantity = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Product Variant'
        verbose_name_plural = 'Product Variants'
        ordering = ['product', 'name']

    def __str__(self):
        return f"{self.product.name} / {self.name} [{self.sku}]"
