from decimal import Decimal

import django.core.validators
import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='Category',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(db_index=True, help_text='Category display name', max_length=100)),
                ('slug', models.SlugField(help_text='Unique URL slug derived from the name', max_length=120, unique=True)),
                ('description', models.TextField(blank=True, default='', max_length=500)),
                ('level', models.PositiveSmallIntegerField(default=0, help_text='Depth in the tree, root is 0')),
                ('path', models.CharField(db_index=True, default='/', help_text='Ancestor ids from the root, e.g. /1/4/', max_length=255)),
                ('display_order', models.PositiveIntegerField(default=0)),
                ('is_active', models.BooleanField(db_index=True, default=True)),
                ('is_deleted', models.BooleanField(db_index=True, default=False)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('parent', models.ForeignKey(blank=True, help_text='Parent category (null for a root)', null=True, on_delete=django.db.models.deletion.PROTECT, related_name='children', to='catalog.category')),
            ],
            options={
                'verbose_name': 'Category',
                'verbose_name_plural': 'Categories',
                'ordering': ['level', 'display_order', 'name'],
                'indexes': [
                    models.Index(fields=['parent', 'display_order'], name='category_parent_order_idx'),
                    models.Index(fields=['is_active', 'is_deleted'], name='category_active_deleted_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Product',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('sku', models.CharField(help_text='Immutable business key (upper case)', max_length=64, unique=True)),
                ('name', models.CharField(db_index=True, help_text='Product name for display and search', max_length=200)),
                ('slug', models.SlugField(help_text='Unique slug, regenerated when the name changes', max_length=220, unique=True)),
                ('description', models.TextField(blank=True, default='')),
                ('price', models.DecimalField(decimal_places=2, help_text='Selling price (must be positive)', max_digits=10, validators=[django.core.validators.MinValueValidator(Decimal('0.01'))])),
                ('compare_at_price', models.DecimalField(blank=True, decimal_places=2, help_text='Original price; must exceed price when set', max_digits=10, null=True)),
                ('cost_price', models.DecimalField(blank=True, decimal_places=2, max_digits=10, null=True)),
                ('stock_quantity', models.IntegerField(default=0, help_text='Units on hand; negative only when backorders are allowed')),
                ('low_stock_threshold', models.PositiveIntegerField(default=10)),
                ('track_inventory', models.BooleanField(default=True, help_text='When false, stock checks and mutations are skipped')),
                ('allow_backorder', models.BooleanField(default=False)),
                ('is_active', models.BooleanField(db_index=True, default=True, help_text='Whether product is available for ordering')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('category', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='products', to='catalog.category')),
            ],
            options={
                'verbose_name': 'Product',
                'verbose_name_plural': 'Products',
                'ordering': ['name'],
                'indexes': [
                    models.Index(fields=['name', 'is_active'], name='product_name_active_idx'),
                    models.Index(fields=['category', 'is_active'], name='product_category_active_idx'),
                    models.Index(fields=['stock_quantity'], name='product_stock_idx'),
                    models.Index(fields=['price'], name='product_price_idx'),
                ],
                'constraints': [
                    models.CheckConstraint(condition=models.Q(('stock_quantity__gte', 0), ('allow_backorder', True), _connector='OR'), name='product_stock_non_negative_unless_backorder'),
                ],
            },
        ),
        migrations.CreateModel(
            name='ProductVariant',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(max_length=100)),
                ('sku', models.CharField(max_length=64, unique=True)),
                ('price', models.DecimalField(blank=True, decimal_places=2, help_text='Overrides the product price when set', max_digits=10, null=True)),
                ('stock_quantity', models.PositiveIntegerField(default=0)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('product', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='variants', to='catalog.product')),
            ],
            options={
                'verbose_name': 'Product Variant',
                'verbose_name_plural': 'Product Variants',
                'ordering': ['product', 'name'],
            },
        ),
    ]
