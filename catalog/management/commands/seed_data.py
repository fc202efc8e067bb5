"""
Management command to seed the database with sample data.

Generates:
- A two-level category tree
- Products with SKUs, stock levels and a few variants

Everything is created through catalog.services so slugs, SKUs and the
category path/level fields are consistent.

Usage:
    python manage.py seed_data
    python manage.py seed_data --clear  # Clear existing data first
"""
import random
from decimal import Decimal
from django.core.management.base import BaseCommand
from django.db import transaction

from catalog import services
from catalog.models import Category, Product, ProductVariant

CATEGORY_TREE = {
    'Electronics': ['Audio', 'Computer Accessories', 'Wearables'],
    'Clothing': ['Tops', 'Outerwear', 'Footwear'],
    'Home and Garden': ['Kitchen', 'Lighting'],
    'Sports and Outdoors': ['Fitness', 'Camping'],
    'Books': ['Fiction', 'Non-Fiction'],
}

PRODUCT_TEMPLATES = {
    'Audio': ['Wireless Headphones', 'Bluetooth Speaker', 'Earbuds'],
    'Computer Accessories': ['USB-C Cable', 'Laptop Stand', 'Gaming Mouse', 'Mechanical Keyboard'],
    'Wearables': ['Smart Watch', 'Fitness Band'],
    'Tops': ['Cotton T-Shirt', 'Wool Sweater'],
    'Outerwear': ['Rain Jacket', 'Winter Coat'],
    'Footwear': ['Running Shoes', 'Hiking Boots'],
    'Kitchen': ['Kitchen Knife Set', 'Cutting Board'],
    'Lighting': ['LED Light Bulbs', 'Desk Lamp'],
    'Fitness': ['Yoga Mat', 'Dumbbells Set'],
    'Camping': ['Camping Tent', 'Hiking Backpack'],
    'Fiction': ['Sci-Fi Novel', 'Mystery Novel'],
    'Non-Fiction': ['Biography', 'Programming Guide'],
}

ADJECTIVES = ['Premium', 'Classic', 'Modern', 'Compact', 'Portable', 'Essential', 'Ultimate']
SIZES = ['S', 'M', 'L']


class Command(BaseCommand):
    help = 'Seed the database with a sample category tree and products'

    def add_arguments(self, parser):
        parser.add_argument(
            '--clear',
            action='store_true',
            help='Clear existing data before seeding',
        )
        parser.add_argument(
            '--products',
            type=int,
            default=200,
            help='Number of products to create (default: 200)',
        )

    def handle(self, *args, **options):
        if options['clear']:
            self.stdout.write('Clearing existing data...')
            self._clear_data()

        self.stdout.write('Starting database seeding...')

        with transaction.atomic():
            leaves = self._create_categories()
            self._create_products(options['products'], leaves)

        self.stdout.write(self.style.SUCCESS('Database seeding completed successfully!'))

    def _clear_data(self):
        """Clear all existing data."""
        from carts.models import CartItem
        from orders.models import Counter, Order, OrderItem, OrderStatusHistory

        CartItem.objects.all().delete()
        OrderStatusHistory.objects.all().delete()
        OrderItem.objects.all().delete()
        Order.objects.all().delete()
        Counter.objects.all().delete()
        ProductVariant.objects.all().delete()
        Product.objects.all().delete()
        # Children before parents (parent FK is PROTECT)
        for category in Category.objects.order_by('-level'):
            category.delete()

        self.stdout.write(self.style.WARNING('All existing data cleared.'))

    def _create_categories(self):
        """Create the category tree and return the leaf categories."""
        leaves = []
        for root_name, children in CATEGORY_TREE.items():
            root = Category.objects.filter(name=root_name, parent__isnull=True, is_deleted=False).first()
            if root is None:
                root = services.create_category(root_name)
                self.stdout.write(f'  Created category: {root_name}')
            for child_name in children:
                child = Category.objects.filter(name=child_name, parent=root, is_deleted=False).first()
                if child is None:
                    child = services.create_category(child_name, parent_id=root.pk)
                    self.stdout.write(f'  Created category: {root_name} / {child_name}')
                leaves.append(child)

        self.stdout.write(self.style.SUCCESS(f'Category tree has {Category.objects.count()} categories'))
        return leaves

    def _create_products(self, count, leaves):
        """Create sample products with realistic data."""
        self.stdout.write(f'Creating {count} products...')
        created = 0
        next_number = Product.objects.count() + 1

        for i in range(count):
            category = random.choice(leaves)
            base_name = random.choice(PRODUCT_TEMPLATES.get(category.name, ['Product']))
            sku = f"SKU-{next_number + i:06d}"

            # Random price between $5 and $500, a third of them on sale
            price = Decimal(str(round(random.uniform(5, 500), 2)))
            compare_at = (price * Decimal('1.25')).quantize(Decimal('0.01')) if random.random() < 0.33 else None

            product = services.create_product(
                sku=sku,
                name=f"{random.choice(ADJECTIVES)} {base_name}",
                price=price,
                description=f"High-quality {base_name.lower()} for everyday use.",
                category_id=category.pk,
                compare_at_price=compare_at,
                stock_quantity=random.randint(0, 200),
                low_stock_threshold=random.randint(5, 20),
                allow_backorder=random.random() < 0.05,
            )
            if category.name in ('Tops', 'Outerwear', 'Footwear'):
                for size in SIZES:
                    services.add_variant(
                        product.pk,
                        name=f"Size {size}",
                        sku=f"{sku}-{size}",
                        stock_quantity=random.randint(0, 50)
                    )
            created += 1

            if created % 50 == 0:
                self.stdout.write(f'  Created {created} products...')

        self.stdout.write(self.style.SUCCESS(f'Created {created} products'))
