"""
Tests for the cart service and API.

Test Cases:
1. Adding sums quantities and checks live stock
2. Update, remove and clear
3. Inactive products pruned on read, subtotal from live prices
4. Guest cart merge
5. Pre-checkout validation
"""
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.test import TestCase, override_settings
from rest_framework.test import APIClient

from carts import services
from carts.models import CartItem
from catalog.services import create_product, deactivate_product, update_product
from core.exceptions import (
    InsufficientStockError,
    NotFoundError,
    ProductInactiveError,
    ServiceValidationError,
)


class CartServiceTestCase(TestCase):

    def setUp(self):
        self.user = get_user_model().objects.create_user('shopper', password='pw')
        self.mug = create_product(sku='MUG-1', name='Coffee Mug', price='8.50', stock_quantity=10)
        self.lamp = create_product(sku='LAMP-1', name='Desk Lamp', price='29.99', stock_quantity=3)

    def test_empty_cart_without_row(self):
        summary = services.get_cart(self.user)

        self.assertIsNone(summary['cart_id'])
        self.assertEqual(summary['items'], [])
        self.assertEqual(summary['subtotal'], Decimal('0.00'))

    def test_add_item_sums_existing_line(self):
        """
        Test: Adding the same product twice keeps one line.

        Given: 2 mugs in the cart
        When: Adding 3 more
        Then: One line with quantity 5
        """
        services.add_item(self.user, self.mug.pk, 2)
        summary = services.add_item(self.user, self.mug.pk, 3)

        self.assertEqual(len(summary['items']), 1)
        self.assertEqual(summary['items'][0]['quantity'], 5)
        self.assertEqual(summary['subtotal'], Decimal('42.50'))
        self.assertEqual(summary['item_count'], 5)

    def test_add_checks_combined_quantity_against_stock(self):
        services.add_item(self.user, self.lamp.pk, 2)

        with self.assertRaises(InsufficientStockError):
            services.add_item(self.user, self.lamp.pk, 2)

        self.assertEqual(CartItem.objects.get(product=self.lamp).quantity, 2)

    def test_add_does_not_reserve_stock(self):
        services.add_item(self.user, self.lamp.pk, 3)

        self.lamp.refresh_from_db()
        self.assertEqual(self.lamp.stock_quantity, 3)

    def test_add_rejects_inactive_and_unknown_products(self):
        deactivate_product(self.mug.pk)

        with self.assertRaises(ProductInactiveError):
            services.add_item(self.user, self.mug.pk, 1)
        with self.assertRaises(NotFoundError):
            services.add_item(self.user, 999999, 1)

    @override_settings(CART_MAX_ITEM_QUANTITY=4)
    def test_line_quantity_cap(self):
        services.add_item(self.user, self.mug.pk, 4)

        with self.assertRaises(ServiceValidationError):
            services.add_item(self.user, self.mug.pk, 1)

    def test_update_replaces_quantity(self):
        services.add_item(self.user, self.mug.pk, 5)

        summary = services.update_item(self.user, self.mug.pk, 2)
        self.assertEqual(summary['items'][0]['quantity'], 2)

        with self.assertRaises(InsufficientStockError):
            services.update_item(self.user, self.mug.pk, 11)

    def test_update_to_zero_removes_line(self):
        services.add_item(self.user, self.mug.pk, 1)

        summary = services.update_item(self.user, self.mug.pk, 0)
        self.assertEqual(summary['items'], [])

    def test_update_missing_line(self):
        with self.assertRaises(NotFoundError):
            services.update_item(self.user, self.mug.pk, 1)

    def test_remove_and_clear(self):
        services.add_item(self.user, self.mug.pk, 1)
        services.add_item(self.user, self.lamp.pk, 1)

        summary = services.remove_item(self.user, self.mug.pk)
        self.assertEqual([line['product_id'] for line in summary['items']], [self.lamp.pk])

        self.assertEqual(services.clear_cart(self.user), 1)
        self.assertEqual(services.get_cart(self.user)['items'], [])

    def test_inactive_products_pruned_on_read(self):
        services.add_item(self.user, self.mug.pk, 1)
        services.add_item(self.user, self.lamp.pk, 1)
        deactivate_product(self.lamp.pk)

        summary = services.get_cart(self.user)

        self.assertEqual(summary['removed_product_ids'], [self.lamp.pk])
        self.assertEqual(len(summary['items']), 1)
        self.assertFalse(CartItem.objects.filter(product=self.lamp).exists())

    def test_subtotal_uses_live_price(self):
        """
        Test: A price change after adding is reflected in the subtotal.
        """
        services.add_item(self.user, self.mug.pk, 2)
        update_product(self.mug.pk, price='10.00')

        line = services.get_cart(self.user)['items'][0]

        self.assertEqual(line['price_snapshot'], Decimal('8.50'))
        self.assertEqual(line['unit_price'], Decimal('10.00'))
        self.assertEqual(line['line_total'], Decimal('20.00'))

    def test_merge_sums_and_skips(self):
        services.add_item(self.user, self.mug.pk, 1)

        summary = services.merge_items(self.user, [
            {'product_id': self.mug.pk, 'quantity': 2},
            {'product_id': self.lamp.pk, 'quantity': 5},
            {'product_id': 999999, 'quantity': 1},
        ])

        self.assertEqual(summary['items'][0]['quantity'], 3)
        self.assertEqual(
            summary['skipped'],
            [
                {'product_id': self.lamp.pk, 'reason': 'INSUFFICIENT_STOCK'},
                {'product_id': 999999, 'reason': 'NOT_FOUND'},
            ]
        )

    def test_validate_cart_reports_stock_shortfall(self):
        services.add_item(self.user, self.lamp.pk, 3)
        self.lamp.stock_quantity = 1
        self.lamp.save()

        report = services.validate_cart(self.user)

        self.assertFalse(report['valid'])
        self.assertEqual(report['errors'], ['Insufficient stock for Desk Lamp. Available: 1'])

    def test_validate_empty_cart(self):
        self.assertEqual(services.validate_cart(self.user)['errors'], ['Cart is empty'])


class CartApiTestCase(TestCase):

    def setUp(self):
        self.client = APIClient()
        self.user = get_user_model().objects.create_user('shopper', password='pw')
        self.product = create_product(sku='API-1', name='Api Product', price='5.00', stock_quantity=2)

    def test_requires_authentication(self):
        self.assertEqual(self.client.get('/api/cart/').status_code, 403)

    def test_add_update_and_delete(self):
        self.client.force_authenticate(self.user)

        response = self.client.post(
            '/api/cart/items/', {'product_id': self.product.pk, 'quantity': 2}, format='json'
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data['subtotal'], '10.00')

        response = self.client.patch(
            f'/api/cart/items/{self.product.pk}/', {'quantity': 1}, format='json'
        )
        self.assertEqual(response.data['items'][0]['quantity'], 1)

        self.assertEqual(self.client.delete('/api/cart/').status_code, 204)
        self.assertEqual(self.client.get('/api/cart/').data['items'], [])

    def test_insufficient_stock_is_409(self):
        self.client.force_authenticate(self.user)

        response = self.client.post(
            '/api/cart/items/', {'product_id': self.product.pk, 'quantity': 3}, format='json'
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data['error'], 'INSUFFICIENT_STOCK')
        self.assertEqual(response.data['available'], 2)
