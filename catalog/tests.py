"""
Tests for the catalog: inventory ledger, product rules and the category
hierarchy.

Test Cases:
1. Conditional reservation never oversells
2. Backorder and untracked products
3. Product SKU, slug and pricing rules
4. Category level/path maintenance and cycle rejection
5. Soft delete guards and the category tree
6. API smoke tests
"""
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.db import IntegrityError, transaction
from django.test import TestCase, override_settings
from rest_framework.test import APIClient

from catalog import services
from catalog.inventory import (
    add_stock,
    can_purchase,
    check_availability,
    get_low_stock_products,
    release_stock,
    reserve_stock,
    set_stock,
)
from catalog.models import Category, Product
from catalog.tasks import report_low_stock
from core.exceptions import (
    CircularReferenceError,
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    ProductInactiveError,
    ServiceValidationError,
)


def make_product(sku='SKU-1', name='Test Product', price='10.00', **kwargs):
    return services.create_product(sku=sku, name=name, price=price, **kwargs)


class InventoryLedgerTestCase(TestCase):
    """Test cases for stock reservation and release."""

    def setUp(self):
        self.product = make_product(stock_quantity=10)

    def test_reserve_decrements_stock(self):
        """
        Test: A reservation within stock succeeds.

        Given: 10 units in stock
        When: Reserving 4
        Then: Stock is 6
        """
        self.assertTrue(reserve_stock(self.product.pk, 4))

        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 6)

    def test_reserve_exact_stock(self):
        reserve_stock(self.product.pk, 10)

        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 0)

    def test_reserve_more_than_available_fails_without_change(self):
        """
        Test: An oversized reservation is rejected and stock is untouched.
        """
        with self.assertRaises(InsufficientStockError) as ctx:
            reserve_stock(self.product.pk, 11)

        self.assertEqual(ctx.exception.available, 10)
        self.assertEqual(ctx.exception.requested, 11)
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 10)

    def test_reservations_succeed_exactly_while_stock_lasts(self):
        """
        Test: Ten requests for 3 units against 10 in stock.

        Given: 10 units in stock
        When: Ten reservations of 3 units each
        Then: Exactly 3 succeed, 7 fail, 1 unit remains
        """
        successes = failures = 0
        for _ in range(10):
            try:
                reserve_stock(self.product.pk, 3)
                successes += 1
            except InsufficientStockError:
                failures += 1

        self.assertEqual(successes, 3)
        self.assertEqual(failures, 7)
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 1)

    def test_release_increments_stock(self):
        reserve_stock(self.product.pk, 4)
        release_stock(self.product.pk, 4)

        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 10)

    def test_backorder_allows_negative_stock(self):
        product = make_product(sku='BACK-1', stock_quantity=1, allow_backorder=True)

        reserve_stock(product.pk, 5)

        product.refresh_from_db()
        self.assertEqual(product.stock_quantity, -4)
        self.assertTrue(product.is_in_stock)

    def test_untracked_product_is_never_decremented(self):
        product = make_product(sku='DIGI-1', stock_quantity=0, track_inventory=False)

        self.assertTrue(reserve_stock(product.pk, 50))
        self.assertTrue(release_stock(product.pk, 50))

        product.refresh_from_db()
        self.assertEqual(product.stock_quantity, 0)

    def test_variant_reservation(self):
        variant = services.add_variant(self.product.pk, name='Large', sku='SKU-1-L', stock_quantity=2)

        reserve_stock(self.product.pk, 2, variant_id=variant.pk)
        with self.assertRaises(InsufficientStockError):
            reserve_stock(self.product.pk, 1, variant_id=variant.pk)

        variant.refresh_from_db()
        self.product.refresh_from_db()
        self.assertEqual(variant.stock_quantity, 0)
        self.assertEqual(self.product.stock_quantity, 10)

    def test_unknown_product(self):
        with self.assertRaises(NotFoundError):
            reserve_stock(999999, 1)

    def test_quantity_must_be_positive_integer(self):
        for bad in (0, -2, 1.5):
            with self.subTest(quantity=bad):
                with self.assertRaises(ServiceValidationError):
                    reserve_stock(self.product.pk, bad)

    def test_can_purchase(self):
        self.assertTrue(can_purchase(self.product, 10))
        with self.assertRaises(InsufficientStockError):
            can_purchase(self.product, 11)

        self.product.is_active = False
        with self.assertRaises(ProductInactiveError):
            can_purchase(self.product, 1)

    def test_check_availability_does_not_raise(self):
        self.assertEqual(
            check_availability(self.product.pk, 3),
            {'available': True, 'current_stock': 10}
        )
        self.assertFalse(check_availability(self.product.pk, 30)['available'])
        self.assertEqual(check_availability(999999, 1), {'available': False, 'current_stock': 0})

    def test_add_and_set_stock(self):
        self.assertEqual(add_stock(self.product.pk, 5, reason='delivery'), 15)
        self.assertEqual(set_stock(self.product.pk, 3).stock_quantity, 3)

        with self.assertRaises(ServiceValidationError):
            set_stock(self.product.pk, -1)

    def test_stock_constraint_enforced_by_database(self):
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                Product.objects.filter(pk=self.product.pk).update(stock_quantity=-1)

    def test_low_stock_report(self):
        low = make_product(sku='LOW-1', stock_quantity=3, low_stock_threshold=5)
        make_product(sku='EMPTY-1', stock_quantity=0)

        # self.product sits exactly at its default threshold of 10
        self.assertEqual(list(get_low_stock_products()), [low, self.product])
        self.assertEqual(report_low_stock(), {'count': 2, 'skus': ['LOW-1', 'SKU-1']})
        self.assertEqual(list(get_low_stock_products(threshold=5)), [low])


class ProductServiceTestCase(TestCase):

    def test_create_normalizes_sku_and_slug(self):
        product = make_product(sku=' abc-123 ', name='Wireless Headphones', price='19.999')

        self.assertEqual(product.sku, 'ABC-123')
        self.assertEqual(product.slug, 'wireless-headphones')
        self.assertEqual(product.price, Decimal('20.00'))
        self.assertTrue(product.is_active)

    def test_slug_suffix_on_duplicate_name(self):
        make_product(sku='A-1', name='Yoga Mat')
        second = make_product(sku='A-2', name='Yoga Mat')

        self.assertEqual(second.slug, 'yoga-mat-1')

    def test_duplicate_sku_conflict(self):
        make_product(sku='DUP-1')
        with self.assertRaises(ConflictError):
            make_product(sku='dup-1', name='Other Product')

    def test_price_rules(self):
        with self.assertRaises(ServiceValidationError):
            make_product(price='0')
        with self.assertRaises(ServiceValidationError):
            make_product(price='10.00', compare_at_price='9.00')

        product = make_product(price='75.00', compare_at_price='100.00')
        self.assertEqual(product.discount_percentage, 25)
        self.assertEqual(product.calculate_discount()['amount'], Decimal('25.00'))

    def test_name_length(self):
        with self.assertRaises(ServiceValidationError):
            make_product(name='ab')

    def test_negative_stock_requires_backorder(self):
        with self.assertRaises(ServiceValidationError):
            make_product(stock_quantity=-1)
        self.assertEqual(make_product(stock_quantity=-1, allow_backorder=True).stock_quantity, -1)

    def test_sku_is_immutable(self):
        product = make_product(sku='KEEP-1')

        with self.assertRaises(ServiceValidationError):
            services.update_product(product.pk, sku='NEW-1')

        # Same SKU in any case is not a change
        services.update_product(product.pk, sku='keep-1', description='still here')
        product.refresh_from_db()
        self.assertEqual(product.sku, 'KEEP-1')

    def test_rename_regenerates_slug(self):
        product = make_product(name='Desk Lamp')
        product = services.update_product(product.pk, name='Floor Lamp')

        self.assertEqual(product.slug, 'floor-lamp')

    def test_resubmitted_sku_is_logged(self):
        product = make_product(sku='LAMP-9', name='Desk Lamp')

        with self.assertLogs('catalog.services', level='INFO') as logs:
            services.update_product(product.pk, sku='lamp-9', name='Floor Lamp')

        self.assertIn('Updated product LAMP-9: name, sku', logs.output[-1])

    def test_update_rechecks_compare_at_price(self):
        product = make_product(price='10.00', compare_at_price='15.00')

        with self.assertRaises(ServiceValidationError):
            services.update_product(product.pk, price='20.00')

    def test_deactivate_keeps_row(self):
        product = make_product()
        services.deactivate_product(product.pk)

        product.refresh_from_db()
        self.assertFalse(product.is_active)

    def test_variant_sku_rules(self):
        product = make_product(sku='TEE-1')

        with self.assertRaises(ServiceValidationError):
            services.add_variant(product.pk, name='Same', sku='tee-1')

        services.add_variant(product.pk, name='Small', sku='TEE-1-S')
        with self.assertRaises(ConflictError):
            services.add_variant(product.pk, name='Small again', sku='TEE-1-S')


class CategoryHierarchyTestCase(TestCase):

    def setUp(self):
        self.electronics = services.create_category('Electronics')
        self.audio = services.create_category('Audio', parent_id=self.electronics.pk)
        self.headphones = services.create_category('Headphones', parent_id=self.audio.pk)

    def test_level_and_path(self):
        self.assertEqual(self.electronics.level, 0)
        self.assertEqual(self.electronics.path, '/')
        self.assertEqual(self.headphones.level, 2)
        self.assertEqual(self.headphones.ancestor_ids, [self.electronics.pk, self.audio.pk])

    def test_name_rules(self):
        for bad in ('A', 'Toys & Games', 'x' * 101):
            with self.subTest(name=bad):
                with self.assertRaises(ServiceValidationError):
                    services.create_category(bad)
        self.assertEqual(services.create_category("Kids' Books").name, "Kids' Books")

    def test_missing_or_inactive_parent(self):
        with self.assertRaises(NotFoundError):
            services.create_category('Orphan', parent_id=999999)

        Category.objects.filter(pk=self.audio.pk).update(is_active=False)
        with self.assertRaises(ServiceValidationError):
            services.create_category('Speakers', parent_id=self.audio.pk)

    @override_settings(CATEGORY_MAX_DEPTH=2)
    def test_max_depth(self):
        with self.assertRaises(ServiceValidationError):
            services.create_category('Too Deep', parent_id=self.headphones.pk)

    def test_cycle_rejected_and_parent_unchanged(self):
        """
        Test: Moving a category under its own descendant fails.

        Given: Headphones is a descendant of Electronics
        When: Setting Electronics' parent to Headphones
        Then: CIRCULAR_REFERENCE and Electronics stays a root
        """
        with self.assertRaises(CircularReferenceError):
            services.reparent_category(self.electronics.pk, self.headphones.pk)

        self.electronics.refresh_from_db()
        self.assertIsNone(self.electronics.parent_id)

    def test_cannot_parent_to_self(self):
        with self.assertRaises(CircularReferenceError):
            services.reparent_category(self.audio.pk, self.audio.pk)

    def test_cycle_detected_through_stale_paths(self):
        """
        Descendant paths are not rewritten on a move, so the parent links
        must still catch a cycle after an intermediate node moved.
        """
        books = services.create_category('Books')
        services.reparent_category(self.audio.pk, books.pk)
        # Headphones still carries the old path /electronics/audio/
        with self.assertRaises(CircularReferenceError):
            services.reparent_category(books.pk, self.headphones.pk)

    def test_reparent_updates_level_and_path(self):
        books = services.create_category('Books')
        moved = services.reparent_category(self.headphones.pk, books.pk)

        self.assertEqual(moved.parent_id, books.pk)
        self.assertEqual(moved.level, 1)
        self.assertEqual(moved.ancestor_ids, [books.pk])

        root = services.reparent_category(self.headphones.pk, None)
        self.assertEqual(root.level, 0)
        self.assertEqual(root.path, '/')

    def test_descendants_and_ancestors(self):
        self.assertEqual(
            list(services.get_descendants(self.electronics)),
            [self.audio, self.headphones]
        )
        self.assertEqual(services.get_ancestors(self.headphones), [self.electronics, self.audio])

    def test_soft_delete_guards(self):
        allowed, reason = services.can_delete_category(self.audio)
        self.assertFalse(allowed)
        self.assertIn('1 descendant category', reason)

        make_product(category_id=self.headphones.pk)
        with self.assertRaises(ConflictError):
            services.soft_delete_category(self.headphones.pk)

    def test_soft_delete_leaf(self):
        services.soft_delete_category(self.headphones.pk)

        self.headphones.refresh_from_db()
        self.assertTrue(self.headphones.is_deleted)
        self.assertTrue(services.can_delete_category(self.audio)[0])

    def test_category_tree(self):
        tree = services.get_category_tree()

        self.assertEqual(len(tree), 1)
        self.assertEqual(tree[0]['name'], 'Electronics')
        self.assertEqual(tree[0]['children'][0]['children'][0]['name'], 'Headphones')

    def test_category_tree_branch_includes_root(self):
        tree = services.get_category_tree(self.audio.pk)

        self.assertEqual([node['id'] for node in tree], [self.audio.pk])
        self.assertEqual(tree[0]['children'][0]['id'], self.headphones.pk)

        with self.assertRaises(NotFoundError):
            services.get_category_tree(999999)


class CatalogApiTestCase(TestCase):

    def setUp(self):
        self.client = APIClient()
        self.admin = get_user_model().objects.create_user('admin', password='pw', is_staff=True)
        self.shopper = get_user_model().objects.create_user('shopper', password='pw')

    def test_product_create_requires_staff(self):
        payload = {'sku': 'api-1', 'name': 'Api Product', 'price': '12.50', 'stock_quantity': 3}

        self.client.force_authenticate(self.shopper)
        self.assertEqual(self.client.post('/api/products/', payload, format='json').status_code, 403)

        self.client.force_authenticate(self.admin)
        response = self.client.post('/api/products/', payload, format='json')
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data['sku'], 'API-1')

    def test_duplicate_sku_returns_conflict_payload(self):
        make_product(sku='API-2')
        self.client.force_authenticate(self.admin)

        response = self.client.post(
            '/api/products/', {'sku': 'API-2', 'name': 'Again', 'price': '1.00'}, format='json'
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data['error'], 'CONFLICT')

    def test_product_list_hides_inactive(self):
        make_product(sku='LIVE-1', name='Live Product')
        retired = make_product(sku='DEAD-1', name='Retired Product')
        services.deactivate_product(retired.pk)

        response = self.client.get('/api/products/')
        self.assertEqual(response.status_code, 200)
        self.assertEqual([row['sku'] for row in response.data['results']], ['LIVE-1'])

    def test_product_list_price_range(self):
        make_product(sku='CHEAP-1', name='Cheap Product', price='5.00')
        make_product(sku='MID-1', name='Middle Product', price='25.00')
        make_product(sku='DEAR-1', name='Pricey Product', price='90.00')

        response = self.client.get('/api/products/', {'min_price': '10', 'max_price': '90.00'})

        self.assertEqual(response.status_code, 200)
        self.assertEqual([row['sku'] for row in response.data['results']], ['MID-1', 'DEAR-1'])

    def test_malformed_query_params_are_400(self):
        for url in (
            '/api/categories/tree/?root_id=abc',
            '/api/categories/?parent_id=abc',
            '/api/products/?category_id=abc',
            '/api/products/?min_price=cheap',
        ):
            with self.subTest(url=url):
                response = self.client.get(url)
                self.assertEqual(response.status_code, 400)
                self.assertEqual(response.data['error'], 'VALIDATION_ERROR')

    def test_category_tree_unknown_root_is_404(self):
        self.assertEqual(self.client.get('/api/categories/tree/?root_id=999999').status_code, 404)

    def test_category_move_cycle_is_400(self):
        parent = services.create_category('Parent')
        child = services.create_category('Child', parent_id=parent.pk)
        self.client.force_authenticate(self.admin)

        response = self.client.post(
            f'/api/categories/{parent.pk}/move/', {'parent_id': child.pk}, format='json'
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data['error'], 'CIRCULAR_REFERENCE')
