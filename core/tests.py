"""
Tests for the shared error taxonomy, money helpers and the DRF exception
handler.
"""
from decimal import Decimal
from unittest.mock import patch

from django.test import SimpleTestCase, TestCase, override_settings
from rest_framework.exceptions import ValidationError
from rest_framework.response import Response

from catalog.models import Category
from core import rate_limiting
from core.exception_handler import service_exception_handler
from core.exceptions import (
    CartEmptyError,
    InsufficientStockError,
    InvalidTransitionError,
    NotFoundError,
    ServiceValidationError,
)
from core.utils import parse_int_param, require_positive_int, to_money, unique_slug


class ServiceErrorTestCase(SimpleTestCase):

    def test_insufficient_stock_payload(self):
        error = InsufficientStockError(7, requested=5, available=2)

        self.assertEqual(error.status_code, 409)
        self.assertEqual(error.available, 2)
        self.assertEqual(error.as_dict(), {
            'error': 'INSUFFICIENT_STOCK',
            'detail': 'Insufficient stock for product 7: requested 5, available 2',
            'product_id': 7,
            'requested': 5,
            'available': 2,
        })

    def test_invalid_transition_lists_allowed_sorted(self):
        error = InvalidTransitionError('pending', 'shipped', {'confirmed', 'cancelled'})

        self.assertEqual(error.allowed, ['cancelled', 'confirmed'])
        self.assertIn('Allowed: cancelled, confirmed', error.message)
        self.assertEqual(error.as_dict()['allowed_statuses'], ['cancelled', 'confirmed'])

    def test_terminal_transition_message(self):
        error = InvalidTransitionError('delivered', 'cancelled', [])
        self.assertIn('Allowed: none', error.message)

    def test_not_found_identifier_is_text(self):
        self.assertEqual(NotFoundError('Product', 12).as_dict()['identifier'], '12')

    def test_cart_empty_default_message(self):
        self.assertEqual(CartEmptyError().as_dict(), {'error': 'CART_EMPTY', 'detail': 'Cart is empty'})


class MoneyHelpersTestCase(SimpleTestCase):

    def test_to_money_rounds_half_up(self):
        self.assertEqual(to_money('2.675'), Decimal('2.68'))
        self.assertEqual(to_money(Decimal('0.005')), Decimal('0.01'))
        self.assertEqual(to_money(10), Decimal('10.00'))

    def test_to_money_float_uses_shortest_repr(self):
        # Decimal(1.005) would be 1.00499999...; repr keeps the intended value
        self.assertEqual(to_money(1.005), Decimal('1.01'))

    def test_to_money_rejects_garbage(self):
        with self.assertRaises(ServiceValidationError) as ctx:
            to_money('abc', 'price')
        self.assertEqual(ctx.exception.details['field'], 'price')

    def test_require_positive_int(self):
        self.assertEqual(require_positive_int(3), 3)
        for bad in (0, -1, 1.5, '2', True, None):
            with self.subTest(value=bad):
                with self.assertRaises(ServiceValidationError):
                    require_positive_int(bad)

    def test_parse_int_param(self):
        self.assertEqual(parse_int_param('42', 'root_id'), 42)
        self.assertIsNone(parse_int_param('', 'root_id'))
        with self.assertRaises(ServiceValidationError) as ctx:
            parse_int_param('abc', 'root_id')
        self.assertEqual(ctx.exception.details['field'], 'root_id')


class UniqueSlugTestCase(TestCase):

    def test_suffix_added_on_collision(self):
        Category.objects.create(name='Audio', slug='audio')
        Category.objects.create(name='Audio', slug='audio-1')

        self.assertEqual(unique_slug(Category, 'Audio'), 'audio-2')
        self.assertEqual(unique_slug(Category, 'Lighting'), 'lighting')

    def test_own_row_excluded(self):
        category = Category.objects.create(name='Audio', slug='audio')
        self.assertEqual(unique_slug(Category, 'Audio', exclude_pk=category.pk), 'audio')


class ExceptionHandlerTestCase(SimpleTestCase):

    def test_service_error_rendered_with_status(self):
        response = service_exception_handler(
            InsufficientStockError(1, requested=3, available=0), {'view': None}
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data['error'], 'INSUFFICIENT_STOCK')

    def test_drf_errors_fall_through(self):
        response = service_exception_handler(ValidationError({'quantity': ['bad']}), {'view': None})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data, {'quantity': ['bad']})

    def test_unhandled_errors_return_none(self):
        self.assertIsNone(service_exception_handler(RuntimeError('boom'), {'view': None}))


class RateLimitingTestCase(SimpleTestCase):

    def setUp(self):
        rate_limiting._redis_client = None
        rate_limiting._redis_checked = False

    def tearDown(self):
        rate_limiting._redis_client = None
        rate_limiting._redis_checked = False

    @override_settings(RATE_LIMIT_ENABLED=False)
    def test_disabled_returns_no_client(self):
        self.assertIsNone(rate_limiting.get_redis_client())

    def test_decorator_blocks_after_limit(self):
        class FakeRedis:
            def __init__(self):
                self.counts = {}

            def incr(self, key):
                self.counts[key] = self.counts.get(key, 0) + 1
                return self.counts[key]

            def expire(self, key, seconds):
                pass

            def ttl(self, key):
                return 42

        class FakeUser:
            pk = 5
            is_authenticated = True

        class FakeRequest:
            user = FakeUser()
            META = {}

        class View:
            @rate_limiting.rate_limit(max_requests=2, window_seconds=60)
            def post(self, request):
                return Response({})

        fake = FakeRedis()
        with patch('core.rate_limiting.get_redis_client', return_value=fake):
            view = View()
            first = view.post(FakeRequest())
            second = view.post(FakeRequest())
            third = view.post(FakeRequest())

        self.assertEqual(first['X-RateLimit-Remaining'], '1')
        self.assertEqual(second['X-RateLimit-Remaining'], '0')
        self.assertEqual(third.status_code, 429)
        self.assertEqual(third.data['error'], 'RATE_LIMITED')
        self.assertEqual(third['Retry-After'], '42')

    def test_client_key_prefers_user(self):
        class Anonymous:
            is_authenticated = False

        class Request:
            user = Anonymous()
            META = {'HTTP_X_FORWARDED_FOR': '10.0.0.1, 10.0.0.2', 'REMOTE_ADDR': '127.0.0.1'}

        self.assertEqual(rate_limiting.get_client_key(Request()), 'ip:10.0.0.1')
