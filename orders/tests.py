"""
Tests for order numbering, the status state machine and the cart-to-order
transaction.

Test Cases:
1. Order numbers: format, daily sequence, overflow, retry with backoff
2. Every status transition pair against the allowed graph
3. Order created from the cart with stock reserved and cart cleared
4. Atomic rollback when any line fails
5. Cancellation releases stock
6. Concurrent reservations never oversell
"""
import threading
from datetime import timedelta
from decimal import Decimal
from unittest.mock import call, patch

from django.contrib.auth import get_user_model
from django.db import DatabaseError, connection
from django.test import TestCase, TransactionTestCase, override_settings
from django.utils import timezone
from rest_framework.test import APIClient

from carts import services as cart_services
from carts.models import CartItem
from catalog.inventory import reserve_stock, set_stock
from catalog.services import create_product, deactivate_product
from core.exceptions import (
    CartEmptyError,
    InsufficientStockError,
    InvalidTransitionError,
    OrderNumberGenerationError,
    ProductInactiveError,
    SequenceOverflowError,
    ServiceValidationError,
)
from orders import numbering
from orders.models import Counter, Order, OrderStatusHistory
from orders.services import (
    calculate_shipping,
    calculate_tax,
    cancel_order,
    create_order,
    get_order_summary,
    update_order_status,
    update_payment_status,
    validate_order_total,
    validate_status_transition,
)
from orders.tasks import (
    cancel_stale_pending_orders,
    generate_daily_order_report,
    send_order_confirmation,
    send_status_notification,
)

ADDRESS = {
    'full_name': 'Ada Lovelace',
    'address_line1': '12 Analytical Row',
    'city': 'London',
    'postal_code': 'N1 9GU',
    'country': 'GB',
}


class OrderNumberTestCase(TestCase):
    """Test cases for the daily counter and order number format."""

    def test_format_and_increment(self):
        """
        Test: Consecutive numbers share today's date and count up.
        """
        first = numbering.generate_order_number()
        second = numbering.generate_order_number()
        today = numbering.today_string()

        self.assertEqual(first, f'ORD-{today}-00001')
        self.assertEqual(second, f'ORD-{today}-00002')
        self.assertEqual(numbering.get_current_sequence(), 2)

    def test_new_day_starts_new_sequence(self):
        Counter.objects.create(key=numbering.counter_key('20240114'), date='20240114', value=41)

        with patch('orders.numbering.today_string', return_value='20240115'):
            self.assertEqual(numbering.generate_order_number(), 'ORD-20240115-00001')

        self.assertEqual(numbering.get_current_sequence('20240114'), 41)

    @override_settings(ORDER_NUMBER_PREFIX='WEB', ORDER_SEQUENCE_LENGTH=6)
    def test_prefix_and_width_from_settings(self):
        number = numbering.generate_order_number()

        self.assertTrue(number.startswith('WEB-'))
        self.assertTrue(number.endswith('-000001'))
        self.assertTrue(numbering.is_valid_order_number(number))

    def test_overflow_fails_and_leaves_counter(self):
        """
        Test: The daily maximum is a hard stop.

        Given: Today's counter is at 99999
        When: Generating another number
        Then: SEQUENCE_OVERFLOW and the counter is not advanced
        """
        today = numbering.today_string()
        Counter.objects.create(key=numbering.counter_key(today), date=today, value=99999)

        with patch('orders.numbering.time.sleep') as sleep:
            with self.assertRaises(SequenceOverflowError):
                numbering.generate_order_number()

        sleep.assert_not_called()
        self.assertEqual(numbering.get_current_sequence(), 99999)

    def test_transient_error_is_retried_with_backoff(self):
        with patch('orders.numbering._next_sequence', side_effect=[DatabaseError('locked'), 7]), \
                patch('orders.numbering.time.sleep') as sleep:
            number = numbering.generate_order_number()

        self.assertTrue(number.endswith('-00007'))
        sleep.assert_called_once_with(0.1)

    def test_retries_exhausted(self):
        with patch('orders.numbering._next_sequence', side_effect=DatabaseError('down')) as attempt, \
                patch('orders.numbering.time.sleep') as sleep:
            with self.assertRaises(OrderNumberGenerationError) as ctx:
                numbering.generate_order_number()

        self.assertEqual(attempt.call_count, 3)
        self.assertEqual(sleep.call_args_list, [call(0.1), call(0.2)])
        self.assertEqual(ctx.exception.code, 'STORE_ERROR')

    def test_parse_valid(self):
        parsed = numbering.parse_order_number('ORD-20240115-00042')

        self.assertEqual(parsed.date, '20240115')
        self.assertEqual(parsed.sequence, 42)
        self.assertEqual((parsed.year, parsed.month, parsed.day), (2024, 1, 15))

    def test_parse_rejects_malformed(self):
        for value in (
            None, '', 'ORD-2024011-00001', 'ORD-20240115-0001', 'XYZ-20240115-00001',
            'ORD-19990115-00001', 'ORD-20241301-00001', 'ORD-20240132-00001',
            'ORD-20240115-00000', 'ord-20240115-00001',
        ):
            with self.subTest(value=value):
                self.assertFalse(numbering.is_valid_order_number(value))

    def test_impossible_calendar_date_accepted(self):
        # Only ranges are checked, not the calendar
        self.assertTrue(numbering.is_valid_order_number('ORD-20240230-00001'))

    def test_reset_and_stats(self):
        numbering.generate_order_number()
        stats = numbering.get_order_number_stats()
        self.assertEqual(stats['current_sequence'], 1)
        self.assertEqual(stats['remaining_capacity'], 99998)

        numbering.reset_daily_sequence()
        self.assertEqual(numbering.get_current_sequence(), 0)


class StatusTransitionTestCase(TestCase):

    EXPECTED = {
        'pending': {'confirmed', 'cancelled'},
        'confirmed': {'processing', 'cancelled'},
        'processing': {'shipped', 'cancelled'},
        'shipped': {'delivered'},
        'delivered': set(),
        'cancelled': set(),
    }

    def test_every_pair(self):
        for current in Order.Status.values:
            for requested in Order.Status.values:
                with self.subTest(current=current, requested=requested):
                    if requested in self.EXPECTED[current]:
                        validate_status_transition(current, requested)
                    else:
                        with self.assertRaises(InvalidTransitionError) as ctx:
                            validate_status_transition(current, requested)
                        self.assertEqual(ctx.exception.allowed, sorted(self.EXPECTED[current]))

    def test_unknown_status(self):
        with self.assertRaises(ServiceValidationError):
            validate_status_transition('pending', 'teleported')


class PricingTestCase(TestCase):

    def test_shipping_tiers(self):
        self.assertEqual(calculate_shipping(Decimal('100.00')), Decimal('0.00'))
        self.assertEqual(calculate_shipping(Decimal('99.99')), Decimal('5.00'))
        self.assertEqual(calculate_shipping(Decimal('50.00')), Decimal('5.00'))
        self.assertEqual(calculate_shipping(Decimal('49.99')), Decimal('10.00'))

    def test_tax_rounds_half_up(self):
        self.assertEqual(calculate_tax(Decimal('109.97')), Decimal('11.00'))
        self.assertEqual(calculate_tax(Decimal('0.05')), Decimal('0.01'))

    def test_total_within_tolerance(self):
        lines = [{'unit_price': Decimal('29.99'), 'quantity': 2}, {'unit_price': '49.99', 'quantity': 1}]

        self.assertEqual(
            validate_order_total(lines, '120.98', tax='11.00', shipping='0.00'),
            Decimal('120.97')
        )

    def test_total_mismatch_rejected(self):
        lines = [{'unit_price': Decimal('10.00'), 'quantity': 1}]

        with self.assertRaises(ServiceValidationError) as ctx:
            validate_order_total(lines, '10.05')

        self.assertEqual(ctx.exception.details['computed_total'], '10.00')


class OrderServiceTestCase(TestCase):
    """Test cases for the cart-to-order transaction."""

    def setUp(self):
        self.user = get_user_model().objects.create_user('shopper', password='pw')
        self.product_a = create_product(sku='A-1', name='Product A', price='29.99', stock_quantity=100)
        self.product_b = create_product(sku='B-1', name='Product B', price='49.99', stock_quantity=50)

    def fill_cart(self):
        cart_services.add_item(self.user, self.product_a.pk, 2)
        cart_services.add_item(self.user, self.product_b.pk, 1)

    def test_successful_order(self):
        """
        Test: A valid cart becomes a pending order.

        Given: 2x A @ 29.99 and 1x B @ 49.99 with plenty of stock
        When: Creating the order
        Then: Pending order, totals computed, stock taken, cart cleared
        """
        self.fill_cart()

        order = create_order(self.user, ADDRESS, 'credit_card')

        self.assertEqual(order.status, Order.Status.PENDING)
        self.assertEqual(order.subtotal, Decimal('109.97'))
        self.assertEqual(order.tax, Decimal('11.00'))
        self.assertEqual(order.shipping, Decimal('0.00'))
        self.assertEqual(order.total, Decimal('120.97'))
        self.assertTrue(numbering.is_valid_order_number(order.order_number))
        self.assertEqual(order.items.count(), 2)
        self.assertEqual(order.billing_address, ADDRESS)

        self.product_a.refresh_from_db()
        self.product_b.refresh_from_db()
        self.assertEqual(self.product_a.stock_quantity, 98)
        self.assertEqual(self.product_b.stock_quantity, 49)
        self.assertFalse(CartItem.objects.filter(cart__user=self.user).exists())

        history = list(order.status_history.values_list('status', 'note'))
        self.assertEqual(history, [('pending', 'Order placed')])

    def test_line_items_are_snapshots(self):
        self.fill_cart()
        order = create_order(self.user, ADDRESS, 'paypal')

        self.product_a.price = Decimal('99.00')
        self.product_a.save()

        item = order.items.get(product=self.product_a)
        self.assertEqual(item.unit_price, Decimal('29.99'))
        self.assertEqual(item.product_name, 'Product A')
        self.assertEqual(item.subtotal, Decimal('59.98'))

    def test_rollback_when_second_line_fails(self):
        """
        Test: One short line undoes every reservation.

        Given: Stock of B dropped to 0 after it was added to the cart
        When: Creating the order
        Then: INSUFFICIENT_STOCK, A's stock untouched, no order, cart kept
        """
        self.fill_cart()
        set_stock(self.product_b.pk, 0)

        with self.assertRaises(InsufficientStockError):
            create_order(self.user, ADDRESS, 'credit_card')

        self.product_a.refresh_from_db()
        self.assertEqual(self.product_a.stock_quantity, 100)
        self.assertEqual(Order.objects.count(), 0)
        self.assertEqual(CartItem.objects.filter(cart__user=self.user).count(), 2)
        self.assertEqual(numbering.get_current_sequence(), 0)

    def test_inactive_product_fails_order(self):
        self.fill_cart()
        deactivate_product(self.product_b.pk)

        with self.assertRaises(ProductInactiveError):
            create_order(self.user, ADDRESS, 'credit_card')

        self.product_a.refresh_from_db()
        self.assertEqual(self.product_a.stock_quantity, 100)

    def test_empty_cart(self):
        with self.assertRaises(CartEmptyError):
            create_order(self.user, ADDRESS, 'credit_card')

    def test_expected_total_mismatch_rejected(self):
        self.fill_cart()

        with self.assertRaises(ServiceValidationError) as ctx:
            create_order(self.user, ADDRESS, 'credit_card', expected_total='100.00')

        self.assertEqual(ctx.exception.details['computed_total'], '120.97')
        self.product_a.refresh_from_db()
        self.assertEqual(self.product_a.stock_quantity, 100)

    def test_expected_total_match_accepted(self):
        self.fill_cart()
        order = create_order(self.user, ADDRESS, 'credit_card', expected_total='120.97')
        self.assertEqual(order.total, Decimal('120.97'))

    def test_address_and_payment_method_validated(self):
        self.fill_cart()

        with self.assertRaises(ServiceValidationError) as ctx:
            create_order(self.user, {'full_name': 'No Street'}, 'credit_card')
        self.assertIn('city', ctx.exception.details['missing'])

        with self.assertRaises(ServiceValidationError):
            create_order(self.user, ADDRESS, 'barter')

    def test_confirmation_queued_after_commit(self):
        self.fill_cart()

        with patch('orders.tasks.send_order_confirmation.delay') as delay:
            with self.captureOnCommitCallbacks(execute=True):
                order = create_order(self.user, ADDRESS, 'credit_card')

        delay.assert_called_once_with(order.pk)

    def test_status_lifecycle(self):
        self.fill_cart()
        order = create_order(self.user, ADDRESS, 'credit_card')

        for status in ('confirmed', 'processing', 'shipped', 'delivered'):
            order = update_order_status(order.pk, status)
            self.assertEqual(order.status, status)

        self.assertEqual(order.status_history.count(), 5)
        with self.assertRaises(InvalidTransitionError):
            update_order_status(order.pk, 'cancelled')

    def test_skipping_a_step_is_rejected(self):
        self.fill_cart()
        order = create_order(self.user, ADDRESS, 'credit_card')

        with self.assertRaises(InvalidTransitionError) as ctx:
            update_order_status(order.pk, 'shipped')

        self.assertEqual(ctx.exception.allowed, ['cancelled', 'confirmed'])
        order.refresh_from_db()
        self.assertEqual(order.status, 'pending')

    def test_cancel_releases_stock(self):
        self.fill_cart()
        order = create_order(self.user, ADDRESS, 'credit_card')
        update_order_status(order.pk, 'confirmed')

        order = cancel_order(order.pk, reason='Changed my mind', changed_by=self.user)

        self.assertEqual(order.status, 'cancelled')
        self.assertEqual(order.cancel_reason, 'Changed my mind')
        self.product_a.refresh_from_db()
        self.product_b.refresh_from_db()
        self.assertEqual(self.product_a.stock_quantity, 100)
        self.assertEqual(self.product_b.stock_quantity, 50)

        with self.assertRaises(InvalidTransitionError):
            cancel_order(order.pk)
        self.product_a.refresh_from_db()
        self.assertEqual(self.product_a.stock_quantity, 100)

    def test_cancel_through_status_update(self):
        self.fill_cart()
        order = create_order(self.user, ADDRESS, 'credit_card')

        update_order_status(order.pk, 'cancelled', note='Fraud check')

        self.product_b.refresh_from_db()
        self.assertEqual(self.product_b.stock_quantity, 50)
        self.assertTrue(
            OrderStatusHistory.objects.filter(order=order, note='Order cancelled: Fraud check').exists()
        )

    def test_longest_cancel_note_is_kept_whole(self):
        self.fill_cart()
        order = create_order(self.user, ADDRESS, 'credit_card')
        note = 'x' * 255

        update_order_status(order.pk, 'cancelled', note=note)

        entry = OrderStatusHistory.objects.get(order=order, status='cancelled')
        self.assertEqual(entry.note, f'Order cancelled: {note}')
        self.assertIsNone(OrderStatusHistory._meta.get_field('note').max_length)

    def test_payment_status(self):
        self.fill_cart()
        order = create_order(self.user, ADDRESS, 'credit_card')

        self.assertEqual(update_payment_status(order.pk, 'paid').payment_status, 'paid')
        with self.assertRaises(InvalidTransitionError):
            update_payment_status(order.pk, 'failed')
        self.assertEqual(update_payment_status(order.pk, 'refunded').payment_status, 'refunded')

    def test_order_summary(self):
        self.fill_cart()
        order = create_order(self.user, ADDRESS, 'credit_card')

        summary = get_order_summary(order.pk)

        self.assertEqual(summary['total'], '120.97')
        self.assertEqual(summary['item_count'], 2)
        self.assertIsNone(summary['cancel_reason'])


class OrderTaskTestCase(TestCase):

    def setUp(self):
        self.user = get_user_model().objects.create_user('shopper', password='pw')
        self.product = create_product(sku='T-1', name='Task Product', price='10.00', stock_quantity=5)
        cart_services.add_item(self.user, self.product.pk, 2)
        self.order = create_order(self.user, ADDRESS, 'cash_on_delivery')

    def test_stale_pending_orders_cancelled(self):
        Order.objects.filter(pk=self.order.pk).update(created_at=timezone.now() - timedelta(hours=1))

        result = cancel_stale_pending_orders()

        self.assertEqual(result, {'found': 1, 'cancelled': 1})
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 5)

    def test_recent_orders_left_alone(self):
        self.assertEqual(cancel_stale_pending_orders(), {'found': 0, 'cancelled': 0})

    def test_confirmation(self):
        result = send_order_confirmation(self.order.pk)
        self.assertEqual(result['status'], 'success')
        self.assertEqual(send_order_confirmation(999999)['status'], 'error')

    def test_status_notification(self):
        self.assertEqual(send_status_notification(self.order.pk, 'shipped')['type'], 'order_shipped')
        self.assertEqual(send_status_notification(self.order.pk, 'pending')['status'], 'skipped')

    def test_daily_report_formats_revenue(self):
        Order.objects.filter(pk=self.order.pk).update(created_at=timezone.now() - timedelta(days=1))

        stats = generate_daily_order_report()

        self.assertEqual(stats['total_orders'], 1)
        self.assertEqual(stats['total_revenue'], '32.00')


class OrderApiTestCase(TestCase):

    def setUp(self):
        self.client = APIClient()
        User = get_user_model()
        self.user = User.objects.create_user('shopper', password='pw')
        self.other = User.objects.create_user('other', password='pw')
        self.staff = User.objects.create_user('staff', password='pw', is_staff=True)
        self.product = create_product(sku='API-1', name='Api Product', price='20.00', stock_quantity=5)

    def checkout(self):
        cart_services.add_item(self.user, self.product.pk, 1)
        self.client.force_authenticate(self.user)
        return self.client.post(
            '/api/orders/',
            {'shipping_address': ADDRESS, 'payment_method': 'credit_card'},
            format='json'
        )

    def test_checkout(self):
        response = self.checkout()

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data['status'], 'pending')
        # 20.00 + 2.00 tax + 10.00 shipping
        self.assertEqual(response.data['total'], '32.00')
        self.assertEqual(response.data['allowed_next_statuses'], ['cancelled', 'confirmed'])

    def test_empty_cart_is_400(self):
        self.client.force_authenticate(self.user)
        response = self.client.post(
            '/api/orders/',
            {'shipping_address': ADDRESS, 'payment_method': 'credit_card'},
            format='json'
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data['error'], 'CART_EMPTY')

    def test_orders_are_private(self):
        order_id = self.checkout().data['id']

        self.client.force_authenticate(self.other)
        self.assertEqual(self.client.get('/api/orders/').data['results'], [])
        self.assertEqual(self.client.get(f'/api/orders/{order_id}/').status_code, 404)
        self.assertEqual(self.client.post(f'/api/orders/{order_id}/cancel/').status_code, 403)

    def test_status_change_requires_staff(self):
        order_id = self.checkout().data['id']

        response = self.client.post(f'/api/orders/{order_id}/status/', {'status': 'confirmed'}, format='json')
        self.assertEqual(response.status_code, 403)

        self.client.force_authenticate(self.staff)
        response = self.client.post(f'/api/orders/{order_id}/status/', {'status': 'shipped'}, format='json')
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data['error'], 'INVALID_TRANSITION')

        response = self.client.post(f'/api/orders/{order_id}/status/', {'status': 'confirmed'}, format='json')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['status'], 'confirmed')

    def test_owner_cancels(self):
        order_id = self.checkout().data['id']

        response = self.client.post(f'/api/orders/{order_id}/cancel/', {'reason': 'Too slow'}, format='json')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['cancel_reason'], 'Too slow')
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 5)

    def test_stats(self):
        self.checkout()
        self.client.force_authenticate(self.staff)

        stats = self.client.get('/api/orders/stats/').data

        self.assertEqual(stats['total_orders'], 1)
        self.assertEqual(stats['pending_orders'], 1)
        self.assertEqual(stats['total_revenue'], '32.00')
        self.assertEqual(stats['order_numbers']['current_sequence'], 1)

        response = self.client.get('/api/orders/stats/', {'user_id': 'me'})
        self.assertEqual(response.status_code, 400)


class ConcurrentReservationTestCase(TransactionTestCase):
    """
    Concurrent reservations and order numbering against one database.
    Uses TransactionTestCase for proper multi-threading support.
    """

    def setUp(self):
        self.product = create_product(sku='RACE-1', name='Limited Stock Product', price='50.00', stock_quantity=10)

    def test_concurrent_reservations_no_overselling(self):
        """
        Test: Ten concurrent requests for 3 units against 10 in stock.

        Then: Exactly 3 succeed, 7 fail, final stock 1
        """
        results = []
        lock = threading.Lock()

        def reserve():
            try:
                reserve_stock(self.product.pk, 3)
                outcome = 'ok'
            except InsufficientStockError:
                outcome = 'short'
            finally:
                connection.close()
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=reserve) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(results.count('ok'), 3)
        self.assertEqual(results.count('short'), 7)
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 1)

    def test_concurrent_order_numbers_are_distinct(self):
        """
        Test: Ten concurrent callers each get their own sequence.

        Then: Sequences 1-10 issued exactly once, counter at 10
        """
        numbers = []
        lock = threading.Lock()

        def mint():
            try:
                number = numbering.generate_order_number()
            finally:
                connection.close()
            with lock:
                numbers.append(number)

        threads = [threading.Thread(target=mint) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        sequences = sorted(numbering.parse_order_number(number).sequence for number in numbers)
        self.assertEqual(sequences, list(range(1, 11)))
        self.assertEqual(numbering.get_current_sequence(), 10)
