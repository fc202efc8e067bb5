"""
Order API Views.

Implements:
- GET /orders/ - The caller's orders (all orders for staff)
- POST /orders/ - Check out the caller's cart in one transaction
- GET /orders/{id}/ - Order detail with items and status history
- POST /orders/{id}/status/ - Advance the order status (staff)
- POST /orders/{id}/cancel/ - Cancel and release stock (owner or staff)
- POST /orders/{id}/payment/ - Record a payment outcome (staff)
- GET /orders/stats/ - Order statistics (staff)
"""
from django.db import models
from django.db.models import Avg, Count, Sum
from rest_framework import generics, status
from rest_framework.exceptions import PermissionDenied
from rest_framework.permissions import IsAdminUser, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from core.rate_limiting import RateLimitMixin
from core.utils import parse_int_param, to_money
from . import services
from .models import Order
from .numbering import get_order_number_stats
from .serializers import (
    OrderCancelSerializer,
    OrderCreateSerializer,
    OrderListSerializer,
    OrderSerializer,
    OrderStatusUpdateSerializer,
    PaymentStatusUpdateSerializer,
)


def _visible_orders(user):
    queryset = Order.objects.all()
    if not user.is_staff:
        queryset = queryset.filter(user=user)
    return queryset


def _order_detail(order_id):
    return Order.objects.prefetch_related('items', 'status_history').get(pk=order_id)


class OrderListCreateView(RateLimitMixin, generics.ListCreateAPIView):
    """
    GET: List orders, newest first
    POST: Create an order from the caller's cart

    Query Parameters (GET):
        - status: Filter by status (pending, confirmed, ...)
        - payment_status: Filter by payment status

    Request Body (POST): see OrderCreateSerializer
    """
    permission_classes = [IsAuthenticated]
    rate_limit_max_requests = 10
    rate_limit_window_seconds = 60

    def get_serializer_class(self):
        if self.request.method == 'POST':
            return OrderCreateSerializer
        return OrderListSerializer

    def get_queryset(self):
        queryset = _visible_orders(self.request.user).prefetch_related('items')

        status_filter = self.request.query_params.get('status', '').lower()
        if status_filter in Order.Status.values:
            queryset = queryset.filter(status=status_filter)

        payment_filter = self.request.query_params.get('payment_status', '').lower()
        if payment_filter in Order.PaymentStatus.values:
            queryset = queryset.filter(payment_status=payment_filter)

        return queryset.order_by('-created_at')

    def create(self, request, *args, **kwargs):
        """
        Returns:
            - 201: Order created (pending)
            - 400: Validation error, empty cart or total mismatch
            - 409: Insufficient stock or inactive product
            - 503: Order number unavailable
        """
        serializer = OrderCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        order = services.create_order(
            request.user,
            shipping_address=dict(data['shipping_address']),
            payment_method=data['payment_method'],
            billing_address=dict(data['billing_address']) if data.get('billing_address') else None,
            expected_total=data.get('expected_total'),
        )
        return Response(OrderSerializer(_order_detail(order.pk)).data, status=status.HTTP_201_CREATED)


class OrderDetailView(generics.RetrieveAPIView):
    """
    GET: Retrieve order details with all items.

    Uses prefetch_related for optimized item loading.
    """
    permission_classes = [IsAuthenticated]
    serializer_class = OrderSerializer

    def get_queryset(self):
        return _visible_orders(self.request.user).prefetch_related('items', 'status_history')


class OrderStatusView(APIView):
    """
    POST: Move an order along pending -> confirmed -> processing -> shipped
    -> delivered. A ``cancelled`` target releases stock like /cancel/.
    """
    permission_classes = [IsAdminUser]

    def post(self, request, pk):
        serializer = OrderStatusUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        order = services.update_order_status(
            pk,
            serializer.validated_data['status'],
            note=serializer.validated_data['note'],
            changed_by=request.user
        )
        return Response(OrderSerializer(_order_detail(order.pk)).data)


class OrderCancelView(APIView):
    """POST: Cancel an order the caller owns (staff may cancel any order)."""
    permission_classes = [IsAuthenticated]

    def post(self, request, pk):
        serializer = OrderCancelSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        owner_id = Order.objects.filter(pk=pk).values_list('user_id', flat=True).first()
        if owner_id is not None and owner_id != request.user.pk and not request.user.is_staff:
            raise PermissionDenied("You can only cancel your own orders.")

        order = services.cancel_order(
            pk,
            reason=serializer.validated_data['reason'],
            changed_by=request.user
        )
        return Response(OrderSerializer(_order_detail(order.pk)).data)


class OrderPaymentView(APIView):
    """POST: Record a payment status change (staff only)."""
    permission_classes = [IsAdminUser]

    def post(self, request, pk):
        serializer = PaymentStatusUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        order = services.update_payment_status(pk, serializer.validated_data['payment_status'])
        return Response(OrderSerializer(_order_detail(order.pk)).data)


class OrderStatsView(APIView):
    """
    GET: Order statistics, overall or for one user.

    Query Parameters:
        - user_id: Filter stats by customer (optional)
    """
    permission_classes = [IsAdminUser]

    def get(self, request):
        queryset = Order.objects.all()

        user_id = parse_int_param(request.query_params.get('user_id'), 'user_id')
        if user_id is not None:
            queryset = queryset.filter(user_id=user_id)

        live = ~models.Q(status=Order.Status.CANCELLED)
        stats = queryset.aggregate(
            total_orders=Count('id'),
            pending_orders=Count('id', filter=models.Q(status=Order.Status.PENDING)),
            confirmed_orders=Count('id', filter=models.Q(status=Order.Status.CONFIRMED)),
            processing_orders=Count('id', filter=models.Q(status=Order.Status.PROCESSING)),
            shipped_orders=Count('id', filter=models.Q(status=Order.Status.SHIPPED)),
            delivered_orders=Count('id', filter=models.Q(status=Order.Status.DELIVERED)),
            cancelled_orders=Count('id', filter=models.Q(status=Order.Status.CANCELLED)),
            total_revenue=Sum('total', filter=live),
            avg_order_value=Avg('total', filter=live)
        )

        # Handle None values
        stats['total_revenue'] = str(to_money(stats['total_revenue'] or 0))
        stats['avg_order_value'] = str(to_money(stats['avg_order_value'] or 0))
        stats['order_numbers'] = get_order_number_stats()

        return Response(stats)
