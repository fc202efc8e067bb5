"""
Cart API Views.

Implements:
- GET /cart/ - Cart with live prices (inactive products pruned)
- DELETE /cart/ - Clear the cart
- POST /cart/items/ - Add a product (quantities are summed)
- PATCH /cart/items/{product_id}/ - Replace a line's quantity
- DELETE /cart/items/{product_id}/ - Remove a line
- POST /cart/merge/ - Fold a guest cart into the user's cart
- GET /cart/validate/ - Pre-checkout stock report
"""
from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from core.rate_limiting import rate_limit
from . import services
from .serializers import (
    CartItemUpdateSerializer,
    CartItemWriteSerializer,
    CartMergeSerializer,
    CartSummarySerializer,
)


class CartView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        return Response(CartSummarySerializer(services.get_cart(request.user)).data)

    def delete(self, request):
        services.clear_cart(request.user)
        return Response(status=status.HTTP_204_NO_CONTENT)


class CartItemListView(APIView):
    permission_classes = [IsAuthenticated]

    @rate_limit(max_requests=30, window_seconds=60)
    def post(self, request):
        serializer = CartItemWriteSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        summary = services.add_item(
            request.user,
            serializer.validated_data['product_id'],
            serializer.validated_data['quantity']
        )
        return Response(CartSummarySerializer(summary).data, status=status.HTTP_201_CREATED)


class CartItemDetailView(APIView):
    permission_classes = [IsAuthenticated]

    @rate_limit(max_requests=30, window_seconds=60)
    def patch(self, request, product_id):
        serializer = CartItemUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        summary = services.update_item(request.user, product_id, serializer.validated_data['quantity'])
        return Response(CartSummarySerializer(summary).data)

    def delete(self, request, product_id):
        summary = services.remove_item(request.user, product_id)
        return Response(CartSummarySerializer(summary).data)


class CartMergeView(APIView):
    permission_classes = [IsAuthenticated]

    @rate_limit(max_requests=10, window_seconds=60)
    def post(self, request):
        serializer = CartMergeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        summary = services.merge_items(request.user, serializer.validated_data['items'])
        return Response(CartSummarySerializer(summary).data)


class CartValidateView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        report = services.validate_cart(request.user)
        return Response({
            'valid': report['valid'],
            'errors': report['errors'],
            'cart': CartSummarySerializer(report['cart']).data,
        })
