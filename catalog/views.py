"""
Catalog API Views.

Implements:
- Category list/create, detail/soft delete, move, tree
- Product list/create, detail/update/deactivate, low stock report

Writes delegate to catalog.services; service errors are rendered by
core.exception_handler.
"""
from django.db.models import Q
from rest_framework import generics, status
from rest_framework.permissions import IsAdminUser
from rest_framework.response import Response
from rest_framework.views import APIView

from core.permissions import IsAdminOrReadOnly
from core.utils import parse_int_param, to_money
from . import services
from .inventory import get_low_stock_products
from .models import Category, Product
from .serializers import (
    CategoryCreateSerializer,
    CategoryMoveSerializer,
    CategorySerializer,
    ProductSerializer,
    ProductWriteSerializer,
)


# =============================================================================
# Category Views
# =============================================================================

class CategoryListCreateView(generics.ListCreateAPIView):
    """
    GET: List live categories
    POST: Create a category (staff only)

    Query Parameters (GET):
        - parent_id: Only direct children of this category ("root" for roots)
    """
    permission_classes = [IsAdminOrReadOnly]
    serializer_class = CategorySerializer

    def get_queryset(self):
        queryset = Category.objects.filter(is_deleted=False)
        parent_id = self.request.query_params.get('parent_id')
        if parent_id == 'root':
            queryset = queryset.filter(parent__isnull=True)
        elif parent_id:
            queryset = queryset.filter(parent_id=parse_int_param(parent_id, 'parent_id'))
        return queryset.order_by('level', 'display_order', 'name')

    def create(self, request, *args, **kwargs):
        serializer = CategoryCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        category = services.create_category(**serializer.validated_data)
        return Response(CategorySerializer(category).data, status=status.HTTP_201_CREATED)


class CategoryDetailView(generics.RetrieveDestroyAPIView):
    """
    GET: Retrieve a category
    DELETE: Soft delete (refused while it has descendants or products)
    """
    permission_classes = [IsAdminOrReadOnly]
    serializer_class = CategorySerializer
    queryset = Category.objects.filter(is_deleted=False)

    def destroy(self, request, *args, **kwargs):
        services.soft_delete_category(self.kwargs['pk'])
        return Response(status=status.HTTP_204_NO_CONTENT)


class CategoryMoveView(APIView):
    """
    POST: Reparent a category.

    Request Body:
        {"parent_id": 7}   or   {"parent_id": null} to make it a root
    """
    permission_classes = [IsAdminUser]

    def post(self, request, pk):
        serializer = CategoryMoveSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        category = services.reparent_category(pk, serializer.validated_data['parent_id'])
        return Response(CategorySerializer(category).data)


class CategoryTreeView(APIView):
    """GET: Nested tree of active categories."""
    permission_classes = [IsAdminOrReadOnly]

    def get(self, request):
        root_id = parse_int_param(request.query_params.get('root_id'), 'root_id')
        return Response(services.get_category_tree(root_id))


# =============================================================================
# Product Views
# =============================================================================

class ProductListCreateView(generics.ListCreateAPIView):
    """
    GET: List active products
    POST: Create a product (staff only)

    Query Parameters (GET):
        - q: Keyword in name, SKU or description
        - category_id: Filter by category
        - min_price, max_price: Inclusive price range
        - in_stock: "true" to hide tracked products without stock

    Uses select_related/prefetch_related to avoid N+1 queries.
    """
    permission_classes = [IsAdminOrReadOnly]
    serializer_class = ProductSerializer

    def get_queryset(self):
        queryset = Product.objects.select_related('category').prefetch_related(
            'variants'
        ).filter(is_active=True)

        keyword = self.request.query_params.get('q', '').strip()
        if keyword:
            queryset = queryset.filter(
                Q(name__icontains=keyword) |
                Q(sku__icontains=keyword) |
                Q(description__icontains=keyword)
            )

        params = self.request.query_params
        category_id = parse_int_param(params.get('category_id'), 'category_id')
        if category_id is not None:
            queryset = queryset.filter(category_id=category_id)

        if params.get('min_price'):
            queryset = queryset.filter(price__gte=to_money(params['min_price'], 'min_price'))
        if params.get('max_price'):
            queryset = queryset.filter(price__lte=to_money(params['max_price'], 'max_price'))

        if self.request.query_params.get('in_stock', '').lower() == 'true':
            queryset = queryset.filter(
                Q(track_inventory=False) | Q(stock_quantity__gt=0) | Q(allow_backorder=True)
            )

        return queryset.order_by('name')

    def create(self, request, *args, **kwargs):
        serializer = ProductWriteSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = dict(serializer.validated_data)
        # New products always start active
        data.pop('is_active', None)
        product = services.create_product(**data)
        return Response(ProductSerializer(product).data, status=status.HTTP_201_CREATED)


class ProductDetailView(generics.RetrieveDestroyAPIView):
    """
    GET: Retrieve a product
    PATCH: Update a product (staff only; SKU is immutable)
    DELETE: Deactivate a product (staff only; never hard-deleted)
    """
    permission_classes = [IsAdminOrReadOnly]
    serializer_class = ProductSerializer

    def get_queryset(self):
        return Product.objects.select_related('category').prefetch_related('variants')

    def patch(self, request, pk):
        serializer = ProductWriteSerializer(data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)
        product = services.update_product(pk, **serializer.validated_data)
        return Response(ProductSerializer(product).data)

    def destroy(self, request, *args, **kwargs):
        services.deactivate_product(self.kwargs['pk'])
        return Response(status=status.HTTP_204_NO_CONTENT)


class LowStockProductView(generics.ListAPIView):
    """
    GET: Active products at or below their low-stock threshold (staff only).

    Query Parameters:
        - threshold: Override the per-product threshold
    """
    permission_classes = [IsAdminUser]
    serializer_class = ProductSerializer

    def get_queryset(self):
        threshold = self.request.query_params.get('threshold')
        try:
            threshold = int(threshold) if threshold else None
        except ValueError:
            threshold = None
        return get_low_stock_products(threshold).prefetch_related('variants')
