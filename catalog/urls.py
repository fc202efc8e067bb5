"""
URL routing for catalog API endpoints.
"""
from django.urls import path
from . import views

app_name = 'catalog'

urlpatterns = [
    # Categories
    path('categories/', views.CategoryListCreateView.as_view(), name='category-list'),
    path('categories/tree/', views.CategoryTreeView.as_view(), name='category-tree'),
    path('categories/<int:pk>/', views.CategoryDetailView.as_view(), name='category-detail'),
    path('categories/<int:pk>/move/', views.CategoryMoveView.as_view(), name='category-move'),

    # Products
    path('products/', views.ProductListCreateView.as_view(), name='product-list'),
    path('products/low-stock/', views.LowStockProductView.as_view(), name='product-low-stock'),
    path('products/<int:pk>/', views.ProductDetailView.as_view(), name='product-detail'),
]
