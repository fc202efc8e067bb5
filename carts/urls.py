"""
URL routing for cart API endpoints.
"""
from django.urls import path
from . import views

app_name = 'carts'

urlpatterns = [
    path('cart/', views.CartView.as_view(), name='cart'),
    path('cart/items/', views.CartItemListView.as_view(), name='cart-items'),
    path('cart/items/<int:product_id>/', views.CartItemDetailView.as_view(), name='cart-item-detail'),
    path('cart/merge/', views.CartMergeView.as_view(), name='cart-merge'),
    path('cart/validate/', views.CartValidateView.as_view(), name='cart-validate'),
]
