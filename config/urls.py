"""
URL configuration for the Storefront order & inventory service.
"""
from django.contrib import admin
from django.urls import path, include
from django.http import JsonResponse


def health_check(request):
    """Health check endpoint for container orchestration."""
    return JsonResponse({'status': 'healthy', 'service': 'storefront-api'})


urlpatterns = [
    path('admin/', admin.site.urls),
    path('health/', health_check, name='health-check'),
    path('api/', include('catalog.urls')),
    path('api/', include('carts.urls')),
    path('api/', include('orders.urls')),
]
