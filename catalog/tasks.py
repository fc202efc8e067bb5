"""
Celery tasks for the catalog.
"""
import logging

from celery import shared_task

logger = logging.getLogger(__name__)


@shared_task
def report_low_stock(threshold=None):
    """Log active products at or below their low-stock threshold."""
    from catalog.inventory import get_low_stock_products

    products = list(get_low_stock_products(threshold))
    for product in products:
        logger.warning(
            f"Low stock: {product.sku} {product.name} has {product.stock_quantity} "
            f"(threshold {product.low_stock_threshold})"
        )

    return {'count': len(products), 'skus': [product.sku for product in products]}
