"""
Small helpers shared by the catalog, cart and order services.
"""
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

from django.utils.text import slugify

from .exceptions import ServiceValidationError

CENT = Decimal('0.01')


def to_money(value, field: str = 'amount') -> Decimal:
    """Coerce ``value`` to a Decimal rounded half-up to 2 places."""
    if isinstance(value, float):
        value = repr(value)
    try:
        return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError, ValueError):
        raise ServiceValidationError(f"{field} must be a number", field=field)


def require_positive_int(value, field: str = 'quantity') -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ServiceValidationError(f"{field} must be a positive integer", field=field)
    return value


def parse_int_param(value, field: str):
    """Query-string id to int; blank means no filter."""
    if value in (None, ''):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ServiceValidationError(f"{field} must be an integer", field=field)


def unique_slug(model, name: str, exclude_pk=None, field: str = 'slug') -> str:
    """
    Slugify ``name`` and append -1, -2, ... until no other row of ``model``
    uses it.
    """
    base = slugify(name) or model.__name__.lower()
    slug = base
    counter = 1
    while True:
        queryset = model.objects.filter(**{field: slug})
        if exclude_pk is not None:
            queryset = queryset.exclude(pk=exclude_pk)
        if not queryset.exists():
            return slug
        slug = f"{base}-{counter}"
        counter += 1
