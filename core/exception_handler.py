"""
DRF exception handler that renders service-layer errors.
"""
import logging

from rest_framework.response import Response
from rest_framework.views import exception_handler

from .exceptions import ServiceError

logger = logging.getLogger(__name__)


def service_exception_handler(exc, context):
    """
    Render ServiceError subclasses as ``{'error': code, 'detail': message, ...}``.

    Anything else falls through to DRF's default handler.
    """
    if isinstance(exc, ServiceError):
        view = context.get('view')
        logger.warning(
            f"{exc.code} in {view.__class__.__name__ if view else 'unknown view'}: {exc.message}"
        )
        return Response(exc.as_dict(), status=exc.status_code)

    return exception_handler(exc, context)
