"""
Redis-based rate limiting for cart and checkout endpoints.
Fixed window counter per client: INCR + EXPIRE on the first hit.
"""
import logging
from functools import wraps

import redis
from django.conf import settings
from rest_framework import status
from rest_framework.exceptions import Throttled
from rest_framework.response import Response

logger = logging.getLogger(__name__)

_redis_client = None
_redis_checked = False


def get_redis_client():
    """
    Return a connected Redis client, or None when rate limiting is disabled
    or Redis is unreachable. The connection is attempted once per process.
    """
    global _redis_client, _redis_checked
    if not getattr(settings, 'RATE_LIMIT_ENABLED', True):
        return None
    if not _redis_checked:
        _redis_checked = True
        try:
            client = redis.Redis.from_url(
                settings.REDIS_URL,
                decode_responses=True,
                socket_connect_timeout=5
            )
            client.ping()
            _redis_client = client
        except (redis.ConnectionError, redis.TimeoutError) as e:
            logger.warning(f"Redis connection failed: {e}. Rate limiting will be disabled.")
            _redis_client = None
    return _redis_client


def get_client_key(request):
    """Identify the caller: user id when authenticated, otherwise client IP."""
    user = getattr(request, 'user', None)
    if user is not None and user.is_authenticated:
        return f"user:{user.pk}"
    x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
    if x_forwarded_for:
        ip = x_forwarded_for.split(',')[0].strip()
    else:
        ip = request.META.get('REMOTE_ADDR', 'unknown')
    return f"ip:{ip}"


def _limit_exceeded_response(max_requests, window_seconds, ttl):
    return Response(
        {
            'error': 'RATE_LIMITED',
            'detail': f'Maximum {max_requests} requests per {window_seconds} seconds allowed.',
            'retry_after': ttl
        },
        status=status.HTTP_429_TOO_MANY_REQUESTS,
        headers={
            'X-RateLimit-Limit': str(max_requests),
            'X-RateLimit-Remaining': '0',
            'X-RateLimit-Reset': str(ttl),
            'Retry-After': str(ttl)
        }
    )


def _hit(client, key, window_seconds):
    current_count = client.incr(key)
    if current_count == 1:
        client.expire(key, window_seconds)
    return current_count, client.ttl(key)


def rate_limit(max_requests: int = 20, window_seconds: int = 60):
    """
    Rate limiting decorator for DRF view methods.

    Usage:
        @rate_limit(30, 60)  # 30 requests per minute
        def post(self, request):
            ...
    """
    def decorator(view_func):
        @wraps(view_func)
        def wrapper(self, request, *args, **kwargs):
            client = get_redis_client()
            if client is None:
                return view_func(self, request, *args, **kwargs)

            try:
                key = f"rate_limit:{view_func.__qualname__}:{get_client_key(request)}"
                current_count, ttl = _hit(client, key, window_seconds)
            except redis.RedisError as e:
                logger.error(f"Redis error in rate limiting: {e}")
                return view_func(self, request, *args, **kwargs)

            if current_count > max_requests:
                return _limit_exceeded_response(max_requests, window_seconds, ttl)

            response = view_func(self, request, *args, **kwargs)
            response['X-RateLimit-Limit'] = str(max_requests)
            response['X-RateLimit-Remaining'] = str(max(0, max_requests - current_count))
            response['X-RateLimit-Reset'] = str(ttl)
            return response

        return wrapper
    return decorator


class RateLimitMixin:
    """
    Mixin for DRF class-based views; limits every HTTP method of the view.

    The check runs after authentication so the limit is keyed per user.

    Usage:
        class CheckoutView(RateLimitMixin, APIView):
            rate_limit_max_requests = 10
            rate_limit_window_seconds = 60
    """
    rate_limit_max_requests = 20
    rate_limit_window_seconds = 60

    def initial(self, request, *args, **kwargs):
        super().initial(request, *args, **kwargs)
        self._rate_limit_state = None

        client = get_redis_client()
        if client is None:
            return

        try:
            key = f"rate_limit:{self.__class__.__name__}:{get_client_key(request)}"
            current_count, ttl = _hit(client, key, self.rate_limit_window_seconds)
        except redis.RedisError as e:
            logger.error(f"Redis error in rate limiting: {e}")
            return

        self._rate_limit_state = (current_count, ttl)
        if current_count > self.rate_limit_max_requests:
            raise Throttled(
                wait=ttl,
                detail=(
                    f'Maximum {self.rate_limit_max_requests} requests per '
                    f'{self.rate_limit_window_seconds} seconds allowed.'
                )
            )

    def finalize_response(self, request, response, *args, **kwargs):
        response = super().finalize_response(request, response, *args, **kwargs)
        state = getattr(self, '_rate_limit_state', None)
        if state is not None:
            current_count, ttl = state
            response['X-RateLimit-Limit'] = str(self.rate_limit_max_requests)
            response['X-RateLimit-Remaining'] = str(max(0, self.rate_limit_max_requests - current_count))
            response['X-RateLimit-Reset'] = str(ttl)
        return response
