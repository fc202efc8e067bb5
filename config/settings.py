"""
Django settings for the Storefront order & inventory service.

Values are read from environment variables with development defaults.
"""
import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def env_bool(name: str, default: bool = False) -> bool:
    return os.environ.get(name, str(default)).strip().lower() in ('1', 'true', 'yes', 'on')


SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'django-insecure-storefront-dev-key')
DEBUG = env_bool('DJANGO_DEBUG', True)
ALLOWED_HOSTS = [h for h in os.environ.get('DJANGO_ALLOWED_HOSTS', 'localhost,127.0.0.1').split(',') if h]

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'rest_framework',
    'core',
    'catalog',
    'carts',
    'orders',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'config.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'config.wsgi.application'

# =============================================================================
# Database
# =============================================================================

DATABASE_ENGINE = os.environ.get('DATABASE_ENGINE', 'django.db.backends.sqlite3')

if DATABASE_ENGINE.endswith('sqlite3'):
    DATABASES = {
        'default': {
            'ENGINE': DATABASE_ENGINE,
            'NAME': os.environ.get('DATABASE_NAME', str(BASE_DIR / 'db.sqlite3')),
            # Writers queue on the file lock instead of failing fast
            'OPTIONS': {'timeout': 20, 'transaction_mode': 'IMMEDIATE'},
            # File-backed so threaded tests share one database
            'TEST': {'NAME': str(BASE_DIR / 'test_db.sqlite3')},
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': DATABASE_ENGINE,
            'NAME': os.environ.get('DATABASE_NAME', 'storefront'),
            'USER': os.environ.get('DATABASE_USER', 'storefront'),
            'PASSWORD': os.environ.get('DATABASE_PASSWORD', ''),
            'HOST': os.environ.get('DATABASE_HOST', 'localhost'),
            'PORT': os.environ.get('DATABASE_PORT', '5432'),
            'ATOMIC_REQUESTS': False,
        }
    }

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

AUTH_PASSWORD_VALIDATORS = [
    {'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator'},
    {'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator'},
]

LANGUAGE_CODE = 'en-us'
TIME_ZONE = os.environ.get('TIME_ZONE', 'UTC')
USE_I18N = True
USE_TZ = True

STATIC_URL = 'static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'

# =============================================================================
# Django REST Framework
# =============================================================================

REST_FRAMEWORK = {
    'DEFAULT_AUTHENTICATION_CLASSES': [
        'rest_framework.authentication.SessionAuthentication',
        'rest_framework.authentication.BasicAuthentication',
    ],
    'DEFAULT_PERMISSION_CLASSES': [
        'rest_framework.permissions.IsAuthenticatedOrReadOnly',
    ],
    'DEFAULT_PAGINATION_CLASS': 'rest_framework.pagination.PageNumberPagination',
    'PAGE_SIZE': 20,
    'EXCEPTION_HANDLER': 'core.exception_handler.service_exception_handler',
}

# =============================================================================
# Redis / rate limiting
# =============================================================================

REDIS_URL = os.environ.get('REDIS_URL', 'redis://localhost:6379/0')
RATE_LIMIT_ENABLED = env_bool('RATE_LIMIT_ENABLED', False)

# =============================================================================
# Celery
# =============================================================================

CELERY_BROKER_URL = os.environ.get('CELERY_BROKER_URL', REDIS_URL)
CELERY_RESULT_BACKEND = os.environ.get('CELERY_RESULT_BACKEND', REDIS_URL)
CELERY_TASK_ALWAYS_EAGER = env_bool('CELERY_TASK_ALWAYS_EAGER', False)
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TASK_SERIALIZER = 'json'
CELERY_RESULT_SERIALIZER = 'json'
CELERY_TIMEZONE = TIME_ZONE
CELERY_BEAT_SCHEDULE = {
    'cancel-stale-pending-orders': {
        'task': 'orders.tasks.cancel_stale_pending_orders',
        'schedule': 300.0,
    },
    'daily-order-report': {
        'task': 'orders.tasks.generate_daily_order_report',
        'schedule': 86400.0,
    },
    'low-stock-report': {
        'task': 'catalog.tasks.report_low_stock',
        'schedule': 3600.0,
    },
}

# =============================================================================
# Storefront business rules
# =============================================================================

ORDER_NUMBER_PREFIX = os.environ.get('ORDER_NUMBER_PREFIX', 'ORD')
ORDER_SEQUENCE_LENGTH = int(os.environ.get('ORDER_SEQUENCE_LENGTH', '5'))
ORDER_MAX_DAILY_ORDERS = int(os.environ.get('ORDER_MAX_DAILY_ORDERS', '99999'))
ORDER_GENERATION_MAX_RETRIES = int(os.environ.get('ORDER_GENERATION_MAX_RETRIES', '3'))
ORDER_GENERATION_BACKOFF_MS = int(os.environ.get('ORDER_GENERATION_BACKOFF_MS', '100'))

ORDER_TAX_RATE = os.environ.get('ORDER_TAX_RATE', '0.10')
ORDER_TOTAL_TOLERANCE = os.environ.get('ORDER_TOTAL_TOLERANCE', '0.01')
# (minimum subtotal, shipping cost), checked top-down
ORDER_SHIPPING_TIERS = [
    ('100.00', '0.00'),
    ('50.00', '5.00'),
    ('0.00', '10.00'),
]
PENDING_ORDER_TIMEOUT_MINUTES = int(os.environ.get('PENDING_ORDER_TIMEOUT_MINUTES', '30'))

CATEGORY_MAX_DEPTH = int(os.environ.get('CATEGORY_MAX_DEPTH', '5'))
CART_MAX_ITEM_QUANTITY = int(os.environ.get('CART_MAX_ITEM_QUANTITY', '99'))

# =============================================================================
# Logging
# =============================================================================

LOG_LEVEL = os.environ.get('DJANGO_LOG_LEVEL', 'INFO')

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{asctime} {levelname} {name} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'WARNING',
    },
    'loggers': {
        'django': {
            'handlers': ['console'],
            'level': os.environ.get('DJANGO_LOG_LEVEL', 'INFO'),
            'propagate': False,
        },
        'catalog': {'handlers': ['console'], 'level': LOG_LEVEL, 'propagate': False},
        'carts': {'handlers': ['console'], 'level': LOG_LEVEL, 'propagate': False},
        'orders': {'handlers': ['console'], 'level': LOG_LEVEL, 'propagate': False},
        'core': {'handlers': ['console'], 'level': LOG_LEVEL, 'propagate': False},
    },
}
