"""
Django settings for voucher_system project.

Values come from the environment so the same module serves local runs,
tests and deployments. Signing keys are provisioned by the deployment and
injected through VOUCHER_SIGNING_PRIVATE_KEY / VOUCHER_SIGNING_PUBLIC_KEY.
"""

import os
from pathlib import Path

from celery.schedules import crontab

BASE_DIR = Path(__file__).resolve().parent.parent


def env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {'1', 'true', 'yes', 'on'}


def env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value not in (None, '') else default


SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'dev-insecure-voucher-engine-key')
DEBUG = env_bool('DJANGO_DEBUG', False)
ALLOWED_HOSTS = [h for h in os.environ.get('DJANGO_ALLOWED_HOSTS', 'localhost').split(',') if h]

INSTALLED_APPS = [
    'django.contrib.contenttypes',
    'apps.businesses',
    'apps.vouchers',
    'apps.books',
]

if os.environ.get('POSTGRES_DB'):
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.postgresql',
            'NAME': os.environ['POSTGRES_DB'],
            'USER': os.environ.get('POSTGRES_USER', 'postgres'),
            'PASSWORD': os.environ.get('POSTGRES_PASSWORD', ''),
            'HOST': os.environ.get('POSTGRES_HOST', 'localhost'),
            'PORT': os.environ.get('POSTGRES_PORT', '5432'),
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': BASE_DIR / 'db.sqlite3',
        }
    }

REDIS_URL = os.environ.get('REDIS_URL', '')

if REDIS_URL:
    CACHES = {
        'default': {
            'BACKEND': 'django.core.cache.backends.redis.RedisCache',
            'LOCATION': REDIS_URL,
        }
    }
else:
    CACHES = {
        'default': {
            'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
            'LOCATION': 'voucher-engine',
        }
    }

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# generated voucher book PDFs
MEDIA_ROOT = os.environ.get('DJANGO_MEDIA_ROOT', str(BASE_DIR / 'media'))

LANGUAGE_CODE = 'en'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

# Celery
CELERY_BROKER_URL = os.environ.get('CELERY_BROKER_URL', REDIS_URL or 'redis://localhost:6379/0')
CELERY_RESULT_BACKEND = os.environ.get('CELERY_RESULT_BACKEND', CELERY_BROKER_URL)
CELERY_TASK_ALWAYS_EAGER = env_bool('CELERY_TASK_ALWAYS_EAGER', False)
CELERY_TIMEZONE = TIME_ZONE
CELERY_BEAT_SCHEDULE = {
    'expire-vouchers-hourly': {
        'task': 'apps.vouchers.tasks.expire_vouchers_task',
        'schedule': crontab(minute=5),
    },
}

# Voucher engine
VOUCHER_SIGNING_PRIVATE_KEY = os.environ.get('VOUCHER_SIGNING_PRIVATE_KEY', '')
VOUCHER_SIGNING_PUBLIC_KEY = os.environ.get('VOUCHER_SIGNING_PUBLIC_KEY', '')
VOUCHER_SIGNING_KEY_ID = os.environ.get('VOUCHER_SIGNING_KEY_ID', 'voucher-security-key')
VOUCHER_TOKEN_TTL_SECONDS = env_int('VOUCHER_TOKEN_TTL_SECONDS', 365 * 24 * 3600)
VOUCHER_TOKEN_WORKERS = env_int('VOUCHER_TOKEN_WORKERS', 8)
VOUCHER_SHORT_CODE_LENGTH = env_int('VOUCHER_SHORT_CODE_LENGTH', 8)
VOUCHER_BATCH_PREFIX = os.environ.get('VOUCHER_BATCH_PREFIX', 'VCH')
VOUCHER_CACHE_TTL = env_int('VOUCHER_CACHE_TTL', 300)
VOUCHER_DEFAULT_LANGUAGE = os.environ.get('VOUCHER_DEFAULT_LANGUAGE', 'en')
VOUCHER_BOOK_DEFAULT_PAGES = env_int('VOUCHER_BOOK_DEFAULT_PAGES', 24)
VOUCHER_BOOK_VOUCHERS_PER_PAGE = env_int('VOUCHER_BOOK_VOUCHERS_PER_PAGE', 2)

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'simple': {
            'format': '%(asctime)s %(levelname)s %(name)s: %(message)s',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'simple',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'WARNING',
    },
    'loggers': {
        'apps': {
            'handlers': ['console'],
            'level': os.environ.get('VOUCHER_LOG_LEVEL', 'INFO'),
            'propagate': False,
        },
    },
}
