"""
Read-through cache for vouchers.

The cache is disposable: every read or write failure degrades to a store read
and is only logged. List entries are namespaced by a generation number that is
bumped on invalidation, so backends without pattern deletes still drop them.
"""

import hashlib
import logging

from django.conf import settings
from django.core.cache import cache

logger = logging.getLogger(__name__)

LIST_GENERATION_KEY = 'voucher:list:generation'


def voucher_key(voucher_id) -> str:
    return f"voucher:{voucher_id}"


def code_key(code: str) -> str:
    digest = hashlib.sha256(code.encode('utf-8')).hexdigest()
    return f"voucher:code:{digest}"


def _list_generation() -> int:
    return cache.get(LIST_GENERATION_KEY) or 0


def list_key(name: str) -> str:
    return f"voucher:list:{_list_generation()}:{name}"


def cache_get(key: str):
    try:
        return cache.get(key)
    except Exception:
        logger.warning(f"Cache read failed for {key}", exc_info=True)
        return None


def cache_set(key: str, value, timeout=None):
    try:
        cache.set(key, value, timeout or settings.VOUCHER_CACHE_TTL)
    except Exception:
        logger.warning(f"Cache write failed for {key}", exc_info=True)


def get_list(name: str):
    try:
        return cache.get(list_key(name))
    except Exception:
        logger.warning(f"Cache read failed for list {name}", exc_info=True)
        return None


def set_list(name: str, value):
    try:
        cache.set(list_key(name), value, settings.VOUCHER_CACHE_TTL)
    except Exception:
        logger.warning(f"Cache write failed for list {name}", exc_info=True)


def invalidate_voucher(voucher_id, codes=()):
    """Drops the voucher entry, its code lookups and every list entry"""
    keys = [voucher_key(voucher_id)] + [code_key(code) for code in codes if code]
    try:
        cache.delete_many(keys)
    except Exception:
        logger.warning(f"Failed to invalidate cache for voucher {voucher_id}", exc_info=True)

    invalidate_lists()


def invalidate_lists():
    try:
        delete_pattern = getattr(cache, 'delete_pattern', None)
        if delete_pattern is not None:
            delete_pattern('voucher:list:*')
        try:
            cache.incr(LIST_GENERATION_KEY)
        except ValueError:
            cache.set(LIST_GENERATION_KEY, 1, None)
    except Exception:
        logger.warning("Failed to invalidate voucher list cache", exc_info=True)
