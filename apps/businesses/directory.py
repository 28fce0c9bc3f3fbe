"""
Read-only business/category lookups used by the voucher engine
"""

import logging
from typing import Optional

from django.core.exceptions import ValidationError as DjangoValidationError

from apps.vouchers.exceptions import ResourceNotFound
from .models import Business, Category

logger = logging.getLogger(__name__)


def get_business(business_id) -> Business:
    """Returns an active business or raises ResourceNotFound"""
    try:
        business = Business.objects.filter(id=business_id, is_active=True).first()
    except (DjangoValidationError, ValueError):
        business = None
    if business is None:
        raise ResourceNotFound('Business not found', detail=str(business_id))
    return business


def business_exists(business_id) -> bool:
    try:
        get_business(business_id)
    except ResourceNotFound:
        return False
    return True


def category_exists(category_id) -> bool:
    try:
        return Category.objects.filter(id=category_id, is_active=True).exists()
    except (DjangoValidationError, ValueError):
        return False


def is_business_owner(business_id, user_id) -> bool:
    """Checks that user_id owns the business"""
    try:
        return Business.objects.filter(id=business_id, owner_id=user_id).exists()
    except (DjangoValidationError, ValueError):
        return False


def get_business_name(business_id) -> Optional[str]:
    """
    Advisory lookup for display purposes.
    Any failure is reported as "unknown" (None) instead of propagating.
    """
    try:
        return get_business(business_id).name
    except ResourceNotFound:
        return None
    except Exception:
        logger.warning(f"Business lookup failed for {business_id}", exc_info=True)
        return None
