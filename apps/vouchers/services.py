"""
Voucher lifecycle operations: creation, state transitions, claims,
redemptions, scans, validation and batch processing.
"""

import logging
import secrets
import uuid
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from django.conf import settings
from django.db import models, transaction
from django.utils import timezone

from apps.businesses import directory
from . import cache as voucher_cache
from . import lifecycle, store
from .effects import run_non_critical
from .exceptions import (
    BusinessRuleViolation, ResourceNotFound, Unauthorized, ValidationError, VoucherError,
)
from .localization import localize
from .models import (
    ClaimStatus, CustomerVoucher, DiscountType, ScanSource, ScanType, Voucher, VoucherCodeType, VoucherState,
)
from .tokens import TokenService, TokenVerification, get_token_service

logger = logging.getLogger(__name__)


class BatchOperation(models.TextChoices):
    EXPIRE = 'expire', 'Expire'
    VALIDATE = 'validate', 'Validate'
    ACTIVATE = 'activate', 'Activate'


@dataclass
class ClaimResult:
    claim_id: uuid.UUID
    claimed_at: object
    status: str
    voucher: Voucher


@dataclass
class RedeemResult:
    voucher_id: uuid.UUID
    claim_id: uuid.UUID
    redeemed_at: object
    redemption_code: str
    redemptions_count: int
    discount_applied: Decimal
    voucher: Voucher
    message: str = 'Voucher redeemed successfully'


@dataclass
class ScanResult:
    scan_id: uuid.UUID
    voucher: Voucher
    can_claim: bool
    already_claimed: bool


@dataclass
class ValidationResult:
    is_valid: bool
    reason: str = ''
    voucher: Optional[Voucher] = None


@dataclass
class ExistsResult:
    exists: bool
    voucher_id: Optional[uuid.UUID] = None


@dataclass
class TokenResolution:
    verification: TokenVerification
    voucher: Optional[Voucher] = None

    @property
    def valid(self) -> bool:
        return self.verification.valid


@dataclass
class BatchItemResult:
    voucher_id: str
    success: bool
    error: str = ''


@dataclass
class BatchResult:
    processed_count: int = 0
    success_count: int = 0
    failed_count: int = 0
    results: List[BatchItemResult] = field(default_factory=list)


def _parse_id(value, what: str = 'voucher') -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError, AttributeError):
        raise ValidationError(f"Invalid {what} ID format", detail=repr(value))


def _load_voucher(voucher_id) -> Voucher:
    """Fresh store read, used for every business decision"""
    voucher = store.get_voucher(_parse_id(voucher_id))
    if voucher is None:
        raise ResourceNotFound('Voucher not found', detail=str(voucher_id))
    return voucher


def _invalidate(voucher: Voucher):
    """Drops cached copies once the surrounding transaction commits"""
    def _drop():
        codes = store.get_codes(voucher.id) + [voucher.qr_code]
        voucher_cache.invalidate_voucher(voucher.id, codes)

    transaction.on_commit(lambda: run_non_critical(f"cache invalidation for voucher {voucher.id}", _drop))


def _translations(value, field_name: str, required: bool = False) -> dict:
    if value is None or value == '':
        if required:
            raise ValidationError(f"Voucher {field_name} is required")
        return {}
    if isinstance(value, str):
        return {settings.VOUCHER_DEFAULT_LANGUAGE: value}
    if isinstance(value, dict) and all(isinstance(v, str) for v in value.values()):
        if required and not any(value.values()):
            raise ValidationError(f"Voucher {field_name} is required")
        return dict(value)
    raise ValidationError(f"Voucher {field_name} must be a string or a language map")


def _check_discount(discount_type, discount_value) -> Decimal:
    if discount_type not in DiscountType.values:
        raise ValidationError('Unknown discount type', detail=str(discount_type))
    try:
        value = Decimal(str(discount_value))
    except (InvalidOperation, ValueError):
        raise ValidationError('Discount value must be a number', detail=str(discount_value))
    if value <= 0:
        raise ValidationError('Discount value must be positive')
    if discount_type == DiscountType.PERCENTAGE and value > 100:
        raise ValidationError('Percentage discount cannot exceed 100')
    return value


# Creation and reads

def create_voucher(*, business_id, title, discount_type: str, discount_value, description=None, terms=None,
                   currency: str = 'USD', category_id=None, valid_from=None, valid_until=None,
                   max_redemptions: Optional[int] = None, max_redemptions_per_user: int = 1,
                   static_code: Optional[str] = None, metadata: Optional[dict] = None,
                   token_service: Optional[TokenService] = None) -> Voucher:
    """
    Creates a draft voucher together with its signed QR code and short code.

    Raises:
        ResourceNotFound: unknown business or category
        ValidationError: malformed discount, window, limits or static code
    """
    business = directory.get_business(_parse_id(business_id, 'business'))
    if category_id and not directory.category_exists(category_id):
        raise ResourceNotFound('Category not found', detail=str(category_id))

    value = _check_discount(discount_type, discount_value)
    if valid_from and valid_until and valid_until <= valid_from:
        raise ValidationError('Voucher validity window ends before it starts')
    if max_redemptions is not None and max_redemptions < 1:
        raise ValidationError('Maximum redemptions must be at least 1')
    if max_redemptions_per_user < 1:
        raise ValidationError('Maximum redemptions per user must be at least 1')

    voucher_id = uuid.uuid4()
    codes = (token_service or get_token_service()).generate_voucher_codes(
        voucher_id, static_code=static_code.strip().upper() if static_code else None,
    )
    qr_code = next(c.code for c in codes if c.type == VoucherCodeType.QR)

    voucher = store.create_voucher({
        'id': voucher_id,
        'business': business,
        'category_id': category_id or None,
        'state': VoucherState.DRAFT,
        'title': _translations(title, 'title', required=True),
        'description': _translations(description, 'description'),
        'terms': _translations(terms, 'terms'),
        'discount_type': discount_type,
        'discount_value': value,
        'currency': (currency or 'USD').upper(),
        'valid_from': valid_from,
        'valid_until': valid_until,
        'max_redemptions': max_redemptions,
        'max_redemptions_per_user': max_redemptions_per_user,
        'qr_code': qr_code,
        'metadata': metadata or {},
    }, codes)

    transaction.on_commit(lambda: run_non_critical('voucher list invalidation', voucher_cache.invalidate_lists))
    logger.info(f"Created voucher {voucher.id} for business {business.id}")
    return voucher


def get_voucher(voucher_id, language: Optional[str] = None) -> Voucher:
    """Read-through cached lookup by id"""
    voucher_id = _parse_id(voucher_id)
    key = voucher_cache.voucher_key(voucher_id)
    voucher = voucher_cache.cache_get(key)
    if voucher is None:
        voucher = _load_voucher(voucher_id)
        voucher_cache.cache_set(key, voucher)
    return localize(voucher, language)


def get_voucher_by_code(code: str, language: Optional[str] = None) -> Voucher:
    """Resolves a qr, short or static code"""
    if not code:
        raise ValidationError('Voucher code is required')

    key = voucher_cache.code_key(code)
    voucher_id = voucher_cache.cache_get(key)
    if voucher_id is not None:
        try:
            return get_voucher(voucher_id, language)
        except ResourceNotFound:
            voucher_cache.cache_set(key, None)

    voucher = store.find_voucher_by_code(code)
    if voucher is None:
        raise ResourceNotFound('Voucher not found', detail='code')
    voucher_cache.cache_set(key, voucher.id)
    voucher_cache.cache_set(voucher_cache.voucher_key(voucher.id), voucher)
    return localize(voucher, language)


def resolve_token(token: str, language: Optional[str] = None,
                  token_service: Optional[TokenService] = None) -> TokenResolution:
    """Verifies a scanned QR payload and loads the voucher it names"""
    verification = (token_service or get_token_service()).verify_token(token)
    if not verification.valid:
        return TokenResolution(verification=verification)
    return TokenResolution(verification=verification, voucher=get_voucher(verification.voucher_id, language))


def check_voucher_exists(voucher_id=None, code: Optional[str] = None) -> ExistsResult:
    voucher = None
    if voucher_id:
        voucher = store.get_voucher(voucher_id)
    elif code:
        voucher = store.find_voucher_by_code(code)
    return ExistsResult(exists=voucher is not None, voucher_id=voucher.id if voucher else None)


def list_customer_vouchers(customer_id, status: Optional[str] = None,
                           language: Optional[str] = None) -> List[CustomerVoucher]:
    """Wallet view: the customer's claims with their vouchers"""
    customer_id = _parse_id(customer_id, 'customer')
    if status and status not in ClaimStatus.values:
        raise ValidationError('Unknown claim status', detail=str(status))

    list_name = f"customer:{customer_id}:{status or 'all'}"
    claims = voucher_cache.get_list(list_name)
    if claims is None:
        claims = store.list_claims_for_customer(customer_id, status)
        voucher_cache.set_list(list_name, claims)

    if language:
        for claim in claims:
            claim.voucher = localize(claim.voucher, language)
    return claims


# State transitions

def _apply_state(voucher: Voucher, target: str, reason: str = '') -> Voucher:
    if not store.update_voucher_state(voucher.id, voucher.state, target):
        raise BusinessRuleViolation('Voucher was modified concurrently, retry the operation',
                                    detail=str(voucher.id))
    logger.info(f"Voucher {voucher.id}: {voucher.state} -> {target}" + (f" ({reason})" if reason else ''))
    _invalidate(voucher)
    voucher.state = target
    return voucher


def transition_voucher(voucher_id, target: str, reason: str = '') -> Voucher:
    voucher = _load_voucher(voucher_id)
    target = lifecycle.transition(voucher.state, target)
    if target == VoucherState.PUBLISHED:
        lifecycle.check_publish_window(voucher)
    return _apply_state(voucher, target, reason)


def publish_voucher(voucher_id) -> Voucher:
    return transition_voucher(voucher_id, VoucherState.PUBLISHED)


def expire_voucher(voucher_id, reason: str = '') -> Voucher:
    return transition_voucher(voucher_id, VoucherState.EXPIRED, reason)


def suspend_voucher(voucher_id, reason: str = '') -> Voucher:
    """Administrative hold on a live voucher"""
    voucher = _load_voucher(voucher_id)
    if voucher.state not in lifecycle.SUSPENDABLE_STATES:
        raise BusinessRuleViolation(f"Cannot suspend a voucher that is {voucher.state}")
    return _apply_state(voucher, VoucherState.SUSPENDED, reason)


def resume_voucher(voucher_id) -> Voucher:
    voucher = _load_voucher(voucher_id)
    if voucher.state != VoucherState.SUSPENDED:
        raise BusinessRuleViolation(f"Cannot resume a voucher that is {voucher.state}")
    lifecycle.check_publish_window(voucher)
    return _apply_state(voucher, VoucherState.PUBLISHED, 'resumed')


def delete_voucher(voucher_id) -> None:
    """Soft delete. Live vouchers must be expired instead."""
    voucher = _load_voucher(voucher_id)
    if voucher.state in (VoucherState.PUBLISHED, VoucherState.CLAIMED):
        raise BusinessRuleViolation(f"Cannot delete a {voucher.state} voucher, expire it instead")
    if not store.soft_delete_voucher(voucher.id):
        raise ResourceNotFound('Voucher not found', detail=str(voucher_id))
    logger.info(f"Voucher {voucher.id} deleted")
    _invalidate(voucher)


# Claims and redemptions

def _check_claimable(voucher: Voucher, now=None):
    now = now or timezone.now()
    if voucher.state not in lifecycle.CLAIMABLE_STATES:
        raise BusinessRuleViolation(f"Voucher is {voucher.state}")
    if voucher.is_not_yet_valid(now):
        raise BusinessRuleViolation('Voucher not yet valid')
    if voucher.is_expired(now):
        raise BusinessRuleViolation('Voucher has expired')


def claim_voucher(voucher_id, user_id, language: Optional[str] = None) -> ClaimResult:
    """
    Adds the voucher to the user's wallet.

    A second claim for the same pair is rejected by the store's unique
    constraint, which also settles concurrent duplicates. The global
    redemption counter is not consulted here.
    """
    if not user_id:
        raise ValidationError('User ID is required to claim a voucher')
    user_id = _parse_id(user_id, 'user')

    voucher = _load_voucher(voucher_id)
    _check_claimable(voucher)

    claim = store.insert_claim(user_id, voucher.id)
    logger.info(f"User {user_id} claimed voucher {voucher.id}")
    _invalidate(voucher)

    return ClaimResult(
        claim_id=claim.id,
        claimed_at=claim.claimed_at,
        status=claim.status,
        voucher=localize(voucher, language),
    )


def redeem_voucher(voucher_id, user_id, redemption_code: str = '',
                   language: Optional[str] = None) -> RedeemResult:
    """
    Consumes the user's claim.

    The claim update and the global counter increment are conditional and
    committed together; a losing concurrent attempt changes nothing.
    """
    if not user_id:
        raise ValidationError('User ID is required for redemption')
    user_id = _parse_id(user_id, 'user')

    voucher = _load_voucher(voucher_id)
    if voucher.state in (VoucherState.EXPIRED, VoucherState.SUSPENDED):
        raise BusinessRuleViolation(f"Voucher is {voucher.state}")
    if voucher.is_expired():
        raise BusinessRuleViolation('Voucher has expired')

    claim = store.find_claim(user_id, voucher.id)
    if claim is None:
        raise BusinessRuleViolation('Voucher not claimed', detail='User must claim voucher before redeeming')
    if claim.status == ClaimStatus.REDEEMED:
        raise BusinessRuleViolation('Voucher already redeemed')
    if not voucher.has_redemption_capacity():
        raise BusinessRuleViolation('Maximum redemptions reached')

    redemption_code = redemption_code or secrets.token_hex(4).upper()
    claim = store.redeem_claim(user_id, voucher.id, redemption_code)

    run_non_critical(
        f"redemption audit scan for voucher {voucher.id}",
        store.record_scan,
        voucher.id,
        user_id=user_id,
        scan_type=ScanType.BUSINESS,
        scan_source=ScanSource.SHARE,
        metadata={'event': 'redemption', 'claim_id': str(claim.id), 'redemption_code': redemption_code},
    )
    _invalidate(voucher)

    voucher = store.get_voucher(voucher.id) or voucher
    logger.info(f"User {user_id} redeemed voucher {voucher.id} "
                f"({voucher.redemptions_count}/{voucher.max_redemptions or 'unlimited'})")

    return RedeemResult(
        voucher_id=voucher.id,
        claim_id=claim.id,
        redeemed_at=claim.redeemed_at,
        redemption_code=claim.redemption_code,
        redemptions_count=voucher.redemptions_count,
        discount_applied=voucher.discount_value,
        voucher=localize(voucher, language),
    )


# Scans and validation

def scan_voucher(voucher_id, user_id=None, scan_source: Optional[str] = None, scan_type: Optional[str] = None,
                 business_id=None, device_info: Optional[dict] = None, location: Optional[dict] = None,
                 user_agent: str = '', metadata: Optional[dict] = None,
                 language: Optional[str] = None) -> ScanResult:
    """
    Records a scan and reports whether the user could claim the voucher.

    Raises:
        Unauthorized: business_id given and it does not own the voucher
    """
    voucher = _load_voucher(voucher_id)
    if business_id and str(voucher.business_id) != str(business_id):
        raise Unauthorized('Business does not own this voucher')

    scan_source = scan_source or ScanSource.CAMERA
    scan_type = scan_type or (ScanType.BUSINESS if business_id else ScanType.CUSTOMER)
    if scan_source not in ScanSource.values:
        raise ValidationError('Unknown scan source', detail=str(scan_source))
    if scan_type not in ScanType.values:
        raise ValidationError('Unknown scan type', detail=str(scan_type))

    user_uuid = _parse_id(user_id, 'user') if user_id else None
    already_claimed = False
    can_claim = False
    if user_uuid:
        already_claimed = store.find_claim(user_uuid, voucher.id) is not None
        can_claim = (
            voucher.state == VoucherState.PUBLISHED
            and not voucher.is_not_yet_valid()
            and not voucher.is_expired()
            and voucher.has_redemption_capacity()
            and not already_claimed
        )

    scan = store.record_scan(
        voucher.id,
        id=uuid.uuid4(),
        user_id=user_uuid,
        business_id=_parse_id(business_id, 'business') if business_id else None,
        scan_type=scan_type,
        scan_source=scan_source,
        device_info=device_info or {},
        location=location or {},
        user_agent=(user_agent or '')[:512],
        metadata=metadata or {},
    )
    run_non_critical(f"scan count for voucher {voucher.id}", store.increment_scan_count, voucher.id)
    _invalidate(voucher)

    logger.info(f"Voucher {voucher.id} scanned ({scan_type}/{scan_source}) scan={scan.id}")
    return ScanResult(
        scan_id=scan.id,
        voucher=localize(voucher, language),
        can_claim=can_claim,
        already_claimed=already_claimed,
    )


def validate_voucher(voucher_id, check_state: bool = True, check_expiry: bool = True,
                     check_redemption_limit: bool = True, user_id=None) -> ValidationResult:
    """Runs the requested checks in order and stops at the first failure"""
    try:
        voucher = _load_voucher(voucher_id)
    except (ResourceNotFound, ValidationError):
        return ValidationResult(is_valid=False, reason='Voucher not found')

    if check_state and voucher.state != VoucherState.PUBLISHED:
        return ValidationResult(False, f"Voucher is {voucher.state}", voucher)

    if check_expiry:
        now = timezone.now()
        if voucher.is_not_yet_valid(now):
            return ValidationResult(False, 'Voucher not yet valid', voucher)
        if voucher.is_expired(now):
            return ValidationResult(False, 'Voucher has expired', voucher)

    if check_redemption_limit:
        if not voucher.has_redemption_capacity():
            return ValidationResult(False, 'Maximum redemptions reached', voucher)
        if user_id:
            claim = store.find_claim(user_id, voucher.id)
            # one claim row per (user, voucher): a user holds at most one redemption
            used = 1 if claim and (claim.status == ClaimStatus.REDEEMED or claim.redemption_code) else 0
            if used >= voucher.max_redemptions_per_user:
                return ValidationResult(False, 'User redemption limit reached', voucher)

    return ValidationResult(True, '', voucher)


# Batch work

def _process_one(voucher_id, operation: str, reason: str):
    if operation == BatchOperation.EXPIRE:
        expire_voucher(voucher_id, reason or 'Batch expiration')
    elif operation == BatchOperation.ACTIVATE:
        transition_voucher(voucher_id, VoucherState.PUBLISHED, reason or 'Batch activation')
    elif operation == BatchOperation.VALIDATE:
        result = validate_voucher(voucher_id)
        if not result.is_valid:
            raise BusinessRuleViolation(result.reason or 'Validation failed')


def batch_process(voucher_ids, operation: str, context: Optional[dict] = None) -> BatchResult:
    """
    Applies one operation to many vouchers.

    Every id is processed on its own; failures are reported per item and do
    not stop the batch.
    """
    if operation not in BatchOperation.values:
        raise ValidationError('Unknown batch operation', detail=str(operation))
    reason = (context or {}).get('reason', '')

    result = BatchResult()
    for voucher_id in voucher_ids:
        try:
            with transaction.atomic():
                _process_one(voucher_id, operation, reason)
        except VoucherError as exc:
            logger.warning(f"Batch {operation} failed for voucher {voucher_id}: {exc}")
            result.results.append(BatchItemResult(str(voucher_id), False, exc.reason))
            result.failed_count += 1
        except Exception as exc:
            logger.exception(f"Batch {operation} crashed for voucher {voucher_id}")
            result.results.append(BatchItemResult(str(voucher_id), False, str(exc) or exc.__class__.__name__))
            result.failed_count += 1
        else:
            result.results.append(BatchItemResult(str(voucher_id), True))
            result.success_count += 1
        result.processed_count += 1

    logger.info(f"Batch {operation}: {result.success_count}/{result.processed_count} succeeded")
    return result


def cleanup_expired_vouchers(now=None) -> BatchResult:
    """Expires live vouchers whose validity window has passed"""
    voucher_ids = store.find_expired_voucher_ids(now)
    if not voucher_ids:
        return BatchResult()
    return batch_process(voucher_ids, BatchOperation.EXPIRE, {'reason': 'Validity window elapsed'})
