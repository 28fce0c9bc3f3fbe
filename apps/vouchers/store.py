"""
Persistence primitives for vouchers, codes, claims and scans.

Checks that guard concurrent writes live inside the write itself: claims rely
on the (customer, voucher) unique constraint and redemptions use conditional
UPDATEs, so two racing requests can never both pass a stale check.
"""

import logging
from typing import Iterable, List, Optional

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import IntegrityError, transaction
from django.db.models import F, Q
from django.utils import timezone

from .codes import normalize_short_code
from .exceptions import BusinessRuleViolation, ValidationError
from .models import (
    ClaimStatus, CustomerVoucher, Voucher, VoucherCode, VoucherCodeType, VoucherScan, VoucherState,
)

logger = logging.getLogger(__name__)

EXPIRABLE_STATES = (VoucherState.PUBLISHED, VoucherState.CLAIMED)


def _live_vouchers():
    return Voucher.objects.filter(deleted_at__isnull=True).select_related('business', 'category')


# Reads

def get_voucher(voucher_id, include_deleted: bool = False) -> Optional[Voucher]:
    qs = Voucher.objects.select_related('business', 'category') if include_deleted else _live_vouchers()
    try:
        return qs.filter(id=voucher_id).first()
    except (DjangoValidationError, ValueError):
        return None


def _find_by_code(code: str, code_type) -> Optional[Voucher]:
    entry = (VoucherCode.objects
             .filter(code=code, type=code_type, is_active=True, voucher__deleted_at__isnull=True)
             .select_related('voucher', 'voucher__business', 'voucher__category')
             .first())
    return entry.voucher if entry else None


def find_voucher_by_qr_code(code: str) -> Optional[Voucher]:
    return _find_by_code(code, VoucherCodeType.QR)


def find_voucher_by_short_code(code: str) -> Optional[Voucher]:
    voucher = _find_by_code(normalize_short_code(code), VoucherCodeType.SHORT)
    if voucher is None:
        voucher = _live_vouchers().filter(qr_code=code).first()
    return voucher


def find_voucher_by_static_code(code: str) -> Optional[Voucher]:
    return _find_by_code(code.strip().upper(), VoucherCodeType.STATIC)


def find_voucher_by_code(code: str) -> Optional[Voucher]:
    """Tries qr, then short, then static codes"""
    if not code:
        return None
    for finder in (find_voucher_by_qr_code, find_voucher_by_short_code, find_voucher_by_static_code):
        voucher = finder(code)
        if voucher is not None:
            return voucher
    return None


def get_codes(voucher_id) -> List[str]:
    return list(VoucherCode.objects.filter(voucher_id=voucher_id).values_list('code', flat=True))


def find_claim(customer_id, voucher_id) -> Optional[CustomerVoucher]:
    try:
        return CustomerVoucher.objects.filter(customer_id=customer_id, voucher_id=voucher_id).first()
    except (DjangoValidationError, ValueError):
        return None


def list_claims_for_customer(customer_id, status: Optional[str] = None) -> List[CustomerVoucher]:
    qs = (CustomerVoucher.objects
          .filter(customer_id=customer_id, voucher__deleted_at__isnull=True)
          .select_related('voucher', 'voucher__business'))
    if status:
        qs = qs.filter(status=status)
    return list(qs)


def find_expired_voucher_ids(now=None) -> List:
    now = now or timezone.now()
    return list(_live_vouchers()
                .filter(state__in=EXPIRABLE_STATES, valid_until__lt=now)
                .values_list('id', flat=True))


def find_published_vouchers_for_businesses(business_ids: Iterable, now=None) -> List[Voucher]:
    now = now or timezone.now()
    return list(_live_vouchers()
                .filter(business_id__in=list(business_ids), state=VoucherState.PUBLISHED)
                .filter(Q(valid_until__isnull=True) | Q(valid_until__gte=now))
                .order_by('business__name', 'created_at'))


# Writes

@transaction.atomic
def create_voucher(fields: dict, codes: Iterable) -> Voucher:
    """Inserts the voucher and its codes together"""
    try:
        with transaction.atomic():
            voucher = Voucher.objects.create(**fields)
            for generated in codes:
                code = generated.code
                if generated.type == VoucherCodeType.SHORT:
                    code = normalize_short_code(code)
                VoucherCode.objects.create(
                    voucher=voucher,
                    code=code,
                    type=generated.type,
                    metadata=generated.metadata,
                )
    except IntegrityError as exc:
        logger.info(f"Voucher code collision on create: {exc}")
        raise ValidationError('Voucher code already in use')
    return voucher


def add_voucher_codes(voucher_id, codes: Iterable) -> List[VoucherCode]:
    """Extra lookup codes, e.g. the ones printed in a voucher book"""
    created = []
    for generated in codes:
        code = generated.code
        if generated.type == VoucherCodeType.SHORT:
            code = normalize_short_code(code)
        created.append(VoucherCode.objects.create(
            voucher_id=voucher_id,
            code=code,
            type=generated.type,
            metadata=generated.metadata,
        ))
    return created


def soft_delete_voucher(voucher_id) -> bool:
    now = timezone.now()
    rows = Voucher.objects.filter(id=voucher_id, deleted_at__isnull=True).update(deleted_at=now, updated_at=now)
    return rows == 1


def update_voucher_state(voucher_id, from_state: str, to_state: str) -> bool:
    """Moves the voucher only if it is still in from_state"""
    rows = (Voucher.objects
            .filter(id=voucher_id, state=from_state, deleted_at__isnull=True)
            .update(state=to_state, updated_at=timezone.now()))
    return rows == 1


@transaction.atomic
def insert_claim(customer_id, voucher_id, claimed_at=None) -> CustomerVoucher:
    """Insert-if-absent on (customer, voucher), then bumps claim_count"""
    try:
        with transaction.atomic():
            claim = CustomerVoucher.objects.create(
                customer_id=customer_id,
                voucher_id=voucher_id,
                status=ClaimStatus.CLAIMED,
                claimed_at=claimed_at or timezone.now(),
            )
    except IntegrityError:
        raise BusinessRuleViolation('Voucher already claimed')

    Voucher.objects.filter(id=voucher_id).update(claim_count=F('claim_count') + 1)
    return claim


@transaction.atomic
def redeem_claim(customer_id, voucher_id, redemption_code: str = '', now=None) -> CustomerVoucher:
    """
    Marks the claim redeemed and consumes one global redemption.

    Both updates are conditional and share one transaction: when either
    condition fails a BusinessRuleViolation is raised and nothing is written.
    """
    now = now or timezone.now()

    updated = (CustomerVoucher.objects
               .filter(customer_id=customer_id, voucher_id=voucher_id, status=ClaimStatus.CLAIMED)
               .update(status=ClaimStatus.REDEEMED, redeemed_at=now, redemption_code=redemption_code or ''))
    if updated != 1:
        claim = CustomerVoucher.objects.filter(customer_id=customer_id, voucher_id=voucher_id).first()
        if claim is None:
            raise BusinessRuleViolation('Voucher not claimed')
        if claim.status == ClaimStatus.REDEEMED:
            raise BusinessRuleViolation('Voucher already redeemed')
        raise BusinessRuleViolation(f"Claim is {claim.status}")

    counted = (Voucher.objects
               .filter(id=voucher_id)
               .filter(Q(max_redemptions__isnull=True) | Q(redemptions_count__lt=F('max_redemptions')))
               .update(redemptions_count=F('redemptions_count') + 1, updated_at=now))
    if counted != 1:
        raise BusinessRuleViolation('Maximum redemptions reached')

    return CustomerVoucher.objects.get(customer_id=customer_id, voucher_id=voucher_id)


def record_scan(voucher_id, **fields) -> VoucherScan:
    return VoucherScan.objects.create(voucher_id=voucher_id, **fields)


def increment_scan_count(voucher_id) -> None:
    Voucher.objects.filter(id=voucher_id).update(scan_count=F('scan_count') + 1)
