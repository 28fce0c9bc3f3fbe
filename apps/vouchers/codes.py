"""
Human facing code generation: short codes, batch codes, check digits.

All randomness comes from the ``secrets`` module.
"""

import re
import secrets
from typing import Optional

from django.conf import settings
from django.utils import timezone

from .exceptions import ValidationError
from .models import VoucherCodeType

# no 0/O, 1/I
SAFE_CHARS = 'ABCDEFGHJKLMNPQRSTUVWXYZ23456789'

STATIC_CODE_RE = re.compile(r'^[A-Z0-9]{4,20}$')
BATCH_CODE_RE = re.compile(r'^[A-Z]{2,10}-\d{4}-\d{2}-[' + SAFE_CHARS + r']{2,8}$')


def _random_chars(length: int) -> str:
    return ''.join(secrets.choice(SAFE_CHARS) for _ in range(length))


def generate_short_code(length: int = 8, include_dash: bool = True, prefix: str = '') -> str:
    """
    Generates a human typeable code, e.g. ``K7PQ-M2XA``.

    Args:
        length: number of random characters (4..16)
        include_dash: split the code in two halves when length >= 6
        prefix: prepended verbatim

    Returns:
        str: the code
    """
    if length < 4 or length > 16:
        raise ValidationError('Short code length must be between 4 and 16 characters', detail=str(length))

    code = _random_chars(length)
    if include_dash and length >= 6:
        mid = length // 2
        code = f"{code[:mid]}-{code[mid:]}"
    return prefix + code


def normalize_short_code(code: str) -> str:
    """Strips separators and whitespace, upper-cases"""
    return re.sub(r'[-\s]', '', code or '').upper()


def generate_batch_code(prefix: Optional[str] = None, year: Optional[int] = None,
                        month: Optional[int] = None, sequence_length: int = 3) -> str:
    """Batch code in the form PREFIX-YYYY-MM-SEQ"""
    now = timezone.now()
    prefix = (prefix or settings.VOUCHER_BATCH_PREFIX).upper()
    year = year or now.year
    month = month or now.month
    return f"{prefix}-{year}-{month:02d}-{_random_chars(sequence_length)}"


def validate_batch_code(code: str) -> bool:
    return bool(BATCH_CODE_RE.match(code or ''))


def parse_batch_code(code: str) -> Optional[dict]:
    if not validate_batch_code(code):
        return None
    prefix, year, month, sequence = code.split('-')
    return {'prefix': prefix, 'year': int(year), 'month': int(month), 'sequence': sequence}


def generate_qr_friendly_code(length: int = 12) -> str:
    if length < 8 or length > 32:
        raise ValidationError('QR friendly code length must be between 8 and 32 characters', detail=str(length))
    return _random_chars(length)


def calculate_check_digit(code: str) -> str:
    """Luhn check digit over the code, letters count as A=10, B=11, ..."""
    digits = [int(ch) if ch.isdigit() else ord(ch) - ord('A') + 10 for ch in code.upper()]

    total = 0
    # the check digit is appended on the right, so the rightmost payload digit is doubled
    double = True
    for digit in reversed(digits):
        if double:
            digit *= 2
            if digit > 9:
                digit = digit // 10 + digit % 10
        total += digit
        double = not double

    return str((10 - total % 10) % 10)


def generate_code_with_check_digit(base_length: int = 7) -> str:
    base = _random_chars(base_length)
    return base + calculate_check_digit(base)


def validate_code_with_check_digit(code: str) -> bool:
    if not code or len(code) < 5:
        return False
    return calculate_check_digit(code[:-1]) == code[-1]


def format_code_for_display(code: str, group_size: int = 4) -> str:
    clean = normalize_short_code(code)
    return '-'.join(clean[i:i + group_size] for i in range(0, len(clean), group_size))


def _is_qr_code(code: str) -> bool:
    parts = code.split('.')
    return len(parts) == 3 and all(parts)


def _is_short_code(code: str) -> bool:
    clean = normalize_short_code(code)
    if len(clean) != settings.VOUCHER_SHORT_CODE_LENGTH:
        return False
    return all(ch in SAFE_CHARS for ch in clean)


def _is_static_code(code: str) -> bool:
    return bool(STATIC_CODE_RE.match(code))


_CODE_VALIDATORS = {
    VoucherCodeType.QR: _is_qr_code,
    VoucherCodeType.SHORT: _is_short_code,
    VoucherCodeType.STATIC: _is_static_code,
}


def validate_voucher_code(code: str, code_type) -> bool:
    """Checks the format of a code for the given VoucherCodeType"""
    try:
        validator = _CODE_VALIDATORS[VoucherCodeType(code_type)]
    except ValueError:
        raise ValidationError('Unknown voucher code type', detail=str(code_type))
    return bool(code) and validator(code)
