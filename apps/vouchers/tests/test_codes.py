import pytest

from apps.vouchers.codes import (
    SAFE_CHARS,
    calculate_check_digit,
    format_code_for_display,
    generate_batch_code,
    generate_code_with_check_digit,
    generate_qr_friendly_code,
    generate_short_code,
    normalize_short_code,
    parse_batch_code,
    validate_batch_code,
    validate_code_with_check_digit,
    validate_voucher_code,
)
from apps.vouchers.exceptions import ValidationError
from apps.vouchers.models import VoucherCodeType


def test_short_code_has_dash_in_the_middle():
    code = generate_short_code()
    assert len(code) == 9
    assert code[4] == '-'
    assert all(ch in SAFE_CHARS for ch in code.replace('-', ''))


def test_short_code_options():
    assert '-' not in generate_short_code(8, include_dash=False)
    assert '-' not in generate_short_code(5)
    assert generate_short_code(6, prefix='BK').startswith('BK')


@pytest.mark.parametrize('length', [3, 17])
def test_short_code_length_bounds(length):
    with pytest.raises(ValidationError):
        generate_short_code(length)


def test_normalize_short_code():
    assert normalize_short_code(' ab2c-d3ef ') == 'AB2CD3EF'


def test_batch_code_round_trip():
    code = generate_batch_code('book', 2025, 3)
    assert code.startswith('BOOK-2025-03-')
    assert validate_batch_code(code)
    parsed = parse_batch_code(code)
    assert parsed['prefix'] == 'BOOK'
    assert parsed['year'] == 2025
    assert parsed['month'] == 3
    assert len(parsed['sequence']) == 3


def test_batch_code_rejects_bad_format():
    assert not validate_batch_code('BOOK-25-03-ABC')
    assert not validate_batch_code('BOOK-2025-03-A0O')
    assert parse_batch_code('nonsense') is None


def test_qr_friendly_code_bounds():
    assert len(generate_qr_friendly_code(16)) == 16
    with pytest.raises(ValidationError):
        generate_qr_friendly_code(7)


def test_check_digit_matches_luhn_for_digits():
    assert calculate_check_digit('7992739871') == '3'
    assert validate_code_with_check_digit('79927398713')
    assert not validate_code_with_check_digit('79927398710')


def test_code_with_check_digit():
    code = generate_code_with_check_digit()
    assert len(code) == 8
    assert validate_code_with_check_digit(code)

    tampered = code[:-1] + str((int(code[-1]) + 1) % 10)
    assert not validate_code_with_check_digit(tampered)
    assert not validate_code_with_check_digit('AB1')


def test_format_code_for_display():
    assert format_code_for_display('abcd efgh12') == 'ABCD-EFGH-12'
    assert format_code_for_display('ABCDEF', group_size=3) == 'ABC-DEF'


def test_validate_voucher_code_by_type():
    assert validate_voucher_code('aaa.bbb.ccc', VoucherCodeType.QR)
    assert not validate_voucher_code('aaa.bbb', VoucherCodeType.QR)

    assert validate_voucher_code(generate_short_code(), VoucherCodeType.SHORT)
    assert validate_voucher_code('K7PQM2XA', 'short')
    assert not validate_voucher_code('K7PQ-M2X0', VoucherCodeType.SHORT)

    assert validate_voucher_code('SUMMER2025', VoucherCodeType.STATIC)
    assert not validate_voucher_code('summer', VoucherCodeType.STATIC)
    assert not validate_voucher_code('', VoucherCodeType.STATIC)


def test_validate_voucher_code_unknown_type():
    with pytest.raises(ValidationError):
        validate_voucher_code('ABCD', 'barcode')
