"""
Errors raised by the voucher engine.

Every error carries a human readable ``reason`` that can be shown to an end
user or operator as-is, and a stable ``code`` a caller can branch on.
"""


class VoucherError(Exception):
    """Base class for voucher engine errors"""
    code = 'voucher_error'

    def __init__(self, reason: str, detail: str = ''):
        super().__init__(reason)
        self.reason = reason
        self.detail = detail

    def __str__(self):
        if self.detail:
            return f"{self.reason}: {self.detail}"
        return self.reason


class ResourceNotFound(VoucherError):
    """Voucher, claim or book is absent"""
    code = 'not_found'


class BusinessRuleViolation(VoucherError):
    """Illegal transition, duplicate claim, limit reached and so on"""
    code = 'business_rule_violation'


class Unauthorized(VoucherError):
    """Business does not own the voucher it is acting on"""
    code = 'unauthorized'


class ValidationError(VoucherError):
    """Malformed input"""
    code = 'validation_error'


class ServiceUnavailable(VoucherError):
    """Required collaborator (signing keys, store) is unreachable"""
    code = 'service_unavailable'
