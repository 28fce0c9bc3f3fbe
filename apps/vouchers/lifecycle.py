"""
Voucher state machine.

    draft -> published -> claimed -> redeemed -> expired
    published and claimed may also go straight to expired

``suspended`` sits outside the forward flow and is only entered and left
through the administrative suspend/resume operations.
"""

from django.utils import timezone

from .exceptions import BusinessRuleViolation, ValidationError
from .models import VoucherState

TRANSITIONS = {
    VoucherState.DRAFT: frozenset({VoucherState.PUBLISHED}),
    VoucherState.PUBLISHED: frozenset({VoucherState.CLAIMED, VoucherState.EXPIRED}),
    VoucherState.CLAIMED: frozenset({VoucherState.REDEEMED, VoucherState.EXPIRED}),
    VoucherState.REDEEMED: frozenset({VoucherState.EXPIRED}),
    VoucherState.EXPIRED: frozenset(),
    VoucherState.SUSPENDED: frozenset(),
}

SUSPENDABLE_STATES = frozenset({VoucherState.PUBLISHED, VoucherState.CLAIMED})
CLAIMABLE_STATES = frozenset({VoucherState.PUBLISHED, VoucherState.CLAIMED})

# ordering used to render "allowed" lists deterministically
_ORDER = [state.value for state in VoucherState]


def _state(value) -> VoucherState:
    try:
        return VoucherState(value)
    except ValueError:
        raise ValidationError('Unknown voucher state', detail=str(value))


def allowed_transitions(state) -> list:
    targets = TRANSITIONS[_state(state)]
    return sorted((t.value for t in targets), key=_ORDER.index)


def can_transition(current, target) -> bool:
    return _state(target) in TRANSITIONS[_state(current)]


def transition(current, target) -> str:
    """Returns the target state or raises BusinessRuleViolation"""
    if not can_transition(current, target):
        allowed = ', '.join(allowed_transitions(current)) or 'none'
        raise BusinessRuleViolation(
            f"Cannot transition from {_state(current).value} to {_state(target).value}. "
            f"Allowed transitions: {allowed}"
        )
    return _state(target).value


def check_publish_window(voucher, now=None):
    """A voucher can only go live inside its validity window"""
    now = now or timezone.now()
    if voucher.valid_from and voucher.valid_from > now:
        raise BusinessRuleViolation(f"Voucher becomes valid at {voucher.valid_from.isoformat()}")
    if voucher.valid_until and voucher.valid_until < now:
        raise BusinessRuleViolation(f"Voucher expired at {voucher.valid_until.isoformat()}")
