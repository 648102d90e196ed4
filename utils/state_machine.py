"""
Subscription status transitions.

Single source of truth for which status changes are allowed. Every lifecycle
operation checks here before writing a new status.
"""
from collections import namedtuple

TransitionCheck = namedtuple('TransitionCheck', ['is_valid', 'message'])

VALID_TRANSITIONS = {
    'trial': ('active', 'cancelled', 'expired'),
    'active': ('grace_period', 'cancelled', 'suspended', 'expired'),
    'grace_period': ('active', 'past_due', 'cancelled'),
    'past_due': ('active', 'expired', 'suspended'),
    'expired': ('active',),
    'suspended': ('active',),
    'cancelled': ('active',),
}


def validate_status_transition(current_status, new_status):
    """Check whether ``current_status -> new_status`` is permitted"""
    allowed = VALID_TRANSITIONS.get(current_status, ())
    if new_status in allowed:
        return TransitionCheck(True, '')
    return TransitionCheck(False, f"Invalid transition from {current_status} to {new_status}")


def allowed_transitions(current_status):
    return VALID_TRANSITIONS.get(current_status, ())
