"""
Billing period arithmetic.

Periods are fixed durations, not calendar months. A monthly period started on
day 29, 30 or 31 ends on the 28th of whichever month the 30-day offset lands
in; downstream invoices rely on this exact behaviour.
"""
from datetime import timedelta

BILLING_CYCLES = ('weekly', 'monthly', 'quarterly', 'yearly')

CYCLE_DAYS = {
    'weekly': 7,
    'monthly': 30,
    'quarterly': 90,
    'yearly': 365,
}

MONTH_END_CLAMP_DAY = 28


def is_valid_billing_cycle(cycle):
    return isinstance(cycle, str) and cycle in CYCLE_DAYS


def next_period_end(start, billing_cycle):
    """Return the end of a period of ``billing_cycle`` starting at ``start``.

    Raises ValueError for an unknown cycle.
    """
    if billing_cycle not in CYCLE_DAYS:
        raise ValueError(f"Invalid billing cycle: {billing_cycle}")

    end = start + timedelta(days=CYCLE_DAYS[billing_cycle])
    if billing_cycle == 'monthly' and start.day > MONTH_END_CLAMP_DAY:
        end = end.replace(day=MONTH_END_CLAMP_DAY)
    return end
