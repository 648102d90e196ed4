"""
Invoice numbering.

One counter row per calendar month, shared by every tenant. Numbers look
like INV-2024-06-00042 and only ever go up within a month.
"""
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from models import db
from models.payment import InvoiceSequence

INVOICE_PREFIX = 'INV'
MAX_CREATE_ATTEMPTS = 3


def format_invoice_number(period, value):
    return f'{INVOICE_PREFIX}-{period}-{value:05d}'


def _increment(period):
    stmt = (
        update(InvoiceSequence)
        .where(InvoiceSequence.period == period)
        .values(last_value=InvoiceSequence.last_value + 1)
        .execution_options(synchronize_session=False)
    )
    return db.session.execute(stmt).rowcount == 1


def next_invoice_number(now=None):
    """Atomically take the next number of the month and commit it.

    Must be called with no other pending changes in the session.
    """
    now = now or datetime.utcnow()
    period = now.strftime('%Y-%m')

    for _ in range(MAX_CREATE_ATTEMPTS):
        if not _increment(period):
            # First invoice of the month
            db.session.add(InvoiceSequence(period=period, last_value=1))
        try:
            db.session.flush()
        except IntegrityError:
            # Another approval created the row first; count on it instead
            db.session.rollback()
            continue

        value = db.session.execute(
            select(InvoiceSequence.last_value).where(InvoiceSequence.period == period)
        ).scalar_one()
        db.session.commit()
        return format_invoice_number(period, value)

    raise RuntimeError(f'Could not allocate invoice number for {period}')
