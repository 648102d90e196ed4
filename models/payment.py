"""
Payment proof model definition
"""
from models import db
from datetime import datetime

PLAN_PERIODS = ('weekly', 'monthly', 'quarterly', 'yearly')
PAYMENT_STATUSES = ('pending', 'approved', 'rejected')


def _iso(value):
    return value.isoformat() if value else None


class Payment(db.Model):
    """User-submitted claim of an out-of-band transfer, pending admin verification"""
    __tablename__ = 'payments'
    __table_args__ = (
        db.Index('ix_payment_tenant_status_created', 'tenant_id', 'status', 'created_at'),
        db.Index('ix_payment_status_next_retry', 'status', 'next_retry_at'),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False, index=True)

    # Submitter snapshot captured at submission time
    submitted_by_mobile_id = db.Column(db.String(64))
    submitted_by_name = db.Column(db.String(100))
    submitted_by_phone = db.Column(db.String(20))
    submitted_by_email = db.Column(db.String(120))
    submitted_by_role = db.Column(db.String(50))
    submitted_by_user_type = db.Column(db.String(20))  # repo_agent, office_staff

    plan_period = db.Column(db.String(20), nullable=False)
    amount = db.Column(db.Numeric(10, 2), nullable=False)
    transaction_id = db.Column(db.String(100), unique=True, nullable=False)
    notes = db.Column(db.Text)
    screenshot_url = db.Column(db.String(500))
    screenshot_delete_at = db.Column(db.DateTime, index=True)

    status = db.Column(db.String(20), default='pending', index=True)  # pending, approved, rejected
    rejection_reason = db.Column(db.Text)
    approval_notes = db.Column(db.Text)
    approved_by = db.Column(db.String(64))
    approved_at = db.Column(db.DateTime)
    processed_by_role = db.Column(db.String(20))  # super_admin, admin
    processed_by_email = db.Column(db.String(120))

    amount_validated = db.Column(db.Boolean, default=False)
    expected_amount = db.Column(db.Numeric(10, 2))

    # Checkpoint of the post-approval subscription update, drained by the retry sweep
    retry_count = db.Column(db.Integer, default=0)
    last_retry_at = db.Column(db.DateTime)
    next_retry_at = db.Column(db.DateTime)
    retry_reason = db.Column(db.String(500))

    invoice_number = db.Column(db.String(20), unique=True, nullable=True)
    invoice_generated_at = db.Column(db.DateTime)

    # Mobile user whose subscription the approval applies to, resolved when approved
    beneficiary_mobile_user_id = db.Column(db.String(64))
    beneficiary_user_type = db.Column(db.String(20))
    subscription_id = db.Column(db.Integer, db.ForeignKey('user_subscriptions.id'), nullable=True, index=True)
    effective_start = db.Column(db.DateTime)
    effective_end = db.Column(db.DateTime)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def has_submitter_snapshot(self):
        return bool(self.submitted_by_user_type and self.submitted_by_mobile_id)

    def submitted_by(self):
        if not self.submitted_by_name:
            return None
        return {
            'name': self.submitted_by_name,
            'phone': self.submitted_by_phone,
            'email': self.submitted_by_email,
            'role': self.submitted_by_role,
            'userType': self.submitted_by_user_type,
        }

    def to_dict(self):
        return {
            'id': self.id,
            'tenantId': self.tenant_id,
            'submittedByMobileId': self.submitted_by_mobile_id,
            'submittedBy': self.submitted_by(),
            'planPeriod': self.plan_period,
            'amount': float(self.amount) if self.amount is not None else None,
            'transactionId': self.transaction_id,
            'notes': self.notes,
            'screenshotUrl': self.screenshot_url,
            'screenshotDeleteAt': _iso(self.screenshot_delete_at),
            'status': self.status,
            'rejectionReason': self.rejection_reason,
            'approvalNotes': self.approval_notes,
            'approvedBy': self.approved_by,
            'approvedAt': _iso(self.approved_at),
            'processedByRole': self.processed_by_role,
            'processedByEmail': self.processed_by_email,
            'amountValidated': bool(self.amount_validated),
            'expectedAmount': float(self.expected_amount) if self.expected_amount is not None else None,
            'retryCount': self.retry_count,
            'nextRetryAt': _iso(self.next_retry_at),
            'retryReason': self.retry_reason,
            'invoiceNumber': self.invoice_number,
            'invoiceGeneratedAt': _iso(self.invoice_generated_at),
            'beneficiaryMobileUserId': self.beneficiary_mobile_user_id,
            'subscriptionId': self.subscription_id,
            'effectiveStart': _iso(self.effective_start),
            'effectiveEnd': _iso(self.effective_end),
            'createdAt': _iso(self.created_at),
        }

    def __repr__(self):
        return f'<Payment {self.id} {self.status}>'


class InvoiceSequence(db.Model):
    """Monthly invoice counter shared by all tenants"""
    __tablename__ = 'invoice_sequences'

    period = db.Column(db.String(7), primary_key=True)  # YYYY-MM
    last_value = db.Column(db.Integer, nullable=False, default=0)

    def __repr__(self):
        return f'<InvoiceSequence {self.period}={self.last_value}>'
