"""
Email utility functions
"""
from flask_mail import Mail, Message
from flask import current_app
from sqlalchemy import or_

mail = Mail()


def send_email(subject, recipients, body, html=None):
    """
    Send an email

    Args:
        subject: Email subject
        recipients: List of recipient email addresses
        body: Plain text body
        html: HTML body (optional)
    """
    msg = Message(
        subject=subject,
        recipients=recipients,
        body=body,
        html=html
    )
    mail.send(msg)


def get_admin_emails(tenant_id=None):
    """Active super admins plus the active admins of ``tenant_id``"""
    from models.admin import Admin
    query = Admin.query.filter_by(is_active=True)
    if tenant_id is None:
        query = query.filter(Admin.role == 'super_admin')
    else:
        query = query.filter(or_(Admin.role == 'super_admin', Admin.tenant_id == tenant_id))
    return [admin.email for admin in query.all()]


def send_admin_notification(subject, body, html=None, tenant_id=None):
    """
    Send notification email to the admins responsible for a tenant.
    Silently skips if mail is not configured.
    """
    if 'mail' not in current_app.extensions:
        return

    if not current_app.config.get('MAIL_SERVER'):
        return

    try:
        admin_emails = get_admin_emails(tenant_id)
        if not admin_emails:
            return
        send_email(subject, admin_emails, body, html)
    except Exception as e:
        current_app.logger.error(f"Error sending admin notification: {str(e)}", exc_info=True)
        # Don't raise - admin notifications are non-critical


def send_payment_notification(payment):
    """Notify admins of a new payment proof"""
    submitter = payment.submitted_by_name or payment.submitted_by_mobile_id or 'N/A'
    subject = f"New Payment Submitted - {float(payment.amount):.2f}"
    expected = f"{float(payment.expected_amount):.2f}" if payment.expected_amount is not None else 'not configured'
    body = f"""
A new payment proof has been submitted:

Submitted by: {submitter} ({payment.submitted_by_user_type or 'N/A'})
Phone: {payment.submitted_by_phone or 'N/A'}
Plan period: {payment.plan_period}
Amount: {float(payment.amount):.2f}
Expected amount: {expected}
Transaction reference: {payment.transaction_id}
Submitted: {payment.created_at.strftime('%Y-%m-%d %H:%M:%S') if payment.created_at else 'N/A'}

Review the payment in the admin panel.
"""
    html = _payment_notification_html(payment, submitter, expected)
    send_admin_notification(subject, body, html, tenant_id=payment.tenant_id)


def _payment_notification_html(payment, submitter, expected) -> str:
    """HTML template for payment notification"""
    return f"""
    <!DOCTYPE html>
    <html>
    <head><meta charset="utf-8"><title>New Payment Submitted</title></head>
    <body style="font-family: system-ui, sans-serif; max-width: 600px; margin: 0 auto; padding: 24px;">
        <h2 style="color: #1a1a2e;">New Payment Submitted</h2>
        <p>A new payment proof is waiting for verification:</p>
        <table style="width: 100%; border-collapse: collapse; margin: 20px 0;">
            <tr><td style="padding: 8px; border-bottom: 1px solid #eee;"><strong>Submitted by:</strong></td><td style="padding: 8px; border-bottom: 1px solid #eee;">{submitter}</td></tr>
            <tr><td style="padding: 8px; border-bottom: 1px solid #eee;"><strong>Plan period:</strong></td><td style="padding: 8px; border-bottom: 1px solid #eee;">{payment.plan_period}</td></tr>
            <tr><td style="padding: 8px; border-bottom: 1px solid #eee;"><strong>Amount:</strong></td><td style="padding: 8px; border-bottom: 1px solid #eee;">{float(payment.amount):.2f}</td></tr>
            <tr><td style="padding: 8px; border-bottom: 1px solid #eee;"><strong>Expected:</strong></td><td style="padding: 8px; border-bottom: 1px solid #eee;">{expected}</td></tr>
            <tr><td style="padding: 8px;"><strong>Reference:</strong></td><td style="padding: 8px;">{payment.transaction_id}</td></tr>
        </table>
    </body>
    </html>
    """
