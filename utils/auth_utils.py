"""
Authentication utility functions.

Credentials are verified upstream; the gateway forwards the verified identity
in trusted headers. This module turns those headers into the Flask-Login
``current_user`` and provides the route decorators built on it.
"""
from functools import wraps

from flask import jsonify
from flask_login import UserMixin, current_user

from models.mobile_user import MOBILE_USER_TYPES

TENANT_HEADER = 'X-Tenant-Id'
MOBILE_USER_HEADER = 'X-Mobile-User-Id'
USER_TYPE_HEADER = 'X-User-Type'
ROLE_HEADER = 'X-User-Role'
USER_ID_HEADER = 'X-User-Id'
EMAIL_HEADER = 'X-User-Email'

ADMIN_ROLES = ('admin', 'super_admin')


class Identity(UserMixin):
    """Verified caller: a mobile user or an admin, scoped to a tenant"""

    def __init__(self, tenant_id=None, mobile_user_id=None, user_type=None, role=None, user_id=None, email=None):
        self.tenant_id = tenant_id
        self.mobile_user_id = mobile_user_id
        self.user_type = user_type
        self.role = role
        self.user_id = user_id
        self.email = email

    def get_id(self):
        return self.user_id or self.mobile_user_id

    @property
    def is_super_admin(self):
        return self.role == 'super_admin'

    @property
    def is_admin(self):
        return self.role in ADMIN_ROLES

    @property
    def is_mobile_user(self):
        return self.user_type in MOBILE_USER_TYPES

    def can_manage_tenant(self, tenant_id):
        """Super admins manage every tenant, tenant admins only their own"""
        if self.is_super_admin:
            return True
        return self.is_admin and self.tenant_id is not None and self.tenant_id == tenant_id

    def __repr__(self):
        return f'<Identity {self.role or self.user_type}:{self.get_id()} tenant={self.tenant_id}>'


def _header(headers, name):
    value = headers.get(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _parse_tenant_id(value):
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def identity_from_headers(headers):
    """Build an Identity from trusted gateway headers, or None if nothing was sent"""
    mobile_user_id = _header(headers, MOBILE_USER_HEADER)
    user_id = _header(headers, USER_ID_HEADER)
    role = _header(headers, ROLE_HEADER)
    if not mobile_user_id and not user_id and not role:
        return None

    return Identity(
        tenant_id=_parse_tenant_id(_header(headers, TENANT_HEADER)),
        mobile_user_id=mobile_user_id,
        user_type=_header(headers, USER_TYPE_HEADER),
        role=role,
        user_id=user_id,
        email=_header(headers, EMAIL_HEADER),
    )


def error_response(code, message, status):
    return jsonify({'success': False, 'code': code, 'message': message}), status


def admin_required(f):
    """Decorator to require an admin or super admin identity"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not current_user.is_authenticated:
            return error_response('UNAUTHORIZED', 'Authentication required', 401)
        if not current_user.is_admin:
            return error_response('FORBIDDEN', 'Admin privileges required', 403)
        return f(*args, **kwargs)
    return decorated_function


def mobile_user_required(f):
    """Decorator to require a mobile user identity with tenant context"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not current_user.is_authenticated or not current_user.tenant_id or not current_user.mobile_user_id:
            return error_response('UNAUTHORIZED', 'Tenant and mobile user identity required', 401)
        return f(*args, **kwargs)
    return decorated_function


def tenant_forbidden(tenant_id):
    """403 response when the current admin may not act on ``tenant_id``, else None"""
    if current_user.can_manage_tenant(tenant_id):
        return None
    return error_response('FORBIDDEN', 'You can only manage subscriptions of your own tenant', 403)
