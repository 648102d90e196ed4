"""
Tenant user store lookups.

Mobile users live in the shared mobile_users table, partitioned by tenant.
Callers only ever ask for a user by (tenant, user type, identity id).
"""
from models.mobile_user import MobileUser


def find_user(tenant_id, user_type, mobile_user_id):
    """Return the MobileUser for the identity, or None"""
    if not tenant_id or not user_type or not mobile_user_id:
        return None
    return MobileUser.query.filter_by(
        tenant_id=tenant_id,
        user_type=user_type,
        external_id=str(mobile_user_id),
    ).first()
