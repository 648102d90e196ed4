"""
Usage history model definition.

Append-only event log. Rows carry their own expiry and are purged by the
maintenance sweep; reads skip anything already past ``expires_at``.
"""
from models import db
from datetime import datetime, timedelta

USAGE_EVENT_TYPES = ('download', 'api_call', 'reset', 'alert', 'limit_exceeded')
USAGE_HISTORY_RETENTION_DAYS = 90

REQUIRED_METADATA = {
    'download': ('recordCount', 'endpoint'),
    'api_call': ('endpoint',),
    'reset': ('previousDataDownloaded', 'previousApiCallsCount'),
    'alert': ('limitType', 'percentage', 'level'),
    'limit_exceeded': ('limitType', 'requested', 'limit', 'current'),
}


class UsageHistory(db.Model):
    __tablename__ = 'usage_history'
    __table_args__ = (
        db.Index('ix_usage_tenant_user_ts', 'tenant_id', 'mobile_user_id', 'timestamp'),
        db.Index('ix_usage_event_ts', 'event_type', 'timestamp'),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False, index=True)
    mobile_user_id = db.Column(db.String(64), nullable=False)
    user_type = db.Column(db.String(20), nullable=False)
    event_type = db.Column(db.String(20), nullable=False)
    event_metadata = db.Column('metadata', db.JSON)
    snapshot_data_downloaded = db.Column(db.Integer)
    snapshot_api_calls_count = db.Column(db.Integer)
    snapshot_data_limit = db.Column(db.Integer)
    snapshot_api_limit = db.Column(db.Integer)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)

    @staticmethod
    def missing_metadata(event_type, metadata):
        """Names of required metadata fields absent for this event type"""
        metadata = metadata or {}
        return [field for field in REQUIRED_METADATA.get(event_type, ()) if metadata.get(field) is None]

    @classmethod
    def live(cls, now=None):
        now = now or datetime.utcnow()
        return cls.query.filter(cls.expires_at > now)

    @staticmethod
    def expiry_for(timestamp, retention_days=USAGE_HISTORY_RETENTION_DAYS):
        return timestamp + timedelta(days=retention_days)

    def to_dict(self):
        return {
            'id': self.id,
            'tenantId': self.tenant_id,
            'mobileUserId': self.mobile_user_id,
            'userType': self.user_type,
            'eventType': self.event_type,
            'metadata': self.event_metadata,
            'usageSnapshot': {
                'dataDownloaded': self.snapshot_data_downloaded,
                'apiCallsCount': self.snapshot_api_calls_count,
                'dataLimit': self.snapshot_data_limit,
                'apiLimit': self.snapshot_api_limit,
            },
            'timestamp': self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f'<UsageHistory {self.event_type} {self.mobile_user_id}>'
