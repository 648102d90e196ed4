"""
Typed outcome returned by every service operation.

Validation problems and state-machine violations never raise past a service;
they come back as a failed ServiceResult carrying one of the codes below.
"""

VALIDATION_ERROR = 'VALIDATION_ERROR'
NOT_FOUND = 'NOT_FOUND'
INVALID_STATE = 'INVALID_STATE'
INVALID_TRANSITION = 'INVALID_TRANSITION'
CONFLICT = 'CONFLICT'
FORBIDDEN = 'FORBIDDEN'
INTERNAL_ERROR = 'INTERNAL_ERROR'

# Payment workflow codes
INVALID_PLAN_PERIOD = 'INVALID_PLAN_PERIOD'
INVALID_TRANSACTION_ID = 'INVALID_TRANSACTION_ID'
DUPLICATE_TRANSACTION = 'DUPLICATE_TRANSACTION'
AMOUNT_MISMATCH = 'AMOUNT_MISMATCH'
USER_NOT_FOUND = 'USER_NOT_FOUND'
USER_NOT_ACTIVE = 'USER_NOT_ACTIVE'
ALREADY_PROCESSED = 'ALREADY_PROCESSED'

HTTP_STATUS = {
    VALIDATION_ERROR: 400,
    INVALID_STATE: 400,
    INVALID_TRANSITION: 400,
    INVALID_PLAN_PERIOD: 400,
    INVALID_TRANSACTION_ID: 400,
    DUPLICATE_TRANSACTION: 400,
    AMOUNT_MISMATCH: 400,
    ALREADY_PROCESSED: 400,
    FORBIDDEN: 403,
    USER_NOT_ACTIVE: 403,
    NOT_FOUND: 404,
    USER_NOT_FOUND: 404,
    CONFLICT: 409,
    INTERNAL_ERROR: 500,
}

INTERNAL_ERROR_MESSAGE = 'Internal server error'


class ServiceResult:
    """Success with the affected entity, or failure with a code and message"""

    def __init__(self, success, subscription=None, payment=None, error=None, code=None, message=None, data=None):
        self.success = success
        self.subscription = subscription
        self.payment = payment
        self.error = error
        self.code = code
        self.message = message
        self.data = data or {}

    @classmethod
    def ok(cls, subscription=None, payment=None, message=None, **data):
        return cls(True, subscription=subscription, payment=payment, message=message, data=data)

    @classmethod
    def fail(cls, code, error):
        return cls(False, error=error, code=code)

    @property
    def http_status(self):
        if self.success:
            return 200
        return HTTP_STATUS.get(self.code, 500)

    def error_body(self):
        """JSON body for a failed result; internal errors never leak details"""
        message = INTERNAL_ERROR_MESSAGE if self.code == INTERNAL_ERROR else self.error
        return {'success': False, 'code': self.code, 'message': message}

    def __repr__(self):
        if self.success:
            return f'<ServiceResult ok {self.message!r}>'
        return f'<ServiceResult {self.code}: {self.error!r}>'
