"""
Engine error taxonomy.

Every error carries the API ``code`` and HTTP ``status`` the error middleware
renders. ``fatal`` errors are configuration or logic bugs: they are logged at
CRITICAL and never shown to clients in detail.
"""


class EngineError(Exception):
    """Base exception for transaction engine errors"""
    code = "ENGINE_ERROR"
    status = 400
    fatal = False

    def __init__(self, message: str = "", **details):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.details = details


# ========== User-actionable ==========

class NotFound(EngineError):
    code = "NOT_FOUND"
    status = 404


class Forbidden(EngineError):
    """Actor is not a party allowed to perform this action"""
    code = "FORBIDDEN"
    status = 403


class EntitlementExhausted(EngineError):
    """No contact allowance left, a tier upgrade is required"""
    code = "ENTITLEMENT_EXHAUSTED"
    status = 403


class IllegalTransition(EngineError):
    code = "ILLEGAL_TRANSITION"
    status = 409


class ConcurrentModification(EngineError):
    """Lost a compare-and-swap race; safe to retry"""
    code = "CONCURRENT_MODIFICATION"
    status = 409


class AlreadyReviewed(EngineError):
    code = "ALREADY_REVIEWED"
    status = 409


class InvalidRating(EngineError):
    code = "INVALID_RATING"
    status = 400


class InvalidBooking(EngineError):
    code = "INVALID_BOOKING"
    status = 400


class InvalidAmount(EngineError):
    code = "INVALID_AMOUNT"
    status = 400


class InsufficientBalance(EngineError):
    code = "INSUFFICIENT_BALANCE"
    status = 400


# ========== Idempotency no-ops ==========

class DuplicatePayment(EngineError):
    """Payment reference already applied. Treated as success by callers."""
    code = "DUPLICATE_PAYMENT"
    status = 200


# ========== Configuration / fatal ==========

class UnknownTier(EngineError):
    code = "UNKNOWN_TIER"
    status = 500
    fatal = True


class DuplicateCommission(EngineError):
    code = "DUPLICATE_COMMISSION"
    status = 500
    fatal = True
