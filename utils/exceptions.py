"""
Escrow engine error taxonomy.

Every error carries a stable ``code`` so callers (webhook server, job runners)
can map failures without string matching on messages.
"""

from typing import Optional


class EscrowEngineError(Exception):
    """Base class for all engine errors"""

    code = "escrow_engine_error"

    def __init__(self, message: str = "", code: Optional[str] = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(EscrowEngineError):
    code = "validation_error"


class InvalidAmount(ValidationError):
    code = "invalid_amount"


class CurrencyMismatch(ValidationError):
    code = "currency_mismatch"


class NotFound(EscrowEngineError):
    code = "not_found"


class InvalidTransition(EscrowEngineError):
    """Raised when a status change is outside the allowed edge set"""

    code = "invalid_transition"

    def __init__(self, entity: str, current: Optional[str], target: str, reason: str = ""):
        detail = f"{entity} cannot move from {current} to {target}"
        if reason:
            detail = f"{detail}: {reason}"
        super().__init__(detail)
        self.entity = entity
        self.current = current
        self.target = target


class PairingCodeInvalid(EscrowEngineError):
    code = "pairing_code_invalid"


class PairingExpired(EscrowEngineError):
    code = "pairing_expired"


class AllocationExceeded(ValidationError):
    code = "allocation_exceeded"


class ConcurrentModification(EscrowEngineError):
    code = "concurrent_modification"


class GatewayError(EscrowEngineError):
    code = "gateway_error"

    def __init__(self, message: str = "", provider: Optional[str] = None,
                 status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message, code=code)
        self.provider = provider
        self.status_code = status_code


class GatewayUnavailable(GatewayError):
    """Transient gateway failure; safe to retry"""

    code = "gateway_unavailable"


class GatewayRejected(GatewayError):
    """Terminal gateway failure; retrying will not help"""

    code = "gateway_rejected"


class PaymentPendingRetry(EscrowEngineError):
    """Gateway retries exhausted; the payment stays pending and is retried later"""

    code = "payment_pending_retry"


class ReferralError(EscrowEngineError):
    code = "referral_error"


class InvalidReferralCode(ReferralError):
    code = "invalid_referral_code"


class DuplicateReferral(ReferralError):
    code = "duplicate_referral"


class ReferralCapReached(ReferralError):
    code = "referral_cap_reached"


class WebhookVerificationError(EscrowEngineError):
    code = "webhook_verification_failed"
