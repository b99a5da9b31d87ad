"""
Error taxonomy for the wagering core.

Every error carries the HTTP status the API answers with and a stable
machine-readable code. Race-lost errors are expected outcomes: the caller
re-reads the authoritative row instead of retrying the mutation.
"""


class CoinClashError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = None, **details):
        self.message = message or self.__class__.__doc__ or self.code
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"success": False, "error": self.message, "code": self.code, **self.details}


class ValidationError(CoinClashError):
    """Invalid request"""
    status_code = 400
    code = "validation_error"


class NotFoundError(CoinClashError):
    """Not found"""
    status_code = 404
    code = "not_found"


class ForbiddenError(CoinClashError):
    """Forbidden"""
    status_code = 403
    code = "forbidden"


class NotAParticipantError(ForbiddenError):
    """Not a player in this session"""
    code = "not_a_participant"


class InsufficientFundsError(CoinClashError):
    """Insufficient balance"""
    status_code = 400
    code = "insufficient_funds"


class CooldownError(CoinClashError):
    """Already claimed"""
    status_code = 400
    code = "cooldown"


# ==================== Race-lost ====================


class RaceLostError(CoinClashError):
    """Already processed"""
    status_code = 409
    code = "race_lost"


class AlreadyFlippedError(RaceLostError):
    """Already flipped"""
    code = "already_flipped"


class AlreadyMatchedError(RaceLostError):
    """Queue entry is no longer waiting"""
    code = "already_matched"


class RoundClosedError(RaceLostError):
    """Betting is closed for this round"""
    code = "round_closed"


class AlreadySettledError(RaceLostError):
    """Game already settled"""
    code = "already_settled"


# ==================== Payments ====================


class PaymentError(CoinClashError):
    """Payment failed"""
    status_code = 400
    code = "payment_failed"


class SignatureMismatchError(PaymentError):
    """Invalid payment signature"""
    code = "invalid_signature"


class DuplicatePaymentError(PaymentError):
    """Payment already processed"""
    status_code = 409
    code = "duplicate_payment"


class GatewayUnavailableError(PaymentError):
    """Failed to create payment order"""
    status_code = 502
    code = "gateway_unavailable"
