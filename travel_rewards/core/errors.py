"""
Typed failures raised by the check-in, badge, redemption and ledger flows.

Every error carries the HTTP status it maps to, a machine-readable ``code``
and optional extra fields (for example the measured distance of an
out-of-range scan) so callers can render them without parsing messages.
"""
from __future__ import annotations
from typing import Any, Dict


class RewardsError(Exception):
    status_code: int = 400
    code: str = "rewards_error"

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "code": self.code, **self.extra}


class ValidationError(RewardsError):
    status_code = 422
    code = "validation_error"


class NotFoundError(RewardsError):
    status_code = 404
    code = "not_found"


class InvalidCodeError(RewardsError):
    code = "invalid_code"


class OutOfRangeError(RewardsError):
    status_code = 403
    code = "out_of_range"

    def __init__(self, distance_m: float, radius_m: float, message: str | None = None):
        super().__init__(
            message or f"You are {round(distance_m)} m away; check-in is allowed within {round(radius_m)} m",
            distance_m=round(distance_m, 1),
            radius_m=radius_m,
        )
        self.distance_m = distance_m
        self.radius_m = radius_m


class DuplicateCheckInError(RewardsError):
    status_code = 409
    code = "duplicate_checkin"


class AccountInactiveError(RewardsError):
    status_code = 403
    code = "account_inactive"


class PermissionDeniedError(RewardsError):
    status_code = 403
    code = "permission_denied"


class InsufficientPointsError(RewardsError):
    code = "insufficient_points"


class OutOfStockError(RewardsError):
    status_code = 409
    code = "out_of_stock"


class RedemptionLimitError(RewardsError):
    status_code = 409
    code = "redemption_limit"


class RewardUnavailableError(RewardsError):
    code = "reward_unavailable"


class InvalidTransitionError(RewardsError):
    status_code = 409
    code = "invalid_transition"


class AlreadyUsedError(InvalidTransitionError):
    code = "already_used"


class AlreadyExpiredError(InvalidTransitionError):
    code = "already_expired"


class TransactionFailure(RewardsError):
    status_code = 503
    code = "transaction_failure"
