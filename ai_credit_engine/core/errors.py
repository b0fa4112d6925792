"""
Credit engine errors and typed operation results.

Every engine entry point returns an OperationResult. Expected outcomes such
as insufficient credits travel inside the result; exceptions are reserved for
internal control flow (rolling back a transaction) and are converted at the
boundary.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


class CreditEngineError(Exception):
    """Base exception for all credit engine errors."""

    def __init__(self, message: str, code: str = "CREDIT_ENGINE_ERROR", details: Optional[dict] = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    @property
    def transient(self) -> bool:
        """Whether the caller may reasonably retry the same request."""
        return False

    def to_dict(self) -> dict:
        """Convert exception to dictionary for API responses."""
        return {
            'error': self.code,
            'message': self.message,
            'details': self.details
        }


class InsufficientCredits(CreditEngineError):
    """Raised when a balance cannot cover the requested amount.

    Attributes:
        required: Credits required for the operation
        available: Credits currently available
    """

    code_name = "INSUFFICIENT_CREDITS"
    scope = "credits"

    def __init__(self, required: int, available: int, message: Optional[str] = None, details: Optional[dict] = None):
        merged = {
            'required': required,
            'available': available,
            'shortfall': max(0, required - available),
            'scope': self.scope,
        }
        merged.update(details or {})
        super().__init__(
            message=message or f"Insufficient {self.scope}: required {required}, available {available}",
            code=self.code_name,
            details=merged
        )
        self.required = required
        self.available = available


class InsufficientOrgCredits(InsufficientCredits):
    """The organization pool cannot cover the amount."""
    code_name = "INSUFFICIENT_ORG_CREDITS"
    scope = "org credits"


class InsufficientMemberCredits(InsufficientCredits):
    """A member's feature allocation cannot cover the amount."""
    code_name = "INSUFFICIENT_MEMBER_CREDITS"
    scope = "member credits"


class InvalidAmount(CreditEngineError):
    def __init__(self, amount: Any, reason: str = "Amount must be positive"):
        super().__init__(message=reason, code="INVALID_AMOUNT", details={'amount': amount})
        self.amount = amount


class InvalidRequest(CreditEngineError):
    """A required argument is missing or malformed."""

    def __init__(self, message: str, field_name: Optional[str] = None):
        super().__init__(
            message=message,
            code="INVALID_REQUEST",
            details={'field': field_name} if field_name else {}
        )


class UnknownFeature(CreditEngineError):
    def __init__(self, feature: str):
        super().__init__(
            message=f"Unknown feature: {feature}",
            code="UNKNOWN_FEATURE",
            details={'feature': feature}
        )
        self.feature = feature


class PermissionDenied(CreditEngineError):
    def __init__(self, message: str, user_id: Optional[str] = None):
        super().__init__(
            message=message,
            code="PERMISSION_DENIED",
            details={'user_id': user_id} if user_id else {}
        )


class UnknownPricingModel(CreditEngineError, ValueError):
    """Raised by the pricing catalog for a model id it does not know.

    Non-fatal for metering: the bridge charges zero and records the fact.
    """

    def __init__(self, model: str):
        super().__init__(
            message=f"Unsupported model: {model}",
            code="UNKNOWN_PRICING_MODEL",
            details={'model': model}
        )
        self.model = model


class ConcurrencyConflict(CreditEngineError):
    """A balance row changed between read and write, or the store was busy."""

    def __init__(self, message: str = "Concurrent update detected", details: Optional[dict] = None):
        super().__init__(message=message, code="CONCURRENCY_CONFLICT", details=details)

    @property
    def transient(self) -> bool:
        return True


class PersistenceFailure(CreditEngineError):
    """A ledger or balance write failed; nothing from the request was committed."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message=message, code="PERSISTENCE_FAILURE", details=details)


@dataclass(frozen=True)
class OperationResult:
    """Outcome of an engine operation.

    ``payload`` carries operation-specific data on success (entries, balances,
    usage fact ids). ``error`` is set on failure and never raised.
    """
    success: bool
    error: Optional[CreditEngineError] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, **payload: Any) -> "OperationResult":
        return cls(success=True, payload=payload)

    @classmethod
    def fail(cls, error: CreditEngineError, **payload: Any) -> "OperationResult":
        return cls(success=False, error=error, payload=payload)

    @property
    def error_code(self) -> Optional[str]:
        return self.error.code if self.error else None

    def __getitem__(self, key: str) -> Any:
        return self.payload[key]
