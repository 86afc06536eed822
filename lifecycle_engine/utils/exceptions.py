"""
Custom exceptions for the trade lifecycle engine

Each class maps to one bucket of the error taxonomy:
- validation errors are raised synchronously to the caller at creation time
- transient data errors (price feed) are skipped and retried next cycle
- consistency errors flag the position ERROR for manual review
- persistence errors roll back the per-position unit of work
"""


class LifecycleError(Exception):
    """Base exception for lifecycle engine errors"""
    pass


class ValidationError(LifecycleError):
    """Raised when an inbound position definition is malformed"""
    def __init__(self, field: str, value, reason: str):
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Validation failed for {field}={value}: {reason}")


class InvalidPriceError(LifecycleError):
    """Raised when a price is not a finite positive number"""
    def __init__(self, symbol: str, price):
        self.symbol = symbol
        self.price = price
        super().__init__(f"Invalid price for {symbol}: {price!r}")


class InvalidTransitionError(LifecycleError):
    """Raised when a position cannot be evaluated in its current phase"""
    def __init__(self, position_id: str, phase: str, reason: str):
        self.position_id = position_id
        self.phase = phase
        self.reason = reason
        super().__init__(f"Position {position_id} in {phase}: {reason}")


class ConsistencyError(LifecycleError):
    """Raised when a transition would violate a position invariant"""
    def __init__(self, position_id: str, violations):
        self.position_id = position_id
        self.violations = list(violations)
        super().__init__(
            f"Invariant violation on position {position_id}: {'; '.join(self.violations)}"
        )


class StaleStateError(LifecycleError):
    """Raised when the stored position changed since it was evaluated"""
    def __init__(self, position_id: str, expected_version: int, actual_version: int):
        self.position_id = position_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Position {position_id} is stale: evaluated v{expected_version}, "
            f"stored v{actual_version}"
        )


class PriceUnavailableError(LifecycleError):
    """Raised when the price oracle cannot supply a usable price"""
    def __init__(self, symbol: str, reason: str):
        self.symbol = symbol
        self.reason = reason
        super().__init__(f"Price unavailable for {symbol}: {reason}")


class PositionNotFoundError(LifecycleError):
    """Raised when a position id does not exist"""
    def __init__(self, position_id: str):
        self.position_id = position_id
        super().__init__(f"Position {position_id} not found")


class DatabaseOperationError(LifecycleError):
    """Raised when database operations fail after retries"""
    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Database operation '{operation}' failed: {reason}")
