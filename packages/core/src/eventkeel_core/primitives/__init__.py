from .exceptions import (
    ConfigurationError,
    EventKeelError,
    HandlerError,
    HandlerFailure,
    InfrastructureError,
    InvariantViolationError,
    OrderingViolation,
    StorageFailure,
)

__all__ = [
    "ConfigurationError",
    "EventKeelError",
    "HandlerError",
    "HandlerFailure",
    "InfrastructureError",
    "InvariantViolationError",
    "OrderingViolation",
    "StorageFailure",
]
