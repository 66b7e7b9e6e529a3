"""eventkeel-core: append-only event log and checkpoint store contracts.

Zero infrastructure dependencies: ports, error taxonomy, in-memory adapters,
instrumentation hooks and correlation context.
"""

from __future__ import annotations

# ── Adapters ────────────────────────────────────────────────────
from .adapters.memory import InMemoryCheckpointStore, InMemoryEventStore
from .correlation import (
    correlation_scope,
    generate_correlation_id,
    get_correlation_id,
    set_correlation_id,
)

# ── Instrumentation ─────────────────────────────────────────────
from .instrumentation import (
    HookRegistration,
    HookRegistry,
    InstrumentationHook,
    get_hook_registry,
    set_hook_registry,
)

# ── Ports ───────────────────────────────────────────────────────
from .ports import ICheckpointStore, IEventStore, INotifyingEventStore, StoredEvent

# ── Primitives ──────────────────────────────────────────────────
from .primitives import (
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
    "HookRegistration",
    "HookRegistry",
    "ICheckpointStore",
    "IEventStore",
    "INotifyingEventStore",
    "InMemoryCheckpointStore",
    "InMemoryEventStore",
    "InfrastructureError",
    "InstrumentationHook",
    "InvariantViolationError",
    "OrderingViolation",
    "StorageFailure",
    "StoredEvent",
    "correlation_scope",
    "generate_correlation_id",
    "get_correlation_id",
    "get_hook_registry",
    "set_correlation_id",
    "set_hook_registry",
]
