"""ProjectionHandler base class: event type -> apply function mapping."""

from __future__ import annotations

import inspect
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, TypeAlias

from eventkeel_core.primitives.exceptions import HandlerFailure

if TYPE_CHECKING:
    from eventkeel_core.ports.event_store import StoredEvent

EventApplier: TypeAlias = Callable[["StoredEvent"], Any]


class ProjectionHandler:
    """Base class that dispatches events to per-type apply functions.

    Functions may be sync or async. Events of a type with no registered function
    are a no-op. Subclasses add ``partition_key(event)`` to become partitioned.
    """

    def __init__(self) -> None:
        self._event_handlers: dict[str, EventApplier] = {}

    @property
    def handles(self) -> set[str]:
        """Return registered event type tags handled by this projection."""
        return set(self._event_handlers.keys())

    def add_handler(self, event_type: str, handler: EventApplier) -> None:
        """Register an apply function for a specific event type tag."""
        if not event_type:
            raise ValueError("Event type cannot be empty")
        self._event_handlers[event_type] = handler

    async def apply(self, event: StoredEvent) -> Any:
        """Resolve and execute the mapped function for an event."""
        handler = self._event_handlers.get(event.event_type)
        if handler is None:
            return None
        result = handler(event)
        if inspect.isawaitable(result):
            result = await result
        return result


async def invoke_apply(handler: Any, event: StoredEvent) -> None:
    """Call ``handler.apply(event)``, awaiting it when needed.

    Raises:
        HandlerFailure: when the handler returns ``False``.
    """
    result = handler.apply(event)
    if inspect.isawaitable(result):
        result = await result
    if result is False:
        raise HandlerFailure(
            f"Handler {type(handler).__name__} reported failure for "
            f"{event.event_type} at {event.stream}@{event.position}",
            event=event,
        )
