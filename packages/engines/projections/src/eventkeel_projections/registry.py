"""ProjectionRegistry: named projections with validated options."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from eventkeel_core.primitives.exceptions import ConfigurationError, HandlerFailure

from .options import ProjectionOptions

if TYPE_CHECKING:
    from collections.abc import Iterator

    from eventkeel_core.ports.event_store import StoredEvent


@dataclass(frozen=True)
class ProjectionRegistration:
    """A handler bound to its options.

    ``partitioned`` is decided once, at registration, by whether the handler
    provides a callable ``partition_key``. ``handles`` is read from the handler
    on every check, so event types added after registration are routed too.
    """

    handler: Any
    options: ProjectionOptions
    partitioned: bool

    @property
    def handles(self) -> frozenset[str] | None:
        handles = getattr(self.handler, "handles", None)
        return frozenset(handles) if handles else None

    @property
    def name(self) -> str:
        return self.options.name

    @property
    def stream(self) -> str:
        return self.options.stream

    def accepts(self, event: StoredEvent) -> bool:
        """Whether *event* is routed to the handler at all."""
        handles = self.handles
        return handles is None or event.event_type in handles

    def partition_key_for(self, event: StoredEvent) -> str | None:
        """Return the ordering key of *event*; None for unpartitioned projections.

        Raises:
            HandlerFailure: when the key function raises or returns anything but
                a non-empty string.
        """
        if not self.partitioned:
            return None
        try:
            key = self.handler.partition_key(event)
        except Exception as exc:
            raise HandlerFailure(
                f"partition_key failed for {event.stream}@{event.position}: {exc}",
                event=event,
            ) from exc
        if not isinstance(key, str) or not key:
            raise HandlerFailure(
                f"partition_key returned invalid key {key!r} for "
                f"{event.stream}@{event.position}",
                event=event,
            )
        return key


class ProjectionRegistry:
    """Maps projection names to registrations; names are unique."""

    def __init__(self) -> None:
        self._by_name: dict[str, ProjectionRegistration] = {}

    def register(
        self,
        handler: Any,
        options: ProjectionOptions | None = None,
        **overrides: Any,
    ) -> ProjectionRegistration:
        """Register *handler* under ``options.name``.

        Keyword overrides are merged over *options* (or form the options on
        their own) and validated together.

        Raises:
            ConfigurationError: on invalid options, a duplicate name, or a
                handler without a callable ``apply``.
        """
        if not callable(getattr(handler, "apply", None)):
            raise ConfigurationError(
                f"Projection handler {type(handler).__name__} has no callable apply()"
            )
        resolved = self._build_options(options, overrides)
        if resolved.name in self._by_name:
            raise ConfigurationError(
                f"Projection '{resolved.name}' is already registered"
            )

        registration = ProjectionRegistration(
            handler=handler,
            options=resolved,
            partitioned=callable(getattr(handler, "partition_key", None)),
        )
        self._by_name[resolved.name] = registration
        return registration

    @staticmethod
    def _build_options(
        options: ProjectionOptions | None, overrides: dict[str, Any]
    ) -> ProjectionOptions:
        try:
            if options is None:
                return ProjectionOptions(**overrides)
            if not overrides:
                return options
            return ProjectionOptions.model_validate(
                {**options.model_dump(), **overrides}
            )
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid projection options: {exc}") from exc

    def get(self, name: str) -> ProjectionRegistration:
        registration = self._by_name.get(name)
        if registration is None:
            raise ConfigurationError(f"Projection '{name}' is not registered")
        return registration

    def unregister(self, name: str) -> None:
        self.get(name)
        del self._by_name[name]

    def names(self) -> list[str]:
        return list(self._by_name)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __iter__(self) -> Iterator[ProjectionRegistration]:
        return iter(list(self._by_name.values()))

    def __len__(self) -> int:
        return len(self._by_name)
