from __future__ import annotations

from typing import Any

import pytest

from eventkeel_core.adapters.memory.checkpoint_store import InMemoryCheckpointStore
from eventkeel_core.adapters.memory.event_store import InMemoryEventStore
from eventkeel_core.correlation import correlation_scope
from eventkeel_core.instrumentation import (
    HookRegistry,
    get_hook_registry,
    set_hook_registry,
)


class RecordingHook:
    def __init__(self, name: str, order: list[str]) -> None:
        self._name = name
        self._order = order
        self.seen: list[tuple[str, dict[str, Any]]] = []

    async def __call__(
        self,
        operation: str,
        attributes: dict[str, Any],
        next_handler: Any,
    ) -> Any:
        self.seen.append((operation, dict(attributes)))
        self._order.append(f"before:{self._name}")
        result = await next_handler()
        self._order.append(f"after:{self._name}")
        return result


@pytest.mark.asyncio
async def test_hook_registry_executes_in_priority_order() -> None:
    order: list[str] = []
    registry = HookRegistry()
    registry.register(RecordingHook("inner", order), priority=0, operations=["*"])
    registry.register(RecordingHook("outer", order), priority=-10, operations=["*"])

    async def _handler() -> str:
        order.append("handler")
        return "ok"

    result = await registry.execute_all("projection.apply.P", {}, _handler)
    assert result == "ok"
    assert order == [
        "before:outer",
        "before:inner",
        "handler",
        "after:inner",
        "after:outer",
    ]


@pytest.mark.asyncio
async def test_operation_and_projection_filters() -> None:
    order: list[str] = []
    registry = HookRegistry()
    hook = RecordingHook("apply", order)
    registry.register(hook, operations=["projection.apply.*"], projections=["P"])

    async def _noop() -> None:
        return None

    await registry.execute_all("projection.apply.P", {"projection.name": "P"}, _noop)
    await registry.execute_all("projection.apply.Q", {"projection.name": "Q"}, _noop)
    await registry.execute_all("checkpoint.save.P", {"projection.name": "P"}, _noop)

    assert [op for op, _ in hook.seen] == ["projection.apply.P"]


@pytest.mark.asyncio
async def test_disabled_registration_is_skipped() -> None:
    order: list[str] = []
    registry = HookRegistry()
    registration = registry.register(RecordingHook("off", order))
    registration.enabled = False

    async def _noop() -> None:
        return None

    await registry.execute_all("anything", {}, _noop)
    assert order == []
    registry.clear()
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_memory_adapters_emit_hooks_with_correlation_id() -> None:
    order: list[str] = []
    registry = HookRegistry()
    hook = RecordingHook("all", order)
    registry.register(hook)
    set_hook_registry(registry)
    try:
        with correlation_scope("run-1"):
            await InMemoryEventStore().append("orders", "OrderPlaced", b"{}")
            await InMemoryCheckpointStore().save_checkpoint("P", 4, partition_key="A")
    finally:
        set_hook_registry(HookRegistry())

    operations = [op for op, _ in hook.seen]
    assert operations == ["event_store.append.orders", "checkpoint.save.P"]
    assert all(attrs["correlation_id"] == "run-1" for _, attrs in hook.seen)
    assert hook.seen[1][1]["projection.partition"] == "A"


def test_get_hook_registry_is_stable_within_context() -> None:
    assert get_hook_registry() is get_hook_registry()
