"""Tests for ProjectionErrorPolicy."""

from __future__ import annotations

import asyncio

import pytest

from eventkeel_core.ports.event_store import StoredEvent
from eventkeel_core.primitives.exceptions import HandlerFailure, StorageFailure
from eventkeel_projections.error_handling import (
    ApplyOutcome,
    FailureAction,
    ProjectionErrorPolicy,
)
from eventkeel_projections.options import (
    BackoffKind,
    ErrorHandlingOptions,
    ErrorStrategy,
)

EVENT = StoredEvent(stream="orders", position=7, event_type="OrderPlaced")


def _options(**kwargs: object) -> ErrorHandlingOptions:
    base: dict[str, object] = {
        "initial_retry_delay": 0.0,
        "max_retry_delay": 0.0,
        "backoff": BackoffKind.FIXED,
    }
    base.update(kwargs)
    return ErrorHandlingOptions(**base)


class FlakyApply:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    async def __call__(self) -> None:
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(f"boom {self.calls}")


@pytest.mark.asyncio
async def test_retry_fails_twice_then_succeeds_with_three_invocations() -> None:
    policy = ProjectionErrorPolicy(
        _options(strategy=ErrorStrategy.RETRY, max_retries=3)
    )
    apply = FlakyApply(failures=2)

    outcome = await policy.run(EVENT, apply)

    assert outcome is ApplyOutcome.APPLIED
    assert apply.calls == 3


@pytest.mark.asyncio
async def test_retry_exhausted_falls_back_to_halt() -> None:
    policy = ProjectionErrorPolicy(_options(max_retries=2))
    apply = FlakyApply(failures=10)

    with pytest.raises(HandlerFailure) as exc_info:
        await policy.run(EVENT, apply)

    assert apply.calls == 3
    assert exc_info.value.event is EVENT
    assert exc_info.value.attempt == 3
    assert isinstance(exc_info.value.__cause__, RuntimeError)


@pytest.mark.asyncio
async def test_retry_exhausted_falls_back_to_skip_and_dead_letters() -> None:
    dead: list[tuple[StoredEvent, Exception]] = []

    async def dead_letter(event: StoredEvent, error: Exception) -> None:
        dead.append((event, error))

    policy = ProjectionErrorPolicy(
        _options(max_retries=1, fallback_strategy=ErrorStrategy.SKIP),
        dead_letter_callback=dead_letter,
    )
    apply = FlakyApply(failures=10)

    outcome = await policy.run(EVENT, apply)

    assert outcome is ApplyOutcome.SKIPPED
    assert apply.calls == 2
    assert len(dead) == 1
    assert dead[0][0] is EVENT


@pytest.mark.asyncio
async def test_skip_strategy_does_not_retry() -> None:
    seen: list[StoredEvent] = []
    policy = ProjectionErrorPolicy(
        _options(strategy=ErrorStrategy.SKIP),
        dead_letter_callback=lambda event, _error: seen.append(event),
    )
    apply = FlakyApply(failures=1)

    assert await policy.run(EVENT, apply) is ApplyOutcome.SKIPPED
    assert apply.calls == 1
    assert seen == [EVENT]


@pytest.mark.asyncio
async def test_halt_strategy_raises_on_first_failure() -> None:
    policy = ProjectionErrorPolicy(_options(strategy=ErrorStrategy.HALT))
    apply = FlakyApply(failures=1)

    with pytest.raises(HandlerFailure):
        await policy.run(EVENT, apply)
    assert apply.calls == 1


@pytest.mark.asyncio
async def test_cancellation_is_not_a_handler_failure() -> None:
    policy = ProjectionErrorPolicy(_options(strategy=ErrorStrategy.SKIP))

    async def cancelled() -> None:
        raise asyncio.CancelledError

    with pytest.raises(asyncio.CancelledError):
        await policy.run(EVENT, cancelled)


@pytest.mark.asyncio
async def test_register_custom_policy_without_modifying_core() -> None:
    seen: list[int] = []

    async def always_skip_after_two(
        policy: ProjectionErrorPolicy,
        event: StoredEvent,
        failure: HandlerFailure,
        attempt: int,
    ) -> FailureAction:
        del policy, event, failure
        seen.append(attempt)
        return FailureAction.RETRY if attempt < 2 else FailureAction.SKIP

    policy = ProjectionErrorPolicy(_options(strategy=ErrorStrategy.RETRY))
    policy.register_policy("retry", always_skip_after_two)

    outcome = await policy.run(EVENT, FlakyApply(failures=10))

    assert outcome is ApplyOutcome.SKIPPED
    assert seen == [1, 2]


def test_retry_delay_exponential_is_capped() -> None:
    policy = ProjectionErrorPolicy(
        ErrorHandlingOptions(
            initial_retry_delay=0.5,
            max_retry_delay=3.0,
            backoff=BackoffKind.EXPONENTIAL,
        )
    )
    assert [policy.retry_delay(n) for n in (1, 2, 3, 4, 5)] == [0.5, 1.0, 2.0, 3.0, 3.0]


def test_retry_delay_fixed() -> None:
    policy = ProjectionErrorPolicy(
        ErrorHandlingOptions(initial_retry_delay=0.2, backoff=BackoffKind.FIXED)
    )
    assert policy.retry_delay(1) == policy.retry_delay(4) == 0.2


@pytest.mark.asyncio
async def test_run_storage_retries_transient_failures() -> None:
    policy = ProjectionErrorPolicy(_options(max_retries=3))
    calls = 0

    async def save() -> str:
        nonlocal calls
        calls += 1
        if calls < 3:
            raise StorageFailure("connection reset")
        return "ok"

    assert await policy.run_storage("checkpoint.save", save) == "ok"
    assert calls == 3


@pytest.mark.asyncio
async def test_run_storage_raises_when_exhausted() -> None:
    policy = ProjectionErrorPolicy(_options(max_retries=1))
    calls = 0

    async def save() -> None:
        nonlocal calls
        calls += 1
        raise StorageFailure("down")

    with pytest.raises(StorageFailure):
        await policy.run_storage("checkpoint.save", save)
    assert calls == 2


@pytest.mark.asyncio
async def test_run_storage_does_not_retry_other_errors() -> None:
    policy = ProjectionErrorPolicy(_options(max_retries=3))

    async def broken() -> None:
        raise ValueError("bad key")

    with pytest.raises(ValueError):
        await policy.run_storage("checkpoint.save", broken)
