"""PositionWatermark: contiguous completion tracking over out-of-order completions."""

from __future__ import annotations

from collections import OrderedDict

from eventkeel_core.primitives.exceptions import OrderingViolation


class PositionWatermark:
    """Highest position P such that every tracked position <= P is complete.

    Positions are tracked in log order by the feed and completed in any order
    by partition workers, so the watermark only moves over a finished prefix.
    """

    def __init__(self, floor: int = -1) -> None:
        self._value = floor
        self._last_tracked = floor
        self._pending: OrderedDict[int, bool] = OrderedDict()

    @property
    def value(self) -> int:
        return self._value

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def track(self, position: int) -> None:
        if position <= self._last_tracked:
            raise OrderingViolation(
                f"Position {position} tracked after {self._last_tracked}",
                expected=self._last_tracked + 1,
                actual=position,
            )
        self._pending[position] = False
        self._last_tracked = position

    def complete(self, position: int) -> bool:
        """Mark *position* done. Returns True if the watermark moved."""
        if position not in self._pending:
            return False
        self._pending[position] = True
        moved = False
        while self._pending:
            first, done = next(iter(self._pending.items()))
            if not done:
                break
            self._pending.popitem(last=False)
            self._value = first
            moved = True
        return moved

    def skip(self, position: int) -> bool:
        """Track and complete *position* in one step."""
        self.track(position)
        return self.complete(position)
