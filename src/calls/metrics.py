"""Process-local relay counters."""

from __future__ import annotations

from dataclasses import asdict, dataclass


@dataclass
class RelayMetrics:
    """All updates happen on the event loop thread, so plain integers suffice."""

    calls_total: int = 0
    errors_total: int = 0
    active_calls: int = 0
    reconnects_total: int = 0

    def call_started(self) -> None:
        self.calls_total += 1
        self.active_calls += 1

    def call_finished(self) -> None:
        self.active_calls = max(0, self.active_calls - 1)

    def record_error(self) -> None:
        self.errors_total += 1

    def record_reconnect(self) -> None:
        self.reconnects_total += 1

    def snapshot(self) -> dict[str, int]:
        return asdict(self)
