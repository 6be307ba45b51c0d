"""
Usage counters for bot commands and ledger operations.

A Metrics instance owns its own CollectorRegistry so several instances
(e.g. one per test) never collide on metric names.
"""

from __future__ import annotations

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, generate_latest, start_http_server

MODE_CHAT = "chat"
MODE_INLINE = "inline"

STATE_INVOKED = "invoked"
STATE_SUCCEEDED = "succeeded"


class OperationCounter:
    """Counter split by triggering mode (chat/inline) and state (invoked/succeeded)."""

    def __init__(self, name: str, documentation: str, registry: CollectorRegistry) -> None:
        self._counter = Counter(name, documentation, ("mode", "state"), registry=registry)
        for mode in (MODE_CHAT, MODE_INLINE):
            for state in (STATE_INVOKED, STATE_SUCCEEDED):
                self._counter.labels(mode=mode, state=state)

    def invoked(self, mode: str = MODE_CHAT) -> None:
        self._counter.labels(mode=mode, state=STATE_INVOKED).inc()

    def succeeded(self, mode: str = MODE_CHAT) -> None:
        self._counter.labels(mode=mode, state=STATE_SUCCEEDED).inc()


class Metrics:
    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()

        self.grow = OperationCounter("command_grow_usage", "count of /grow invocations", self.registry)
        self.top = OperationCounter("command_top_usage", "count of /top invocations", self.registry)
        self.dod = OperationCounter(
            "command_dick_of_day_usage", "count of /dick_of_day invocations", self.registry
        )
        self.pvp = OperationCounter("command_pvp_usage", "count of /pvp invocations", self.registry)
        self.loan = OperationCounter("command_loan_usage", "count of /loan invocations", self.registry)

        self.cmd_start = Counter(
            "command_start_usage", "count of /start invocations", registry=self.registry
        )
        self.cmd_help = Counter("command_help_usage", "count of /help invocations", registry=self.registry)

    def render(self) -> bytes:
        return generate_latest(self.registry)

    def serve(self, port: int) -> None:
        start_http_server(port, registry=self.registry)
