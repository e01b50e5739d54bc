"""
Swarm metrics aggregated from the event stream.
"""
import logging
from collections import defaultdict, deque
from typing import Dict

from .events import Event, EventBus

logger = logging.getLogger("swarm_treasury.metrics")


class SwarmMetrics:
    """In-memory counters fed by an EventBus subscription."""

    def __init__(self, event_bus: EventBus, duration_window: int = 1000):
        self.approvals = 0
        self.blocks = 0
        self.risk_blocks = 0
        self.cycles_completed = 0
        self.swaps_executed = 0
        self.transfers_executed = 0
        self.exits_executed = 0
        self.volume = 0.0
        self.signing_errors = 0
        self._durations: deque[float] = deque(maxlen=duration_window)
        self._per_agent: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._unsubscribe = event_bus.subscribe(self.record, name="metrics")

    def record(self, event: Event) -> None:
        kind = event.kind
        if kind is None:
            return
        payload = event.payload or {}
        agent = self._per_agent[event.agent_id]

        if kind == "policy_decision":
            if payload.get("approved"):
                self.approvals += 1
                agent["approvals"] += 1
            else:
                self.blocks += 1
                agent["blocks"] += 1
                if "risk_score" in payload.get("failed_checks", []):
                    self.risk_blocks += 1
        elif kind == "cycle_complete":
            self.cycles_completed += 1
            agent["cycles"] += 1
            self._durations.append(float(payload.get("duration_ms", 0.0)))
        elif kind == "swap_executed":
            self.swaps_executed += 1
            self.volume += float(payload.get("amount", 0.0))
            agent["swaps"] += 1
        elif kind == "transfer_executed":
            self.transfers_executed += 1
            self.volume += float(payload.get("amount", 0.0))
            agent["transfers"] += 1
        elif kind == "exit_executed":
            self.exits_executed += 1
            self.volume += float(payload.get("native_value", 0.0))
            agent["exits"] += 1
        elif kind == "signing_error":
            self.signing_errors += 1
            agent["signing_errors"] += 1

    @property
    def approval_rate(self) -> float:
        total = self.approvals + self.blocks
        return self.approvals / total if total else 0.0

    @property
    def average_cycle_ms(self) -> float:
        if not self._durations:
            return 0.0
        return sum(self._durations) / len(self._durations)

    def agent_counts(self, agent_id: str) -> Dict[str, int]:
        return dict(self._per_agent.get(agent_id, {}))

    def get_summary(self) -> Dict:
        """Get overall swarm summary."""
        return {
            "governor_approvals": self.approvals,
            "governor_blocks": self.blocks,
            "approval_rate": round(self.approval_rate, 4),
            "risk_blocks": self.risk_blocks,
            "cycles_completed": self.cycles_completed,
            "average_cycle_ms": round(self.average_cycle_ms, 2),
            "swaps_executed": self.swaps_executed,
            "transfers_executed": self.transfers_executed,
            "exits_executed": self.exits_executed,
            "volume": round(self.volume, 9),
            "signing_errors": self.signing_errors,
            "agents": {agent_id: dict(counts) for agent_id, counts in self._per_agent.items()},
        }

    def close(self) -> None:
        self._unsubscribe()
