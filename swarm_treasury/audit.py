"""
JSONL audit trail - one line per event, one file per UTC day.
"""
import json
import logging
from pathlib import Path
from typing import Optional

from .events import Event, EventBus

logger = logging.getLogger("swarm_treasury.audit")


class JsonlAuditSink:
    """EventBus subscriber that appends every event to events_YYYYMMDD.jsonl."""

    def __init__(self, log_dir: str = "swarm_treasury/logs", event_bus: Optional[EventBus] = None):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.lines_written = 0
        self._unsubscribe = None
        if event_bus is not None:
            self.attach(event_bus)

    def attach(self, event_bus: EventBus) -> None:
        self._unsubscribe = event_bus.subscribe(self.write, name="audit")

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def path_for(self, event: Event) -> Path:
        return self.log_dir / f"events_{event.timestamp.strftime('%Y%m%d')}.jsonl"

    def write(self, event: Event) -> None:
        try:
            with open(self.path_for(event), "a") as f:
                f.write(json.dumps(event.model_dump(mode="json"), default=str) + "\n")
            self.lines_written += 1
        except OSError as e:
            logger.error(f"Failed to write audit event {event.id}: {e}")
