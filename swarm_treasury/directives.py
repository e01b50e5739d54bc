"""
Directive set - shared, versioned configuration read fresh every cycle.

Schedulers never write directives. Unknown keys are ignored and missing keys
fall back to the defaults below.
"""
import logging
from datetime import datetime
from typing import Any, Mapping, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .clock import Clock, SystemClock
from .exceptions import ConfigError

logger = logging.getLogger("swarm_treasury.directives")


class Directives(BaseModel):
    """Typed view over the directive key/value map."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    version: int = Field(default=1, ge=1)
    mission: str = "Grow portfolio conservatively. Protect capital first."

    dca_target_asset: str = "BONK"
    dca_amount: float = Field(default=0.01, ge=0, description="Native units per DCA buy")
    dca_interval_minutes: float = Field(default=5.0, gt=0)
    pause_dca: bool = False

    trailing_stop_pct: float = Field(default=7.0, gt=0, le=100)
    risk_check_enabled: bool = True
    min_operating_balance: float = Field(default=0.1, ge=0)

    emergency_stop: bool = False
    emergency_exit_all: bool = False
    trailing_exit_fraction: float = Field(default=1.0, gt=0, le=1, description="Share of a holding sold on an exit")

    off_ramp_enabled: bool = False
    off_ramp_target_wallet: str = ""
    off_ramp_trigger_pct: float = Field(default=15.0, gt=0)
    off_ramp_sweep_pct: float = Field(default=80.0, gt=0, le=100)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Directives":
        """Validate a raw key/value map. Keys are matched case-insensitively."""
        normalized = {str(k).lower(): v for k, v in data.items()}
        try:
            return cls.model_validate(normalized)
        except ValidationError as e:
            raise ConfigError(f"Malformed directive set: {e.error_count()} invalid value(s)", e.errors()) from e


class DirectiveSource(Protocol):
    async def read(self) -> Directives:
        ...


class InMemoryDirectiveSource:
    """Directive source held in process. Each update bumps the version."""

    def __init__(self, initial: Optional[Mapping[str, Any]] = None, clock: Optional[Clock] = None):
        self._clock = clock or SystemClock()
        self._directives = Directives.from_mapping(initial or {})
        self.updated_at: datetime = self._clock.now()

    async def read(self) -> Directives:
        return self._directives

    @property
    def current(self) -> Directives:
        return self._directives

    def update(self, **changes: Any) -> Directives:
        """Merge *changes* into a new directive set with version + 1."""
        merged = self._directives.model_dump()
        merged.update({k.lower(): v for k, v in changes.items()})
        merged["version"] = self._directives.version + 1
        self._directives = Directives.from_mapping(merged)
        self.updated_at = self._clock.now()
        logger.info(f"Directives updated to v{self._directives.version}: {sorted(changes)}")
        return self._directives
