"""
Configuration management with safety validation for the swarm treasury core.
"""
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from pydantic import ValidationError

from .exceptions import ConfigError
from .schemas import PolicyRules

DEFAULT_DENIED_ASSETS = ["11111111111111111111111111111112"]

DEFAULT_ROLE_WEIGHTS = {
    "dca_agent": 0.40,
    "trailing_stop_agent": 0.25,
    "scout_agent": 0.15,
    "risk_manager": 0.05,
    "custom": 0.15,
}


@dataclass
class SwarmConfig:
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    quote_api_base: str = ""
    risk_api_base: str = ""

    max_single_tx: float = 0.5
    daily_limit: float = 2.0
    max_position_pct: float = 25.0
    max_price_impact_pct: float = 3.0
    max_risk_score: int = 700
    require_risk_check: bool = True
    fail_closed_on_service_error: bool = True
    denied_assets: List[str] = field(default_factory=lambda: list(DEFAULT_DENIED_ASSETS))
    allowed_assets: List[str] = field(default_factory=list)

    heartbeat_interval_seconds: float = 60.0
    agent_interval_seconds: Optional[float] = None
    event_log_capacity: int = 500
    cycle_history_limit: int = 100

    gas_reserve: float = 0.002
    recall_dust: float = 0.001
    vault_reserve: float = 0.1
    min_distributable: float = 0.01
    distribution_dust: float = 0.001
    distribution_precision: int = 4
    default_role_weight: float = 0.10
    role_weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_ROLE_WEIGHTS))
    protected_agent_ids: List[str] = field(default_factory=lambda: ["orchestrator_main", "risk_manager_01"])

    mission_target_cycles: int = 20
    native_asset: str = "SOL"

    audit_log_dir: str = "swarm_treasury/logs"
    log_level: str = "INFO"

    def __post_init__(self):
        self._validate_safety()

    def _validate_safety(self):
        """Reject configurations that would let an agent start with unsafe limits."""
        errors = []
        for name in (
            "max_single_tx", "daily_limit", "max_position_pct", "max_price_impact_pct",
            "gas_reserve", "recall_dust", "vault_reserve", "min_distributable",
            "distribution_dust", "default_role_weight",
        ):
            if getattr(self, name) < 0:
                errors.append(f"{name} must be >= 0")
        if not 0 <= self.max_risk_score <= 1000:
            errors.append("max_risk_score must be within 0-1000")
        if self.max_position_pct > 100:
            errors.append("max_position_pct must be <= 100")
        if self.heartbeat_interval_seconds <= 0 or (
            self.agent_interval_seconds is not None and self.agent_interval_seconds <= 0
        ):
            errors.append("heartbeat intervals must be > 0")
        if self.event_log_capacity < 1:
            errors.append("event_log_capacity must be >= 1")
        if self.cycle_history_limit < 1:
            errors.append("cycle_history_limit must be >= 1")
        if self.distribution_precision < 0:
            errors.append("distribution_precision must be >= 0")
        if self.mission_target_cycles < 1:
            errors.append("mission_target_cycles must be >= 1")
        for role, weight in self.role_weights.items():
            if weight < 0:
                errors.append(f"role weight for {role} must be >= 0")
        overlap = set(self.allowed_assets) & set(self.denied_assets)
        if overlap:
            errors.append(f"assets both allowed and denied: {sorted(overlap)}")
        if errors:
            raise ConfigError("SAFETY: invalid swarm configuration: " + "; ".join(errors), errors)

    def default_rules(self) -> PolicyRules:
        """Build the default gate rule snapshot from this configuration."""
        try:
            return PolicyRules(
                max_single_tx=self.max_single_tx,
                daily_limit=self.daily_limit,
                max_position_pct=self.max_position_pct,
                max_price_impact_pct=self.max_price_impact_pct,
                max_risk_score=self.max_risk_score,
                require_risk_check=self.require_risk_check,
                fail_closed_on_service_error=self.fail_closed_on_service_error,
                allowed_assets=tuple(self.allowed_assets),
                denied_assets=tuple(self.denied_assets),
            )
        except ValidationError as e:
            raise ConfigError(f"Invalid policy rules: {e}", e.errors()) from e

    def role_weight(self, role: str) -> float:
        return self.role_weights.get(role, self.default_role_weight)

    def is_protected(self, agent_id: str) -> bool:
        return agent_id in self.protected_agent_ids


def _get_float(key: str, default: float) -> float:
    """Get float from environment with default."""
    value = os.environ.get(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _get_optional_float(key: str) -> Optional[float]:
    """Float override that stays None when unset or malformed."""
    value = os.environ.get(key)
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _get_int(key: str, default: int) -> int:
    """Get integer from environment with default."""
    value = os.environ.get(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_bool(key: str, default: bool) -> bool:
    value = os.environ.get(key)
    if value is None:
        return default
    return value.strip().lower() == "true"


def _get_list(key: str, default: List[str]) -> List[str]:
    value = os.environ.get(key)
    if value is None:
        return list(default)
    return [s.strip() for s in value.split(",") if s.strip()]


def load_config() -> SwarmConfig:
    """Load configuration from environment variables."""
    return SwarmConfig(
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        quote_api_base=os.getenv("QUOTE_API_BASE", ""),
        risk_api_base=os.getenv("RISK_API_BASE", ""),
        max_single_tx=_get_float("GOVERNOR_MAX_SINGLE_TX", 0.5),
        daily_limit=_get_float("GOVERNOR_DAILY_LIMIT", 2.0),
        max_position_pct=_get_float("GOVERNOR_MAX_POSITION_PCT", 25.0),
        max_price_impact_pct=_get_float("GOVERNOR_MAX_PRICE_IMPACT_PCT", 3.0),
        max_risk_score=_get_int("GOVERNOR_MAX_RISK_SCORE", 700),
        require_risk_check=_get_bool("GOVERNOR_REQUIRE_RISK_CHECK", True),
        fail_closed_on_service_error=_get_bool("GOVERNOR_FAIL_CLOSED", True),
        denied_assets=_get_list("GOVERNOR_DENIED_ASSETS", DEFAULT_DENIED_ASSETS),
        allowed_assets=_get_list("GOVERNOR_ALLOWED_ASSETS", []),
        heartbeat_interval_seconds=_get_float("HEARTBEAT_INTERVAL_SECONDS", 60.0),
        agent_interval_seconds=_get_optional_float("AGENT_INTERVAL_SECONDS"),
        event_log_capacity=_get_int("EVENT_LOG_CAPACITY", 500),
        cycle_history_limit=_get_int("CYCLE_HISTORY_LIMIT", 100),
        gas_reserve=_get_float("GAS_RESERVE", 0.002),
        recall_dust=_get_float("RECALL_DUST", 0.001),
        vault_reserve=_get_float("VAULT_RESERVE", 0.1),
        min_distributable=_get_float("MIN_DISTRIBUTABLE", 0.01),
        distribution_dust=_get_float("DISTRIBUTION_DUST", 0.001),
        distribution_precision=_get_int("DISTRIBUTION_PRECISION", 4),
        protected_agent_ids=_get_list("PROTECTED_AGENT_IDS", ["orchestrator_main", "risk_manager_01"]),
        mission_target_cycles=_get_int("MISSION_TARGET_CYCLES", 20),
        native_asset=os.getenv("NATIVE_ASSET", "SOL"),
        audit_log_dir=os.getenv("AUDIT_LOG_DIR", "swarm_treasury/logs"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


def configure_logging(level: Optional[str] = None) -> logging.Logger:
    """Set up the package logger. Safe to call more than once."""
    root = logging.getLogger("swarm_treasury")
    root.setLevel(getattr(logging, (level or "INFO").upper(), logging.INFO))
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        root.addHandler(handler)
    return root
