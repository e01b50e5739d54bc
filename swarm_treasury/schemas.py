"""
Pydantic schemas for the swarm treasury core - the strict contract between
schedulers, the policy gate and the coordinator.
"""
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, ClassVar, Dict, List, Literal, Optional, Tuple, Union
import uuid

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from .exceptions import PolicyRejection


class AgentRole(str, Enum):
    ORCHESTRATOR = "orchestrator"
    DCA_AGENT = "dca_agent"
    TRAILING_STOP_AGENT = "trailing_stop_agent"
    SCOUT_AGENT = "scout_agent"
    RISK_MANAGER = "risk_manager"
    CUSTOM = "custom"


class LifecycleState(str, Enum):
    REGISTERED = "registered"
    ACTIVE = "active"
    SLEEPING = "sleeping"
    HALTED = "halted"
    REMOVED = "removed"


class SchedulerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class CycleDecision(str, Enum):
    ACT = "act"
    SLEEP = "sleep"
    ALERT = "alert"


class DistributionStrategy(str, Enum):
    EQUAL = "equal"
    ROLE_BASED = "role_based"


def _new_id() -> str:
    return str(uuid.uuid4())


class Cycle(BaseModel):
    """Sealed record of one scheduler tick."""
    model_config = ConfigDict(frozen=True)

    agent_id: str
    sequence: int = Field(ge=1, description="Monotonic per agent, starts at 1")
    started_at: datetime
    ended_at: datetime
    decision: CycleDecision
    actions_attempted: Tuple[str, ...] = ()
    actions_executed: Tuple[str, ...] = ()
    duration_ms: float = 0.0
    summary: str = ""
    error: Optional[str] = None


class PolicyRules(BaseModel):
    """Immutable rule-set snapshot. Updates produce a new snapshot."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    max_single_tx: float = Field(default=0.5, ge=0, description="Max amount per single transaction")
    daily_limit: float = Field(default=2.0, ge=0, description="Rolling 24h spend cap")
    max_position_pct: float = Field(default=25.0, ge=0, le=100, description="Max % of balance in one position")
    max_price_impact_pct: float = Field(default=3.0, ge=0, description="Max acceptable venue price impact")
    max_risk_score: int = Field(default=700, ge=0, le=1000, description="Max acceptable risk score")
    allowed_assets: Tuple[str, ...] = Field(default=(), description="Allow-list; empty allows all")
    denied_assets: Tuple[str, ...] = Field(
        default=("11111111111111111111111111111112",),
        description="Deny-list; always blocked",
    )
    require_risk_check: bool = True
    fail_closed_on_service_error: bool = Field(
        default=True,
        description="Collaborator unavailability fails the dependent check",
    )


class PolicyCheck(BaseModel):
    """Result of one check in the gate pipeline."""
    model_config = ConfigDict(frozen=True)

    name: str
    passed: bool
    value: Optional[Union[float, str]] = None
    limit: Optional[Union[float, str]] = None
    message: str


class PolicyDecision(BaseModel):
    """Output of one gate evaluation. Never retried automatically."""
    model_config = ConfigDict(frozen=True)

    decision_id: str = Field(default_factory=_new_id)
    agent_id: str
    kind: Literal["swap", "transfer"]
    amount: float
    approved: bool
    checks: Tuple[PolicyCheck, ...]
    reason: str
    timestamp: datetime

    @property
    def failed_checks(self) -> List[str]:
        return [c.name for c in self.checks if not c.passed]

    def raise_if_rejected(self) -> "PolicyDecision":
        if not self.approved:
            raise PolicyRejection(self)
        return self


class SpendingWindow(BaseModel):
    """Rolling accumulator of approved spend for one agent."""
    model_config = ConfigDict(frozen=True)

    window_start: datetime
    total: float = 0.0


class SpendingStatus(BaseModel):
    spent: float
    remaining: float
    window_reset_in_seconds: float


class Mission(BaseModel):
    """Shared free-text goal. Advisory only, no effect on the gate."""
    text: str = "Grow portfolio conservatively. Protect capital first."
    start_cycle: int = 0
    target_cycles: int = 20
    updated_at: Optional[datetime] = None


class MissionStatus(BaseModel):
    mission: str
    cycles_completed: int
    cycles_total: int
    pct: int


class _ActionBase(BaseModel):
    moves_funds: ClassVar[bool] = False

    action_id: str = Field(default_factory=_new_id)
    target_agent_id: Optional[str] = None
    reason: str = ""


class MonitorAction(_ActionBase):
    """Watch prices and trailing-stop levels. Never moves funds."""
    action_type: Literal["monitor"] = "monitor"


class RiskScanAction(_ActionBase):
    """Ask the risk oracle about held assets. Never moves funds."""
    action_type: Literal["risk_scan"] = "risk_scan"
    assets: List[str] = Field(default_factory=list, description="Empty means every tracked asset")


class RebalanceAction(_ActionBase):
    """Flag the agent for coordinator review (e.g. low balance)."""
    action_type: Literal["rebalance"] = "rebalance"


class SwapAction(_ActionBase):
    """Swap native value into a target asset. Gated."""
    moves_funds: ClassVar[bool] = True

    action_type: Literal["swap"] = "swap"
    output_asset: str = Field(..., min_length=1)
    amount: float = Field(gt=0, description="Amount of native asset to spend")
    input_asset: Optional[str] = Field(default=None, description="Defaults to the native asset")
    slippage_bps: int = Field(default=50, ge=0, le=10_000)


class TransferAction(_ActionBase):
    """Plain value transfer to an address. Gated."""
    moves_funds: ClassVar[bool] = True

    action_type: Literal["transfer"] = "transfer"
    to_address: str = Field(..., min_length=1)
    amount: float = Field(gt=0)


class ExitAction(_ActionBase):
    """Sell a held asset back into the native asset. Gated on the native value received."""
    moves_funds: ClassVar[bool] = True

    action_type: Literal["exit"] = "exit"
    asset: str = Field(..., min_length=1)
    fraction: float = Field(default=1.0, gt=0, le=1, description="Share of the holding to sell")
    trigger: Literal["trailing_stop", "risk", "emergency_exit_all", "manual"] = "manual"
    slippage_bps: int = Field(default=100, ge=0, le=10_000)


Action = Annotated[
    Union[MonitorAction, RiskScanAction, RebalanceAction, SwapAction, TransferAction, ExitAction],
    Field(discriminator="action_type"),
]

ACTION_ADAPTER: TypeAdapter = TypeAdapter(Action)


class ObservedState(BaseModel):
    """What a scheduler saw during OBSERVE. Input to the reasoner."""
    agent_id: str
    role: AgentRole
    cycle_number: int
    now: datetime
    balance: float
    asset_balances: Dict[str, float] = Field(default_factory=dict)
    prices: Dict[str, float] = Field(default_factory=dict)
    peak_prices: Dict[str, float] = Field(default_factory=dict)
    risk_scores: Dict[str, int] = Field(default_factory=dict, description="Last oracle score per asset")
    tracked_assets: List[str] = Field(default_factory=list)
    baseline_balance: Optional[float] = None
    last_dca_at: Optional[datetime] = None


class RecallResult(BaseModel):
    agent_id: str
    success: bool
    amount: float = 0.0
    tx_ref: Optional[str] = None
    error: Optional[str] = None


class SackResult(BaseModel):
    agent_id: str
    success: bool
    recalled_amount: float = 0.0
    recall_error: Optional[str] = None
    error: Optional[str] = None


class DistributionResult(BaseModel):
    success: bool
    strategy: DistributionStrategy
    distributable: float = 0.0
    distributed: Dict[str, float] = Field(default_factory=dict)
    skipped: List[str] = Field(default_factory=list)
    failed: Dict[str, str] = Field(default_factory=dict)
    error: Optional[str] = None

    @property
    def total_sent(self) -> float:
        return sum(self.distributed.values())


class AgentStatus(BaseModel):
    agent_id: str
    role: AgentRole
    address: str
    state: LifecycleState
    scheduler_state: SchedulerState
    cycle_number: int
    tracked_assets: List[str] = Field(default_factory=list)
    strategy: Optional[str] = None
    halted_reason: Optional[str] = None


class AgentBalance(BaseModel):
    agent_id: str
    role: AgentRole
    state: LifecycleState
    balance: Optional[float] = None
    error: Optional[str] = None


class PortfolioSnapshot(BaseModel):
    """Registry-wide view taken at read time. An approximation, not a snapshot."""
    vault_balance: Optional[float]
    total_managed: float
    total_portfolio: float
    agent_count: int
    active_agents: int
    agents: List[AgentBalance] = Field(default_factory=list)
    timestamp: datetime
    extra: Dict[str, Any] = Field(default_factory=dict)
