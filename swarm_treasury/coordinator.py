"""
Coordinator - owns the agent registry and the vault.

Each registered agent gets its own PolicyGate and Scheduler. The coordinator
drives lifecycle transitions

    Registered -> Active <-> Sleeping -> Removed
                     \\-> Halted (risk pause, reason recorded)

and moves capital between the vault and agents. Protected agents (the vault
identity and the designated risk manager) can never be removed or drained.
Per-agent failures inside recall, sack and distribution are caught, logged
as events, and reported in result models instead of raised.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_DOWN, Decimal
from typing import Callable, Dict, List, Optional, Sequence

from .clock import Clock, SystemClock
from .config import SwarmConfig
from .directives import DirectiveSource, InMemoryDirectiveSource
from .events import Event, EventBus, EventCategory
from .exceptions import RegistryError
from .integrations.quotes import PriceFeed, QuoteProvider
from .integrations.risk_oracle import RiskOracle
from .integrations.wallet import Wallet
from .policy import PolicyGate
from .reasoner import Reasoner, RuleBasedReasoner
from .scheduler import Scheduler
from .schemas import (
    AgentBalance,
    AgentRole,
    AgentStatus,
    DistributionResult,
    DistributionStrategy,
    LifecycleState,
    Mission,
    MissionStatus,
    PolicyRules,
    PortfolioSnapshot,
    RecallResult,
    SackResult,
)

logger = logging.getLogger("swarm_treasury.coordinator")


@dataclass(frozen=True)
class RoleDefinition:
    role: AgentRole
    label: str
    default_strategy: str
    suggested_interval_seconds: float
    rule_overrides: Dict[str, object] = field(default_factory=dict)


ROLE_REGISTRY: List[RoleDefinition] = [
    RoleDefinition(AgentRole.ORCHESTRATOR, "Orchestrator", "coordinate", 60.0),
    RoleDefinition(AgentRole.DCA_AGENT, "DCA Agent", "dca", 60.0),
    RoleDefinition(AgentRole.TRAILING_STOP_AGENT, "Trailing Stop", "trailing_stop", 15.0),
    RoleDefinition(AgentRole.RISK_MANAGER, "Risk Manager", "risk_monitor", 30.0),
    RoleDefinition(AgentRole.CUSTOM, "Off-Ramper", "offramp", 60.0),
    RoleDefinition(AgentRole.SCOUT_AGENT, "Token Sniper", "snipe", 5.0, {"max_single_tx": 0.05}),
]


def get_role(role: AgentRole) -> RoleDefinition:
    for definition in ROLE_REGISTRY:
        if definition.role == role:
            return definition
    raise KeyError(f"Unknown role: {role}")


@dataclass
class AgentOptions:
    role: Optional[AgentRole] = None
    tracked_assets: Sequence[str] = ()
    start_immediately: bool = False
    interval_seconds: Optional[float] = None
    rules: Optional[PolicyRules] = None
    strategy: Optional[str] = None
    reasoner: Optional[Reasoner] = None


@dataclass
class AgentEntry:
    """One registry row. The wallet is referenced, never copied."""
    agent_id: str
    wallet: Wallet
    role: AgentRole
    gate: PolicyGate
    scheduler: Scheduler
    tracked_assets: List[str]
    state: LifecycleState = LifecycleState.REGISTERED
    strategy: Optional[str] = None
    strategy_active: bool = False
    halted_reason: Optional[str] = None
    registered_at: Optional[datetime] = None

    def to_status(self) -> AgentStatus:
        return AgentStatus(
            agent_id=self.agent_id,
            role=self.role,
            address=self.wallet.address,
            state=self.state,
            scheduler_state=self.scheduler.status,
            cycle_number=self.scheduler.cycle_number,
            tracked_assets=list(self.tracked_assets),
            strategy=self.strategy,
            halted_reason=self.halted_reason,
        )


def _floor(value: Decimal, precision: int) -> Decimal:
    return value.quantize(Decimal(1).scaleb(-precision), rounding=ROUND_DOWN)


def _dec(value: float) -> Decimal:
    return Decimal(str(value))


class Coordinator:
    """Registry, lifecycle and capital flows for the whole swarm."""

    def __init__(
        self,
        vault_wallet: Wallet,
        event_bus: EventBus,
        config: Optional[SwarmConfig] = None,
        directive_source: Optional[DirectiveSource] = None,
        clock: Optional[Clock] = None,
        quote_provider: Optional[QuoteProvider] = None,
        price_feed: Optional[PriceFeed] = None,
        risk_oracle: Optional[RiskOracle] = None,
        reasoner_factory: Optional[Callable[[AgentRole], Reasoner]] = None,
    ):
        self.vault = vault_wallet
        self.agent_id = vault_wallet.agent_id
        self.event_bus = event_bus
        self.config = config or SwarmConfig()
        self.clock = clock or SystemClock()
        self.directive_source = directive_source or InMemoryDirectiveSource(clock=self.clock)
        self.quote_provider = quote_provider
        self.price_feed = price_feed
        self.risk_oracle = risk_oracle
        self.reasoner_factory = reasoner_factory

        self._agents: Dict[str, AgentEntry] = {}
        self._vault_cycles = 0
        self.mission = Mission(target_cycles=self.config.mission_target_cycles)

        self._unsubscribe = self.event_bus.subscribe(
            self._on_event,
            categories=[EventCategory.ALERT, EventCategory.SLEEP],
            name="coordinator",
        )

    def _on_event(self, event: Event) -> None:
        if event.kind == "cycle_complete" and event.agent_id == self.agent_id:
            self._vault_cycles += 1
        elif event.kind == "emergency_stop":
            entry = self._agents.get(event.agent_id)
            if entry is not None and entry.state is LifecycleState.ACTIVE:
                entry.state = LifecycleState.SLEEPING
                entry.strategy_active = False
                logger.warning(f"Agent {event.agent_id} stopped by emergency directive")

    def is_protected(self, agent_id: str) -> bool:
        return agent_id == self.agent_id or self.config.is_protected(agent_id)

    def register_agent(self, wallet: Wallet, options: Optional[AgentOptions] = None) -> AgentEntry:
        """
        Insert a Registered entry (Active if options.start_immediately).

        Raises:
            RegistryError: if the agent id is already registered.
        """
        agent_id = wallet.agent_id
        if agent_id in self._agents:
            raise RegistryError(f"Agent {agent_id} is already registered", agent_id)

        opts = options or AgentOptions()
        role = opts.role or self._role_from_wallet(wallet)
        role_def = get_role(role)
        rules = opts.rules or self._rules_for(role_def)

        if opts.interval_seconds is not None:
            interval = opts.interval_seconds
        elif agent_id == self.agent_id:
            interval = self.config.heartbeat_interval_seconds
        elif self.config.agent_interval_seconds is not None:
            interval = self.config.agent_interval_seconds
        else:
            interval = role_def.suggested_interval_seconds

        gate = PolicyGate(
            agent_id,
            self.event_bus,
            rules=rules,
            quote_provider=self.quote_provider,
            risk_oracle=self.risk_oracle,
            clock=self.clock,
            native_asset=self.config.native_asset,
        )
        reasoner = opts.reasoner or (self.reasoner_factory(role) if self.reasoner_factory else RuleBasedReasoner())
        scheduler = Scheduler(
            wallet,
            gate,
            self.event_bus,
            self.directive_source,
            reasoner=reasoner,
            clock=self.clock,
            interval_seconds=interval,
            role=role,
            tracked_assets=opts.tracked_assets,
            quote_provider=self.quote_provider,
            price_feed=self.price_feed,
            risk_oracle=self.risk_oracle,
            history_limit=self.config.cycle_history_limit,
            native_asset=self.config.native_asset,
        )
        entry = AgentEntry(
            agent_id=agent_id,
            wallet=wallet,
            role=role,
            gate=gate,
            scheduler=scheduler,
            tracked_assets=list(opts.tracked_assets),
            strategy=opts.strategy or role_def.default_strategy,
            registered_at=self.clock.now(),
        )
        self._agents[agent_id] = entry
        logger.info(f"Registered agent {agent_id} as {role.value}")
        self.event_bus.success(
            self.agent_id,
            f"Agent registered: {agent_id} ({role_def.label})",
            {"type": "agent_registered", "agent_id": agent_id, "role": role.value},
        )

        if opts.start_immediately:
            self.activate_agent(agent_id)
        return entry

    def _role_from_wallet(self, wallet: Wallet) -> AgentRole:
        try:
            return AgentRole(getattr(wallet, "role", AgentRole.CUSTOM.value))
        except ValueError:
            return AgentRole.CUSTOM

    def _rules_for(self, role_def: RoleDefinition) -> PolicyRules:
        rules = self.config.default_rules()
        if not role_def.rule_overrides:
            return rules
        return PolicyRules(**{**rules.model_dump(), **role_def.rule_overrides})

    def get_agent(self, agent_id: str) -> Optional[AgentEntry]:
        return self._agents.get(agent_id)

    def list_agents(self) -> List[AgentStatus]:
        return [entry.to_status() for entry in self._agents.values()]

    def update_agent_rules(self, agent_id: str, **changes) -> PolicyRules:
        entry = self._agents.get(agent_id)
        if entry is None:
            raise RegistryError(f"Agent {agent_id} not found", agent_id)
        return entry.gate.update_rules(**changes)

    def __contains__(self, agent_id: str) -> bool:
        return agent_id in self._agents

    def __len__(self) -> int:
        return len(self._agents)

    def activate_agent(self, agent_id: str) -> bool:
        entry = self._agents.get(agent_id)
        if entry is None:
            return False
        if entry.state is LifecycleState.ACTIVE and entry.scheduler.is_running:
            return True

        entry.scheduler.start()
        entry.state = LifecycleState.ACTIVE
        entry.strategy_active = True
        entry.halted_reason = None
        self.event_bus.wake(agent_id, "Agent activated by coordinator", {"type": "agent_activated"})
        return True

    def sleep_agent(self, agent_id: str) -> bool:
        entry = self._agents.get(agent_id)
        if entry is None:
            return False
        if entry.state is LifecycleState.SLEEPING:
            return True

        entry.scheduler.stop()
        entry.state = LifecycleState.SLEEPING
        entry.strategy_active = False
        self.event_bus.sleep(agent_id, "Agent put to sleep by coordinator", {"type": "agent_slept"})
        return True

    def halt_agent(self, agent_id: str, reason: str) -> bool:
        """Risk-triggered pause. The entry stays registered with its reason."""
        entry = self._agents.get(agent_id)
        if entry is None:
            return False

        entry.scheduler.stop()
        entry.strategy_active = False
        entry.state = LifecycleState.HALTED
        entry.halted_reason = reason
        logger.warning(f"Agent {agent_id} halted: {reason}")
        self.event_bus.alert(agent_id, f"HALTED by risk manager: {reason}", {"type": "risk_halt", "reason": reason})
        return True

    def halt_all(self, reason: str) -> List[str]:
        halted = [agent_id for agent_id in list(self._agents) if self.halt_agent(agent_id, reason)]
        self.event_bus.alert(
            self.agent_id,
            f"All agents halted: {reason}",
            {"type": "risk_halt_all", "reason": reason, "agents": halted},
        )
        return halted

    async def stop_all(self) -> None:
        """Stop every scheduler and wait for in-flight cycles to seal."""
        for entry in self._agents.values():
            entry.scheduler.stop()
            entry.strategy_active = False
            if entry.state is LifecycleState.ACTIVE:
                entry.state = LifecycleState.SLEEPING
        for entry in list(self._agents.values()):
            await entry.scheduler.drain()
        logger.info(f"Stopped {len(self._agents)} scheduler(s)")

    async def recall_funds(self, agent_id: str) -> RecallResult:
        """Sweep an agent's balance, minus the gas reserve, back to the vault."""
        entry = self._agents.get(agent_id)
        if entry is None:
            return RecallResult(agent_id=agent_id, success=False, error="Agent not found")
        if self.is_protected(agent_id):
            self.event_bus.warn(self.agent_id, f"Recall refused: {agent_id} is protected", {"type": "recall_refused"})
            return RecallResult(agent_id=agent_id, success=False, error="Cannot recall from protected agent")

        try:
            balance = await entry.wallet.get_balance()
        except Exception as e:
            self.event_bus.error(self.agent_id, f"Recall failed reading {agent_id} balance: {e}", {"type": "recall_failed"})
            return RecallResult(agent_id=agent_id, success=False, error=str(e))

        amount = _floor(max(Decimal(0), _dec(balance) - _dec(self.config.gas_reserve)), 9)
        if amount <= _dec(self.config.recall_dust):
            self.event_bus.observe(
                self.agent_id,
                f"Recall skipped: {agent_id} balance {balance:.4f} too low",
                {"type": "recall_failed", "agent_id": agent_id, "balance": balance},
            )
            return RecallResult(agent_id=agent_id, success=False, error="Insufficient balance to recall")

        self.event_bus.execute(
            self.agent_id,
            f"Governor demanding recall: {amount:.4f} from {agent_id} -> vault",
            {"type": "recall_submitting", "agent_id": agent_id, "amount": float(amount)},
        )
        try:
            tx_ref = await entry.wallet.transfer(self.vault.address, float(amount))
        except Exception as e:
            self.event_bus.error(
                self.agent_id,
                f"Recall from {agent_id} failed: {e}",
                {"type": "recall_failed", "agent_id": agent_id, "error": str(e)},
            )
            return RecallResult(agent_id=agent_id, success=False, error=str(e))

        self.event_bus.success(
            self.agent_id,
            f"Recall complete: {amount:.4f} returned to vault. Tx: {tx_ref[:12]}...",
            {"type": "governor_recall", "agent_id": agent_id, "amount": float(amount), "tx_ref": tx_ref},
        )
        return RecallResult(agent_id=agent_id, success=True, amount=float(amount), tx_ref=tx_ref)

    async def sack_agent(self, agent_id: str) -> SackResult:
        """Recall, stop and deregister. Recall failure does not block removal."""
        if self.is_protected(agent_id):
            self.event_bus.warn(self.agent_id, f"Sack refused: {agent_id} is protected", {"type": "sack_refused"})
            return SackResult(agent_id=agent_id, success=False, error="Protected agent cannot be sacked")
        if agent_id not in self._agents:
            return SackResult(agent_id=agent_id, success=False, error="Agent not found")

        recall = await self.recall_funds(agent_id)
        if not recall.success:
            logger.warning(f"Recall during sack of {agent_id} failed ({recall.error}); removing anyway")

        entry = self._agents.pop(agent_id, None)
        if entry is not None:
            entry.scheduler.stop()
            entry.strategy_active = False
            entry.state = LifecycleState.REMOVED

        self.event_bus.alert(
            self.agent_id,
            f"Agent {agent_id} has been sacked. {recall.amount:.4f} recalled.",
            {"type": "agent_sacked", "agent_id": agent_id, "recalled": recall.amount},
        )
        return SackResult(
            agent_id=agent_id,
            success=True,
            recalled_amount=recall.amount,
            recall_error=recall.error,
        )

    async def distribute_capital(self, strategy: str = DistributionStrategy.ROLE_BASED.value) -> DistributionResult:
        """
        Split the vault's distributable balance across non-protected agents.

        Each amount is floor(distributable * weight) at the configured
        precision; dust amounts are skipped and per-agent failures are
        reported without aborting the remaining transfers.
        """
        strategy = DistributionStrategy(strategy)
        try:
            vault_balance = await self.vault.get_balance()
        except Exception as e:
            self.event_bus.error(self.agent_id, f"Distribution failed reading vault: {e}", {"type": "distribution_failed"})
            return DistributionResult(success=False, strategy=strategy, error=str(e))

        distributable = max(Decimal(0), _dec(vault_balance) - _dec(self.config.vault_reserve))
        if distributable < _dec(self.config.min_distributable):
            error = f"Insufficient vault balance: {vault_balance:.4f}"
            self.event_bus.warn(self.agent_id, error, {"type": "distribution_failed"})
            return DistributionResult(success=False, strategy=strategy, distributable=float(distributable), error=error)

        eligible = [e for e in self._agents.values() if not self.is_protected(e.agent_id)]
        if not eligible:
            return DistributionResult(
                success=False, strategy=strategy, distributable=float(distributable), error="No eligible agents"
            )

        if strategy is DistributionStrategy.EQUAL:
            shares = {e.agent_id: distributable / len(eligible) for e in eligible}
        else:
            weights = {e.agent_id: _dec(self.config.role_weight(e.role.value)) for e in eligible}
            total_weight = sum(weights.values())
            if total_weight > 1:
                weights = {k: w / total_weight for k, w in weights.items()}
            shares = {k: distributable * w for k, w in weights.items()}

        self.event_bus.plan(
            self.agent_id,
            f"Distributing {distributable:.4f} across {len(eligible)} agents ({strategy.value})",
            {"type": "distribution_started", "distributable": float(distributable)},
        )

        result = DistributionResult(success=True, strategy=strategy, distributable=float(distributable))
        dust = _dec(self.config.distribution_dust)
        for entry in eligible:
            amount = _floor(shares[entry.agent_id], self.config.distribution_precision)
            if amount < dust:
                result.skipped.append(entry.agent_id)
                continue
            try:
                await self.vault.transfer(entry.wallet.address, float(amount))
            except Exception as e:
                result.failed[entry.agent_id] = str(e)
                self.event_bus.error(
                    self.agent_id,
                    f"Distribution to {entry.agent_id} failed: {str(e)[:50]}",
                    {"type": "distribution_transfer_failed", "agent_id": entry.agent_id},
                )
                continue
            result.distributed[entry.agent_id] = float(amount)
            self.event_bus.execute(
                entry.agent_id,
                f"Received {amount:.4f} from vault",
                {"type": "capital_received", "amount": float(amount)},
            )

        result.success = not result.failed
        self.event_bus.success(
            self.agent_id,
            f"Capital distribution complete: {result.total_sent:.4f} sent to {len(result.distributed)} agents",
            {
                "type": "capital_distributed",
                "total": result.total_sent,
                "distributed": dict(result.distributed),
                "failed": sorted(result.failed),
            },
        )
        return result

    def set_mission(self, text: str) -> Mission:
        """Replace the shared mission and broadcast it to every agent's log."""
        self.mission = Mission(
            text=text,
            start_cycle=self._vault_cycles,
            target_cycles=self.config.mission_target_cycles,
            updated_at=self.clock.now(),
        )
        self.event_bus.publish(self.agent_id, EventCategory.MISSION, f"Mission set: {text}", {"type": "mission_set"})
        for agent_id in self._agents:
            if agent_id == self.agent_id:
                continue
            self.event_bus.publish(
                agent_id, EventCategory.MISSION, f"New mission: {text}", {"type": "mission_broadcast"}
            )
        return self.mission

    def get_mission_status(self) -> MissionStatus:
        completed = max(0, self._vault_cycles - self.mission.start_cycle)
        total = self.mission.target_cycles
        return MissionStatus(
            mission=self.mission.text,
            cycles_completed=completed,
            cycles_total=total,
            pct=min(100, round(completed / total * 100)) if total else 100,
        )

    async def portfolio_snapshot(self) -> PortfolioSnapshot:
        """Read-time aggregate of vault and agent balances. Not atomic."""
        errors: Dict[str, str] = {}
        try:
            vault_balance: Optional[float] = await self.vault.get_balance()
        except Exception as e:
            vault_balance = None
            errors[self.agent_id] = str(e)

        balances: List[AgentBalance] = []
        for entry in list(self._agents.values()):
            if entry.wallet.address == self.vault.address:
                continue
            try:
                balance = await entry.wallet.get_balance()
                balances.append(AgentBalance(agent_id=entry.agent_id, role=entry.role, state=entry.state, balance=balance))
            except Exception as e:
                errors[entry.agent_id] = str(e)
                balances.append(AgentBalance(agent_id=entry.agent_id, role=entry.role, state=entry.state, error=str(e)))

        total_managed = sum(b.balance for b in balances if b.balance is not None)
        return PortfolioSnapshot(
            vault_balance=vault_balance,
            total_managed=total_managed,
            total_portfolio=(vault_balance or 0.0) + total_managed,
            agent_count=len(self._agents),
            active_agents=sum(1 for e in self._agents.values() if e.state is LifecycleState.ACTIVE),
            agents=balances,
            timestamp=self.clock.now(),
            extra={"errors": errors} if errors else {},
        )

    def close(self) -> None:
        self._unsubscribe()
