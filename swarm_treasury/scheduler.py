"""
Scheduler - the per-agent heartbeat.

Every interval the agent wakes and runs one cycle:

    WAKE -> READ -> OBSERVE -> PLAN -> EXECUTE -> SLEEP

READ fetches the directive set; an emergency stop halts the scheduler. OBSERVE
reads balances and prices. PLAN asks the reasoner for actions. EXECUTE runs
them, routing every fund movement through the PolicyGate first. SLEEP seals
an immutable Cycle record and emits `cycle_complete`.

Cycles for one agent never overlap: a tick that fires while a cycle is still
running is skipped (not queued) and recorded as a WARN event. Errors inside a
cycle never escape it; the cycle is sealed with decision=alert and the timer
keeps going.
"""
import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from .clock import Clock, SystemClock
from .directives import DirectiveSource, Directives
from .events import EventBus
from .exceptions import FatalDirective, PolicyRejection, ServiceError, SigningError
from .integrations.quotes import NATIVE_UNITS, PriceFeed, QuoteProvider
from .integrations.risk_oracle import RiskLevel, RiskOracle
from .integrations.wallet import Wallet
from .policy import PolicyGate
from .reasoner import Reasoner, RuleBasedReasoner
from .schemas import (
    Action,
    AgentRole,
    Cycle,
    CycleDecision,
    ExitAction,
    MonitorAction,
    ObservedState,
    RebalanceAction,
    RiskScanAction,
    SchedulerState,
    SwapAction,
    TransferAction,
)

logger = logging.getLogger("swarm_treasury.scheduler")


@dataclass
class _CycleWork:
    sequence: int
    started_at: datetime
    started_perf: float
    balance: float = 0.0
    attempted: List[str] = field(default_factory=list)
    executed: List[str] = field(default_factory=list)
    alerted: bool = False


class Scheduler:
    """Timer-driven cycle runner for one agent."""

    def __init__(
        self,
        wallet: Wallet,
        gate: PolicyGate,
        event_bus: EventBus,
        directive_source: DirectiveSource,
        reasoner: Optional[Reasoner] = None,
        clock: Optional[Clock] = None,
        interval_seconds: float = 30.0,
        role: AgentRole = AgentRole.CUSTOM,
        tracked_assets: Iterable[str] = (),
        quote_provider: Optional[QuoteProvider] = None,
        price_feed: Optional[PriceFeed] = None,
        risk_oracle: Optional[RiskOracle] = None,
        history_limit: int = 100,
        native_asset: str = "SOL",
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.wallet = wallet
        self.agent_id = wallet.agent_id
        self.gate = gate
        self.event_bus = event_bus
        self.directive_source = directive_source
        self.reasoner = reasoner or RuleBasedReasoner()
        self.clock = clock or SystemClock()
        self.interval_seconds = interval_seconds
        self.role = role
        self.tracked_assets: List[str] = list(tracked_assets)
        self.quote_provider = quote_provider
        self.price_feed = price_feed
        self.risk_oracle = risk_oracle
        self.native_asset = native_asset

        self.history: deque[Cycle] = deque(maxlen=history_limit)
        self.baseline_balance: Optional[float] = None
        self.last_dca_at: Optional[datetime] = None

        self._status = SchedulerState.IDLE
        self._sequence = 0
        self._busy = False
        self._timer: Optional[asyncio.Task] = None
        self._cycle_tasks: set = set()
        self._prices: Dict[str, float] = {}
        self._asset_balances: Dict[str, float] = {}
        self._peaks: Dict[str, float] = {}
        self._risk_scores: Dict[str, int] = {}

    @property
    def status(self) -> SchedulerState:
        return self._status

    @property
    def is_running(self) -> bool:
        return self._status is SchedulerState.RUNNING

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def cycle_number(self) -> int:
        return self._sequence

    @property
    def last_cycle(self) -> Optional[Cycle]:
        return self.history[-1] if self.history else None

    @property
    def peak_prices(self) -> Dict[str, float]:
        return dict(self._peaks)

    def start(self) -> None:
        """Begin ticking: one cycle now, then one every interval. Needs a running loop."""
        if self._timer is not None and not self._timer.done():
            return
        self._status = SchedulerState.RUNNING
        self._timer = asyncio.get_running_loop().create_task(self._run_timer())
        self.event_bus.wake(
            self.agent_id,
            f"Heartbeat engine initialized. Pulse interval: {self.interval_seconds:g}s",
            {"type": "scheduler_started", "interval_seconds": self.interval_seconds},
        )

    def stop(self) -> None:
        """Cancel future ticks. A cycle already in flight runs to completion."""
        was_running = self._status is SchedulerState.RUNNING
        self._status = SchedulerState.STOPPED
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None
        if was_running:
            self.event_bus.sleep(
                self.agent_id,
                "Heartbeat engine stopped. Agent going offline.",
                {"type": "scheduler_stopped"},
            )

    async def drain(self) -> None:
        """Wait for every in-flight timer cycle to seal."""
        if self._cycle_tasks:
            await asyncio.gather(*list(self._cycle_tasks), return_exceptions=True)

    async def run_cycle_once(self) -> Optional[Cycle]:
        """Run exactly one cycle now. Returns None if a cycle is already running."""
        if self._busy:
            self._record_skip()
            return None
        self._busy = True
        try:
            return await self._run_cycle()
        finally:
            self._busy = False

    async def _run_timer(self) -> None:
        while self._status is SchedulerState.RUNNING:
            self._tick()
            await self.clock.sleep(self.interval_seconds)

    def _tick(self) -> None:
        if self._busy:
            self._record_skip()
            return
        self._busy = True
        task = asyncio.get_running_loop().create_task(self._run_and_release())
        self._cycle_tasks.add(task)
        task.add_done_callback(self._cycle_tasks.discard)

    async def _run_and_release(self) -> None:
        try:
            await self._run_cycle()
        finally:
            self._busy = False

    def _record_skip(self) -> None:
        logger.warning(f"[{self.agent_id}] Tick skipped, cycle #{self._sequence} still running")
        self.event_bus.warn(
            self.agent_id,
            f"Tick skipped: cycle #{self._sequence} still running",
            {"type": "tick_skipped", "cycle": self._sequence},
        )

    async def _run_cycle(self) -> Cycle:
        self._sequence += 1
        work = _CycleWork(
            sequence=self._sequence,
            started_at=self.clock.now(),
            started_perf=time.perf_counter(),
        )

        # Step 1: WAKE
        self.event_bus.wake(
            self.agent_id,
            f"Waking up. Cycle #{work.sequence}.",
            {"type": "cycle_start", "cycle": work.sequence},
        )

        try:
            # Step 2: READ
            directives = await self._read_directives()

            # Step 3: OBSERVE
            state = await self._observe(work)

            # Step 4: PLAN
            self.event_bus.think(self.agent_id, f'Thinking... Mission: "{directives.mission[:60]}"')
            actions = await self.reasoner.propose(state, directives)
            self.event_bus.plan(
                self.agent_id,
                f"Plan: {', '.join(a.action_type for a in actions) or 'nothing to do'}",
                {
                    "type": "plan",
                    "reasoner": self.reasoner.name,
                    "actions": [a.model_dump(mode="json") for a in actions],
                },
            )

            # Step 5: EXECUTE
            for action in actions:
                work.attempted.append(action.action_id)
                if await self._execute(action, state, directives, work):
                    work.executed.append(action.action_id)

        except FatalDirective as e:
            self.event_bus.alert(
                self.agent_id,
                "EMERGENCY STOP directive detected. Halting all activity.",
                {"type": "emergency_stop", "cycle": work.sequence},
            )
            self.stop()
            return self._seal(work, CycleDecision.ALERT, summary="emergency stop", error=e.message, emit=False)

        except Exception as e:
            logger.error(f"[{self.agent_id}] Cycle #{work.sequence} error: {e}")
            self.event_bus.error(
                self.agent_id,
                f"Cycle #{work.sequence} error: {str(e)[:100]}",
                {"type": "cycle_error", "cycle": work.sequence, "error": str(e)},
            )
            return self._seal(work, CycleDecision.ALERT, summary="cycle error", error=str(e), emit=False)

        # Step 6: SLEEP
        if work.alerted:
            decision = CycleDecision.ALERT
        elif work.executed:
            decision = CycleDecision.ACT
        else:
            decision = CycleDecision.SLEEP
        return self._seal(work, decision, summary=f"{len(work.executed)}/{len(work.attempted)} actions executed")

    async def _read_directives(self) -> Directives:
        self.event_bus.read(self.agent_id, "Reading directive set...")
        directives = await self.directive_source.read()
        if directives.emergency_stop:
            raise FatalDirective(f"emergency_stop set in directives v{directives.version}")
        return directives

    async def _observe(self, work: _CycleWork) -> ObservedState:
        self.event_bus.read(self.agent_id, "Reading portfolio state and market prices...")
        balance = await self.wallet.get_balance()
        work.balance = balance
        if self.baseline_balance is None:
            self.baseline_balance = balance

        for asset in self.tracked_assets:
            try:
                self._asset_balances[asset] = await self.wallet.get_asset_balance(asset)
            except ServiceError as e:
                logger.warning(f"[{self.agent_id}] Asset balance for {asset} unavailable: {e.message}")

        if self.price_feed is not None:
            for asset in [self.native_asset, *self.tracked_assets]:
                try:
                    price = await self.price_feed.get_price(asset)
                except ServiceError as e:
                    logger.warning(f"[{self.agent_id}] Price for {asset} unavailable, using last known: {e.message}")
                    continue
                self._prices[asset] = price
                if price > self._peaks.get(asset, 0.0):
                    self._peaks[asset] = price

        native_price = self._prices.get(self.native_asset)
        usd = f" (~${balance * native_price:.2f})" if native_price else ""
        self.event_bus.observe(
            self.agent_id,
            f"Portfolio: {balance:.4f} {self.native_asset}{usd}",
            {"type": "observation", "balance": balance, "prices": dict(self._prices)},
        )

        return ObservedState(
            agent_id=self.agent_id,
            role=self.role,
            cycle_number=work.sequence,
            now=self.clock.now(),
            balance=balance,
            asset_balances=dict(self._asset_balances),
            prices=dict(self._prices),
            peak_prices=dict(self._peaks),
            risk_scores=dict(self._risk_scores),
            tracked_assets=list(self.tracked_assets),
            baseline_balance=self.baseline_balance,
            last_dca_at=self.last_dca_at,
        )

    async def _execute(
        self,
        action: Action,
        state: ObservedState,
        directives: Directives,
        work: _CycleWork,
    ) -> bool:
        """Run one action. Returns True when it did something worth recording."""
        if action.target_agent_id is not None and action.target_agent_id != self.agent_id:
            self.event_bus.warn(
                self.agent_id,
                f"Skipping {action.action_type} addressed to {action.target_agent_id}",
                {"type": "action_skipped", "action_id": action.action_id},
            )
            return False

        try:
            if isinstance(action, SwapAction):
                return await self._execute_swap(action, directives, work)
            elif isinstance(action, TransferAction):
                return await self._execute_transfer(action, work)
            elif isinstance(action, ExitAction):
                return await self._execute_exit(action, work)
            elif isinstance(action, MonitorAction):
                self._monitor(state, directives, work)
                return False
            elif isinstance(action, RiskScanAction):
                return await self._risk_scan(action, state, work)
            elif isinstance(action, RebalanceAction):
                self.event_bus.plan(
                    self.agent_id,
                    "Portfolio rebalance flagged for coordinator review",
                    {"type": "rebalance_requested", "balance": work.balance, "reason": action.reason},
                )
                return True
            raise TypeError(f"Unhandled action type: {type(action).__name__}")

        except PolicyRejection as e:
            self.event_bus.alert(
                self.agent_id,
                f"{action.action_type} blocked by governor: {e.message}",
                {"type": "action_blocked", "action_id": action.action_id, "failed_checks": e.failed_checks},
            )
            return False
        except SigningError as e:
            work.alerted = True
            self.event_bus.error(
                self.agent_id,
                f"{action.action_type} submission failed: {e.message}",
                {"type": "signing_error", "action_id": action.action_id, "tx_ref": e.tx_ref},
            )
            return False
        except ServiceError as e:
            self.event_bus.warn(
                self.agent_id,
                f"{action.action_type} aborted: {e.message}",
                {"type": "action_aborted", "action_id": action.action_id, "service": e.service},
            )
            return False

    async def _execute_swap(self, action: SwapAction, directives: Directives, work: _CycleWork) -> bool:
        if self.quote_provider is None:
            raise ServiceError("quote_provider", "not configured")
        input_asset = action.input_asset or self.native_asset
        quote = await self.quote_provider.quote(input_asset, action.output_asset, action.amount, action.slippage_bps)

        decision = await self.gate.evaluate_swap(
            action.amount,
            work.balance,
            action.output_asset,
            price_impact=quote.price_impact_pct,
        )
        decision.raise_if_rejected()

        self.event_bus.execute(
            self.agent_id,
            f"Executing swap: {action.amount} {input_asset} -> {action.output_asset}",
            {"type": "swap_submitting", "action_id": action.action_id, "decision_id": decision.decision_id},
        )
        tx_ref = await self.quote_provider.execute(self.wallet, quote)
        work.balance -= action.amount
        if action.output_asset == directives.dca_target_asset:
            self.last_dca_at = self.clock.now()

        self.event_bus.success(
            self.agent_id,
            f"Swap executed: {action.amount} {input_asset} -> {action.output_asset}. Tx: {tx_ref[:12]}...",
            {
                "type": "swap_executed",
                "action_id": action.action_id,
                "amount": action.amount,
                "asset": action.output_asset,
                "price_impact_pct": quote.price_impact_pct,
                "tx_ref": tx_ref,
            },
        )
        return True

    async def _execute_transfer(self, action: TransferAction, work: _CycleWork) -> bool:
        decision = await self.gate.evaluate_transfer(action.amount, work.balance, action.to_address)
        decision.raise_if_rejected()

        self.event_bus.execute(
            self.agent_id,
            f"Executing transfer: {action.amount} {self.native_asset} -> {action.to_address[:8]}...",
            {"type": "transfer_submitting", "action_id": action.action_id, "decision_id": decision.decision_id},
        )
        tx_ref = await self.wallet.transfer(action.to_address, action.amount)
        work.balance -= action.amount

        self.event_bus.success(
            self.agent_id,
            f"Transfer executed: {action.amount} {self.native_asset}. Tx: {tx_ref[:12]}...",
            {
                "type": "transfer_executed",
                "action_id": action.action_id,
                "amount": action.amount,
                "to_address": action.to_address,
                "tx_ref": tx_ref,
            },
        )
        return True

    async def _execute_exit(self, action: ExitAction, work: _CycleWork) -> bool:
        """
        Sell a share of a held asset back into the native asset.

        The gate is asked about the native value the sale is quoted to return.
        """
        held = self._asset_balances.get(action.asset, 0.0)
        amount = held * action.fraction
        if amount <= 0:
            self.event_bus.observe(
                self.agent_id,
                f"Exit skipped: no {action.asset} held",
                {"type": "exit_skipped", "action_id": action.action_id, "asset": action.asset},
            )
            return False
        if self.quote_provider is None:
            raise ServiceError("quote_provider", "not configured")

        quote = await self.quote_provider.quote(action.asset, self.native_asset, amount, action.slippage_bps)
        native_value = quote.output_amount / NATIVE_UNITS
        decision = await self.gate.evaluate_swap(
            native_value,
            work.balance + native_value,
            self.native_asset,
            price_impact=quote.price_impact_pct,
        )
        decision.raise_if_rejected()

        self.event_bus.execute(
            self.agent_id,
            f"Executing {action.trigger} exit: {amount:g} {action.asset} -> {self.native_asset}",
            {"type": "exit_submitting", "action_id": action.action_id, "decision_id": decision.decision_id},
        )
        tx_ref = await self.quote_provider.execute(self.wallet, quote)
        self._asset_balances[action.asset] = held - amount
        work.balance += native_value
        if action.trigger == "trailing_stop":
            self._peaks.pop(action.asset, None)

        self.event_bus.success(
            self.agent_id,
            f"Exit executed: {amount:g} {action.asset} for ~{native_value:.4f} {self.native_asset}. Tx: {tx_ref[:12]}...",
            {
                "type": "exit_executed",
                "action_id": action.action_id,
                "asset": action.asset,
                "amount": amount,
                "native_value": native_value,
                "trigger": action.trigger,
                "tx_ref": tx_ref,
            },
        )
        return True

    def _monitor(self, state: ObservedState, directives: Directives, work: _CycleWork) -> None:
        self.event_bus.observe(
            self.agent_id,
            f"Monitoring prices. Trailing stop threshold: {directives.trailing_stop_pct}%",
            {"type": "price_monitored", "prices": dict(state.prices), "balance": work.balance},
        )
        for asset in self.tracked_assets:
            price = state.prices.get(asset)
            peak = self._peaks.get(asset)
            if not price or not peak:
                continue
            drawdown = (peak - price) / peak * 100
            if drawdown >= directives.trailing_stop_pct:
                work.alerted = True
                self.event_bus.alert(
                    self.agent_id,
                    f"Trailing stop hit on {asset}: {drawdown:.2f}% below peak {peak}",
                    {
                        "type": "trailing_stop_triggered",
                        "asset": asset,
                        "price": price,
                        "peak": peak,
                        "drawdown_pct": round(drawdown, 4),
                    },
                )

    async def _risk_scan(self, action: RiskScanAction, state: ObservedState, work: _CycleWork) -> bool:
        assets = action.assets or state.tracked_assets
        if self.risk_oracle is None or not assets:
            self.event_bus.observe(self.agent_id, "Risk scan skipped: no oracle or nothing to scan")
            return False

        self.event_bus.execute(self.agent_id, f"Scanning {len(assets)} asset(s) for rug risk...")
        flagged = []
        for asset in assets:
            try:
                assessment = await self.risk_oracle.assess(asset)
            except ServiceError as e:
                self.event_bus.observe(
                    self.agent_id,
                    f"Risk oracle unavailable for {asset}, treating as {RiskLevel.UNKNOWN.value} risk",
                    {"type": "risk_unknown", "asset": asset, "error": e.message},
                )
                continue

            self._risk_scores[asset] = assessment.score
            if assessment.should_auto_exit:
                flagged.append(asset)
                work.alerted = True
                self.event_bus.alert(
                    self.agent_id,
                    f"CRITICAL rug risk on {asset}: score {assessment.score}/1000. Exit required.",
                    {
                        "type": "emergency_exit_required",
                        "asset": asset,
                        "score": assessment.score,
                        "classification": assessment.classification.value,
                    },
                )
            elif assessment.classification is RiskLevel.HIGH:
                self.event_bus.warn(
                    self.agent_id,
                    f"High risk on {asset}: score {assessment.score}/1000. Monitoring closely.",
                    {"type": "risk_high", "asset": asset, "score": assessment.score},
                )
            else:
                self.event_bus.observe(
                    self.agent_id,
                    f"{asset} risk score {assessment.score}/1000 ({assessment.classification.value})",
                    {"type": "risk_assessed", "asset": asset, "score": assessment.score},
                )

        if not flagged:
            self.event_bus.success(self.agent_id, f"Risk scan complete. {len(assets)} asset(s) checked. All clear.")
        return True

    def _seal(
        self,
        work: _CycleWork,
        decision: CycleDecision,
        summary: str = "",
        error: Optional[str] = None,
        emit: bool = True,
    ) -> Cycle:
        duration_ms = (time.perf_counter() - work.started_perf) * 1000
        cycle = Cycle(
            agent_id=self.agent_id,
            sequence=work.sequence,
            started_at=work.started_at,
            ended_at=self.clock.now(),
            decision=decision,
            actions_attempted=tuple(work.attempted),
            actions_executed=tuple(work.executed),
            duration_ms=duration_ms,
            summary=summary,
            error=error,
        )
        self.history.append(cycle)

        if emit:
            self.event_bus.sleep(
                self.agent_id,
                f"Cycle #{work.sequence} complete in {duration_ms:.0f}ms. Next wake in {self.interval_seconds:g}s.",
                {
                    "type": "cycle_complete",
                    "cycle": work.sequence,
                    "decision": decision.value,
                    "duration_ms": duration_ms,
                    "actions_count": len(work.executed),
                },
            )
        return cycle
