"""
Reasoners turn an observed state plus the directive set into an ordered list
of proposed actions. They never touch scheduler state and never move funds;
every fund-moving proposal still passes through the PolicyGate.
"""
import json
import logging
from datetime import timedelta
from typing import Iterable, List, Optional, Protocol

from openai import AsyncOpenAI
from pydantic import ValidationError

from .directives import Directives
from .integrations.risk_oracle import AUTO_EXIT_SCORE
from .schemas import (
    ACTION_ADAPTER,
    Action,
    AgentRole,
    ExitAction,
    MonitorAction,
    ObservedState,
    RebalanceAction,
    RiskScanAction,
    SwapAction,
    TransferAction,
)

logger = logging.getLogger("swarm_treasury.reasoner")


class Reasoner(Protocol):
    name: str

    async def propose(self, state: ObservedState, directives: Directives) -> List[Action]:
        ...


class RuleBasedReasoner:
    """Deterministic planner used when no LLM is configured, and as the LLM fallback."""

    name = "rule_based"

    def __init__(
        self,
        dca_roles: Iterable[AgentRole] = (AgentRole.DCA_AGENT,),
        off_ramp_roles: Iterable[AgentRole] = (AgentRole.CUSTOM,),
        trailing_stop_roles: Iterable[AgentRole] = (AgentRole.TRAILING_STOP_AGENT,),
    ):
        self.dca_roles = frozenset(dca_roles)
        self.off_ramp_roles = frozenset(off_ramp_roles)
        self.trailing_stop_roles = frozenset(trailing_stop_roles)

    async def propose(self, state: ObservedState, directives: Directives) -> List[Action]:
        return self.plan(state, directives)

    def plan(self, state: ObservedState, directives: Directives) -> List[Action]:
        exits = self._exits(state, directives)
        if state.balance < directives.min_operating_balance:
            return [
                *exits,
                RebalanceAction(
                    reason=f"Balance {state.balance:.4f} below operating minimum {directives.min_operating_balance}",
                ),
            ]

        actions: List[Action] = list(exits)
        if directives.risk_check_enabled and state.tracked_assets:
            actions.append(RiskScanAction(assets=list(state.tracked_assets), reason="Routine rug exposure check"))
        actions.append(MonitorAction(reason="Monitor prices and trailing stops"))

        exiting = {a.asset for a in exits}
        if directives.dca_target_asset not in exiting and self._dca_due(state, directives):
            actions.append(
                SwapAction(
                    output_asset=directives.dca_target_asset,
                    amount=directives.dca_amount,
                    reason=f"DCA buy every {directives.dca_interval_minutes:g} min",
                )
            )

        sweep = self._off_ramp_amount(state, directives)
        if sweep is not None:
            actions.append(
                TransferAction(
                    to_address=directives.off_ramp_target_wallet,
                    amount=sweep,
                    reason=f"Profit sweep at +{directives.off_ramp_trigger_pct:g}% over baseline",
                )
            )
        return actions

    def _exits(self, state: ObservedState, directives: Directives) -> List[ExitAction]:
        """One exit per held asset, first matching trigger wins."""
        exits = []
        for asset in state.tracked_assets:
            if state.asset_balances.get(asset, 0.0) <= 0:
                continue
            if directives.emergency_exit_all:
                exits.append(ExitAction(asset=asset, trigger="emergency_exit_all", reason="Emergency exit of all positions"))
                continue

            score = state.risk_scores.get(asset)
            if score is not None and score >= AUTO_EXIT_SCORE:
                exits.append(ExitAction(asset=asset, trigger="risk", reason=f"Rug risk score {score}/1000"))
                continue

            if state.role not in self.trailing_stop_roles:
                continue
            price = state.prices.get(asset)
            peak = state.peak_prices.get(asset)
            if not price or not peak:
                continue
            drawdown = (peak - price) / peak * 100
            if drawdown >= directives.trailing_stop_pct:
                exits.append(
                    ExitAction(
                        asset=asset,
                        fraction=directives.trailing_exit_fraction,
                        trigger="trailing_stop",
                        reason=f"{drawdown:.2f}% below peak, stop at {directives.trailing_stop_pct:g}%",
                    )
                )
        return exits

    def _dca_due(self, state: ObservedState, directives: Directives) -> bool:
        if state.role not in self.dca_roles or directives.pause_dca or directives.dca_amount <= 0:
            return False
        if state.last_dca_at is None:
            return True
        return state.now - state.last_dca_at >= timedelta(minutes=directives.dca_interval_minutes)

    def _off_ramp_amount(self, state: ObservedState, directives: Directives) -> Optional[float]:
        if state.role not in self.off_ramp_roles:
            return None
        if not directives.off_ramp_enabled or not directives.off_ramp_target_wallet:
            return None
        baseline = state.baseline_balance
        if not baseline or baseline <= 0:
            return None

        profit = state.balance - baseline
        gain_pct = profit / baseline * 100
        if gain_pct < directives.off_ramp_trigger_pct:
            return None
        amount = round(profit * directives.off_ramp_sweep_pct / 100, 6)
        return amount if amount > 0 else None


PLANNER_SYSTEM_PROMPT = """You are the planning brain of an autonomous treasury agent. Each heartbeat you
propose an ordered list of actions. A separate governor approves or blocks every fund movement,
so never try to work around limits.

Available action types (JSON objects, field "action_type" selects the type):
- {"action_type": "monitor", "reason": "..."}
- {"action_type": "risk_scan", "assets": ["BONK"], "reason": "..."}
- {"action_type": "rebalance", "reason": "..."}
- {"action_type": "swap", "output_asset": "BONK", "amount": 0.01, "reason": "..."}
- {"action_type": "transfer", "to_address": "...", "amount": 0.05, "reason": "..."}
- {"action_type": "exit", "asset": "BONK", "fraction": 1.0, "trigger": "trailing_stop", "reason": "..."}

Protect capital first. When unsure, only monitor.

RESPOND WITH VALID JSON ONLY:
{"summary": "one sentence", "actions": [ ... ]}"""


class LLMPlanner:
    """OpenAI-backed planner. Any failure falls back to the rule-based reasoner."""

    name = "llm"

    def __init__(
        self,
        api_key: str = "",
        model: str = "gpt-4o-mini",
        fallback: Optional[RuleBasedReasoner] = None,
        client: Optional[AsyncOpenAI] = None,
        max_actions: int = 5,
    ):
        self.model = model
        self.fallback = fallback or RuleBasedReasoner()
        self.client = client or (AsyncOpenAI(api_key=api_key) if api_key else None)
        self.max_actions = max_actions
        self.last_summary: Optional[str] = None

    async def propose(self, state: ObservedState, directives: Directives) -> List[Action]:
        if self.client is None:
            self.last_summary = "No OpenAI key - using rule-based reasoning"
            return await self.fallback.propose(state, directives)

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": PLANNER_SYSTEM_PROMPT},
                    {"role": "user", "content": self._build_prompt(state, directives)},
                ],
                response_format={"type": "json_object"},
                temperature=0.2,
                max_tokens=400,
            )
            raw_content = response.choices[0].message.content
            if raw_content is None:
                raise ValueError("empty LLM response")
            actions = self._parse_response(raw_content)
            logger.info(f"[{state.agent_id}] LLM planned {len(actions)} action(s): {self.last_summary}")
            return actions
        except Exception as e:
            logger.error(f"[{state.agent_id}] LLM planning failed, using rule-based fallback: {e}")
            self.last_summary = f"Reasoning in rule-based mode ({e.__class__.__name__})"
            return await self.fallback.propose(state, directives)

    def _build_prompt(self, state: ObservedState, directives: Directives) -> str:
        prices = ", ".join(f"{a}: {p}" for a, p in state.prices.items()) or "unavailable"
        holdings = ", ".join(f"{a}: {b}" for a, b in state.asset_balances.items()) or "none"
        return f"""AGENT STATE:
- Agent: {state.agent_id} ({state.role.value})
- Cycle: {state.cycle_number}
- Native balance: {state.balance:.4f}
- Holdings: {holdings}
- Prices: {prices}

DIRECTIVES (v{directives.version}):
- Mission: {directives.mission}
- DCA enabled: {not directives.pause_dca}
- DCA target: {directives.dca_target_asset} ({directives.dca_amount} per buy)
- Trailing stop: {directives.trailing_stop_pct}%
- Emergency exit all: {directives.emergency_exit_all}
- Risk check enabled: {directives.risk_check_enabled}

Decide what to do this heartbeat. Respond with JSON only."""

    def _parse_response(self, content: str) -> List[Action]:
        content = content.strip()
        if content.startswith("```"):
            content = content.split("```")[1]
            if content.startswith("json"):
                content = content[4:]

        data = json.loads(content)
        if not isinstance(data, dict) or not isinstance(data.get("actions"), list):
            raise ValueError("LLM response missing 'actions' list")

        self.last_summary = str(data.get("summary", ""))
        actions: List[Action] = []
        for raw in data["actions"][: self.max_actions]:
            try:
                actions.append(ACTION_ADAPTER.validate_python(raw))
            except ValidationError as e:
                logger.warning(f"Dropping invalid planned action {raw!r}: {e.error_count()} error(s)")
        return actions
