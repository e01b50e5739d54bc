"""
PolicyGate - deterministic, all-or-nothing approval of every fund movement.

One gate per agent. Each evaluation takes a rule snapshot, runs every check
(no short-circuit, so the decision lists all failures), and on approval
commits the amount to the agent's rolling 24h SpendingWindow. A rejection
never mutates any state.

Swap checks, in order:
0. amount (finite and > 0)
1. single_tx_limit
2. daily_limit (lazy 24h window reset)
3. position_size (zero balance fails)
4. deny_list
5. allow_list (only when the allow-list is non-empty)
6. price_impact (precomputed, or quoted from the provider)
7. risk_score (only when require_risk_check is set)

Transfers run checks 0-2 only.
"""
import logging
import math
from datetime import datetime, timedelta
from typing import Any, List, Optional

from pydantic import ValidationError

from .clock import Clock, SystemClock
from .events import EventBus
from .exceptions import ConfigError, ServiceError
from .integrations.quotes import QuoteProvider
from .integrations.risk_oracle import RiskLevel, RiskOracle
from .schemas import PolicyCheck, PolicyDecision, PolicyRules, SpendingStatus, SpendingWindow

logger = logging.getLogger("swarm_treasury.policy")

WINDOW_LENGTH = timedelta(hours=24)


def _is_valid_amount(amount: float) -> bool:
    return isinstance(amount, (int, float)) and math.isfinite(amount) and amount > 0


class PolicyGate:
    """Per-agent governor guarding swaps and transfers."""

    def __init__(
        self,
        agent_id: str,
        event_bus: EventBus,
        rules: Optional[PolicyRules] = None,
        quote_provider: Optional[QuoteProvider] = None,
        risk_oracle: Optional[RiskOracle] = None,
        clock: Optional[Clock] = None,
        native_asset: str = "SOL",
    ):
        self.agent_id = agent_id
        self.event_bus = event_bus
        self.quote_provider = quote_provider
        self.risk_oracle = risk_oracle
        self.clock = clock or SystemClock()
        self.native_asset = native_asset
        self._rules = rules or PolicyRules()
        self._window = SpendingWindow(window_start=self.clock.now(), total=0.0)

        self.event_bus.read(
            agent_id,
            f"Governor initialized. Daily limit: {self._rules.daily_limit} | Max tx: {self._rules.max_single_tx}",
            {"type": "governor_initialized", "rules": self._rules.model_dump(mode="json")},
        )

    @property
    def rules(self) -> PolicyRules:
        return self._rules

    @property
    def spending_window(self) -> SpendingWindow:
        """The persisted window. Lazy resets only land here on an approved commit."""
        return self._window

    def update_rules(self, **changes: Any) -> PolicyRules:
        """
        Merge *changes* into a new rule snapshot.

        Evaluations already in flight keep the snapshot they started with.

        Raises:
            ConfigError: if the merged rule set is invalid.
        """
        merged = self._rules.model_dump()
        merged.update(changes)
        try:
            new_rules = PolicyRules(**merged)
        except ValidationError as e:
            raise ConfigError(f"Invalid rule update for {self.agent_id}: {e.error_count()} error(s)", e.errors()) from e

        self._rules = new_rules
        logger.info(f"[{self.agent_id}] Governor rules updated: {sorted(changes)}")
        self.event_bus.read(
            self.agent_id,
            f"Governor rules updated: {', '.join(sorted(changes))}",
            {"type": "rules_updated", "changes": {k: str(v) for k, v in changes.items()}},
        )
        return new_rules

    def get_spending_status(self) -> SpendingStatus:
        """Spent / remaining / seconds to reset, as of now. Read-only."""
        now = self.clock.now()
        window = self._effective_window(now)
        reset_at = window.window_start + WINDOW_LENGTH
        return SpendingStatus(
            spent=window.total,
            remaining=max(0.0, self._rules.daily_limit - window.total),
            window_reset_in_seconds=max(0.0, (reset_at - now).total_seconds()),
        )

    async def evaluate_swap(
        self,
        amount: float,
        from_balance: float,
        target_asset: str,
        price_impact: Optional[float] = None,
    ) -> PolicyDecision:
        """
        Run the full swap pipeline.

        Args:
            amount: Native units to spend
            from_balance: Agent's native balance before the swap
            target_asset: Asset being bought
            price_impact: Precomputed venue impact in percent, if already quoted

        Returns:
            PolicyDecision; approval has already been committed to the window.
        """
        rules = self._rules
        self.event_bus.think(
            self.agent_id,
            f"Governor evaluating swap: {amount} {self.native_asset} -> {target_asset}",
        )

        checks: List[PolicyCheck] = [
            self._check_amount(amount),
            self._check_single_tx(amount, rules),
            self._check_daily_limit(amount, rules, self.clock.now()),
            self._check_position_size(amount, from_balance, rules),
            self._check_deny_list(target_asset, rules),
        ]
        if rules.allowed_assets:
            checks.append(self._check_allow_list(target_asset, rules))

        checks.append(await self._check_price_impact(amount, target_asset, price_impact, rules))
        if rules.require_risk_check:
            checks.append(await self._check_risk_score(target_asset, rules))

        # Window check and commit must see the same window; no await below.
        checks[2] = self._check_daily_limit(amount, rules, self.clock.now())
        return self._decide("swap", amount, checks, rules)

    async def evaluate_transfer(
        self,
        amount: float,
        from_balance: float,
        to_address: str,
    ) -> PolicyDecision:
        """Plain value transfer: amount, single-tx and rolling-window checks only."""
        rules = self._rules
        self.event_bus.think(
            self.agent_id,
            f"Governor evaluating transfer: {amount} {self.native_asset} -> {to_address[:8]}...",
            {"type": "transfer_evaluation", "from_balance": from_balance},
        )
        checks = [
            self._check_amount(amount),
            self._check_single_tx(amount, rules),
            self._check_daily_limit(amount, rules, self.clock.now()),
        ]
        return self._decide("transfer", amount, checks, rules)

    def _decide(self, kind: str, amount: float, checks: List[PolicyCheck], rules: PolicyRules) -> PolicyDecision:
        now = self.clock.now()
        failed = [c for c in checks if not c.passed]
        approved = not failed

        if approved:
            window = self._effective_window(now)
            self._window = SpendingWindow(window_start=window.window_start, total=window.total + amount)

        decision = PolicyDecision(
            agent_id=self.agent_id,
            kind=kind,
            amount=amount,
            approved=approved,
            checks=tuple(checks),
            reason="All safety checks passed" if approved else f"Blocked: {', '.join(c.name for c in failed)}",
            timestamp=now,
        )

        payload = {
            "type": "policy_decision",
            "decision_id": decision.decision_id,
            "kind": kind,
            "amount": amount,
            "approved": approved,
            "failed_checks": decision.failed_checks,
        }
        if approved:
            logger.info(f"[{self.agent_id}] {kind} of {amount} approved; window total {self._window.total:.4f}")
            self.event_bus.success(
                self.agent_id,
                f"Governor APPROVED: all {len(checks)} safety checks passed.",
                payload,
            )
        else:
            logger.warning(f"[{self.agent_id}] {kind} of {amount} {decision.reason}")
            self.event_bus.alert(
                self.agent_id,
                f"Governor BLOCKED: {len(failed)} check(s) failed. " + " | ".join(c.message for c in failed),
                payload,
            )
        return decision

    def _effective_window(self, now: datetime) -> SpendingWindow:
        if now - self._window.window_start >= WINDOW_LENGTH:
            return SpendingWindow(window_start=now, total=0.0)
        return self._window

    def _check_amount(self, amount: float) -> PolicyCheck:
        passed = _is_valid_amount(amount)
        return PolicyCheck(
            name="amount",
            passed=passed,
            value=amount if passed else str(amount),
            message="Amount is positive" if passed else f"Amount {amount} must be a finite value > 0",
        )

    def _check_single_tx(self, amount: float, rules: PolicyRules) -> PolicyCheck:
        passed = amount <= rules.max_single_tx
        return PolicyCheck(
            name="single_tx_limit",
            passed=passed,
            value=amount,
            limit=rules.max_single_tx,
            message=(
                f"Single tx {amount} <= limit {rules.max_single_tx}"
                if passed
                else f"Single tx {amount} EXCEEDS limit {rules.max_single_tx}"
            ),
        )

    def _check_daily_limit(self, amount: float, rules: PolicyRules, now: datetime) -> PolicyCheck:
        projected = self._effective_window(now).total + amount
        passed = projected <= rules.daily_limit
        return PolicyCheck(
            name="daily_limit",
            passed=passed,
            value=projected,
            limit=rules.daily_limit,
            message=(
                f"Daily spend {projected:.4f} <= limit {rules.daily_limit}"
                if passed
                else f"Daily spend {projected:.4f} EXCEEDS cap {rules.daily_limit}"
            ),
        )

    def _check_position_size(self, amount: float, balance: float, rules: PolicyRules) -> PolicyCheck:
        if balance <= 0:
            return PolicyCheck(
                name="position_size",
                passed=False,
                value="undefined",
                limit=rules.max_position_pct,
                message="Position size undefined: balance is zero",
            )
        pct = amount / balance * 100
        passed = pct <= rules.max_position_pct
        return PolicyCheck(
            name="position_size",
            passed=passed,
            value=round(pct, 4),
            limit=rules.max_position_pct,
            message=(
                f"Position {pct:.1f}% of balance <= {rules.max_position_pct}%"
                if passed
                else f"Position {pct:.1f}% of balance exceeds {rules.max_position_pct}%"
            ),
        )

    def _check_deny_list(self, asset: str, rules: PolicyRules) -> PolicyCheck:
        passed = asset not in rules.denied_assets
        return PolicyCheck(
            name="deny_list",
            passed=passed,
            value=asset,
            message="Asset not on deny-list" if passed else f"Asset {asset[:8]} is denied",
        )

    def _check_allow_list(self, asset: str, rules: PolicyRules) -> PolicyCheck:
        passed = asset in rules.allowed_assets
        return PolicyCheck(
            name="allow_list",
            passed=passed,
            value=asset,
            message="Asset is on the allow-list" if passed else f"Asset {asset[:8]} not on the allow-list",
        )

    async def _check_price_impact(
        self,
        amount: float,
        asset: str,
        price_impact: Optional[float],
        rules: PolicyRules,
    ) -> PolicyCheck:
        if price_impact is None and not _is_valid_amount(amount):
            return PolicyCheck(
                name="price_impact",
                passed=False,
                value="unavailable",
                limit=rules.max_price_impact_pct,
                message="Price impact not quoted for an invalid amount",
            )
        if price_impact is None:
            try:
                if self.quote_provider is None:
                    raise ServiceError("quote_provider", "not configured")
                quote = await self.quote_provider.quote(self.native_asset, asset, amount)
                price_impact = quote.price_impact_pct
            except ServiceError as e:
                logger.warning(f"[{self.agent_id}] Quote unavailable for {asset}: {e.message}")
                if rules.fail_closed_on_service_error:
                    return PolicyCheck(
                        name="price_impact",
                        passed=False,
                        value="unavailable",
                        limit=rules.max_price_impact_pct,
                        message=f"Price impact unknown, quote provider unavailable ({e.message})",
                    )
                price_impact = 0.0

        passed = price_impact <= rules.max_price_impact_pct
        return PolicyCheck(
            name="price_impact",
            passed=passed,
            value=round(price_impact, 4),
            limit=rules.max_price_impact_pct,
            message=(
                f"Price impact {price_impact:.3f}% <= {rules.max_price_impact_pct}%"
                if passed
                else f"Price impact {price_impact:.3f}% exceeds {rules.max_price_impact_pct}%"
            ),
        )

    async def _check_risk_score(self, asset: str, rules: PolicyRules) -> PolicyCheck:
        try:
            if self.risk_oracle is None:
                raise ServiceError("risk_oracle", "not configured")
            assessment = await self.risk_oracle.assess(asset)
        except ServiceError as e:
            logger.warning(f"[{self.agent_id}] Risk oracle unavailable for {asset}: {e.message}")
            if rules.fail_closed_on_service_error:
                return PolicyCheck(
                    name="risk_score",
                    passed=False,
                    value=RiskLevel.UNKNOWN.value,
                    limit=rules.max_risk_score,
                    message=f"Risk unknown, oracle unavailable ({e.message})",
                )
            return PolicyCheck(
                name="risk_score",
                passed=True,
                value=0,
                limit=rules.max_risk_score,
                message=f"Risk oracle unavailable, treated as {RiskLevel.LOW.value}",
            )

        passed = assessment.score <= rules.max_risk_score
        return PolicyCheck(
            name="risk_score",
            passed=passed,
            value=assessment.score,
            limit=rules.max_risk_score,
            message=(
                f"Risk score {assessment.score}/1000 ({assessment.classification.value})"
                if passed
                else f"Risk score {assessment.score}/1000 EXCEEDS limit {rules.max_risk_score}"
            ),
        )
