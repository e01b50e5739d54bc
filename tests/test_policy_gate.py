"""
Tests for the PolicyGate approval pipeline and rolling spend window.
"""
import asyncio
from datetime import timedelta

import pytest

from swarm_treasury.clock import settle
from swarm_treasury.exceptions import ConfigError, PolicyRejection, ServiceError
from swarm_treasury.policy import PolicyGate
from swarm_treasury.schemas import PolicyRules

SWAP_CHECKS = ["amount", "single_tx_limit", "daily_limit", "position_size", "deny_list", "price_impact", "risk_score"]


@pytest.fixture
def gate(bus, quotes, oracle, clock):
    return PolicyGate(
        "dca_01",
        bus,
        rules=PolicyRules(max_single_tx=0.5, daily_limit=2.0),
        quote_provider=quotes,
        risk_oracle=oracle,
        clock=clock,
    )


def window_only_gate(bus, clock, **overrides):
    """Limits loose enough that only the rolling window can fail."""
    rules = PolicyRules(
        max_single_tx=1.0,
        daily_limit=2.0,
        max_position_pct=100,
        require_risk_check=False,
        **overrides,
    )
    return PolicyGate("dca_01", bus, rules=rules, clock=clock)


class TestReferenceScenarios:
    """Reference approval scenarios."""

    @pytest.mark.asyncio
    async def test_small_swap_is_approved_and_committed(self, gate):
        """0.1 against balance 1.0 passes and lands in the window."""
        decision = await gate.evaluate_swap(0.1, 1.0, "BONK", price_impact=0.5)

        assert decision.approved is True
        assert decision.reason == "All safety checks passed"
        assert gate.spending_window.total == pytest.approx(0.1)

    @pytest.mark.asyncio
    async def test_oversized_swap_is_rejected_without_mutation(self, gate):
        """3.0 fails single_tx_limit and leaves the window byte-for-byte unchanged."""
        before = gate.spending_window.model_dump_json()
        decision = await gate.evaluate_swap(3.0, 1.0, "BONK", price_impact=0.5)

        assert decision.approved is False
        assert "single_tx_limit" in decision.reason
        assert gate.spending_window.model_dump_json() == before

    @pytest.mark.asyncio
    async def test_third_spend_blocked_by_daily_window(self, bus, clock):
        """0.8 x3: two approvals (1.6), the third projects 2.4 > 2.0."""
        gate = window_only_gate(bus, clock)

        results = [await gate.evaluate_swap(0.8, 1.0, "BONK", price_impact=0.1) for _ in range(3)]

        assert [d.approved for d in results] == [True, True, False]
        assert results[2].failed_checks == ["daily_limit"]
        assert gate.spending_window.total == pytest.approx(1.6)

    @pytest.mark.asyncio
    async def test_transfer_uses_window_checks_only(self, gate):
        """Transfers run amount, single_tx_limit and daily_limit, nothing asset specific."""
        decision = await gate.evaluate_transfer(0.2, 0.0, "cold_wallet_address")

        assert decision.approved is True
        assert [c.name for c in decision.checks] == ["amount", "single_tx_limit", "daily_limit"]
        assert decision.kind == "transfer"


class TestPipeline:
    """Check ordering and exhaustiveness."""

    @pytest.mark.asyncio
    async def test_every_check_runs_after_a_failure(self, gate):
        """The decision lists every check, not just the first failure."""
        decision = await gate.evaluate_swap(3.0, 1.0, "BONK", price_impact=0.5)

        assert [c.name for c in decision.checks] == SWAP_CHECKS
        assert decision.failed_checks == ["single_tx_limit", "daily_limit", "position_size"]
        assert decision.reason == "Blocked: single_tx_limit, daily_limit, position_size"

    @pytest.mark.asyncio
    async def test_zero_balance_fails_position_size(self, gate):
        """An undefined position ratio is an automatic fail."""
        decision = await gate.evaluate_swap(0.1, 0.0, "BONK", price_impact=0.5)
        assert decision.failed_checks == ["position_size"]

    @pytest.mark.asyncio
    async def test_deny_list_blocks(self, gate):
        """Denied assets are rejected."""
        gate.update_rules(denied_assets=("SCAM",))
        decision = await gate.evaluate_swap(0.1, 1.0, "SCAM", price_impact=0.5)
        assert decision.failed_checks == ["deny_list"]

    @pytest.mark.asyncio
    async def test_allow_list_only_evaluated_when_set(self, gate):
        """An empty allow-list adds no check; a non-empty one must contain the asset."""
        open_decision = await gate.evaluate_swap(0.1, 1.0, "BONK", price_impact=0.5)
        assert "allow_list" not in [c.name for c in open_decision.checks]

        gate.update_rules(allowed_assets=("JUP",))
        closed = await gate.evaluate_swap(0.1, 1.0, "BONK", price_impact=0.5)
        assert closed.failed_checks == ["allow_list"]
        assert [c.name for c in closed.checks][5] == "allow_list"

    @pytest.mark.asyncio
    async def test_price_impact_quoted_when_not_supplied(self, gate, quotes):
        """Without a precomputed impact the quote provider is asked."""
        quotes.price_impact = 4.5
        decision = await gate.evaluate_swap(0.1, 1.0, "BONK")

        assert quotes.quotes == [("SOL", "BONK", 0.1)]
        assert decision.failed_checks == ["price_impact"]

    @pytest.mark.asyncio
    async def test_precomputed_impact_skips_quote(self, gate, quotes):
        """A supplied impact is used as-is."""
        await gate.evaluate_swap(0.1, 1.0, "BONK", price_impact=0.2)
        assert quotes.quotes == []

    @pytest.mark.asyncio
    async def test_risk_score_over_limit_blocks(self, gate, oracle):
        """Scores above max_risk_score fail."""
        oracle.scores["RUG"] = 750
        decision = await gate.evaluate_swap(0.1, 1.0, "RUG", price_impact=0.5)
        assert decision.failed_checks == ["risk_score"]

    @pytest.mark.asyncio
    async def test_risk_check_can_be_disabled(self, gate, oracle):
        """require_risk_check=False drops the check entirely."""
        gate.update_rules(require_risk_check=False)
        decision = await gate.evaluate_swap(0.1, 1.0, "BONK", price_impact=0.5)

        assert "risk_score" not in [c.name for c in decision.checks]
        assert oracle.assessed == []

    @pytest.mark.asyncio
    async def test_negative_transfer_cannot_free_window_capacity(self, bus, clock):
        """A full window stays full; a negative amount is rejected, not credited."""
        gate = window_only_gate(bus, clock)
        for _ in range(4):
            assert (await gate.evaluate_transfer(0.5, 5.0, "cold_wallet_address")).approved

        decision = await gate.evaluate_transfer(-2.0, 5.0, "cold_wallet_address")

        assert decision.approved is False
        assert decision.failed_checks == ["amount"]
        assert gate.spending_window.total == pytest.approx(2.0)
        assert (await gate.evaluate_transfer(0.5, 5.0, "cold_wallet_address")).approved is False

    @pytest.mark.asyncio
    async def test_non_positive_swap_amounts_rejected(self, gate, quotes):
        """Zero, negative and NaN amounts all fail the amount check."""
        for amount in (0.0, -0.1, float("nan")):
            decision = await gate.evaluate_swap(amount, 1.0, "BONK", price_impact=0.5)
            assert decision.approved is False
            assert "amount" in decision.failed_checks
        unquoted = await gate.evaluate_swap(-1.0, 1.0, "BONK")
        assert {"amount", "price_impact"} <= set(unquoted.failed_checks)
        assert quotes.quotes == []
        assert gate.spending_window.total == 0.0


class TestCollaboratorFailures:
    """Fallbacks when the quote provider or risk oracle is unavailable."""

    @pytest.mark.asyncio
    async def test_quote_failure_fails_closed_by_default(self, gate, quotes):
        """Quote unavailability fails the price impact check."""
        quotes.fail_quote = ServiceError("quote_provider", "timeout")
        decision = await gate.evaluate_swap(0.1, 1.0, "BONK")

        check = next(c for c in decision.checks if c.name == "price_impact")
        assert check.passed is False
        assert check.value == "unavailable"
        assert gate.spending_window.total == 0.0

    @pytest.mark.asyncio
    async def test_quote_failure_liberal_when_fail_open(self, gate, quotes):
        """With fail-closed off the impact defaults to 0."""
        gate.update_rules(fail_closed_on_service_error=False)
        quotes.fail_quote = ServiceError("quote_provider", "timeout")
        decision = await gate.evaluate_swap(0.1, 1.0, "BONK")

        assert decision.approved is True
        assert next(c for c in decision.checks if c.name == "price_impact").value == 0.0

    @pytest.mark.asyncio
    async def test_oracle_failure_yields_unknown(self, gate, oracle):
        """Oracle unavailability is an unknown classification that fails."""
        oracle.fail = True
        decision = await gate.evaluate_swap(0.1, 1.0, "BONK", price_impact=0.5)

        check = next(c for c in decision.checks if c.name == "risk_score")
        assert check.passed is False
        assert check.value == "unknown"

    @pytest.mark.asyncio
    async def test_oracle_failure_liberal_when_fail_open(self, gate, oracle):
        """With fail-closed off the oracle failure is treated as low risk."""
        gate.update_rules(fail_closed_on_service_error=False)
        oracle.fail = True
        decision = await gate.evaluate_swap(0.1, 1.0, "BONK", price_impact=0.5)
        assert decision.approved is True

    @pytest.mark.asyncio
    async def test_missing_collaborators_count_as_unavailable(self, bus, clock):
        """A gate without a quote provider or oracle cannot approve an unquoted swap."""
        gate = PolicyGate("dca_01", bus, clock=clock)
        decision = await gate.evaluate_swap(0.1, 1.0, "BONK")
        assert decision.failed_checks == ["price_impact", "risk_score"]


class TestSpendingWindow:
    """Lazy 24h reset semantics."""

    @pytest.mark.asyncio
    async def test_window_kept_before_24h(self, bus, clock):
        """Just under 24h the existing total still counts."""
        gate = window_only_gate(bus, clock)
        await gate.evaluate_transfer(0.8, 1.0, "x")
        clock.set(clock.now() + timedelta(hours=23, minutes=59))

        decision = await gate.evaluate_transfer(0.8, 1.0, "x")
        daily = next(c for c in decision.checks if c.name == "daily_limit")
        assert daily.value == pytest.approx(1.6)
        assert gate.spending_window.total == pytest.approx(1.6)

    @pytest.mark.asyncio
    async def test_window_resets_at_24h(self, bus, clock):
        """At exactly 24h the first evaluation starts a fresh window."""
        gate = window_only_gate(bus, clock)
        await gate.evaluate_transfer(0.8, 1.0, "x")
        await gate.evaluate_transfer(0.8, 1.0, "x")
        clock.set(clock.now() + timedelta(hours=24))

        decision = await gate.evaluate_transfer(0.8, 1.0, "x")
        assert decision.approved is True
        assert gate.spending_window.total == pytest.approx(0.8)
        assert gate.spending_window.window_start == clock.now()

    @pytest.mark.asyncio
    async def test_rejected_evaluation_does_not_persist_reset(self, bus, clock):
        """A rejection after 24h still leaves the stored window untouched."""
        gate = window_only_gate(bus, clock)
        await gate.evaluate_transfer(0.5, 1.0, "x")
        before = gate.spending_window
        clock.set(clock.now() + timedelta(hours=25))

        decision = await gate.evaluate_transfer(5.0, 1.0, "x")
        assert decision.approved is False
        assert gate.spending_window == before

    @pytest.mark.asyncio
    async def test_spending_status(self, bus, clock):
        """Status reports spent, remaining and seconds to reset without mutating."""
        gate = window_only_gate(bus, clock)
        await gate.evaluate_transfer(0.5, 1.0, "x")
        clock.set(clock.now() + timedelta(hours=1))

        status = gate.get_spending_status()
        assert status.spent == pytest.approx(0.5)
        assert status.remaining == pytest.approx(1.5)
        assert status.window_reset_in_seconds == pytest.approx(23 * 3600)

    @pytest.mark.asyncio
    async def test_concurrent_evaluations_cannot_overcommit(self, bus, clock, quotes):
        """Two swaps suspended on quotes re-check the window before committing."""
        gate = PolicyGate(
            "dca_01",
            bus,
            rules=PolicyRules(max_single_tx=1.0, daily_limit=1.0, max_position_pct=100, require_risk_check=False),
            quote_provider=quotes,
            clock=clock,
        )
        quotes.gate = asyncio.Event()
        first = asyncio.create_task(gate.evaluate_swap(0.8, 1.0, "BONK"))
        second = asyncio.create_task(gate.evaluate_swap(0.8, 1.0, "BONK"))
        await settle()
        quotes.gate.set()

        decisions = await asyncio.gather(first, second)
        assert sorted(d.approved for d in decisions) == [False, True]
        assert gate.spending_window.total == pytest.approx(0.8)


class TestRuleUpdates:
    """Immutable rule snapshots."""

    def test_update_produces_new_snapshot(self, gate):
        """The previous snapshot object is never mutated."""
        old = gate.rules
        new = gate.update_rules(max_single_tx=0.05)

        assert old.max_single_tx == 0.5
        assert new.max_single_tx == 0.05
        assert gate.rules is new

    def test_invalid_update_raises_config_error(self, gate):
        """Negative limits and unknown keys are rejected; rules stay as they were."""
        old = gate.rules
        with pytest.raises(ConfigError):
            gate.update_rules(daily_limit=-1)
        with pytest.raises(ConfigError):
            gate.update_rules(no_such_rule=True)
        assert gate.rules is old

    @pytest.mark.asyncio
    async def test_in_flight_evaluation_uses_start_snapshot(self, gate, quotes):
        """Rules changed mid-evaluation do not affect that evaluation."""
        quotes.gate = asyncio.Event()
        task = asyncio.create_task(gate.evaluate_swap(0.2, 1.0, "BONK"))
        await settle()

        gate.update_rules(max_single_tx=0.01)
        quotes.gate.set()
        decision = await task

        assert decision.approved is True
        later = await gate.evaluate_swap(0.2, 1.0, "BONK", price_impact=0.5)
        assert later.failed_checks == ["single_tx_limit"]


class TestDecisionRecords:
    """Decisions and their events."""

    @pytest.mark.asyncio
    async def test_raise_if_rejected(self, gate):
        """Rejected decisions raise PolicyRejection carrying the failed checks."""
        decision = await gate.evaluate_swap(3.0, 1.0, "BONK", price_impact=0.5)
        with pytest.raises(PolicyRejection) as exc:
            decision.raise_if_rejected()
        assert "single_tx_limit" in exc.value.failed_checks

    @pytest.mark.asyncio
    async def test_decisions_are_published(self, gate, bus):
        """Approvals publish SUCCESS and blocks publish ALERT with a policy_decision payload."""
        await gate.evaluate_swap(0.1, 1.0, "BONK", price_impact=0.5)
        await gate.evaluate_swap(3.0, 1.0, "BONK", price_impact=0.5)

        decisions = bus.by_kind("policy_decision")
        assert [e.payload["approved"] for e in decisions] == [True, False]
        assert [e.category.value for e in decisions] == ["success", "alert"]

    @pytest.mark.asyncio
    async def test_decision_is_frozen(self, gate):
        """Decisions cannot be edited after the fact."""
        decision = await gate.evaluate_swap(0.1, 1.0, "BONK", price_impact=0.5)
        with pytest.raises(Exception):
            decision.approved = False
