"""
Root conftest.py for pytest configuration and shared fakes.

The fakes stand in for the external collaborators (wallet, quote provider,
price feed, risk oracle) so cycles run without network or signing.
"""
import asyncio
import sys
from pathlib import Path
from typing import Dict, Iterable, Optional

import pytest

root_dir = Path(__file__).parent.parent
if str(root_dir) not in sys.path:
    sys.path.insert(0, str(root_dir))

from swarm_treasury.clock import ManualClock
from swarm_treasury.directives import InMemoryDirectiveSource
from swarm_treasury.events import EventBus
from swarm_treasury.exceptions import ServiceError, SigningError
from swarm_treasury.integrations.quotes import NATIVE_UNITS, Quote
from swarm_treasury.integrations.risk_oracle import RiskAssessment, classify

pytest_plugins = ('pytest_asyncio',)


class FakeWallet:
    """In-memory wallet that records every call."""

    def __init__(
        self,
        agent_id: str,
        balance: float = 1.0,
        role: str = "custom",
        address: Optional[str] = None,
        asset_balances: Optional[Dict[str, float]] = None,
    ):
        self.agent_id = agent_id
        self.role = role
        self.address = address or f"addr_{agent_id}"
        self.balance = balance
        self.asset_balances = dict(asset_balances or {})
        self.calls = []
        self.transfers = []
        self.submitted = []
        self.fail_addresses = set()
        self.fail_transfer: Optional[Exception] = None
        self.fail_balance: Optional[Exception] = None
        self.balance_gate: Optional[asyncio.Event] = None

    async def get_balance(self) -> float:
        self.calls.append("get_balance")
        if self.balance_gate is not None:
            await self.balance_gate.wait()
        if self.fail_balance is not None:
            raise self.fail_balance
        return self.balance

    async def get_asset_balance(self, asset: str) -> float:
        self.calls.append("get_asset_balance")
        return self.asset_balances.get(asset, 0.0)

    async def transfer(self, to_address: str, amount: float) -> str:
        self.calls.append("transfer")
        if self.fail_transfer is not None:
            raise self.fail_transfer
        if to_address in self.fail_addresses:
            raise SigningError(f"broadcast to {to_address} failed")
        self.balance -= amount
        self.transfers.append((to_address, amount))
        return f"tx_{self.agent_id}_{len(self.transfers)}_0000000000"

    async def sign_and_submit(self, prepared) -> str:
        self.calls.append("sign_and_submit")
        self.submitted.append(prepared)
        return f"tx_swap_{self.agent_id}_{len(self.submitted)}_0000000000"


class FakeQuoteProvider:
    def __init__(self, price_impact: float = 0.5):
        self.price_impact = price_impact
        self.native_rates: Dict[str, float] = {}
        self.quotes = []
        self.fail_quote: Optional[Exception] = None
        self.fail_execute: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None

    async def quote(self, input_asset, output_asset, amount, slippage_bps=50) -> Quote:
        self.quotes.append((input_asset, output_asset, amount))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_quote is not None:
            raise self.fail_quote
        if output_asset == "SOL" and input_asset in self.native_rates:
            output_amount = amount * self.native_rates[input_asset] * NATIVE_UNITS
        else:
            output_amount = amount * 1000
        return Quote(
            input_asset=input_asset,
            output_asset=output_asset,
            in_amount=amount,
            output_amount=output_amount,
            price_impact_pct=self.price_impact,
            slippage_bps=slippage_bps,
        )

    async def execute(self, wallet, quote: Quote) -> str:
        if self.fail_execute is not None:
            raise self.fail_execute
        return await wallet.sign_and_submit(b"prepared-swap")


class FakePriceFeed:
    def __init__(self, prices: Optional[Dict[str, float]] = None):
        self.prices = dict(prices or {})
        self.failing = set()

    async def get_price(self, asset: str) -> float:
        if asset in self.failing or asset not in self.prices:
            raise ServiceError("price_feed", f"no price for {asset}")
        return self.prices[asset]


class FakeRiskOracle:
    def __init__(self, scores: Optional[Dict[str, int]] = None, default: int = 100):
        self.scores = dict(scores or {})
        self.default = default
        self.fail = False
        self.assessed = []

    async def assess(self, asset: str) -> RiskAssessment:
        self.assessed.append(asset)
        if self.fail:
            raise ServiceError("risk_oracle", "unreachable")
        score = self.scores.get(asset, self.default)
        return RiskAssessment(asset=asset, score=score, classification=classify(score))


def kinds(events: Iterable) -> list:
    return [e.kind for e in events if e.kind is not None]


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def bus(clock):
    return EventBus(capacity=500, clock=clock)


@pytest.fixture
def directives(clock):
    return InMemoryDirectiveSource(clock=clock)


@pytest.fixture
def quotes():
    return FakeQuoteProvider()


@pytest.fixture
def oracle():
    return FakeRiskOracle()


@pytest.fixture
def price_feed():
    return FakePriceFeed({"SOL": 150.0})


@pytest.fixture
def wallet():
    return FakeWallet("dca_01", balance=1.0, role="dca_agent")
