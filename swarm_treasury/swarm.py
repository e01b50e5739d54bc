"""
Swarm - wires a SwarmConfig into a running coordinator.

Builds the event log, audit sink, metrics, the HTTP collaborators and the
reasoner for every agent, then hands them to a Coordinator.
"""
import logging
from typing import Optional

import httpx
from openai import AsyncOpenAI

from .audit import JsonlAuditSink
from .clock import Clock, SystemClock
from .config import SwarmConfig, configure_logging, load_config
from .coordinator import Coordinator
from .directives import DirectiveSource
from .events import EventBus
from .integrations.quotes import JupiterQuoteClient
from .integrations.risk_oracle import RugCheckClient
from .integrations.wallet import Wallet
from .metrics import SwarmMetrics
from .reasoner import LLMPlanner, Reasoner, RuleBasedReasoner
from .schemas import AgentRole

logger = logging.getLogger("swarm_treasury.swarm")


class Swarm:
    """Composition root for one treasury swarm."""

    def __init__(
        self,
        vault_wallet: Wallet,
        cfg: Optional[SwarmConfig] = None,
        clock: Optional[Clock] = None,
        directive_source: Optional[DirectiveSource] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        openai_client: Optional[AsyncOpenAI] = None,
        audit: bool = True,
    ):
        self.cfg = cfg or load_config()
        configure_logging(self.cfg.log_level)
        self.clock = clock or SystemClock()

        self.event_bus = EventBus(capacity=self.cfg.event_log_capacity, clock=self.clock)
        self.audit = JsonlAuditSink(self.cfg.audit_log_dir, self.event_bus) if audit else None
        self.metrics = SwarmMetrics(self.event_bus)

        quote_kwargs = {"base_url": self.cfg.quote_api_base} if self.cfg.quote_api_base else {}
        risk_kwargs = {"base_url": self.cfg.risk_api_base} if self.cfg.risk_api_base else {}
        self.quote_client = JupiterQuoteClient(client=http_client, **quote_kwargs)
        self.risk_client = RugCheckClient(client=http_client, **risk_kwargs)

        self.openai_client = openai_client
        if self.openai_client is None and self.cfg.openai_api_key:
            self.openai_client = AsyncOpenAI(api_key=self.cfg.openai_api_key)

        self.coordinator = Coordinator(
            vault_wallet,
            self.event_bus,
            config=self.cfg,
            directive_source=directive_source,
            clock=self.clock,
            quote_provider=self.quote_client,
            price_feed=self.quote_client,
            risk_oracle=self.risk_client,
            reasoner_factory=self.reasoner_for,
        )
        mode = f"LLM ({self.cfg.openai_model})" if self.openai_client is not None else "rule-based"
        logger.info(f"Swarm ready: vault {vault_wallet.agent_id}, planner {mode}")

    def reasoner_for(self, role: AgentRole) -> Reasoner:
        if self.openai_client is None:
            return RuleBasedReasoner()
        return LLMPlanner(model=self.cfg.openai_model, client=self.openai_client)

    async def aclose(self) -> None:
        """Stop every agent and release the HTTP clients."""
        await self.coordinator.stop_all()
        self.coordinator.close()
        await self.quote_client.aclose()
        await self.risk_client.aclose()
        self.metrics.close()
        if self.audit is not None:
            self.audit.detach()

    async def __aenter__(self) -> "Swarm":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()
