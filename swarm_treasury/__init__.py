"""
Swarm treasury core: policy-gated autonomous agents sharing one ledger.
"""
from .clock import Clock, ManualClock, SystemClock
from .config import SwarmConfig, configure_logging, load_config
from .coordinator import ROLE_REGISTRY, AgentEntry, AgentOptions, Coordinator
from .directives import DirectiveSource, Directives, InMemoryDirectiveSource
from .events import Event, EventBus, EventCategory
from .exceptions import (
    ConfigError,
    FatalDirective,
    PolicyRejection,
    RegistryError,
    ServiceError,
    SigningError,
    SwarmError,
)
from .policy import PolicyGate
from .reasoner import LLMPlanner, Reasoner, RuleBasedReasoner
from .scheduler import Scheduler
from .swarm import Swarm
from .schemas import (
    AgentRole,
    Cycle,
    CycleDecision,
    ExitAction,
    LifecycleState,
    PolicyDecision,
    PolicyRules,
    SpendingWindow,
)

__all__ = [
    "Clock",
    "ManualClock",
    "SystemClock",
    "SwarmConfig",
    "configure_logging",
    "load_config",
    "ROLE_REGISTRY",
    "AgentEntry",
    "AgentOptions",
    "Coordinator",
    "DirectiveSource",
    "Directives",
    "InMemoryDirectiveSource",
    "Event",
    "EventBus",
    "EventCategory",
    "ConfigError",
    "FatalDirective",
    "PolicyRejection",
    "RegistryError",
    "ServiceError",
    "SigningError",
    "SwarmError",
    "PolicyGate",
    "LLMPlanner",
    "Reasoner",
    "RuleBasedReasoner",
    "Scheduler",
    "Swarm",
    "AgentRole",
    "Cycle",
    "CycleDecision",
    "ExitAction",
    "LifecycleState",
    "PolicyDecision",
    "PolicyRules",
    "SpendingWindow",
]
