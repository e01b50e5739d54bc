"""
Error taxonomy for the swarm treasury core.
"""
from typing import Any, Optional


class SwarmError(Exception):
    """Base exception for all swarm treasury errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigError(SwarmError):
    """Malformed rule set, directive or configuration. Rejected at load."""

    def __init__(self, message: str, errors: Optional[list[Any]] = None):
        super().__init__(message)
        self.errors = errors or []


class PolicyRejection(SwarmError):
    """A proposed fund movement was rejected by the policy gate."""

    def __init__(self, decision):
        super().__init__(decision.reason)
        self.decision = decision

    @property
    def failed_checks(self) -> list[str]:
        return [c.name for c in self.decision.checks if not c.passed]


class ServiceError(SwarmError):
    """An external collaborator failed (network, timeout, no route)."""

    def __init__(self, service: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"{service}: {message}")
        self.service = service
        self.status_code = status_code


class SigningError(SwarmError):
    """Submission failed after approval. Never retried automatically."""

    def __init__(self, message: str, tx_ref: Optional[str] = None):
        super().__init__(message)
        self.tx_ref = tx_ref


class FatalDirective(SwarmError):
    """The emergency-stop directive was set. The only error that stops a scheduler."""


class RegistryError(SwarmError):
    """Invalid registry operation: duplicate, unknown or protected agent id."""

    def __init__(self, message: str, agent_id: str):
        super().__init__(message)
        self.agent_id = agent_id
