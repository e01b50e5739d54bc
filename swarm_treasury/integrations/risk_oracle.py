"""
Risk oracle contract and an httpx client for a RugCheck-style token report API.

Scores run 0-1000; higher means more likely to be a rug or exit scam.
"""
import logging
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Protocol

import httpx
from pydantic import BaseModel, Field

from ..exceptions import ServiceError
from .quotes import KNOWN_ASSETS, resolve_asset

logger = logging.getLogger("swarm_treasury.integrations.risk_oracle")

AUTO_EXIT_SCORE = 800
MONITOR_SCORE = 500
LOW_SCORE = 200


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"
    UNKNOWN = "unknown"


class RiskFactor(BaseModel):
    name: str
    description: str = ""
    severity: RiskLevel = RiskLevel.LOW


class RiskAssessment(BaseModel):
    asset: str
    score: int = Field(ge=0, le=1000)
    classification: RiskLevel
    risks: List[RiskFactor] = Field(default_factory=list)
    recommendation: str = "hold"

    @property
    def should_auto_exit(self) -> bool:
        return self.score >= AUTO_EXIT_SCORE


def classify(score: int) -> RiskLevel:
    if score >= AUTO_EXIT_SCORE:
        return RiskLevel.CRITICAL
    if score >= MONITOR_SCORE:
        return RiskLevel.HIGH
    if score >= LOW_SCORE:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def recommend(score: int) -> str:
    if score >= AUTO_EXIT_SCORE:
        return "exit"
    if score >= MONITOR_SCORE:
        return "monitor"
    return "hold"


_SEVERITY_MAP = {
    "warn": RiskLevel.MEDIUM,
    "caution": RiskLevel.LOW,
    "danger": RiskLevel.HIGH,
    "critical": RiskLevel.CRITICAL,
}


class RiskOracle(Protocol):
    async def assess(self, asset: str) -> RiskAssessment:
        """Raises ServiceError if the oracle is unreachable."""
        ...


class RugCheckClient:
    """Async client for the RugCheck token report summary endpoint."""

    SERVICE = "risk_oracle"

    def __init__(
        self,
        base_url: str = "https://api.rugcheck.xyz/v1",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
        assets: Optional[Mapping[str, str]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.assets = dict(assets) if assets is not None else dict(KNOWN_ASSETS)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def assess(self, asset: str) -> RiskAssessment:
        asset_id = resolve_asset(asset, self.assets)
        try:
            response = await self._client.get(f"{self.base_url}/tokens/{asset_id}/report/summary")
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            raise ServiceError(self.SERVICE, "request timed out") from e
        except httpx.HTTPStatusError as e:
            raise ServiceError(
                self.SERVICE, f"HTTP {e.response.status_code}", status_code=e.response.status_code
            ) from e
        except httpx.HTTPError as e:
            raise ServiceError(self.SERVICE, str(e) or e.__class__.__name__) from e
        except ValueError as e:
            raise ServiceError(self.SERVICE, f"invalid JSON response: {e}") from e

        try:
            score = min(1000, max(0, int(data.get("score") or 0)))
        except (TypeError, ValueError):
            raise ServiceError(self.SERVICE, f"malformed score for {asset}")

        assessment = RiskAssessment(
            asset=asset,
            score=score,
            classification=classify(score),
            risks=self._parse_risks(data),
            recommendation=recommend(score),
        )
        logger.info(f"Risk score for {asset}: {score}/1000 ({assessment.classification.value})")
        return assessment

    def _parse_risks(self, data: Dict[str, Any]) -> List[RiskFactor]:
        risks = []
        for risk in data.get("risks") or []:
            level = str(risk.get("level") or "").lower()
            risks.append(
                RiskFactor(
                    name=risk.get("name") or "Unknown",
                    description=risk.get("description") or "",
                    severity=_SEVERITY_MAP.get(level, RiskLevel.LOW),
                )
            )
        return risks

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "RugCheckClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()
