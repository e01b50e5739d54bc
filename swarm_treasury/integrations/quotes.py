"""
Quote provider contract and an httpx client for a Jupiter-style swap aggregator.

The gate uses quote() to simulate price impact; the scheduler uses execute()
to submit an approved swap through the agent's wallet.
"""
import base64
import logging
from typing import Any, Dict, Mapping, Optional, Protocol

import httpx
from pydantic import BaseModel, Field

from ..exceptions import ServiceError
from .wallet import Wallet

logger = logging.getLogger("swarm_treasury.integrations.quotes")

KNOWN_ASSETS = {
    "SOL": "So11111111111111111111111111111111111111112",
    "USDC": "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
    "BONK": "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263",
    "JUP": "JUPyiwrYJFskUPiHa7hkeR8VUtAeFoSYbKedZNsDvCN",
}

NATIVE_UNITS = 1_000_000_000


def resolve_asset(asset: str, assets: Optional[Mapping[str, str]] = None) -> str:
    """Map a symbol to its on-chain id. Unknown values pass through unchanged."""
    table = assets if assets is not None else KNOWN_ASSETS
    return table.get(asset.upper(), asset)


class Quote(BaseModel):
    """Simulated swap route."""
    input_asset: str
    output_asset: str
    in_amount: float = Field(description="Native units offered")
    output_amount: float = Field(description="Raw output amount in the target's smallest unit")
    price_impact_pct: float = 0.0
    slippage_bps: int = 50
    raw: Dict[str, Any] = Field(default_factory=dict)


class QuoteProvider(Protocol):
    async def quote(
        self, input_asset: str, output_asset: str, amount: float, slippage_bps: int = 50
    ) -> Quote:
        """Raises ServiceError on timeout or when no route exists."""
        ...

    async def execute(self, wallet: Wallet, quote: Quote) -> str:
        ...


class PriceFeed(Protocol):
    async def get_price(self, asset: str) -> float:
        ...


class JupiterQuoteClient:
    """Async client for a Jupiter v6 compatible quote/swap API."""

    SERVICE = "quote_provider"

    def __init__(
        self,
        base_url: str = "https://quote-api.jup.ag/v6",
        price_url: str = "https://price.jup.ag/v6/price",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
        assets: Optional[Mapping[str, str]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.price_url = price_url
        self.assets = dict(assets) if assets is not None else dict(KNOWN_ASSETS)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def _request(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, url, **kwargs)
            response.raise_for_status()
            return response.json()
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

    async def quote(
        self, input_asset: str, output_asset: str, amount: float, slippage_bps: int = 50
    ) -> Quote:
        input_id = resolve_asset(input_asset, self.assets)
        output_id = resolve_asset(output_asset, self.assets)
        data = await self._request(
            "GET",
            f"{self.base_url}/quote",
            params={
                "inputMint": input_id,
                "outputMint": output_id,
                "amount": str(int(amount * NATIVE_UNITS)),
                "slippageBps": slippage_bps,
                "onlyDirectRoutes": "false",
            },
        )
        if not data.get("outAmount"):
            raise ServiceError(self.SERVICE, f"no route {input_asset} -> {output_asset}")

        try:
            price_impact = float(data.get("priceImpactPct") or 0.0)
            output_amount = float(data["outAmount"])
        except (TypeError, ValueError) as e:
            raise ServiceError(self.SERVICE, f"malformed quote: {e}") from e

        quote = Quote(
            input_asset=input_id,
            output_asset=output_id,
            in_amount=amount,
            output_amount=output_amount,
            price_impact_pct=price_impact,
            slippage_bps=slippage_bps,
            raw=data,
        )
        logger.debug(f"Quote {input_asset}->{output_asset} {amount}: impact {quote.price_impact_pct:.4f}%")
        return quote

    async def execute(self, wallet: Wallet, quote: Quote) -> str:
        """Build the swap transaction and hand it to the wallet for signing."""
        data = await self._request(
            "POST",
            f"{self.base_url}/swap",
            json={
                "quoteResponse": quote.raw,
                "userPublicKey": wallet.address,
                "wrapAndUnwrapSol": True,
                "dynamicComputeUnitLimit": True,
                "prioritizationFeeLamports": "auto",
            },
        )
        encoded = data.get("swapTransaction")
        if not encoded:
            raise ServiceError(self.SERVICE, "swap response missing transaction")
        prepared = base64.b64decode(encoded)
        tx_ref = await wallet.sign_and_submit(prepared)
        logger.info(f"Swap submitted by {wallet.agent_id}: {tx_ref}")
        return tx_ref

    async def get_price(self, asset: str) -> float:
        asset_id = resolve_asset(asset, self.assets)
        data = await self._request("GET", self.price_url, params={"ids": asset_id})
        price = ((data.get("data") or {}).get(asset_id) or {}).get("price")
        try:
            price = float(price)
        except (TypeError, ValueError):
            price = 0.0
        if price <= 0:
            raise ServiceError(self.SERVICE, f"no price for {asset}")
        return price

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "JupiterQuoteClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()
