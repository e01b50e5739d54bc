"""
Wallet contract consumed by schedulers and the coordinator.

Key custody and signing live outside this package; implementations only need
to satisfy this protocol.
"""
from typing import Any, Protocol


class Wallet(Protocol):
    agent_id: str
    role: str
    address: str

    async def get_balance(self) -> float:
        """Native balance."""
        ...

    async def get_asset_balance(self, asset: str) -> float:
        ...

    async def transfer(self, to_address: str, amount: float) -> str:
        """Send native value. Raises SigningError on signature or broadcast failure."""
        ...

    async def sign_and_submit(self, prepared: Any) -> str:
        """Sign a prepared transaction and submit it. Returns the transaction ref."""
        ...
