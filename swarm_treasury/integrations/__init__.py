"""External collaborator contracts and their HTTP clients."""
from .quotes import JupiterQuoteClient, PriceFeed, Quote, QuoteProvider, resolve_asset
from .risk_oracle import RiskAssessment, RiskLevel, RiskOracle, RugCheckClient, classify
from .wallet import Wallet

__all__ = [
    "JupiterQuoteClient",
    "PriceFeed",
    "Quote",
    "QuoteProvider",
    "resolve_asset",
    "RiskAssessment",
    "RiskLevel",
    "RiskOracle",
    "RugCheckClient",
    "classify",
    "Wallet",
]
