from .evm import (
    RelayHub,
    ChainClient,
    Web3ChainClient,
    RelaySettings,
    load_settings,
    RelayResult,
    FundingPlan,
)

__all__ = [
    "RelayHub",
    "ChainClient",
    "Web3ChainClient",
    "RelaySettings",
    "load_settings",
    "RelayResult",
    "FundingPlan",
]
