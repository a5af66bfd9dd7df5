from .bases import CanonicalModel, ActionType, RelayStatus, ContractKind
from .https import (
    WalletResponse,
    DeployResponse,
    NonceResponse,
    VoteRequest,
    ClaimRequest,
    FundingPlanRequest,
    FundingPlanResponse,
    FundingExecuteRequest,
    ErrorDetail,
    ErrorResponse,
)

__all__ = [
    "CanonicalModel",
    "ActionType",
    "RelayStatus",
    "ContractKind",
    "WalletResponse",
    "DeployResponse",
    "NonceResponse",
    "VoteRequest",
    "ClaimRequest",
    "FundingPlanRequest",
    "FundingPlanResponse",
    "FundingExecuteRequest",
    "ErrorDetail",
    "ErrorResponse",
]
