from .adapter import RelayHub
from .chain import ChainClient, Web3ChainClient, encode_call
from .constants import RelaySettings, load_settings, amount_to_value, value_to_amount
from .nonces import NonceKey, NonceRegistry
from .schemas import (
    EVMECDSASignature,
    SmartWallet,
    DeploymentResult,
    MetaTransactionRequest,
    VerifiedRequest,
    FeePolicy,
    PlannedCall,
    RelayResult,
    PollDraft,
    FundingPlan,
    FundingOutcome,
    RewardLedgerEntry,
)
from .signatures import (
    sign_vote,
    sign_claim_reward,
    sign_wallet_call,
)
from .verifies import (
    MetaTransactionVerifier,
    verify_wallet_call_signature,
)

__all__ = [
    "RelayHub",
    "ChainClient",
    "Web3ChainClient",
    "encode_call",
    "RelaySettings",
    "load_settings",
    "amount_to_value",
    "value_to_amount",
    "NonceKey",
    "NonceRegistry",
    "EVMECDSASignature",
    "SmartWallet",
    "DeploymentResult",
    "MetaTransactionRequest",
    "VerifiedRequest",
    "FeePolicy",
    "PlannedCall",
    "RelayResult",
    "PollDraft",
    "FundingPlan",
    "FundingOutcome",
    "RewardLedgerEntry",
    "sign_vote",
    "sign_claim_reward",
    "sign_wallet_call",
    "MetaTransactionVerifier",
    "verify_wallet_call_signature",
]
