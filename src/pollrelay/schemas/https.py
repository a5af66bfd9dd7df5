"""
HTTP Request/Response Schema Models for the Poll Relay

This module defines the Pydantic models exchanged between clients and the
relay server. Request bodies carry what the end user signed; responses carry
wallet state, nonces and relay outcomes.

The main gasless flow consists of:
1. Client reads the next nonce and typed-data domain for a poll
2. Client signs Vote or ClaimReward locally with the voter's key
3. Client posts the signature; the relay verifies, deploys the voter's
   smart wallet if needed and submits the meta-transaction

Token amounts travel as decimal strings ("2.00") and are scaled to base units
on the server.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


# ============================================================================
# Wallets
# ============================================================================

class WalletResponse(BaseModel):
    """Derived smart wallet for an owner and its deployment status."""
    owner_address: str
    wallet_address: str
    deployed: bool


class DeployResponse(BaseModel):
    """Result of an idempotent deployment request.

    Attributes:
        already_deployed: True when code existed and no transaction was sent.
        tx_hash: Deployment transaction, absent when already deployed.
    """
    owner_address: str
    wallet_address: str
    deployed: bool
    already_deployed: bool = False
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None


# ============================================================================
# Nonces and typed-data domain
# ============================================================================

class NonceResponse(BaseModel):
    """Everything a client needs to build the typed data it must sign.

    Attributes:
        verifying_contract: Poll contract the signature is bound to.
        signer: Voter address.
        nonce: Next nonce the relay accepts for this signer.
        domain: EIP-712 domain (name, version, chainId, verifyingContract).
    """
    verifying_contract: str
    signer: str
    nonce: int
    domain: Dict[str, Any]


# ============================================================================
# Meta-transactions
# ============================================================================

class VoteRequest(BaseModel):
    """Signed gasless vote.

    Attributes:
        signer: Voter address that produced the signature.
        option: Zero-based option index.
        signature: 65-byte hex signature over Vote{voter, option, nonce}.
        nonce: Signed nonce; the next expected value is used when omitted.
        already_voted_hint: Advisory flag from the caller's records.
    """
    signer: str = Field(..., description="Voter address")
    option: int = Field(..., ge=0, description="Zero-based option index")
    signature: str = Field(..., description="0x-prefixed 65-byte signature")
    nonce: Optional[int] = Field(None, ge=0, description="Signed nonce")
    already_voted_hint: Optional[bool] = Field(None, description="Advisory only; the chain decides")


class ClaimRequest(BaseModel):
    """Signed gasless reward claim."""
    signer: str = Field(..., description="Claimer address")
    signature: str = Field(..., description="0x-prefixed 65-byte signature")
    nonce: Optional[int] = Field(None, ge=0, description="Signed nonce")


# ============================================================================
# Poll funding
# ============================================================================

class FundingPlanRequest(BaseModel):
    """Request to plan the approval and funding of a reward-bearing poll.

    The poll draft (title, options, duration) is optional. Without it the
    plan reports amounts and the approval step only.
    """
    owner: str = Field(..., description="Poll creator EOA")
    reward_per_voter: str = Field(..., description='Reward per vote, e.g. "2.00"')
    vote_limit: int = Field(..., gt=0, description="Maximum rewarded voters")
    fund_amount: Optional[str] = Field(None, description="Deposit; defaults to the total reward")
    poll_factory: Optional[str] = Field(None, description="Overrides the configured PollFactory")
    title: Optional[str] = None
    options: Optional[List[str]] = None
    duration: Optional[int] = Field(None, gt=0, description="Poll duration in seconds")

    @field_validator("options")
    @classmethod
    def validate_options(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is not None and len(v) < 2:
            raise ValueError("a poll needs at least two options")
        return v

    def has_draft(self) -> bool:
        return self.title is not None and self.options is not None and self.duration is not None


class FundingPlanResponse(BaseModel):
    """Funding plan plus its amounts rendered as decimal strings."""
    plan: Dict[str, Any]
    amounts: Dict[str, str]


class FundingExecuteRequest(BaseModel):
    """A previously returned plan and the owner's signatures over both wallet calls."""
    plan: Dict[str, Any]
    approval_signature: str
    funding_signature: str


# ============================================================================
# Errors
# ============================================================================

class ErrorDetail(BaseModel):
    error_class: str
    reason: str
    details: Optional[Dict[str, str]] = None


class ErrorResponse(BaseModel):
    """Envelope for every error the relay returns."""
    error: ErrorDetail
