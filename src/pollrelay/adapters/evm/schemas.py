"""
EVM Relay Data Models

Pydantic models for everything the relay passes between its components:
wallets, signed requests, fee policies, relay outcomes, settlement plans
and the reward ledger.

All token amounts are integers in the token's smallest unit. Conversion to
and from human-readable decimal strings happens at the API boundary via
``constants.amount_to_value`` / ``constants.value_to_amount``.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import Field, model_validator

from ...schemas.bases import CanonicalModel, ContractKind, RelayStatus


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------

class EVMECDSASignature(CanonicalModel):
    """
    EVM ECDSA signature (v, r, s).

    Attributes:
        v: ECDSA recovery ID (27 or 28).
        r: r component, 32 bytes as a 64-char hex string (0x prefix optional).
        s: s component, 32 bytes as a 64-char hex string (0x prefix optional).

    Example::

        sig = EVMECDSASignature.from_hex("0x" + "a" * 64 + "b" * 64 + "1b")
        sig.to_packed_hex()
    """

    v: int = Field(..., description="ECDSA recovery ID (27 or 28)")
    r: str = Field(..., description="Signature r component (32 bytes, 64-char hex)")
    s: str = Field(..., description="Signature s component (32 bytes, 64-char hex)")

    @classmethod
    def from_hex(cls, signature: str) -> "EVMECDSASignature":
        """
        Split a packed 65-byte ``r || s || v`` signature into its components.

        A recovery byte of 0 or 1 is normalised to 27 or 28.

        Raises:
            ValueError: If the input is not 65 bytes of hex.
        """
        if not isinstance(signature, str):
            raise ValueError("Signature must be a hex string")
        hex_str = signature[2:] if signature[:2].lower() == "0x" else signature
        if len(hex_str) != 130:
            raise ValueError(f"Invalid signature length: expected 65 bytes, got {len(hex_str) // 2}")
        try:
            int(hex_str, 16)
        except ValueError:
            raise ValueError("Invalid signature: not valid hexadecimal")
        v = int(hex_str[128:], 16)
        if v in (0, 1):
            v += 27
        sig = cls(v=v, r="0x" + hex_str[:64], s="0x" + hex_str[64:128])
        sig.validate_format()
        return sig

    def validate_format(self) -> bool:
        """
        Validate v/r/s components.

        Returns:
            True when all components pass.

        Raises:
            ValueError: Descriptive message on the first failed check.
        """
        if self.v not in (27, 28):
            raise ValueError(f"Invalid recovery ID: {self.v}. Must be 27 or 28")

        for name, val in [("r", self.r), ("s", self.s)]:
            hex_str = val.replace("0x", "").replace("0X", "")
            if len(hex_str) != 64:
                raise ValueError(f"Invalid {name}: expected 64 hex chars, got {len(hex_str)}")
            try:
                int(hex_str, 16)
            except ValueError:
                raise ValueError(f"Invalid {name}: not valid hexadecimal")

        return True

    def to_packed_hex(self) -> str:
        """Encode v/r/s back into a 0x-prefixed 65-byte hex string."""
        self.validate_format()
        r = self.r.replace("0x", "").replace("0X", "").zfill(64)
        s = self.s.replace("0x", "").replace("0X", "").zfill(64)
        return "0x" + r + s + format(self.v, "02x")

    def r_bytes(self) -> bytes:
        return bytes.fromhex(self.r.replace("0x", "").zfill(64))

    def s_bytes(self) -> bytes:
        return bytes.fromhex(self.s.replace("0x", "").zfill(64))


# ---------------------------------------------------------------------------
# Wallets
# ---------------------------------------------------------------------------

class SmartWallet(CanonicalModel):
    """
    Counterfactual contract wallet owned by a user's key.

    ``wallet_address`` is a pure function of ``(owner_address, salt)`` and
    never changes once derived. ``deployed`` is a snapshot; callers that
    need the truth re-probe the chain.
    """
    owner_address: str
    wallet_address: str
    salt: str = Field(..., description="0x-prefixed bytes32 salt")
    deployed: bool = False


class DeploymentResult(CanonicalModel):
    """Outcome of ``deploy_if_needed``."""
    owner_address: str
    wallet_address: str
    deployed: bool
    already_deployed: bool = False
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None


# ---------------------------------------------------------------------------
# Meta-transactions
# ---------------------------------------------------------------------------

class MetaTransactionRequest(CanonicalModel):
    """
    A user-signed action waiting for verification and relay.

    Attributes:
        signer: Address that claims to have signed the request.
        action_type: Name of the typed-data schema (``vote`` or ``claim_reward``).
        payload: Action fields excluding signer and nonce (e.g. ``{"option": 2}``).
        nonce: Replay-protection counter for (verifying contract, signer).
        signature: Packed 65-byte hex signature.
        domain: EIP-712 domain ``{name, version, chainId, verifyingContract}``.
    """
    signer: str
    action_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    nonce: int = Field(..., ge=0)
    signature: str
    domain: Dict[str, Any]

    @property
    def verifying_contract(self) -> str:
        return str(self.domain.get("verifyingContract", ""))


class VerifiedRequest(CanonicalModel):
    """A request whose signature and nonce have been accepted."""
    request: MetaTransactionRequest
    recovered_signer: str
    verified_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Fees and receipts
# ---------------------------------------------------------------------------

class FeeData(CanonicalModel):
    """Raw fee data reported by the network. Any field may be missing."""
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None
    gas_price: Optional[int] = None


class FeePolicy(CanonicalModel):
    """
    Versioned gas parameters applied to a dispatch.

    Each dispatch captures the policy it used, so a refresh never changes
    an in-flight transaction.
    """
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    gas_limit: int
    last_updated: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: int = 0

    @model_validator(mode="after")
    def _fee_ordering(self) -> "FeePolicy":
        if self.max_fee_per_gas < self.max_priority_fee_per_gas:
            raise ValueError("max_fee_per_gas must be >= max_priority_fee_per_gas")
        return self

    def to_tx_params(self) -> Dict[str, int]:
        """Transaction fields for an EIP-1559 transaction."""
        return {
            "maxFeePerGas": self.max_fee_per_gas,
            "maxPriorityFeePerGas": self.max_priority_fee_per_gas,
            "gas": self.gas_limit,
        }


class Receipt(CanonicalModel):
    """Mined transaction receipt, reduced to what the relay inspects."""
    tx_hash: str
    status: int = Field(..., description="1 for success, 0 for revert")
    block_number: int
    gas_used: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == 1


# ---------------------------------------------------------------------------
# Relay
# ---------------------------------------------------------------------------

class PlannedCall(CanonicalModel):
    """
    A single contract call the relay will submit from the platform signer.

    Attributes:
        contract: Contract family, used to resolve the ABI.
        target: Contract address.
        function: Contract function name.
        args: Positional arguments in ABI order.
        value: Native value to attach (always 0 for relayed calls).
        call_data: ABI-encoded calldata, filled in when the call is nested
            inside a smart-wallet ``execute``.
    """
    contract: ContractKind
    target: str
    function: str
    args: List[Any] = Field(default_factory=list)
    value: int = 0
    call_data: Optional[str] = None


class RelayResult(CanonicalModel):
    """
    Outcome of relaying one call.

    Exactly one of the terminal states applies: a CONFIRMED result carries a
    tx hash and block, a REVERTED result carries the error class and reason,
    a SUBMISSION_FAILED result never reached the chain.
    """
    tx_hash: Optional[str] = None
    status: RelayStatus
    error_class: Optional[str] = None
    reason: Optional[str] = None
    block_ref: Optional[int] = None
    attempts: int = 0
    fee_policy_version: Optional[int] = None

    @model_validator(mode="after")
    def _status_consistency(self) -> "RelayResult":
        if self.status == RelayStatus.CONFIRMED:
            if not self.tx_hash or self.error_class is not None:
                raise ValueError("Confirmed result requires tx_hash and no error_class")
        elif self.status in (RelayStatus.REVERTED, RelayStatus.SUBMISSION_FAILED):
            if self.error_class is None:
                raise ValueError(f"{self.status.value} result requires error_class")
        elif self.status == RelayStatus.PENDING and not self.tx_hash:
            raise ValueError("Pending result requires tx_hash")
        return self

    def is_success(self) -> bool:
        return self.status == RelayStatus.CONFIRMED

    def is_terminal(self) -> bool:
        return self.status != RelayStatus.PENDING

    def get_error_message(self) -> Optional[str]:
        if self.is_success():
            return None
        return self.reason or self.error_class


class RelayAuditRecord(CanonicalModel):
    """Final outcome of a transaction that was still pending when the caller got its answer."""
    tx_hash: str
    result: RelayResult
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------

class PollDraft(CanonicalModel):
    """Poll parameters needed to build the ``createAndFundPoll`` call."""
    title: str
    options: List[str] = Field(..., min_length=2)
    duration: int = Field(..., gt=0, description="Poll duration in seconds")


class FundingPlan(CanonicalModel):
    """
    Ordered on-chain steps that fund a reward-bearing poll.

    ``approval_step`` must confirm before ``funding_step`` is submitted.
    Both steps are executed by the owner's smart wallet.
    """
    owner_address: str
    wallet_address: str
    token_address: str
    poll_factory_address: str
    reward_per_voter: int
    vote_limit: int
    total_reward: int
    fund_amount: int
    platform_fee: int
    total_required: int
    wallet_balance: int
    approval_step: PlannedCall
    funding_step: PlannedCall

    @property
    def steps(self) -> List[PlannedCall]:
        return [self.approval_step, self.funding_step]


class FundingOutcome(CanonicalModel):
    """Result of executing a ``FundingPlan``."""
    plan: FundingPlan
    deployment: DeploymentResult
    approval: Optional[RelayResult] = None
    funding: Optional[RelayResult] = None

    def is_success(self) -> bool:
        return bool(self.funding and self.funding.is_success())


class RewardLedgerEntry(CanonicalModel):
    """
    Reward owed to or paid to a voter.

    ``settled`` flips to true only after the claim transaction confirms.
    """
    poll_address: str
    voter: str
    amount: int
    fee_amount: int = 0
    settled: bool = False
    tx_hash: Optional[str] = None
