"""
Exception and Error Definitions Module

Defines the error taxonomy for wallet derivation, deployment, signature
verification and relay. Every exception carries a machine-readable
``error_class`` and a human-readable ``reason`` so callers can render a
response without inspecting RPC internals.

Exception Hierarchy:
    RelayError (root)
    ├── ConfigurationError
    ├── InvalidRequest
    ├── SignatureError
    │   ├── InvalidSignature
    │   ├── NonceMismatch
    │   └── UnknownAction
    ├── NetworkError
    │   ├── RpcTimeout
    │   │   └── DeploymentPending
    │   └── SubmissionFailed
    ├── ContractError
    │   ├── TransactionReverted
    │   ├── AlreadyVoted
    │   ├── PollInactive
    │   ├── CreatorCannotVote
    │   ├── InsufficientAllowance
    │   ├── InvalidOption
    │   └── InsufficientRewardFunds
    └── StateError
        ├── DeploymentVerificationFailed
        └── InsufficientBalance
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorClass(str, Enum):
    """Machine-readable error identifiers exposed to callers."""
    CONFIGURATION_ERROR = "configuration_error"
    INVALID_SIGNATURE = "invalid_signature"
    NONCE_MISMATCH = "nonce_mismatch"
    UNKNOWN_ACTION = "unknown_action"
    RPC_TIMEOUT = "rpc_timeout"
    DEPLOYMENT_PENDING = "deployment_pending"
    SUBMISSION_FAILED = "submission_failed"
    TRANSACTION_REVERTED = "transaction_reverted"
    ALREADY_VOTED = "already_voted"
    POLL_INACTIVE = "poll_inactive"
    CREATOR_CANNOT_VOTE = "creator_cannot_vote"
    INSUFFICIENT_ALLOWANCE = "insufficient_allowance"
    INVALID_OPTION = "invalid_option"
    INSUFFICIENT_REWARD_FUNDS = "insufficient_reward_funds"
    DEPLOYMENT_VERIFICATION_FAILED = "deployment_verification_failed"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    INVALID_REQUEST = "invalid_request"
    INTERNAL_ERROR = "internal_error"


class RelayError(Exception):
    """
    Root exception class for all relay-specific exceptions.

    Attributes:
        error_class: Machine-readable identifier for the failure.
        reason: Human-readable explanation, safe to show to end users.
    """
    error_class: ErrorClass = ErrorClass.INTERNAL_ERROR

    def __init__(self, reason: str = "", **details: Any) -> None:
        super().__init__(reason)
        self.reason = reason
        self.details = details

    def to_payload(self) -> Dict[str, Any]:
        """Return the error as a JSON-safe dict for API responses."""
        payload: Dict[str, Any] = {
            "error_class": self.error_class.value,
            "reason": self.reason,
        }
        if self.details:
            payload["details"] = {k: str(v) for k, v in self.details.items()}
        return payload


class ConfigurationError(RelayError):
    """
    Raised when a required setting is missing or malformed.

    This includes scenarios such as:
    - Wallet factory address not configured
    - Platform signing key absent
    - RPC endpoint unreachable at startup
    """
    error_class = ErrorClass.CONFIGURATION_ERROR


class InvalidRequest(RelayError):
    """Raised when a caller supplies a malformed address, amount or option list."""
    error_class = ErrorClass.INVALID_REQUEST


# ==================== Signature errors ====================

class SignatureError(RelayError):
    """Base exception for rejected meta-transaction requests."""
    error_class = ErrorClass.INVALID_SIGNATURE


class InvalidSignature(SignatureError):
    """
    Raised when a signature is malformed or does not recover to the claimed signer.

    Any tampering with the signed payload, domain or nonce surfaces here.
    """
    error_class = ErrorClass.INVALID_SIGNATURE


class NonceMismatch(SignatureError):
    """
    Raised when the supplied nonce is not the next expected value.

    Attributes:
        expected: Next nonce the registry would accept.
        provided: Nonce carried by the request.
    """
    error_class = ErrorClass.NONCE_MISMATCH

    def __init__(self, reason: str = "", expected: Optional[int] = None, provided: Optional[int] = None) -> None:
        super().__init__(reason, expected=expected, provided=provided)
        self.expected = expected
        self.provided = provided


class UnknownAction(SignatureError):
    """Raised when the request names an action type with no typed-data schema."""
    error_class = ErrorClass.UNKNOWN_ACTION


# ==================== Network errors ====================

class NetworkError(RelayError):
    """Base exception for RPC transport failures. Always retryable."""
    error_class = ErrorClass.RPC_TIMEOUT


class RpcTimeout(NetworkError):
    """Raised when an RPC call exceeds its per-call timeout."""
    error_class = ErrorClass.RPC_TIMEOUT


class DeploymentPending(RpcTimeout):
    """
    Raised when ``createWallet`` was submitted but not mined within the
    receipt timeout. The transaction may still land; later deployment
    attempts for the same owner wait on it instead of submitting again.
    """
    error_class = ErrorClass.DEPLOYMENT_PENDING

    def __init__(self, reason: str = "", tx_hash: Optional[str] = None) -> None:
        super().__init__(reason, tx_hash=tx_hash)
        self.tx_hash = tx_hash


class SubmissionFailed(NetworkError):
    """Raised when the node rejects or drops a signed transaction."""
    error_class = ErrorClass.SUBMISSION_FAILED


# ==================== Contract errors ====================

class ContractError(RelayError):
    """Base exception for contract-level reverts. Never retried."""
    error_class = ErrorClass.TRANSACTION_REVERTED


class TransactionReverted(ContractError):
    """Raised when a transaction reverts with a reason not mapped to a specific class."""
    error_class = ErrorClass.TRANSACTION_REVERTED


class AlreadyVoted(ContractError):
    """Raised when the voter has already voted in the poll."""
    error_class = ErrorClass.ALREADY_VOTED


class PollInactive(ContractError):
    """Raised when the poll is closed or has not started."""
    error_class = ErrorClass.POLL_INACTIVE


class CreatorCannotVote(ContractError):
    """Raised when the poll creator attempts to vote in their own poll."""
    error_class = ErrorClass.CREATOR_CANNOT_VOTE


class InsufficientAllowance(ContractError):
    """Raised when the factory's token allowance does not cover the funding amount."""
    error_class = ErrorClass.INSUFFICIENT_ALLOWANCE


class InvalidOption(ContractError):
    """Raised when the option index is outside the poll's options."""
    error_class = ErrorClass.INVALID_OPTION


class InsufficientRewardFunds(ContractError):
    """Raised when the poll's reward pool cannot pay another claim."""
    error_class = ErrorClass.INSUFFICIENT_REWARD_FUNDS


# ==================== State errors ====================

class StateError(RelayError):
    """Base exception for preconditions on chain state that do not hold."""
    error_class = ErrorClass.INTERNAL_ERROR


class DeploymentVerificationFailed(StateError):
    """Raised when a wallet deployment receipt succeeded but no bytecode is visible."""
    error_class = ErrorClass.DEPLOYMENT_VERIFICATION_FAILED


class InsufficientBalance(StateError):
    """
    Raised when a wallet's token balance cannot cover a planned settlement.

    Attributes:
        required: Amount needed, in token base units.
        available: Amount held, in token base units.
        shortfall: ``required - available``.
    """
    error_class = ErrorClass.INSUFFICIENT_BALANCE

    def __init__(self, reason: str = "", required: int = 0, available: int = 0) -> None:
        shortfall = max(required - available, 0)
        super().__init__(reason, required=required, available=available, shortfall=shortfall)
        self.required = required
        self.available = available
        self.shortfall = shortfall
