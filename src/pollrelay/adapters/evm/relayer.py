"""
Relay Dispatcher

Submits verified calls from the platform signer and reports what happened.

Each attempt produces one explicit outcome:

* :class:`DispatchConfirmed`: mined with status 1.
* :class:`DispatchReverted`: the contract rejected the call; the revert
  reason is decoded to a :class:`ContractError`. Never retried, since the
  precondition will not change on resubmission.
* :class:`DispatchFailed`: the transaction never reached the chain; retried
  with backoff and a fresh fee policy while attempts remain.
* :class:`DispatchPending`: submitted but no receipt within
  ``receipt_timeout``. The caller gets a ``PENDING`` result and a background
  task records the eventual outcome in the :class:`RelayAuditLog`.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple, Type, Union

from ...engine.exceptions import (
    AlreadyVoted,
    ContractError,
    CreatorCannotVote,
    InsufficientAllowance,
    InsufficientRewardFunds,
    InvalidOption,
    NetworkError,
    PollInactive,
    RpcTimeout,
    TransactionReverted,
)
from ...schemas.bases import RelayStatus
from ...utils import logger
from .chain import ChainClient
from .constants import RelaySettings
from .fees import FeePolicyEngine
from .schemas import FeePolicy, PlannedCall, Receipt, RelayAuditRecord, RelayResult


# ---------------------------------------------------------------------------
# Revert decoding
# ---------------------------------------------------------------------------

_REVERT_CLASSES: List[Tuple[Tuple[str, ...], Type[ContractError]]] = [
    (("already voted",), AlreadyVoted),
    (("creator cannot vote",), CreatorCannotVote),
    (("not active", "poll has ended", "poll ended", "poll closed"), PollInactive),
    (("insufficient allowance", "exceeds allowance", "insufficient usdt allowance"), InsufficientAllowance),
    (("invalid option",), InvalidOption),
    (("insufficient reward funds", "reward pool"), InsufficientRewardFunds),
]


def classify_revert(reason: str) -> ContractError:
    """
    Map a revert string to the matching contract error.

    Unrecognised reasons become a generic :class:`TransactionReverted`.
    """
    text = (reason or "").lower()
    for needles, error_type in _REVERT_CLASSES:
        if any(n in text for n in needles):
            return error_type(reason)
    return TransactionReverted(reason or "Transaction reverted")


# ---------------------------------------------------------------------------
# Dispatch outcomes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DispatchConfirmed:
    receipt: Receipt


@dataclass(frozen=True)
class DispatchReverted:
    error: ContractError
    tx_hash: Optional[str] = None


@dataclass(frozen=True)
class DispatchFailed:
    error: NetworkError
    retryable: bool = True


@dataclass(frozen=True)
class DispatchPending:
    tx_hash: str


DispatchOutcome = Union[DispatchConfirmed, DispatchReverted, DispatchFailed, DispatchPending]


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

AuditListener = Callable[[RelayAuditRecord], Awaitable[None]]


class RelayAuditLog:
    """In-memory record of outcomes resolved after the caller stopped waiting."""

    def __init__(self) -> None:
        self._records: Dict[str, RelayAuditRecord] = {}
        self._listeners: List[AuditListener] = []

    def subscribe(self, listener: AuditListener) -> None:
        self._listeners.append(listener)

    async def record(self, tx_hash: str, result: RelayResult) -> RelayAuditRecord:
        entry = RelayAuditRecord(tx_hash=tx_hash, result=result)
        self._records[tx_hash.lower()] = entry
        logger.info(f"Audit: tx {tx_hash} resolved as {result.status.value}")
        logger.debug(f"Audit record: {entry.to_canonical_json()}")
        for listener in self._listeners:
            await listener(entry)
        return entry

    def get(self, tx_hash: str) -> Optional[RelayAuditRecord]:
        return self._records.get(tx_hash.lower())

    def __len__(self) -> int:
        return len(self._records)


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class RelayDispatcher:
    """
    Submits calls from the platform signer with bounded retries.

    Args:
        chain: Chain capability used for submission and receipts.
        settings: Relay settings (attempts, backoff, timeouts).
        fees: Fee engine refreshed between attempts.
        audit: Log receiving outcomes of transactions that went pending.
    """

    def __init__(
        self,
        chain: ChainClient,
        settings: RelaySettings,
        fees: FeePolicyEngine,
        audit: Optional[RelayAuditLog] = None,
    ):
        self._chain = chain
        self._settings = settings
        self._fees = fees
        self.audit = audit or RelayAuditLog()
        self._trackers: Set[asyncio.Task] = set()

    async def relay(self, call: PlannedCall, policy: Optional[FeePolicy] = None) -> RelayResult:
        """
        Submit ``call`` and wait for its outcome.

        Args:
            call: Contract call to submit.
            policy: Fee policy for the first attempt; defaults to the
                engine's current policy. Later attempts use a fresh one.

        Returns:
            RelayResult in exactly one of the CONFIRMED, REVERTED,
            SUBMISSION_FAILED or PENDING states. Never raises for chain outcomes.
        """
        policy = policy or self._fees.current
        max_attempts = max(1, self._settings.max_relay_attempts)
        attempt = 0

        while True:
            attempt += 1
            outcome = await self._attempt(call, policy)

            if isinstance(outcome, DispatchConfirmed):
                logger.info(
                    f"{call.function} confirmed tx={outcome.receipt.tx_hash} "
                    f"block={outcome.receipt.block_number} attempts={attempt}"
                )
                return RelayResult(
                    tx_hash=outcome.receipt.tx_hash,
                    status=RelayStatus.CONFIRMED,
                    block_ref=outcome.receipt.block_number,
                    attempts=attempt,
                    fee_policy_version=policy.version,
                )

            if isinstance(outcome, DispatchReverted):
                logger.info(
                    f"{call.function} reverted ({outcome.error.error_class.value}): {outcome.error.reason}"
                )
                return RelayResult(
                    tx_hash=outcome.tx_hash,
                    status=RelayStatus.REVERTED,
                    error_class=outcome.error.error_class.value,
                    reason=outcome.error.reason,
                    attempts=attempt,
                    fee_policy_version=policy.version,
                )

            if isinstance(outcome, DispatchPending):
                logger.warning(
                    f"{call.function} tx={outcome.tx_hash} not mined within "
                    f"{self._settings.receipt_timeout}s; tracking in background"
                )
                self.track_pending(outcome.tx_hash, call, attempt, policy.version)
                return RelayResult(
                    tx_hash=outcome.tx_hash,
                    status=RelayStatus.PENDING,
                    reason="Awaiting confirmation",
                    attempts=attempt,
                    fee_policy_version=policy.version,
                )

            if not outcome.retryable or attempt >= max_attempts:
                logger.error(
                    f"{call.function} submission failed after {attempt} attempt(s): {outcome.error.reason}"
                )
                return RelayResult(
                    status=RelayStatus.SUBMISSION_FAILED,
                    error_class=outcome.error.error_class.value,
                    reason=outcome.error.reason,
                    attempts=attempt,
                    fee_policy_version=policy.version,
                )

            delay = self._settings.relay_backoff * (2 ** (attempt - 1))
            logger.warning(
                f"{call.function} attempt {attempt}/{max_attempts} failed "
                f"({outcome.error.reason}); retrying in {delay}s"
            )
            await asyncio.sleep(delay)
            policy = await self._fees.refresh()

    async def _attempt(self, call: PlannedCall, policy: FeePolicy) -> DispatchOutcome:
        try:
            tx_hash = await self._chain.send_transaction(call, policy)
        except ContractError as e:
            return DispatchReverted(error=classify_revert(e.reason))
        except NetworkError as e:
            return DispatchFailed(error=e)

        try:
            receipt = await self._chain.wait_for_receipt(tx_hash, self._settings.receipt_timeout)
        except RpcTimeout:
            return DispatchPending(tx_hash=tx_hash)

        if receipt.succeeded:
            return DispatchConfirmed(receipt=receipt)
        return DispatchReverted(
            error=TransactionReverted("Transaction reverted on-chain"),
            tx_hash=tx_hash,
        )

    # ------------------------------------------------------------------
    # Pending tracking
    # ------------------------------------------------------------------

    def track_pending(self, tx_hash: str, call: PlannedCall, attempts: int, policy_version: int) -> None:
        """Record the eventual outcome of ``tx_hash`` in the audit log from a background task."""
        task = asyncio.create_task(self._track(tx_hash, call, attempts, policy_version))
        self._trackers.add(task)
        task.add_done_callback(self._trackers.discard)

    async def _track(self, tx_hash: str, call: PlannedCall, attempts: int, policy_version: int) -> None:
        try:
            receipt = await self._chain.wait_for_receipt(tx_hash, self._settings.pending_track_timeout)
        except NetworkError as e:
            result = RelayResult(
                tx_hash=tx_hash,
                status=RelayStatus.PENDING,
                reason=f"Outcome unknown: {e.reason}",
                attempts=attempts,
                fee_policy_version=policy_version,
            )
        else:
            if receipt.succeeded:
                result = RelayResult(
                    tx_hash=tx_hash,
                    status=RelayStatus.CONFIRMED,
                    block_ref=receipt.block_number,
                    attempts=attempts,
                    fee_policy_version=policy_version,
                )
            else:
                result = RelayResult(
                    tx_hash=tx_hash,
                    status=RelayStatus.REVERTED,
                    error_class=TransactionReverted.error_class.value,
                    reason="Transaction reverted on-chain",
                    block_ref=receipt.block_number,
                    attempts=attempts,
                    fee_policy_version=policy_version,
                )
        logger.info(f"Background tracking of {call.function} tx={tx_hash} finished: {result.status.value}")
        await self.audit.record(tx_hash, result)

    async def drain(self) -> None:
        """Wait for every background tracker to finish."""
        if self._trackers:
            await asyncio.gather(*list(self._trackers))
