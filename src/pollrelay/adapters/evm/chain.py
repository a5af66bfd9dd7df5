"""
Chain Capability Interface

Everything the relay needs from the chain goes through :class:`ChainClient`:
bytecode probes, read-only calls, fee data, submission from the platform
signer, receipt waits and the current block number. Components receive a
client instance instead of reaching for a provider, so tests substitute a
fake and production uses :class:`Web3ChainClient`.

Dependencies:
    - web3.py: AsyncWeb3 RPC access and contract encoding
    - eth_account: Platform account signing
    - eth_utils: Address checksums
"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

from eth_account import Account
from eth_utils import to_checksum_address
from web3 import AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TransactionNotFound

from ...engine.exceptions import RpcTimeout, SubmissionFailed, TransactionReverted
from ...schemas.bases import ContractKind
from ...utils import logger
from .constants import RelaySettings, get_rpc_url
from .POLL_ABI import get_abi
from .schemas import FeeData, FeePolicy, PlannedCall, Receipt

T = TypeVar("T")

_REVERT_PREFIXES = ("execution reverted: ", "execution reverted:", "VM Exception while processing transaction: revert ")


def revert_reason(error: Exception) -> str:
    """Extract the human-readable revert string from a web3 contract error."""
    message = getattr(error, "message", None) or str(error)
    for prefix in _REVERT_PREFIXES:
        if message.startswith(prefix):
            return message[len(prefix):].strip()
    if message == "execution reverted":
        return ""
    return message


# Builds calldata only; no request is ever sent through it
_OFFLINE_W3 = Web3()


def encode_call(kind: ContractKind, function: str, args: Sequence[Any]) -> str:
    """
    ABI-encode a contract call offline with web3's contract encoder.

    Args:
        kind: Contract family whose ABI declares ``function``.
        function: Function name.
        args: Positional arguments in ABI order.

    Returns:
        0x-prefixed calldata (4-byte selector followed by encoded arguments).

    Raises:
        ValueError: If the function is not in the ABI or the argument count differs.
    """
    abi = get_abi(kind)
    entries = [e for e in abi if e.get("type") == "function" and e["name"] == function]
    if not entries:
        raise ValueError(f"Function '{function}' not found in {ContractKind(kind).value} ABI")
    expected = len(entries[0]["inputs"])
    if expected != len(args):
        raise ValueError(f"{function} expects {expected} arguments, got {len(args)}")
    return _OFFLINE_W3.eth.contract(abi=abi).encode_abi(function, args=list(args))


class ChainClient(ABC):
    """
    Abstract chain capability used by every relay component.

    Attributes:
        platform_address: Checksum address of the account that pays for relayed transactions.
    """

    platform_address: str

    @abstractmethod
    async def read_bytecode(self, address: str) -> bytes:
        """Return the code deployed at ``address`` (empty when none)."""

    @abstractmethod
    async def call(self, kind: ContractKind, address: str, function: str, args: Sequence[Any] = ()) -> Any:
        """Run a read-only contract call and return its decoded result."""

    @abstractmethod
    async def estimate_fee(self) -> FeeData:
        """Return current network fee data."""

    @abstractmethod
    async def send_transaction(self, call: PlannedCall, policy: FeePolicy) -> str:
        """
        Sign and submit ``call`` from the platform account.

        Returns:
            The transaction hash.

        Raises:
            TransactionReverted: If the call fails simulation.
            SubmissionFailed: If the node rejects the transaction.
            RpcTimeout: If the node does not answer in time.
        """

    @abstractmethod
    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> Receipt:
        """
        Wait for ``tx_hash`` to be mined.

        Raises:
            RpcTimeout: If no receipt is available within ``timeout`` seconds.
        """

    @abstractmethod
    async def block_number(self) -> int:
        """Return the latest block number."""

    def encode_call(self, kind: ContractKind, function: str, args: Sequence[Any]) -> str:
        return encode_call(kind, function, args)


class Web3ChainClient(ChainClient):
    """
    :class:`ChainClient` backed by ``web3.AsyncWeb3``.

    Every RPC call runs under ``settings.rpc_timeout``; read-only calls are
    retried ``settings.rpc_retries`` times on timeout. Submissions from the
    platform account are serialised so each one gets the next pending
    account nonce. Receipt waits happen outside that lock.

    Example:
        settings = load_settings()
        chain = Web3ChainClient(settings)
        code = await chain.read_bytecode("0x...")
    """

    def __init__(self, settings: RelaySettings, w3: Optional[AsyncWeb3] = None):
        self.settings = settings
        self.account = Account.from_key(settings.require("platform_private_key"))
        self.platform_address = to_checksum_address(self.account.address)
        self._w3 = w3 or AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(
            get_rpc_url(settings),
            request_kwargs={"timeout": settings.rpc_timeout}
        ))
        self._send_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Timeouts and retries
    # ------------------------------------------------------------------

    async def _timed(self, awaitable: Awaitable[T], operation: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.settings.rpc_timeout)
        except asyncio.TimeoutError as e:
            raise RpcTimeout(f"{operation} timed out after {self.settings.rpc_timeout}s") from e

    async def _read(self, factory: Callable[[], Awaitable[T]], operation: str) -> T:
        attempts = self.settings.rpc_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return await self._timed(factory(), operation)
            except RpcTimeout:
                if attempt == attempts:
                    raise
                logger.warning(f"{operation} timed out (attempt {attempt}/{attempts}), retrying")
                await asyncio.sleep(0.5 * attempt)
        raise RpcTimeout(f"{operation} exhausted retries")

    def _contract(self, kind: ContractKind, address: str):
        return self._w3.eth.contract(address=to_checksum_address(address), abi=get_abi(kind))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def read_bytecode(self, address: str) -> bytes:
        code = await self._read(lambda: self._w3.eth.get_code(to_checksum_address(address)), "eth_getCode")
        return bytes(code)

    async def call(self, kind: ContractKind, address: str, function: str, args: Sequence[Any] = ()) -> Any:
        contract_fn = getattr(self._contract(kind, address).functions, function)(*args)
        try:
            return await self._read(lambda: contract_fn.call(), f"{function}()")
        except ContractLogicError as e:
            raise TransactionReverted(revert_reason(e), function=function) from e

    async def estimate_fee(self) -> FeeData:
        """
        Read fee data from the node.

        Uses the 25th-percentile priority fee from ``eth_feeHistory`` with a
        max fee of twice the base fee plus priority. Falls back to the legacy
        ``eth_gasPrice`` when the node does not support fee history.
        """
        try:
            history = await self._timed(self._w3.eth.fee_history(1, "latest", [25.0]), "eth_feeHistory")
            base_fee = history["baseFeePerGas"][-1]
            priority_fee = history["reward"][0][0]
            return FeeData(
                max_priority_fee_per_gas=int(priority_fee),
                max_fee_per_gas=int(base_fee * 2 + priority_fee),
            )
        except (ValueError, KeyError, IndexError) as e:
            logger.debug(f"eth_feeHistory unavailable ({e}), falling back to eth_gasPrice")
            gas_price = await self._timed(self._w3.eth.gas_price, "eth_gasPrice")
            return FeeData(gas_price=int(gas_price))

    async def block_number(self) -> int:
        return int(await self._read(lambda: self._w3.eth.block_number, "eth_blockNumber"))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def send_transaction(self, call: PlannedCall, policy: FeePolicy) -> str:
        contract_fn = getattr(self._contract(call.contract, call.target).functions, call.function)(*call.args)

        async with self._send_lock:
            try:
                await self._timed(
                    contract_fn.call({"from": self.platform_address, "value": call.value}),
                    f"simulate {call.function}",
                )
            except ContractLogicError as e:
                raise TransactionReverted(revert_reason(e), function=call.function) from e

            nonce = await self._timed(
                self._w3.eth.get_transaction_count(self.platform_address, "pending"),
                "eth_getTransactionCount",
            )
            try:
                tx = await self._timed(contract_fn.build_transaction({
                    "from": self.platform_address,
                    "nonce": nonce,
                    "chainId": self.settings.chain_id,
                    "value": call.value,
                    **policy.to_tx_params(),
                }), f"build {call.function}")
                signed = self.account.sign_transaction(tx)
                tx_hash = await self._timed(
                    self._w3.eth.send_raw_transaction(signed.raw_transaction),
                    "eth_sendRawTransaction",
                )
            except (RpcTimeout, TransactionReverted):
                raise
            except ContractLogicError as e:
                raise TransactionReverted(revert_reason(e), function=call.function) from e
            except Exception as e:
                logger.warning(f"Broadcast of {call.function} to {call.target} failed: {type(e).__name__}: {e}")
                raise SubmissionFailed(f"Node rejected {call.function} transaction") from e

        tx_hash_hex = AsyncWeb3.to_hex(tx_hash)
        logger.info(f"Submitted {call.function} to {call.target} tx={tx_hash_hex} nonce={nonce}")
        return tx_hash_hex

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> Receipt:
        deadline = time.monotonic() + timeout
        while True:
            try:
                receipt = await self._timed(self._w3.eth.get_transaction_receipt(tx_hash), "eth_getTransactionReceipt")
            except TransactionNotFound:
                receipt = None
            except RpcTimeout:
                receipt = None
                logger.warning(f"Receipt poll for {tx_hash} timed out, still waiting")
            if receipt:
                return Receipt(
                    tx_hash=tx_hash,
                    status=int(receipt["status"]),
                    block_number=int(receipt["blockNumber"]),
                    gas_used=int(receipt.get("gasUsed", 0)),
                )
            if time.monotonic() >= deadline:
                raise RpcTimeout(f"No receipt for {tx_hash} within {timeout}s", tx_hash=tx_hash)
            await asyncio.sleep(self.settings.receipt_poll_interval)

