"""
Smart Wallet Address Derivation and Deployment

Each user owns one counterfactual contract wallet whose address is fixed by
the factory before any code exists there:

    salt    = keccak256(abi.encode(owner))
    address = SmartWalletFactory.getWalletAddress(owner, salt)

:class:`DeploymentManager` deploys the wallet the first time it is needed.
Deployment status is always read from the chain; only the derived address
is memoised, since it can never change.
"""

import asyncio
import weakref
from typing import Dict, Optional

from eth_abi import encode as abi_encode
from eth_utils import keccak, to_checksum_address

from ...engine.exceptions import (
    DeploymentPending,
    DeploymentVerificationFailed,
    RpcTimeout,
    TransactionReverted,
)
from ...schemas.bases import ContractKind
from ...utils import logger
from .chain import ChainClient
from .constants import RelaySettings
from .fees import FeePolicyEngine
from .relayer import RelayDispatcher
from .schemas import DeploymentResult, PlannedCall, Receipt, SmartWallet


def compute_salt(owner: str) -> bytes:
    """``keccak256(abi.encode(address owner))``"""
    return keccak(abi_encode(["address"], [to_checksum_address(owner)]))


def is_deployed(code: Optional[bytes]) -> bool:
    return bool(code) and bytes(code) not in (b"", b"\x00")


class AddressDeriver:
    """
    Resolves owner addresses to smart-wallet addresses.

    Results are memoised per owner. Read timeouts are retried a bounded
    number of times before :class:`RpcTimeout` propagates.
    """

    def __init__(self, chain: ChainClient, settings: RelaySettings):
        self._chain = chain
        self._settings = settings
        self._cache: Dict[str, SmartWallet] = {}

    async def derive(self, owner: str) -> SmartWallet:
        """
        Derive the smart wallet for ``owner``.

        Raises:
            ConfigurationError: If the wallet factory address is unset.
            ValueError: If ``owner`` is not a valid address.
            RpcTimeout: If the factory read keeps timing out.
        """
        factory = self._settings.require("wallet_factory_address")
        owner = to_checksum_address(owner)
        cached = self._cache.get(owner.lower())
        if cached is not None:
            return cached

        salt = compute_salt(owner)
        attempts = self._settings.rpc_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                address = await self._chain.call(
                    ContractKind.WALLET_FACTORY, factory, "getWalletAddress", [owner, salt]
                )
                break
            except RpcTimeout:
                if attempt == attempts:
                    raise
                logger.warning(f"getWalletAddress for {owner} timed out (attempt {attempt}/{attempts})")

        wallet = SmartWallet(
            owner_address=owner,
            wallet_address=to_checksum_address(address),
            salt="0x" + salt.hex(),
        )
        # first writer wins so the address never changes once handed out
        return self._cache.setdefault(owner.lower(), wallet)

    async def get_wallet_address(self, owner: str) -> str:
        return (await self.derive(owner)).wallet_address


class DeploymentManager:
    """
    Lazily and idempotently deploys smart wallets.

    Attempts for the same owner are serialised by a per-owner lock, so two
    racing callers never both submit ``createWallet``. Owners never contend
    with each other.

    Steps for :meth:`deploy_if_needed`:
        1. Derive the wallet address.
        2. Probe bytecode; return at once if code exists.
        3. If an earlier ``createWallet`` for this owner is still unmined,
           wait on that transaction instead of submitting another.
        4. Otherwise refresh the fee policy and submit ``createWallet(owner, salt)``.
        5. Await the receipt. A timeout raises ``DeploymentPending`` and the
           transaction stays on record for the next caller; a failed receipt
           raises ``TransactionReverted``.
        6. Re-probe bytecode with bounded retries, else ``DeploymentVerificationFailed``.
        7. Settle: wait for ``deploy_confirmations`` blocks past the receipt,
           or the fixed ``deploy_settle_delay`` when confirmations are disabled.

    Args:
        dispatcher: When given, a deployment that goes pending is also
            tracked in the background and its outcome recorded in
            ``dispatcher.audit``.
    """

    def __init__(
        self,
        chain: ChainClient,
        settings: RelaySettings,
        deriver: AddressDeriver,
        fees: FeePolicyEngine,
        dispatcher: Optional[RelayDispatcher] = None,
    ):
        self._chain = chain
        self._settings = settings
        self._deriver = deriver
        self._fees = fees
        self._dispatcher = dispatcher
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        # owner (lower-case) -> createWallet tx submitted but not yet resolved
        self._in_flight: Dict[str, str] = {}

    def _lock_for(self, owner: str) -> asyncio.Lock:
        key = owner.lower()
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def in_flight(self, owner: str) -> Optional[str]:
        """Hash of the unresolved ``createWallet`` for ``owner``, if any."""
        return self._in_flight.get(owner.lower())

    async def is_deployed(self, wallet_address: str) -> bool:
        return is_deployed(await self._chain.read_bytecode(wallet_address))

    async def status(self, owner: str) -> SmartWallet:
        """Derived wallet with its current on-chain deployment status."""
        wallet = await self._deriver.derive(owner)
        return wallet.model_copy(update={"deployed": await self.is_deployed(wallet.wallet_address)})

    async def deploy_if_needed(self, owner: str) -> DeploymentResult:
        """
        Ensure the smart wallet for ``owner`` has code on-chain.

        Returns:
            DeploymentResult with ``deployed=True``. ``already_deployed`` is set
            when this call sent no transaction.

        Raises:
            ConfigurationError: Factory address unset.
            RpcTimeout: RPC did not answer in time.
            DeploymentPending: ``createWallet`` is submitted but not yet mined.
            TransactionReverted: ``createWallet`` reverted.
            DeploymentVerificationFailed: Receipt succeeded but no code appeared.
        """
        wallet = await self._deriver.derive(owner)
        owner_key = wallet.owner_address.lower()

        async with self._lock_for(wallet.owner_address):
            if await self.is_deployed(wallet.wallet_address):
                earlier = self._in_flight.pop(owner_key, None)
                return DeploymentResult(
                    owner_address=wallet.owner_address,
                    wallet_address=wallet.wallet_address,
                    deployed=True,
                    already_deployed=True,
                    tx_hash=earlier,
                )

            tx_hash = self._in_flight.get(owner_key)
            submitted_here = tx_hash is None
            if submitted_here:
                tx_hash = await self._submit(wallet)
                self._in_flight[owner_key] = tx_hash
            else:
                logger.info(f"Waiting on earlier createWallet tx {tx_hash} for {wallet.owner_address}")

            receipt = await self._await_receipt(wallet, tx_hash, track=submitted_here)
            del self._in_flight[owner_key]
            if not receipt.succeeded:
                raise TransactionReverted("Wallet deployment reverted on-chain", tx_hash=tx_hash)

            await self._verify_code(wallet.wallet_address, tx_hash)
            await self._settle(receipt)

        logger.info(f"Smart wallet {wallet.wallet_address} deployed in block {receipt.block_number}")
        return DeploymentResult(
            owner_address=wallet.owner_address,
            wallet_address=wallet.wallet_address,
            deployed=True,
            already_deployed=not submitted_here,
            tx_hash=tx_hash,
            block_number=receipt.block_number,
        )

    def _create_call(self, wallet: SmartWallet) -> PlannedCall:
        return PlannedCall(
            contract=ContractKind.WALLET_FACTORY,
            target=self._settings.require("wallet_factory_address"),
            function="createWallet",
            args=[wallet.owner_address, bytes.fromhex(wallet.salt[2:])],
        )

    async def _submit(self, wallet: SmartWallet) -> str:
        call = self._create_call(wallet)
        policy = await self._fees.refresh()
        logger.info(
            f"Deploying smart wallet {wallet.wallet_address} for {wallet.owner_address} "
            f"(fee policy v{policy.version})"
        )
        return await self._chain.send_transaction(call, policy)

    async def _await_receipt(self, wallet: SmartWallet, tx_hash: str, track: bool) -> Receipt:
        try:
            return await self._chain.wait_for_receipt(tx_hash, self._settings.receipt_timeout)
        except RpcTimeout as e:
            logger.warning(
                f"createWallet tx {tx_hash} for {wallet.owner_address} not mined within "
                f"{self._settings.receipt_timeout}s; later attempts will wait on it"
            )
            if track and self._dispatcher is not None:
                self._dispatcher.track_pending(tx_hash, self._create_call(wallet), 1, self._fees.current.version)
            raise DeploymentPending(
                f"Wallet deployment for {wallet.owner_address} is still pending", tx_hash=tx_hash
            ) from e

    async def _verify_code(self, wallet_address: str, tx_hash: str) -> None:
        retries = self._settings.deploy_verify_retries
        for attempt in range(retries + 1):
            if await self.is_deployed(wallet_address):
                return
            if attempt < retries:
                await asyncio.sleep(self._settings.deploy_verify_interval)
        raise DeploymentVerificationFailed(
            f"No code at {wallet_address} after successful deployment",
            tx_hash=tx_hash,
        )

    async def _settle(self, receipt: Receipt) -> None:
        confirmations = self._settings.deploy_confirmations
        if confirmations <= 0:
            await asyncio.sleep(self._settings.deploy_settle_delay)
            return

        target = receipt.block_number + confirmations
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.deploy_settle_timeout
        while await self._chain.block_number() < target:
            if loop.time() >= deadline:
                logger.warning(
                    f"Deployment tx {receipt.tx_hash} not {confirmations} blocks deep "
                    f"after {self._settings.deploy_settle_timeout}s; continuing"
                )
                return
            await asyncio.sleep(self._settings.receipt_poll_interval)
