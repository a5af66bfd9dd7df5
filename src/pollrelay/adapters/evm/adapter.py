"""
EVM Relay Hub

Single entry point that wires the relay components together and exposes the
operations callers use:

    get_wallet_address / deploy_if_needed      smart-wallet lifecycle
    get_nonce / resync_nonce                   replay-protection counter
    submit_vote / submit_claim                 verify, deploy, relay
    plan_poll_funding / execute_funding_plan   reward pool settlement

Verification always runs before any chain write, and the signer's smart
wallet is deployed before their action is relayed. Chain outcomes come back
as :class:`RelayResult`; request and configuration problems raise
:class:`RelayError` subclasses.

Dependencies:
    - web3.py / eth_account (through :class:`Web3ChainClient`)
"""

from decimal import Decimal
from typing import Any, Dict, Optional, Union

from eth_utils import to_checksum_address

from ...engine.exceptions import ContractError, NetworkError
from ...schemas.bases import ActionType, ContractKind, RelayStatus
from ...utils import logger
from .chain import ChainClient, Web3ChainClient
from .constants import RelaySettings, amount_to_value, load_settings
from .fees import FeePolicyEngine
from .nonces import NonceKey, NonceRegistry
from .relayer import RelayDispatcher
from .schemas import (
    DeploymentResult,
    EVMECDSASignature,
    FundingOutcome,
    FundingPlan,
    MetaTransactionRequest,
    PlannedCall,
    PollDraft,
    RelayResult,
    VerifiedRequest,
)
from .settlement import RewardLedger, SettlementOrchestrator
from .verifies import MetaTransactionVerifier
from .wallets import AddressDeriver, DeploymentManager

Amount = Union[str, int, Decimal]


class RelayHub:
    """
    Facade over the relay components.

    Args:
        settings: Relay settings; loaded from the environment when omitted.
        chain: Chain capability; a :class:`Web3ChainClient` is built from
            ``settings`` when omitted.

    Example:
        hub = RelayHub()
        nonce = await hub.get_nonce(poll, voter)
        result = await hub.submit_vote(poll, option_index=1, signer=voter, signature=sig, nonce=nonce)
        if result.is_success():
            print(result.tx_hash)
    """

    def __init__(self, settings: Optional[RelaySettings] = None, chain: Optional[ChainClient] = None):
        self.settings = settings or load_settings()
        self.chain = chain or Web3ChainClient(self.settings)
        self.fees = FeePolicyEngine(self.chain, self.settings)
        self.deriver = AddressDeriver(self.chain, self.settings)
        self.dispatcher = RelayDispatcher(self.chain, self.settings, self.fees)
        self.deployments = DeploymentManager(
            self.chain, self.settings, self.deriver, self.fees, dispatcher=self.dispatcher
        )
        self.nonces = NonceRegistry(
            seeder=self._read_chain_nonce,
            wait_timeout=self.settings.nonce_wait_timeout,
            dispatch_timeout=self.settings.dispatch_turn_timeout,
        )
        self.verifier = MetaTransactionVerifier(self.settings, self.nonces)
        self.settlement = SettlementOrchestrator(
            self.chain, self.settings, self.deriver, self.deployments, self.dispatcher, self.fees
        )
        self.rewards = RewardLedger()

    async def _read_chain_nonce(self, verifying_contract: str, signer: str) -> int:
        return int(await self.chain.call(
            ContractKind.POLL,
            to_checksum_address(verifying_contract),
            "getNonce",
            [to_checksum_address(signer)],
        ))

    # ------------------------------------------------------------------
    # Wallets and nonces
    # ------------------------------------------------------------------

    async def get_wallet_address(self, owner: str) -> str:
        return await self.deriver.get_wallet_address(owner)

    async def deploy_if_needed(self, owner: str) -> DeploymentResult:
        return await self.deployments.deploy_if_needed(owner)

    async def get_nonce(self, verifying_contract: str, signer: str) -> int:
        """Next nonce the relay will accept for ``signer`` on ``verifying_contract``."""
        return await self.nonces.peek(NonceKey.of(verifying_contract, signer))

    def typed_data_domain(self, verifying_contract: str) -> Dict[str, Any]:
        return self.settings.domain(to_checksum_address(verifying_contract))

    # ------------------------------------------------------------------
    # Verify and relay
    # ------------------------------------------------------------------

    def build_request(
        self,
        action_type: str,
        poll: str,
        signer: str,
        signature: str,
        nonce: int,
        payload: Optional[Dict[str, Any]] = None,
    ) -> MetaTransactionRequest:
        return MetaTransactionRequest(
            signer=signer,
            action_type=action_type,
            payload=payload or {},
            nonce=nonce,
            signature=signature,
            domain=self.typed_data_domain(poll),
        )

    async def verify(self, request: MetaTransactionRequest) -> VerifiedRequest:
        return await self.verifier.verify(request)

    def _meta_call(self, verified: VerifiedRequest) -> PlannedCall:
        request = verified.request
        sig = EVMECDSASignature.from_hex(request.signature)
        poll = to_checksum_address(request.verifying_contract)
        signer = to_checksum_address(request.signer)
        if ActionType(request.action_type) == ActionType.VOTE:
            return PlannedCall(
                contract=ContractKind.POLL,
                target=poll,
                function="metaVote",
                args=[signer, int(request.payload["option"]), sig.v, sig.r_bytes(), sig.s_bytes()],
            )
        return PlannedCall(
            contract=ContractKind.POLL,
            target=poll,
            function="metaClaimReward",
            args=[signer, sig.v, sig.r_bytes(), sig.s_bytes()],
        )

    async def relay_verified(self, verified: VerifiedRequest) -> RelayResult:
        """
        Deploy the signer's wallet if needed and relay a verified request.

        Requests from one signer enter the chain in nonce order. The nonce
        stays consumed whatever the outcome, so resubmitting the same signed
        request after a revert or a failed submission raises NonceMismatch.
        """
        request = verified.request
        key = NonceKey.of(request.verifying_contract, request.signer)
        is_claim = ActionType(request.action_type) == ActionType.CLAIM_REWARD
        async with self.nonces.dispatch_turn(key, request.nonce):
            if self.settings.deploy_before_relay:
                await self.deployments.deploy_if_needed(request.signer)
            if is_claim:
                await self._open_reward_entry(request.verifying_contract, request.signer)
            policy = await self.fees.refresh()
            result = await self.dispatcher.relay(self._meta_call(verified), policy)
        if result.status in (RelayStatus.REVERTED, RelayStatus.SUBMISSION_FAILED):
            logger.info(
                f"Nonce {request.nonce} of {request.signer} on {request.verifying_contract} "
                f"consumed without landing ({result.status.value})"
            )
        if is_claim:
            self.rewards.apply_result(request.verifying_contract, request.signer, result)
        return result

    async def resync_nonce(self, verifying_contract: str, signer: str) -> int:
        """
        Operator action: reset the local counter to the contract's ``getNonce``.

        Needed after a consumed nonce failed to land, since the contract still
        expects it. Re-opens the nonces between the two values for reuse.
        """
        return await self.nonces.resync(NonceKey.of(verifying_contract, signer))

    async def _open_reward_entry(self, poll: str, voter: str) -> None:
        try:
            amount = int(await self.chain.call(ContractKind.POLL, to_checksum_address(poll), "rewardPerVoter"))
        except (NetworkError, ContractError) as e:
            logger.warning(f"Could not read rewardPerVoter for {poll}: {e.reason}; ledger amount left at 0")
            amount = 0
        self.rewards.open(poll, voter, amount)

    async def submit_vote(
        self,
        poll: str,
        option_index: int,
        signer: str,
        signature: str,
        nonce: Optional[int] = None,
        already_voted_hint: Optional[bool] = None,
    ) -> RelayResult:
        """
        Verify and relay a gasless vote.

        Args:
            poll: Poll contract address (EIP-712 verifying contract).
            option_index: Zero-based option.
            signer: Voter address.
            signature: 65-byte hex signature over ``Vote{voter, option, nonce}``.
            nonce: Signed nonce; defaults to the next expected value.
            already_voted_hint: Advisory flag from a persistence layer. Logged
                only; the contract decides whether the vote is a duplicate.

        Returns:
            RelayResult for the relayed ``metaVote``.

        Raises:
            SignatureError: Invalid signature, nonce mismatch or unknown action.
            ConfigurationError: Missing settings.
            StateError: Wallet deployment could not be verified.
        """
        if already_voted_hint:
            logger.info(f"Advisory: {signer} may have voted on {poll} already; relaying, chain decides")
        if nonce is None:
            nonce = await self.get_nonce(poll, signer)
        request = self.build_request(
            ActionType.VOTE.value, poll, signer, signature, nonce, {"option": option_index}
        )
        verified = await self.verify(request)
        return await self.relay_verified(verified)

    async def submit_claim(
        self,
        poll: str,
        signer: str,
        signature: str,
        nonce: Optional[int] = None,
    ) -> RelayResult:
        """
        Verify and relay a gasless reward claim. The reward ledger entry is
        opened before the relay and settled when the claim confirms.

        Raises:
            SignatureError: Invalid signature, nonce mismatch or unknown action.
        """
        if nonce is None:
            nonce = await self.get_nonce(poll, signer)
        request = self.build_request(ActionType.CLAIM_REWARD.value, poll, signer, signature, nonce)
        verified = await self.verify(request)
        return await self.relay_verified(verified)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def plan_poll_funding(
        self,
        owner: str,
        poll_factory: Optional[str],
        reward_per_voter: Amount,
        vote_limit: int,
        fund_amount: Optional[Amount] = None,
        draft: Optional[PollDraft] = None,
    ) -> FundingPlan:
        """
        Plan the approval and funding steps for a reward-bearing poll.

        Amounts are human-readable token quantities (decimal strings such as
        ``"2.00"``); they are scaled to base units here.

        Raises:
            ValueError: Invalid amounts.
            ConfigurationError: Token or poll factory address not configured.
            InsufficientBalance: Wallet cannot cover reward plus platform fee.
        """
        decimals = self.settings.token_decimals
        factory = poll_factory or self.settings.require("poll_factory_address")
        return await self.settlement.plan_poll_funding(
            owner=owner,
            poll_factory=factory,
            reward_per_voter=amount_to_value(amount=reward_per_voter, decimals=decimals),
            vote_limit=int(vote_limit),
            fund_amount=None if fund_amount is None else amount_to_value(amount=fund_amount, decimals=decimals),
            draft=draft,
        )

    async def execute_funding_plan(
        self,
        plan: FundingPlan,
        approval_signature: str,
        funding_signature: str,
    ) -> FundingOutcome:
        return await self.settlement.execute_plan(plan, approval_signature, funding_signature)

    async def close(self) -> None:
        """Wait for background receipt trackers to finish."""
        await self.dispatcher.drain()
