"""
Settlement Orchestrator

Plans and executes the token movements that fund a reward-bearing poll, and
keeps the reward ledger for claims.

Funding a poll takes two smart-wallet calls that must land in order:

    (a) token.approve(pollFactory, totalRequired)
    (b) pollFactory.createAndFundPoll(title, options, duration, rewardPerVoter, fundAmount)

Amounts (token base units, 6 decimals for USDT):

    totalReward   = rewardPerVoter * voteLimit
    fundAmount    = fundAmount or totalReward      (never below totalReward)
    platformFee   = fundAmount * feePercent / 100  (rounded down, as on-chain)
    totalRequired = fundAmount + platformFee

The wallet balance is read before any plan is produced; a shortfall is
rejected locally with zero transactions submitted.
"""

from decimal import ROUND_DOWN, Decimal
from typing import Dict, List, Optional, Tuple

from eth_utils import to_bytes, to_checksum_address

from ...engine.exceptions import InsufficientAllowance, InsufficientBalance
from ...schemas.bases import ContractKind
from ...utils import logger
from .chain import ChainClient
from .constants import RelaySettings, value_to_amount
from .fees import FeePolicyEngine
from .relayer import RelayDispatcher
from .schemas import (
    FundingOutcome,
    FundingPlan,
    PlannedCall,
    PollDraft,
    RelayResult,
    RewardLedgerEntry,
)
from .verifies import verify_wallet_call_signature
from .wallets import AddressDeriver, DeploymentManager


def compute_funding_amounts(
    reward_per_voter: int,
    vote_limit: int,
    fee_percent: Decimal,
    fund_amount: Optional[int] = None,
) -> Tuple[int, int, int, int]:
    """
    Compute poll funding totals in token base units.

    Returns:
        ``(total_reward, fund_amount, platform_fee, total_required)``

    Raises:
        ValueError: On non-positive inputs or a fund amount below the total reward.
    """
    if reward_per_voter <= 0:
        raise ValueError("reward_per_voter must be positive")
    if vote_limit <= 0:
        raise ValueError("vote_limit must be positive")

    total_reward = reward_per_voter * vote_limit
    fund = total_reward if fund_amount is None else int(fund_amount)
    if fund < total_reward:
        raise ValueError(
            f"fund_amount {fund} is below the total reward {total_reward} "
            f"({reward_per_voter} x {vote_limit} voters)"
        )
    platform_fee = int((Decimal(fund) * Decimal(fee_percent) / Decimal(100)).to_integral_value(rounding=ROUND_DOWN))
    return total_reward, fund, platform_fee, fund + platform_fee


def wrap_wallet_call(wallet_address: str, call: PlannedCall, signature: str) -> PlannedCall:
    """Route ``call`` through the smart wallet's ``execute`` entry point."""
    if not call.call_data:
        raise ValueError(f"{call.function} step has no calldata to execute")
    return PlannedCall(
        contract=ContractKind.SMART_WALLET,
        target=wallet_address,
        function="execute",
        args=[
            to_checksum_address(call.target),
            call.value,
            to_bytes(hexstr=call.call_data),
            to_bytes(hexstr=signature),
        ],
    )


class SettlementOrchestrator:
    """
    Builds and runs poll funding plans.

    Example:
        plan = await orchestrator.plan_poll_funding(
            owner="0xOwner", poll_factory="0xFactory",
            reward_per_voter=2_000_000, vote_limit=100,
        )
        outcome = await orchestrator.execute_plan(plan, approval_sig, funding_sig)
    """

    def __init__(
        self,
        chain: ChainClient,
        settings: RelaySettings,
        deriver: AddressDeriver,
        deployments: DeploymentManager,
        dispatcher: RelayDispatcher,
        fees: FeePolicyEngine,
    ):
        self._chain = chain
        self._settings = settings
        self._deriver = deriver
        self._deployments = deployments
        self._dispatcher = dispatcher
        self._fees = fees

    async def token_balance(self, holder: str) -> int:
        token = self._settings.require("token_address")
        return int(await self._chain.call(ContractKind.ERC20, token, "balanceOf", [to_checksum_address(holder)]))

    async def token_allowance(self, holder: str, spender: str) -> int:
        token = self._settings.require("token_address")
        return int(await self._chain.call(
            ContractKind.ERC20, token, "allowance",
            [to_checksum_address(holder), to_checksum_address(spender)],
        ))

    def _check_balance(self, balance: int, required: int, wallet_address: str) -> None:
        if balance < required:
            decimals = self._settings.token_decimals
            raise InsufficientBalance(
                f"Wallet {wallet_address} holds {value_to_amount(value=balance, decimals=decimals)} "
                f"but {value_to_amount(value=required, decimals=decimals)} is required",
                required=required,
                available=balance,
            )

    async def plan_poll_funding(
        self,
        owner: str,
        poll_factory: str,
        reward_per_voter: int,
        vote_limit: int,
        fund_amount: Optional[int] = None,
        draft: Optional[PollDraft] = None,
    ) -> FundingPlan:
        """
        Produce the ordered approval and funding steps for a poll.

        Args:
            owner: Poll creator's EOA; funds come from their smart wallet.
            poll_factory: PollFactory address that pulls the funds.
            reward_per_voter: Reward per vote in token base units.
            vote_limit: Maximum number of rewarded voters.
            fund_amount: Amount to deposit; defaults to the total reward.
            draft: Poll title, options and duration. Without it the funding
                step carries no calldata and the plan can only be inspected.

        Returns:
            FundingPlan with amounts and both steps.

        Raises:
            ValueError: On invalid amounts.
            InsufficientBalance: When the wallet cannot cover ``total_required``.
        """
        token = to_checksum_address(self._settings.require("token_address"))
        factory = to_checksum_address(poll_factory)
        total_reward, fund, platform_fee, total_required = compute_funding_amounts(
            reward_per_voter, vote_limit, self._settings.platform_fee_percent, fund_amount
        )

        wallet_address = await self._deriver.get_wallet_address(owner)
        balance = await self.token_balance(wallet_address)
        self._check_balance(balance, total_required, wallet_address)

        approval_args = [factory, total_required]
        approval_step = PlannedCall(
            contract=ContractKind.ERC20,
            target=token,
            function="approve",
            args=approval_args,
            call_data=self._chain.encode_call(ContractKind.ERC20, "approve", approval_args),
        )

        if draft is not None:
            funding_args = [draft.title, list(draft.options), draft.duration, reward_per_voter, fund]
            funding_data = self._chain.encode_call(ContractKind.POLL_FACTORY, "createAndFundPoll", funding_args)
        else:
            funding_args, funding_data = [], None
        funding_step = PlannedCall(
            contract=ContractKind.POLL_FACTORY,
            target=factory,
            function="createAndFundPoll",
            args=funding_args,
            call_data=funding_data,
        )

        logger.info(
            f"Funding plan for {wallet_address}: reward={total_reward} fee={platform_fee} "
            f"required={total_required} balance={balance}"
        )
        return FundingPlan(
            owner_address=to_checksum_address(owner),
            wallet_address=wallet_address,
            token_address=token,
            poll_factory_address=factory,
            reward_per_voter=reward_per_voter,
            vote_limit=vote_limit,
            total_reward=total_reward,
            fund_amount=fund,
            platform_fee=platform_fee,
            total_required=total_required,
            wallet_balance=balance,
            approval_step=approval_step,
            funding_step=funding_step,
        )

    async def execute_plan(
        self,
        plan: FundingPlan,
        approval_signature: str,
        funding_signature: str,
    ) -> FundingOutcome:
        """
        Run a funding plan through the owner's smart wallet.

        Order: verify both owner signatures, deploy the wallet if needed,
        re-check the balance, relay the approval, confirm the allowance, then
        relay the funding call. Stops after the approval if it does not
        confirm.

        Raises:
            ValueError: If the plan has no funding calldata.
            InvalidSignature: If either signature is not the owner's.
            InsufficientBalance: If the balance dropped since planning.
            InsufficientAllowance: If the confirmed approval is not visible.
        """
        if not plan.funding_step.call_data:
            raise ValueError("Funding plan was built without a poll draft")

        for step, signature in ((plan.approval_step, approval_signature), (plan.funding_step, funding_signature)):
            verify_wallet_call_signature(
                owner=plan.owner_address,
                target=step.target,
                call_data=step.call_data,
                signature=signature,
                value=step.value,
            )

        deployment = await self._deployments.deploy_if_needed(plan.owner_address)

        balance = await self.token_balance(plan.wallet_address)
        self._check_balance(balance, plan.total_required, plan.wallet_address)

        approval = await self._dispatcher.relay(
            wrap_wallet_call(plan.wallet_address, plan.approval_step, approval_signature),
            await self._fees.refresh(),
        )
        if not approval.is_success():
            logger.warning(f"Approval for {plan.wallet_address} ended {approval.status.value}; funding skipped")
            return FundingOutcome(plan=plan, deployment=deployment, approval=approval)

        allowance = await self.token_allowance(plan.wallet_address, plan.poll_factory_address)
        if allowance < plan.total_required:
            raise InsufficientAllowance(
                f"Allowance {allowance} below required {plan.total_required}",
                required=plan.total_required,
                allowance=allowance,
            )

        funding = await self._dispatcher.relay(
            wrap_wallet_call(plan.wallet_address, plan.funding_step, funding_signature),
            await self._fees.refresh(),
        )
        return FundingOutcome(plan=plan, deployment=deployment, approval=approval, funding=funding)


class RewardLedger:
    """
    Tracks rewards per (poll, voter).

    An entry is opened when a claim is relayed and marked settled only when
    the claim transaction confirms.
    """

    def __init__(self) -> None:
        self._entries: Dict[Tuple[str, str], RewardLedgerEntry] = {}

    def open(self, poll_address: str, voter: str, amount: int, fee_amount: int = 0) -> RewardLedgerEntry:
        key = (poll_address.lower(), voter.lower())
        entry = self._entries.get(key)
        if entry is None or not entry.settled:
            entry = RewardLedgerEntry(
                poll_address=poll_address, voter=voter, amount=amount, fee_amount=fee_amount
            )
            self._entries[key] = entry
        return entry

    def apply_result(self, poll_address: str, voter: str, result: RelayResult) -> Optional[RewardLedgerEntry]:
        key = (poll_address.lower(), voter.lower())
        entry = self._entries.get(key)
        if entry is None or not result.is_success():
            return entry
        entry = entry.model_copy(update={"settled": True, "tx_hash": result.tx_hash})
        self._entries[key] = entry
        return entry

    def get(self, poll_address: str, voter: str) -> Optional[RewardLedgerEntry]:
        return self._entries.get((poll_address.lower(), voter.lower()))

    def for_poll(self, poll_address: str) -> List[RewardLedgerEntry]:
        key = poll_address.lower()
        return [e for (poll, _), e in self._entries.items() if poll == key]
