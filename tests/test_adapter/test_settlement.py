"""
Settlement Tests

Poll funding arithmetic, plan construction, balance pre-checks and plan
execution through the owner's smart wallet, plus the reward ledger.
"""

from decimal import Decimal

import pytest

from test_mocks import (
    MOCK_CREATOR_ADDRESS,
    MOCK_CREATOR_PRIVATE_KEY,
    MOCK_POLL_ADDRESS,
    MOCK_POLL_FACTORY,
    MOCK_TOKEN_ADDRESS,
    MOCK_VOTER_ADDRESS,
    MOCK_VOTER_PRIVATE_KEY,
    FakeChainClient,
    make_hub,
)

from pollrelay.adapters.evm.constants import amount_to_value, value_to_amount
from pollrelay.adapters.evm.schemas import PollDraft, RelayResult
from pollrelay.adapters.evm.settlement import RewardLedger, compute_funding_amounts
from pollrelay.adapters.evm.signatures import sign_wallet_call
from pollrelay.engine.exceptions import ConfigurationError, InsufficientBalance, InvalidSignature
from pollrelay.schemas.bases import RelayStatus

APPROVE_SELECTOR = "0x095ea7b3"
DRAFT = PollDraft(title="Best chain?", options=["Polygon", "Ethereum"], duration=86400)


async def funded_hub(balance: int, **overrides):
    chain = FakeChainClient()
    hub = make_hub(chain, **overrides)
    wallet = await hub.get_wallet_address(MOCK_CREATOR_ADDRESS)
    chain.balances[wallet.lower()] = balance
    return hub, chain, wallet


def sign_plan(plan, private_key: str = MOCK_CREATOR_PRIVATE_KEY):
    return [
        sign_wallet_call(private_key=private_key, target=step.target, call_data=step.call_data, value=step.value)
        for step in plan.steps
    ]


# ========================================================================
# Amounts
# ========================================================================

class TestFundingAmounts:

    def test_default_fund_is_total_reward(self):
        assert compute_funding_amounts(2_000_000, 100, Decimal("6")) == (
            200_000_000, 200_000_000, 12_000_000, 212_000_000
        )

    def test_larger_fund_amount_drives_fee(self):
        total_reward, fund, fee, required = compute_funding_amounts(2_000_000, 100, Decimal("6"), 250_000_000)
        assert (total_reward, fund, fee, required) == (200_000_000, 250_000_000, 15_000_000, 265_000_000)

    def test_fee_rounds_down(self):
        _, _, fee, required = compute_funding_amounts(1, 33, Decimal("6"))
        assert fee == 1
        assert required == 34

    def test_fund_below_total_reward(self):
        with pytest.raises(ValueError):
            compute_funding_amounts(2_000_000, 100, Decimal("6"), 199_999_999)

    @pytest.mark.parametrize("reward, limit", [(0, 10), (10, 0), (-1, 10)])
    def test_non_positive_inputs(self, reward, limit):
        with pytest.raises(ValueError):
            compute_funding_amounts(reward, limit, Decimal("6"))

    def test_amount_conversion(self):
        assert amount_to_value(amount="2.00", decimals=6) == 2_000_000
        assert value_to_amount(value=212_000_000, decimals=6) == "212.000000"
        with pytest.raises(ValueError):
            amount_to_value(amount="0.0000001", decimals=6)


# ========================================================================
# Planning
# ========================================================================

class TestPlanPollFunding:

    @pytest.mark.asyncio
    async def test_plan_with_exact_balance(self):
        hub, chain, wallet = await funded_hub(212_000_000)

        plan = await hub.plan_poll_funding(MOCK_CREATOR_ADDRESS, None, "2.00", 100)

        assert plan.wallet_address == wallet
        assert plan.total_reward == 200_000_000
        assert plan.platform_fee == 12_000_000
        assert plan.total_required == 212_000_000
        assert plan.approval_step.target == MOCK_TOKEN_ADDRESS
        assert plan.approval_step.args == [MOCK_POLL_FACTORY, 212_000_000]
        assert plan.approval_step.call_data.startswith(APPROVE_SELECTOR)
        assert plan.funding_step.target == MOCK_POLL_FACTORY
        assert plan.funding_step.call_data is None
        assert chain.sent == []

    @pytest.mark.asyncio
    async def test_plan_with_draft_encodes_funding_call(self):
        hub, _, _ = await funded_hub(300_000_000)

        plan = await hub.plan_poll_funding(MOCK_CREATOR_ADDRESS, MOCK_POLL_FACTORY, "2.00", 100, draft=DRAFT)

        assert plan.funding_step.function == "createAndFundPoll"
        assert plan.funding_step.args == [DRAFT.title, DRAFT.options, DRAFT.duration, 2_000_000, 200_000_000]
        assert plan.funding_step.call_data.startswith("0x")

    @pytest.mark.asyncio
    async def test_insufficient_balance_sends_nothing(self):
        hub, chain, _ = await funded_hub(100_000_000)

        with pytest.raises(InsufficientBalance) as exc_info:
            await hub.plan_poll_funding(MOCK_CREATOR_ADDRESS, None, "2.00", 100)

        assert exc_info.value.required == 212_000_000
        assert exc_info.value.available == 100_000_000
        assert exc_info.value.shortfall == 112_000_000
        assert "212.000000" in exc_info.value.reason
        assert chain.sent == []

    @pytest.mark.asyncio
    async def test_invalid_amount(self):
        hub, _, _ = await funded_hub(300_000_000)
        with pytest.raises(ValueError):
            await hub.plan_poll_funding(MOCK_CREATOR_ADDRESS, None, "abc", 100)

    @pytest.mark.asyncio
    async def test_missing_token_address(self):
        hub = make_hub(FakeChainClient(), token_address=None)
        with pytest.raises(ConfigurationError):
            await hub.plan_poll_funding(MOCK_CREATOR_ADDRESS, None, "2.00", 100)


# ========================================================================
# Execution
# ========================================================================

class TestExecuteFundingPlan:

    @pytest.mark.asyncio
    async def test_approval_then_funding(self):
        hub, chain, wallet = await funded_hub(212_000_000)
        plan = await hub.plan_poll_funding(MOCK_CREATOR_ADDRESS, None, "2.00", 100, draft=DRAFT)
        approval_sig, funding_sig = sign_plan(plan)

        outcome = await hub.execute_funding_plan(plan, approval_sig, funding_sig)

        assert outcome.is_success()
        assert outcome.approval.status == RelayStatus.CONFIRMED
        assert outcome.funding.status == RelayStatus.CONFIRMED
        assert chain.sent_functions == ["createWallet", "execute", "execute"]
        approve_call, fund_call = chain.sent[1], chain.sent[2]
        assert approve_call.target == wallet
        assert approve_call.args[0] == MOCK_TOKEN_ADDRESS
        assert fund_call.args[0] == MOCK_POLL_FACTORY
        assert chain.allowances[(wallet.lower(), MOCK_POLL_FACTORY.lower())] == 212_000_000

    @pytest.mark.asyncio
    async def test_signatures_must_come_from_owner(self):
        hub, chain, _ = await funded_hub(212_000_000)
        plan = await hub.plan_poll_funding(MOCK_CREATOR_ADDRESS, None, "2.00", 100, draft=DRAFT)
        approval_sig, funding_sig = sign_plan(plan, private_key=MOCK_VOTER_PRIVATE_KEY)

        with pytest.raises(InvalidSignature):
            await hub.execute_funding_plan(plan, approval_sig, funding_sig)
        assert chain.sent == []

    @pytest.mark.asyncio
    async def test_reverted_approval_skips_funding(self):
        hub, chain, _ = await funded_hub(212_000_000)
        plan = await hub.plan_poll_funding(MOCK_CREATOR_ADDRESS, None, "2.00", 100, draft=DRAFT)
        chain.revert_reasons["execute"] = "ERC20: insufficient allowance"

        outcome = await hub.execute_funding_plan(plan, *sign_plan(plan))

        assert not outcome.is_success()
        assert outcome.approval.status == RelayStatus.REVERTED
        assert outcome.approval.error_class == "insufficient_allowance"
        assert outcome.funding is None
        assert chain.sent_functions == ["createWallet"]

    @pytest.mark.asyncio
    async def test_balance_drop_after_planning(self):
        hub, chain, wallet = await funded_hub(212_000_000)
        plan = await hub.plan_poll_funding(MOCK_CREATOR_ADDRESS, None, "2.00", 100, draft=DRAFT)
        chain.balances[wallet.lower()] = 1

        with pytest.raises(InsufficientBalance):
            await hub.execute_funding_plan(plan, *sign_plan(plan))
        assert "execute" not in chain.sent_functions

    @pytest.mark.asyncio
    async def test_plan_without_draft_cannot_execute(self):
        hub, _, _ = await funded_hub(212_000_000)
        plan = await hub.plan_poll_funding(MOCK_CREATOR_ADDRESS, None, "2.00", 100)
        signature = sign_wallet_call(
            private_key=MOCK_CREATOR_PRIVATE_KEY,
            target=plan.approval_step.target,
            call_data=plan.approval_step.call_data,
        )

        with pytest.raises(ValueError):
            await hub.execute_funding_plan(plan, signature, signature)


# ========================================================================
# Reward ledger
# ========================================================================

class TestRewardLedger:

    def test_settles_only_on_confirmation(self):
        ledger = RewardLedger()
        ledger.open(MOCK_POLL_ADDRESS, MOCK_VOTER_ADDRESS, 2_000_000)

        failed = RelayResult(status=RelayStatus.REVERTED, error_class="insufficient_reward_funds")
        entry = ledger.apply_result(MOCK_POLL_ADDRESS, MOCK_VOTER_ADDRESS, failed)
        assert entry.settled is False

        confirmed = RelayResult(tx_hash="0xabc", status=RelayStatus.CONFIRMED)
        entry = ledger.apply_result(MOCK_POLL_ADDRESS.lower(), MOCK_VOTER_ADDRESS.lower(), confirmed)
        assert entry.settled is True
        assert entry.tx_hash == "0xabc"

    def test_settled_entry_is_not_reopened(self):
        ledger = RewardLedger()
        ledger.open(MOCK_POLL_ADDRESS, MOCK_VOTER_ADDRESS, 2_000_000)
        ledger.apply_result(
            MOCK_POLL_ADDRESS, MOCK_VOTER_ADDRESS, RelayResult(tx_hash="0xabc", status=RelayStatus.CONFIRMED)
        )

        entry = ledger.open(MOCK_POLL_ADDRESS, MOCK_VOTER_ADDRESS, 5)
        assert entry.settled is True
        assert entry.amount == 2_000_000
        assert len(ledger.for_poll(MOCK_POLL_ADDRESS)) == 1

    def test_unknown_entry(self):
        ledger = RewardLedger()
        assert ledger.get(MOCK_POLL_ADDRESS, MOCK_VOTER_ADDRESS) is None
