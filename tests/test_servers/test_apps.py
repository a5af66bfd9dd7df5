"""
Relay Server Tests

Drives the FastAPI relay server in-process through httpx's ASGI transport,
both with raw requests and through RelayClient.
"""

import asyncio
import logging
import sys
from pathlib import Path

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "test_adapter"))

from test_mocks import (
    MOCK_CHAIN_ID,
    MOCK_CREATOR_ADDRESS,
    MOCK_CREATOR_PRIVATE_KEY,
    MOCK_POLL_ADDRESS,
    MOCK_POLL_FACTORY,
    MOCK_VOTER_ADDRESS,
    MOCK_VOTER_PRIVATE_KEY,
    FakeChainClient,
    make_hub,
    vote_signature,
)

from pollrelay.clients.http_client import RelayClient, RelayClientError
from pollrelay.engine.events import RelayResultEvent
from pollrelay.servers.apps import RelayServer

BASE_URL = "http://relay.test"


def build_app(chain: FakeChainClient = None, **overrides) -> RelayServer:
    return RelayServer(hub=make_hub(chain or FakeChainClient(), **overrides), title="Poll Relay Test")


def http_client(app: RelayServer) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url=BASE_URL)


def relay_client(app: RelayServer) -> RelayClient:
    return RelayClient(transport=httpx.ASGITransport(app=app), base_url=BASE_URL)


# ========================================================================
# Wallets and nonces
# ========================================================================

class TestWalletRoutes:

    @pytest.mark.asyncio
    async def test_wallet_status(self):
        app = build_app()
        async with http_client(app) as client:
            response = await client.get(f"/wallets/{MOCK_VOTER_ADDRESS}")

        assert response.status_code == 200
        body = response.json()
        assert body["owner_address"] == MOCK_VOTER_ADDRESS
        assert body["wallet_address"] == await app.hub.get_wallet_address(MOCK_VOTER_ADDRESS)
        assert body["deployed"] is False

    @pytest.mark.asyncio
    async def test_malformed_owner(self):
        async with http_client(build_app()) as client:
            response = await client.get("/wallets/not-an-address")

        assert response.status_code == 400
        assert response.json()["error"]["error_class"] == "invalid_request"

    @pytest.mark.asyncio
    async def test_deploy_then_redeploy(self):
        chain = FakeChainClient()
        async with relay_client(build_app(chain)) as client:
            first = await client.deploy_wallet(MOCK_VOTER_ADDRESS)
            second = await client.deploy_wallet(MOCK_VOTER_ADDRESS)

        assert first["deployed"] is True and first["already_deployed"] is False
        assert first["tx_hash"] is not None
        assert second["already_deployed"] is True
        assert chain.sent_functions == ["createWallet"]

    @pytest.mark.asyncio
    async def test_pending_deployment_is_accepted_not_resubmitted(self):
        chain = FakeChainClient()
        chain.receipt_timeouts = 1
        app = build_app(chain)
        async with http_client(app) as client:
            pending = await client.post(f"/wallets/{MOCK_VOTER_ADDRESS}/deploy")
            settled = await client.post(f"/wallets/{MOCK_VOTER_ADDRESS}/deploy")

        assert pending.status_code == 202
        error = pending.json()["error"]
        assert error["error_class"] == "deployment_pending"
        assert error["details"]["tx_hash"].startswith("0x")
        assert settled.status_code == 200
        assert chain.sent_functions == ["createWallet"]
        await app.hub.close()

    def test_log_level_configures_package_logger(self):
        RelayServer(hub=make_hub(), log_level=logging.DEBUG)
        package_logger = logging.getLogger("pollrelay")
        assert package_logger.level == logging.DEBUG
        assert len(package_logger.handlers) == 1

    @pytest.mark.asyncio
    async def test_nonce_and_domain(self):
        chain = FakeChainClient()
        chain.set_chain_nonce(MOCK_POLL_ADDRESS, MOCK_VOTER_ADDRESS, 4)
        async with relay_client(build_app(chain)) as client:
            info = await client.get_nonce(MOCK_POLL_ADDRESS, MOCK_VOTER_ADDRESS)

        assert info.nonce == 4
        assert info.domain["name"] == "TruthPoll"
        assert info.domain["version"] == "1"
        assert info.domain["chainId"] == MOCK_CHAIN_ID
        assert info.domain["verifyingContract"] == MOCK_POLL_ADDRESS


# ========================================================================
# Vote and claim relay
# ========================================================================

class TestRelayRoutes:

    @pytest.mark.asyncio
    async def test_vote_through_client(self):
        chain = FakeChainClient()
        async with relay_client(build_app(chain)) as client:
            result = await client.vote(MOCK_POLL_ADDRESS, option=1, private_key=MOCK_VOTER_PRIVATE_KEY)

        assert result["status"] == "confirmed"
        assert result["tx_hash"].startswith("0x")
        assert chain.sent_functions == ["createWallet", "metaVote"]

    @pytest.mark.asyncio
    async def test_claim_through_client(self):
        chain = FakeChainClient()
        app = build_app(chain)
        async with relay_client(app) as client:
            result = await client.claim_reward(MOCK_POLL_ADDRESS, private_key=MOCK_VOTER_PRIVATE_KEY)

        assert result["status"] == "confirmed"
        assert app.hub.rewards.get(MOCK_POLL_ADDRESS, MOCK_VOTER_ADDRESS).settled is True

    @pytest.mark.asyncio
    async def test_bad_signature_is_rejected(self):
        chain = FakeChainClient()
        body = {"signer": MOCK_VOTER_ADDRESS, "option": 2, "signature": vote_signature(1, 0), "nonce": 0}
        async with http_client(build_app(chain)) as client:
            response = await client.post(f"/polls/{MOCK_POLL_ADDRESS}/vote", json=body)

        assert response.status_code == 400
        assert response.json()["error"]["error_class"] == "invalid_signature"
        assert chain.sent == []

    @pytest.mark.asyncio
    async def test_replay_is_a_conflict(self):
        body = {"signer": MOCK_VOTER_ADDRESS, "option": 1, "signature": vote_signature(1, 0), "nonce": 0}
        async with http_client(build_app()) as client:
            first = await client.post(f"/polls/{MOCK_POLL_ADDRESS}/vote", json=body)
            second = await client.post(f"/polls/{MOCK_POLL_ADDRESS}/vote", json=body)

        assert first.status_code == 200
        assert second.status_code == 409
        error = second.json()["error"]
        assert error["error_class"] == "nonce_mismatch"
        assert error["details"] == {"expected": "1", "provided": "0"}

    @pytest.mark.asyncio
    async def test_already_voted_is_reported_as_revert(self):
        chain = FakeChainClient()
        chain.voted.add((MOCK_POLL_ADDRESS.lower(), MOCK_VOTER_ADDRESS.lower()))
        async with http_client(build_app(chain)) as client:
            response = await client.post(
                f"/polls/{MOCK_POLL_ADDRESS}/vote",
                json={"signer": MOCK_VOTER_ADDRESS, "option": 0, "signature": vote_signature(0, 0), "nonce": 0},
            )

        assert response.status_code == 409
        assert response.json()["status"] == "reverted"
        assert response.json()["error_class"] == "already_voted"

    @pytest.mark.asyncio
    async def test_client_returns_reverted_result(self):
        chain = FakeChainClient()
        chain.revert_reasons["metaVote"] = "Poll is not active"
        async with relay_client(build_app(chain)) as client:
            result = await client.vote(MOCK_POLL_ADDRESS, option=0, private_key=MOCK_VOTER_PRIVATE_KEY)

        assert result["status"] == "reverted"
        assert result["error_class"] == "poll_inactive"

    @pytest.mark.asyncio
    async def test_failed_deployment_is_bad_gateway(self):
        chain = FakeChainClient()
        chain.deploy_leaves_no_code = True
        async with relay_client(build_app(chain)) as client:
            with pytest.raises(RelayClientError) as exc_info:
                await client.vote(MOCK_POLL_ADDRESS, option=0, private_key=MOCK_VOTER_PRIVATE_KEY)

        assert exc_info.value.status_code == 502
        assert exc_info.value.error_class == "deployment_verification_failed"
        assert "metaVote" not in chain.sent_functions

    @pytest.mark.asyncio
    async def test_result_hook_sees_relayed_vote(self):
        app = build_app()
        seen = asyncio.Event()

        @app.hook(RelayResultEvent)
        async def on_relayed(event, deps):
            if event.result.is_success():
                seen.set()

        async with relay_client(app) as client:
            await client.vote(MOCK_POLL_ADDRESS, option=1, private_key=MOCK_VOTER_PRIVATE_KEY)

        await asyncio.wait_for(seen.wait(), timeout=1.0)


# ========================================================================
# Funding
# ========================================================================

async def funded_app(balance: int, **overrides):
    chain = FakeChainClient()
    app = build_app(chain, **overrides)
    wallet = await app.hub.get_wallet_address(MOCK_CREATOR_ADDRESS)
    chain.balances[wallet.lower()] = balance
    return app, chain


class TestFundingRoutes:

    @pytest.mark.asyncio
    async def test_plan_amounts_are_decimal_strings(self):
        app, _ = await funded_app(212_000_000)
        async with relay_client(app) as client:
            body = await client.plan_funding(owner=MOCK_CREATOR_ADDRESS, reward_per_voter="2.00", vote_limit=100)

        assert body["amounts"]["total_reward"] == "200.000000"
        assert body["amounts"]["platform_fee"] == "12.000000"
        assert body["amounts"]["total_required"] == "212.000000"
        assert body["plan"]["poll_factory_address"] == MOCK_POLL_FACTORY

    @pytest.mark.asyncio
    async def test_insufficient_balance_is_payment_required(self):
        app, chain = await funded_app(100_000_000)
        async with relay_client(app) as client:
            with pytest.raises(RelayClientError) as exc_info:
                await client.plan_funding(owner=MOCK_CREATOR_ADDRESS, reward_per_voter="2.00", vote_limit=100)

        assert exc_info.value.status_code == 402
        assert exc_info.value.error_class == "insufficient_balance"
        assert exc_info.value.details["shortfall"] == "112000000"
        assert chain.sent == []

    @pytest.mark.asyncio
    async def test_invalid_amount(self):
        app, _ = await funded_app(212_000_000)
        async with http_client(app) as client:
            response = await client.post(
                "/funding/plan",
                json={"owner": MOCK_CREATOR_ADDRESS, "reward_per_voter": "lots", "vote_limit": 100},
            )

        assert response.status_code == 400
        assert response.json()["error"]["error_class"] == "invalid_request"

    @pytest.mark.asyncio
    async def test_missing_poll_factory(self):
        app, _ = await funded_app(212_000_000, poll_factory_address=None)
        async with http_client(app) as client:
            response = await client.post(
                "/funding/plan",
                json={"owner": MOCK_CREATOR_ADDRESS, "reward_per_voter": "2.00", "vote_limit": 100},
            )

        assert response.status_code == 503
        assert response.json()["error"]["error_class"] == "configuration_error"

    @pytest.mark.asyncio
    async def test_plan_and_fund_poll(self):
        app, chain = await funded_app(212_000_000)
        async with relay_client(app) as client:
            planned = await client.plan_funding(
                owner=MOCK_CREATOR_ADDRESS,
                reward_per_voter="2.00",
                vote_limit=100,
                title="Best chain?",
                options=["Polygon", "Ethereum"],
                duration=86400,
            )
            outcome = await client.fund_poll(planned["plan"], private_key=MOCK_CREATOR_PRIVATE_KEY)

        assert outcome["approval"]["status"] == "confirmed"
        assert outcome["funding"]["status"] == "confirmed"
        assert chain.sent_functions == ["createWallet", "execute", "execute"]

    @pytest.mark.asyncio
    async def test_fund_poll_with_wrong_key(self):
        app, chain = await funded_app(212_000_000)
        async with relay_client(app) as client:
            planned = await client.plan_funding(
                owner=MOCK_CREATOR_ADDRESS,
                reward_per_voter="2.00",
                vote_limit=100,
                title="Best chain?",
                options=["Polygon", "Ethereum"],
                duration=86400,
            )
            with pytest.raises(RelayClientError) as exc_info:
                await client.fund_poll(planned["plan"], private_key=MOCK_VOTER_PRIVATE_KEY)

        assert exc_info.value.status_code == 400
        assert exc_info.value.error_class == "invalid_signature"
        assert chain.sent == []
