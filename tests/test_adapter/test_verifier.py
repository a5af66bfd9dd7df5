"""
Meta-Transaction Verification Tests

Signature recovery, domain binding and nonce consumption for gasless votes
and reward claims, plus EIP-191 smart-wallet call authorisation.
"""

import asyncio

import pytest

from test_mocks import (
    MOCK_CHAIN_ID,
    MOCK_CREATOR_PRIVATE_KEY,
    MOCK_OTHER_ADDRESS,
    MOCK_OTHER_PRIVATE_KEY,
    MOCK_POLL_ADDRESS,
    MOCK_TOKEN_ADDRESS,
    MOCK_VOTER_ADDRESS,
    MOCK_VOTER_PRIVATE_KEY,
    claim_signature,
    make_settings,
    vote_signature,
)

from pollrelay.adapters.evm.nonces import NonceKey, NonceRegistry
from pollrelay.adapters.evm.schemas import EVMECDSASignature, MetaTransactionRequest
from pollrelay.adapters.evm.signatures import sign_wallet_call
from pollrelay.adapters.evm.verifies import MetaTransactionVerifier, verify_wallet_call_signature
from pollrelay.engine.exceptions import InvalidSignature, NonceMismatch, UnknownAction


KEY = NonceKey.of(MOCK_POLL_ADDRESS, MOCK_VOTER_ADDRESS)


def build_verifier(seed: int = 0, **overrides):
    settings = make_settings(**overrides)

    async def seeder(contract: str, signer: str) -> int:
        return seed

    registry = NonceRegistry(seeder=seeder, wait_timeout=settings.nonce_wait_timeout)
    return MetaTransactionVerifier(settings, registry), registry, settings


def vote_request(settings, option: int, nonce: int, signature: str, signer: str = MOCK_VOTER_ADDRESS):
    return MetaTransactionRequest(
        signer=signer,
        action_type="vote",
        payload={"option": option},
        nonce=nonce,
        signature=signature,
        domain=settings.domain(MOCK_POLL_ADDRESS),
    )


# ========================================================================
# Signature checks
# ========================================================================

class TestSignatureVerification:

    @pytest.mark.asyncio
    async def test_valid_vote_is_accepted_and_consumes_nonce(self):
        verifier, registry, settings = build_verifier()
        request = vote_request(settings, option=1, nonce=0, signature=vote_signature(1, 0))

        verified = await verifier.verify(request)

        assert verified.recovered_signer.lower() == MOCK_VOTER_ADDRESS.lower()
        assert await registry.peek(KEY) == 1

    @pytest.mark.asyncio
    async def test_signer_comparison_ignores_case(self):
        verifier, _, settings = build_verifier()
        request = vote_request(
            settings, option=0, nonce=0, signature=vote_signature(0, 0), signer=MOCK_VOTER_ADDRESS.lower()
        )

        verified = await verifier.verify(request)
        assert verified.request.signer == MOCK_VOTER_ADDRESS.lower()

    @pytest.mark.asyncio
    async def test_valid_claim_is_accepted(self):
        verifier, registry, settings = build_verifier(seed=4)
        request = MetaTransactionRequest(
            signer=MOCK_VOTER_ADDRESS,
            action_type="claim_reward",
            nonce=4,
            signature=claim_signature(4),
            domain=settings.domain(MOCK_POLL_ADDRESS),
        )

        await verifier.verify(request)
        assert await registry.peek(KEY) == 5

    @pytest.mark.asyncio
    async def test_tampered_option_is_rejected_without_consuming_nonce(self):
        verifier, registry, settings = build_verifier()
        request = vote_request(settings, option=2, nonce=0, signature=vote_signature(1, 0))

        with pytest.raises(InvalidSignature):
            await verifier.verify(request)
        assert await registry.peek(KEY) == 0

    @pytest.mark.asyncio
    async def test_tampered_nonce_is_invalid_signature(self):
        verifier, _, settings = build_verifier(seed=1)
        request = vote_request(settings, option=1, nonce=1, signature=vote_signature(1, 0))

        with pytest.raises(InvalidSignature):
            await verifier.verify(request)

    @pytest.mark.asyncio
    async def test_signature_from_another_key(self):
        verifier, _, settings = build_verifier()
        signature = vote_signature(1, 0, private_key=MOCK_OTHER_PRIVATE_KEY)
        request = vote_request(settings, option=1, nonce=0, signature=signature)

        with pytest.raises(InvalidSignature):
            await verifier.verify(request)

    @pytest.mark.asyncio
    async def test_signature_for_another_chain(self):
        verifier, _, settings = build_verifier()
        signature = vote_signature(1, 0, chain_id=137)
        request = vote_request(settings, option=1, nonce=0, signature=signature)

        with pytest.raises(InvalidSignature):
            await verifier.verify(request)

    @pytest.mark.asyncio
    async def test_domain_mismatch(self):
        verifier, _, settings = build_verifier()
        request = vote_request(settings, option=1, nonce=0, signature=vote_signature(1, 0))
        request.domain["name"] = "SomethingElse"

        with pytest.raises(InvalidSignature, match="domain"):
            await verifier.verify(request)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("signature", ["0x", "0x1234", "not-hex", "0x" + "zz" * 65])
    async def test_malformed_signature(self, signature):
        verifier, _, settings = build_verifier()
        request = vote_request(settings, option=1, nonce=0, signature=signature)

        with pytest.raises(InvalidSignature):
            await verifier.verify(request)

    @pytest.mark.asyncio
    async def test_unknown_action(self):
        verifier, _, settings = build_verifier()
        request = MetaTransactionRequest(
            signer=MOCK_VOTER_ADDRESS,
            action_type="delegate",
            nonce=0,
            signature=vote_signature(1, 0),
            domain=settings.domain(MOCK_POLL_ADDRESS),
        )

        with pytest.raises(UnknownAction):
            await verifier.verify(request)

    @pytest.mark.asyncio
    async def test_vote_without_option(self):
        verifier, _, settings = build_verifier()
        request = MetaTransactionRequest(
            signer=MOCK_VOTER_ADDRESS,
            action_type="vote",
            nonce=0,
            signature=vote_signature(1, 0),
            domain=settings.domain(MOCK_POLL_ADDRESS),
        )

        with pytest.raises(InvalidSignature):
            await verifier.verify(request)

    def test_recovery_byte_is_normalised(self):
        signature = vote_signature(1, 0)
        raw = signature[:-2] + format(int(signature[-2:], 16) - 27, "02x")

        sig = EVMECDSASignature.from_hex(raw)
        assert sig.v in (27, 28)
        assert sig.to_packed_hex().lower() == signature.lower()


# ========================================================================
# Nonce handling
# ========================================================================

class TestNonceConsumption:

    @pytest.mark.asyncio
    async def test_replay_is_rejected(self):
        verifier, _, settings = build_verifier()
        signature = vote_signature(1, 0)

        await verifier.verify(vote_request(settings, option=1, nonce=0, signature=signature))
        with pytest.raises(NonceMismatch) as exc_info:
            await verifier.verify(vote_request(settings, option=1, nonce=0, signature=signature))
        assert exc_info.value.expected == 1
        assert exc_info.value.provided == 0

    @pytest.mark.asyncio
    async def test_seed_comes_from_chain(self):
        verifier, registry, settings = build_verifier(seed=7)
        assert await registry.peek(KEY) == 7

        with pytest.raises(NonceMismatch):
            await verifier.verify(vote_request(settings, option=1, nonce=6, signature=vote_signature(1, 6)))

    @pytest.mark.asyncio
    async def test_concurrent_same_nonce_only_one_wins(self):
        verifier, registry, settings = build_verifier()
        requests = [
            vote_request(settings, option=option, nonce=0, signature=vote_signature(option, 0))
            for option in (0, 1, 2)
        ]

        outcomes = await asyncio.gather(*(verifier.verify(r) for r in requests), return_exceptions=True)

        accepted = [o for o in outcomes if not isinstance(o, Exception)]
        rejected = [o for o in outcomes if isinstance(o, NonceMismatch)]
        assert len(accepted) == 1
        assert len(rejected) == 2
        assert await registry.peek(KEY) == 1

    @pytest.mark.asyncio
    async def test_future_nonce_waits_for_earlier_one(self):
        verifier, registry, settings = build_verifier()
        later = vote_request(settings, option=1, nonce=1, signature=vote_signature(1, 1))
        earlier = vote_request(settings, option=1, nonce=0, signature=vote_signature(1, 0))

        results = await asyncio.gather(verifier.verify(later), verifier.verify(earlier))

        assert [r.request.nonce for r in results] == [1, 0]
        assert await registry.peek(KEY) == 2

    @pytest.mark.asyncio
    async def test_future_nonce_times_out(self):
        verifier, registry, settings = build_verifier(nonce_wait_timeout=0.05)
        request = vote_request(settings, option=1, nonce=3, signature=vote_signature(1, 3))

        with pytest.raises(NonceMismatch, match="ahead"):
            await verifier.verify(request)
        assert await registry.peek(KEY) == 0

    @pytest.mark.asyncio
    async def test_signers_have_independent_counters(self):
        verifier, registry, settings = build_verifier()
        await verifier.verify(vote_request(settings, option=1, nonce=0, signature=vote_signature(1, 0)))
        await verifier.verify(vote_request(
            settings, option=0, nonce=0,
            signature=vote_signature(0, 0, private_key=MOCK_OTHER_PRIVATE_KEY),
            signer=MOCK_OTHER_ADDRESS,
        ))

        assert await registry.peek(KEY) == 1
        assert await registry.peek(NonceKey.of(MOCK_POLL_ADDRESS, MOCK_OTHER_ADDRESS)) == 1

    @pytest.mark.asyncio
    async def test_consumed_nonce_is_never_reissued(self):
        registry = NonceRegistry()
        await registry.consume(KEY, 0)

        with pytest.raises(NonceMismatch, match="already used"):
            await registry.consume(KEY, 0)
        assert await registry.peek(KEY) == 1

    @pytest.mark.asyncio
    async def test_resync_overwrites_with_chain_value(self):
        chain_value = {"nonce": 0}

        async def seeder(contract: str, signer: str) -> int:
            return chain_value["nonce"]

        registry = NonceRegistry(seeder=seeder)
        await registry.consume(KEY, 0)
        await registry.consume(KEY, 1)
        assert await registry.peek(KEY) == 2

        chain_value["nonce"] = 1
        assert await registry.resync(KEY) == 1
        assert await registry.peek(KEY) == 1
        assert await registry.consume(KEY, 1) == 1

    @pytest.mark.asyncio
    async def test_dispatch_turns_run_in_nonce_order(self):
        registry = NonceRegistry()
        order = []

        async def dispatch(nonce: int, delay: float):
            await asyncio.sleep(delay)
            async with registry.dispatch_turn(KEY, nonce):
                order.append(nonce)

        await asyncio.gather(dispatch(2, 0), dispatch(1, 0.01), dispatch(0, 0.02))
        assert order == [0, 1, 2]


# ========================================================================
# Smart-wallet call authorisation
# ========================================================================

class TestWalletCallSignature:

    CALL_DATA = "0x095ea7b3" + "00" * 64

    def test_owner_signature_is_accepted(self):
        signature = sign_wallet_call(
            private_key=MOCK_VOTER_PRIVATE_KEY, target=MOCK_TOKEN_ADDRESS, call_data=self.CALL_DATA
        )
        recovered = verify_wallet_call_signature(
            owner=MOCK_VOTER_ADDRESS, target=MOCK_TOKEN_ADDRESS, call_data=self.CALL_DATA, signature=signature
        )
        assert recovered.lower() == MOCK_VOTER_ADDRESS.lower()

    def test_other_signer_is_rejected(self):
        signature = sign_wallet_call(
            private_key=MOCK_CREATOR_PRIVATE_KEY, target=MOCK_TOKEN_ADDRESS, call_data=self.CALL_DATA
        )
        with pytest.raises(InvalidSignature):
            verify_wallet_call_signature(
                owner=MOCK_VOTER_ADDRESS, target=MOCK_TOKEN_ADDRESS, call_data=self.CALL_DATA, signature=signature
            )

    def test_changed_calldata_is_rejected(self):
        signature = sign_wallet_call(
            private_key=MOCK_VOTER_PRIVATE_KEY, target=MOCK_TOKEN_ADDRESS, call_data=self.CALL_DATA
        )
        with pytest.raises(InvalidSignature):
            verify_wallet_call_signature(
                owner=MOCK_VOTER_ADDRESS,
                target=MOCK_TOKEN_ADDRESS,
                call_data=self.CALL_DATA[:-2] + "01",
                signature=signature,
            )

    def test_chain_id_constant(self):
        assert make_settings().domain(MOCK_POLL_ADDRESS)["chainId"] == MOCK_CHAIN_ID
