"""
EVM Off-Chain Signing Utilities

Local signing helpers for the actions users authorise without paying gas.
All cryptographic operations are performed in-process using ``eth_account``;
no RPC calls or on-chain state queries are made.

Exported helpers
----------------
build_vote_typed_data / build_claim_reward_typed_data
    Build the EIP-712 envelope for a ``Vote`` or ``ClaimReward`` without
    signing. The relay uses these to reconstruct what the user signed.

sign_vote / sign_claim_reward
    Build the envelope and sign it with a private key, returning the packed
    65-byte hex signature the relay expects.

wallet_call_digest / sign_wallet_call
    Hash and sign a smart-wallet ``execute(target, value, data)`` call with an
    EIP-191 personal signature, as the wallet contract checks against its owner.
"""

from eth_abi.packed import encode_packed
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import keccak, to_bytes, to_checksum_address

from .standards import (
    EIP712Domain,
    VoteMessage,
    VoteTypedData,
    ClaimRewardMessage,
    ClaimRewardTypedData,
)


def _packed(signature: bytes) -> str:
    return "0x" + bytes(signature).hex()


# ---------------------------------------------------------------------------
# EIP-712 typed-data builders
# ---------------------------------------------------------------------------

def build_vote_typed_data(
    *,
    domain: EIP712Domain,
    voter: str,
    option: int,
    nonce: int,
) -> VoteTypedData:
    """
    Wrap a vote in a ``VoteTypedData`` envelope.

    Args:
        domain: Domain bound to the poll contract.
        voter: Address casting the vote.
        option: Zero-based option index.
        nonce: The voter's next meta-transaction nonce on this poll.
    """
    return VoteTypedData(
        domain=domain,
        message=VoteMessage(voter=to_checksum_address(voter), option=int(option), nonce=int(nonce)),
    )


def build_claim_reward_typed_data(
    *,
    domain: EIP712Domain,
    claimer: str,
    nonce: int,
) -> ClaimRewardTypedData:
    """Wrap a reward claim in a ``ClaimRewardTypedData`` envelope."""
    return ClaimRewardTypedData(
        domain=domain,
        message=ClaimRewardMessage(claimer=to_checksum_address(claimer), nonce=int(nonce)),
    )


# ---------------------------------------------------------------------------
# EIP-712 signers
# ---------------------------------------------------------------------------

def sign_vote(
    *,
    private_key: str,
    poll: str,
    option: int,
    nonce: int,
    chain_id: int,
    domain_name: str = "TruthPoll",
    domain_version: str = "1",
) -> str:
    """
    Sign a gasless vote.

    The voter address is derived from ``private_key``.

    Returns:
        0x-prefixed 65-byte ``r || s || v`` signature.

    Example::

        signature = sign_vote(
            private_key="0xYOUR_PRIVATE_KEY",
            poll="0xPollAddress",
            option=1,
            nonce=0,
            chain_id=80002,
        )
    """
    voter = Account.from_key(private_key).address
    typed_data = build_vote_typed_data(
        domain=EIP712Domain(
            name=domain_name,
            version=domain_version,
            chainId=chain_id,
            verifyingContract=to_checksum_address(poll),
        ),
        voter=voter,
        option=option,
        nonce=nonce,
    )
    signed = Account.sign_typed_data(private_key, full_message=typed_data.to_dict())
    return _packed(signed.signature)


def sign_claim_reward(
    *,
    private_key: str,
    poll: str,
    nonce: int,
    chain_id: int,
    domain_name: str = "TruthPoll",
    domain_version: str = "1",
) -> str:
    """Sign a gasless reward claim. Returns the packed 65-byte signature."""
    claimer = Account.from_key(private_key).address
    typed_data = build_claim_reward_typed_data(
        domain=EIP712Domain(
            name=domain_name,
            version=domain_version,
            chainId=chain_id,
            verifyingContract=to_checksum_address(poll),
        ),
        claimer=claimer,
        nonce=nonce,
    )
    signed = Account.sign_typed_data(private_key, full_message=typed_data.to_dict())
    return _packed(signed.signature)


# ---------------------------------------------------------------------------
# Smart-wallet calls (EIP-191)
# ---------------------------------------------------------------------------

def wallet_call_digest(target: str, call_data: str, value: int = 0) -> bytes:
    """
    Hash a smart-wallet call the way the wallet contract does.

    ``keccak256(abi.encodePacked(target, value, keccak256(data)))``
    """
    data_hash = keccak(to_bytes(hexstr=call_data))
    return keccak(encode_packed(
        ["address", "uint256", "bytes32"],
        [to_checksum_address(target), int(value), data_hash],
    ))


def sign_wallet_call(*, private_key: str, target: str, call_data: str, value: int = 0) -> str:
    """
    Authorise a smart-wallet ``execute`` call as its owner.

    Returns:
        0x-prefixed 65-byte EIP-191 signature over :func:`wallet_call_digest`.
    """
    message = encode_defunct(primitive=wallet_call_digest(target, call_data, value))
    signed = Account.sign_message(message, private_key=private_key)
    return _packed(signed.signature)
