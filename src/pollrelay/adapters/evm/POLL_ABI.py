"""
Poll, Factory and Smart Wallet ABI Module

Minimal ABI definitions for the contracts the relay calls:

- Poll: ``metaVote`` / ``metaClaimReward`` relayed entry points, ``getNonce``,
  ``rewardPerVoter`` and ``hasVoted`` views, plus ``vote`` for calls routed
  through a smart wallet.
- PollFactory: ``createAndFundPoll`` and ``calculatePlatformFee``.
- SmartWalletFactory: ``getWalletAddress`` and ``createWallet``.
- SmartWallet: ``execute`` and ``owner``.

Use :func:`get_abi` to resolve the ABI for a :class:`ContractKind`.
"""

from typing import Dict, Any, List

from ...schemas.bases import ContractKind
from .ERC20_ABI import get_erc20_abi


def _fn(name: str, inputs: List[tuple], outputs: List[str], mutability: str = "nonpayable") -> Dict[str, Any]:
    return {
        "name": name,
        "type": "function",
        "stateMutability": mutability,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": "", "type": t} for t in outputs],
    }


def get_poll_abi() -> List[Dict[str, Any]]:
    """
    Get ABI for the Poll contract.

    Returns:
        List[Dict[str, Any]]: ABI covering relayed voting and claiming.
    """
    return [
        _fn("metaVote", [("voter", "address"), ("option", "uint256"),
                         ("v", "uint8"), ("r", "bytes32"), ("s", "bytes32")], []),
        _fn("metaClaimReward", [("claimer", "address"),
                                ("v", "uint8"), ("r", "bytes32"), ("s", "bytes32")], []),
        _fn("vote", [("option", "uint256")], []),
        _fn("getNonce", [("user", "address")], ["uint256"], "view"),
        _fn("hasVoted", [("user", "address")], ["bool"], "view"),
        _fn("rewardPerVoter", [], ["uint256"], "view"),
        _fn("owner", [], ["address"], "view"),
    ]


def get_poll_factory_abi() -> List[Dict[str, Any]]:
    """
    Get ABI for the PollFactory contract.

    Returns:
        List[Dict[str, Any]]: ABI for funded poll creation and fee calculation.
    """
    return [
        _fn("createAndFundPoll", [("title", "string"), ("options", "string[]"),
                                  ("duration", "uint256"), ("rewardPerVoter", "uint256"),
                                  ("fundAmount", "uint256")], ["address"]),
        _fn("calculatePlatformFee", [("amount", "uint256")], ["uint256"], "view"),
        {
            "name": "PollCreatedAndFunded",
            "type": "event",
            "anonymous": False,
            "inputs": [
                {"name": "pollAddress", "type": "address", "indexed": True},
                {"name": "creator", "type": "address", "indexed": True},
                {"name": "fundAmount", "type": "uint256", "indexed": False},
            ],
        },
    ]


def get_wallet_factory_abi() -> List[Dict[str, Any]]:
    """Get ABI for the SmartWalletFactory contract."""
    return [
        _fn("getWalletAddress", [("owner", "address"), ("salt", "bytes32")], ["address"], "view"),
        _fn("createWallet", [("owner", "address"), ("salt", "bytes32")], ["address"]),
    ]


def get_smart_wallet_abi() -> List[Dict[str, Any]]:
    """Get ABI for a deployed SmartWallet."""
    return [
        _fn("execute", [("target", "address"), ("value", "uint256"),
                        ("data", "bytes"), ("signature", "bytes")], ["bytes"]),
        _fn("owner", [], ["address"], "view"),
    ]


_ABI_GETTERS = {
    ContractKind.POLL: get_poll_abi,
    ContractKind.POLL_FACTORY: get_poll_factory_abi,
    ContractKind.WALLET_FACTORY: get_wallet_factory_abi,
    ContractKind.SMART_WALLET: get_smart_wallet_abi,
    ContractKind.ERC20: get_erc20_abi,
}


def get_abi(kind: ContractKind) -> List[Dict[str, Any]]:
    """
    Resolve the ABI for a contract family.

    Raises:
        KeyError: If the kind has no registered ABI.
    """
    return _ABI_GETTERS[ContractKind(kind)]()
