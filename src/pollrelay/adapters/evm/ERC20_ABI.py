"""
ERC20 Smart Contract ABI Module

Minimal ABI definitions for the reward token (USDT, 6 decimals): balance and
allowance queries and ``approve``.

Usage:
    from ERC20_ABI import get_erc20_abi

    contract = web3.eth.contract(address=token_address, abi=get_erc20_abi())
    balance = await contract.functions.balanceOf(wallet).call()
"""

from typing import Dict, Any, List


def get_balance_abi() -> List[Dict[str, Any]]:
    """
    Get ABI for querying token balance.

    Returns:
        List[Dict[str, Any]]: ABI for balanceOf function
    """
    return [
        {
            "name": "balanceOf",
            "type": "function",
            "stateMutability": "view",
            "inputs": [{"name": "account", "type": "address"}],
            "outputs": [{"name": "", "type": "uint256"}],
        }
    ]


def get_allowance_abi() -> List[Dict[str, Any]]:
    """
    Get ABI for ERC20 `allowance(owner, spender)`.

    Returns:
        List[Dict[str, Any]]: ABI for ERC20 `allowance` function.
    """
    return [
        {
            "name": "allowance",
            "type": "function",
            "stateMutability": "view",
            "inputs": [
                {"name": "owner", "type": "address"},
                {"name": "spender", "type": "address"},
            ],
            "outputs": [{"name": "", "type": "uint256"}],
        }
    ]


def get_approve_abi() -> List[Dict[str, Any]]:
    """
    Get ABI for ERC20 `approve(spender, amount)`.

    Returns:
        List[Dict[str, Any]]: ABI for ERC20 `approve` function.
    """
    return [
        {
            "name": "approve",
            "type": "function",
            "stateMutability": "nonpayable",
            "inputs": [
                {"name": "spender", "type": "address"},
                {"name": "amount", "type": "uint256"},
            ],
            "outputs": [{"name": "", "type": "bool"}],
        }
    ]


def get_erc20_abi() -> List[Dict[str, Any]]:
    """Combined ABI for every ERC20 function the relay uses."""
    return get_balance_abi() + get_allowance_abi() + get_approve_abi()
