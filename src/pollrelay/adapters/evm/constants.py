"""
EVM Relay Configuration Management

Provides the relay settings model loaded from the environment, chain presets,
per-action gas ceilings and token amount conversion helpers.

Environment Variables:
    - RPC_URL: JSON-RPC endpoint (falls back to the chain's public RPC)
    - CHAIN_ID: EIP-155 chain id (default 80002, Polygon Amoy)
    - PLATFORM_WALLET_PRIVATE_KEY: Key of the platform account that pays gas
    - SMART_WALLET_FACTORY_ADDRESS: SmartWalletFactory contract
    - POLL_FACTORY_ADDRESS: PollFactory contract
    - TOKEN_ADDRESS (or USDT_ADDRESS): Reward token contract
    - TOKEN_DECIMALS: Reward token decimals (default 6)
    - PLATFORM_FEE_PERCENT: Fee charged on poll funding (default 6)
    - EIP712_DOMAIN_NAME / EIP712_DOMAIN_VERSION: Typed-data domain (default TruthPoll / 1)
"""

import os
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import dotenv
from pydantic import BaseModel, Field

from ...engine.exceptions import ConfigurationError

dotenv.load_dotenv()

GWEI: int = 10 ** 9


class EvmAssetConfig(BaseModel):
    """Token asset configuration."""
    symbol: str
    address: str = Field(..., description="Token contract address")
    decimals: int = Field(..., description="Token decimals")


class EvmChainConfig(BaseModel):
    """EVM blockchain network configuration."""
    chain_id: int
    name: str
    public_rpc_url: str = Field(..., description="Public RPC endpoint (fallback when RPC_URL is unset)")
    explorer_url: str = Field(..., description="Block explorer URL")
    assets: Dict[str, EvmAssetConfig] = Field(default_factory=dict, description="Known assets")


_EVM_CHAINS_DATA: Dict[int, Dict[str, Any]] = {
    80002: {
        "name": "Polygon Amoy Testnet",
        "public_rpc_url": "https://rpc-amoy.polygon.technology",
        "explorer_url": "https://amoy.polygonscan.com",
        "assets": {},
    },
    137: {
        "name": "Polygon Mainnet",
        "public_rpc_url": "https://polygon-rpc.com",
        "explorer_url": "https://polygonscan.com",
        "assets": {
            "USDT": {
                "address": "0xc2132D05D31c914a87C6611C10748AEb04B58e8F",
                "decimals": 6,
            },
        },
    },
}

# ---------------------------------------------------------------------------
# Gas ceilings per relayed contract function
# ---------------------------------------------------------------------------

DEFAULT_GAS_LIMIT: int = 3_000_000

ACTION_GAS_LIMITS: Dict[str, int] = {
    "createWallet": DEFAULT_GAS_LIMIT,
    "metaVote": DEFAULT_GAS_LIMIT,
    "metaClaimReward": DEFAULT_GAS_LIMIT,
    "approve": DEFAULT_GAS_LIMIT,
    "execute": DEFAULT_GAS_LIMIT,
    "createAndFundPoll": 5_000_000,
}


class RelaySettings(BaseModel):
    """
    Runtime settings for the relay.

    Timeouts are in seconds, fees in wei, token amounts in base units.
    """
    rpc_url: Optional[str] = None
    chain_id: int = 80002
    platform_private_key: Optional[str] = Field(default=None, repr=False)
    wallet_factory_address: Optional[str] = None
    poll_factory_address: Optional[str] = None
    token_address: Optional[str] = None
    token_decimals: int = 6
    platform_fee_percent: Decimal = Decimal("6")
    eip712_domain_name: str = "TruthPoll"
    eip712_domain_version: str = "1"

    min_priority_fee_per_gas: int = 30 * GWEI
    min_max_fee_per_gas: int = 35 * GWEI

    rpc_timeout: float = 15.0
    rpc_retries: int = 2
    receipt_timeout: float = 120.0
    receipt_poll_interval: float = 2.0
    pending_track_timeout: float = 900.0
    max_relay_attempts: int = 3
    relay_backoff: float = 1.0
    nonce_wait_timeout: float = 10.0
    dispatch_turn_timeout: float = 180.0
    deploy_verify_retries: int = 3
    deploy_verify_interval: float = 1.0
    deploy_confirmations: int = 0
    deploy_settle_delay: float = 1.0
    deploy_settle_timeout: float = 30.0
    deploy_before_relay: bool = True

    def require(self, field_name: str) -> Any:
        """
        Return a setting that must be present.

        Raises:
            ConfigurationError: If the setting is unset or empty.
        """
        value = getattr(self, field_name)
        if value in (None, ""):
            raise ConfigurationError(f"Required setting '{field_name}' is not configured")
        return value

    def domain(self, verifying_contract: str) -> Dict[str, Any]:
        """EIP-712 domain dict bound to ``verifying_contract``."""
        return {
            "name": self.eip712_domain_name,
            "version": self.eip712_domain_version,
            "chainId": self.chain_id,
            "verifyingContract": verifying_contract,
        }


_ENV_FIELDS: Dict[str, str] = {
    "RPC_URL": "rpc_url",
    "CHAIN_ID": "chain_id",
    "PLATFORM_WALLET_PRIVATE_KEY": "platform_private_key",
    "SMART_WALLET_FACTORY_ADDRESS": "wallet_factory_address",
    "POLL_FACTORY_ADDRESS": "poll_factory_address",
    "USDT_ADDRESS": "token_address",
    "TOKEN_ADDRESS": "token_address",
    "TOKEN_DECIMALS": "token_decimals",
    "PLATFORM_FEE_PERCENT": "platform_fee_percent",
    "EIP712_DOMAIN_NAME": "eip712_domain_name",
    "EIP712_DOMAIN_VERSION": "eip712_domain_version",
    "RPC_TIMEOUT": "rpc_timeout",
    "RECEIPT_TIMEOUT": "receipt_timeout",
    "MAX_RELAY_ATTEMPTS": "max_relay_attempts",
    "DEPLOY_CONFIRMATIONS": "deploy_confirmations",
}


def load_settings(**overrides: Any) -> RelaySettings:
    """
    Build :class:`RelaySettings` from environment variables.

    Keyword overrides take precedence over the environment. ``TOKEN_ADDRESS``
    wins over ``USDT_ADDRESS`` when both are set.

    Raises:
        ConfigurationError: If a variable cannot be parsed into its field type.
    """
    values: Dict[str, Any] = {}
    for env_name, field_name in _ENV_FIELDS.items():
        raw = os.getenv(env_name)
        if raw not in (None, ""):
            values[field_name] = raw
    values.update({k: v for k, v in overrides.items() if v is not None})
    try:
        return RelaySettings(**values)
    except ValueError as e:
        raise ConfigurationError(f"Invalid relay settings: {e}") from e


def get_chain_config(chain_id: int) -> Optional[EvmChainConfig]:
    """
    Get the preset configuration for a chain.

    Returns:
        EvmChainConfig, or None if the chain has no preset.
    """
    data = _EVM_CHAINS_DATA.get(int(chain_id))
    if data is None:
        return None
    return EvmChainConfig(
        chain_id=int(chain_id),
        name=data["name"],
        public_rpc_url=data["public_rpc_url"],
        explorer_url=data["explorer_url"],
        assets={
            symbol: EvmAssetConfig(symbol=symbol, **asset)
            for symbol, asset in data.get("assets", {}).items()
        },
    )


def get_rpc_url(settings: RelaySettings) -> str:
    """
    Resolve the RPC endpoint: ``RPC_URL`` first, then the chain's public RPC.

    Raises:
        ConfigurationError: If neither is available.
    """
    if settings.rpc_url:
        return settings.rpc_url
    chain = get_chain_config(settings.chain_id)
    if chain is None:
        raise ConfigurationError(
            f"No RPC_URL configured and chain {settings.chain_id} has no public RPC preset"
        )
    return chain.public_rpc_url


def amount_to_value(*, amount: float | int | str | Decimal, decimals: int) -> int:
    """Convert a human-readable token `amount` into smallest-unit integer `value`.

    Args:
        amount: Human-readable amount (e.g. "2.00" USDT). Accepts float/int/str/Decimal.
        decimals: Token decimals (e.g. 6 for USDT).

    Returns:
        int: Smallest-unit integer value.

    Raises:
        ValueError: If inputs are invalid or the amount cannot be represented in smallest units.
    """
    if not isinstance(decimals, int) or decimals < 0:
        raise ValueError("decimals must be a non-negative int")

    try:
        # str() avoids binary-float surprises (0.1 -> 0.100000000000000005...)
        dec_amount = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError, TypeError) as e:
        raise ValueError(f"Invalid amount: {amount!r}") from e

    if not dec_amount.is_finite() or dec_amount < 0:
        raise ValueError("amount must be a non-negative number")

    scale = Decimal(10) ** decimals
    scaled = dec_amount * scale

    if scaled != scaled.to_integral_value():
        raise ValueError(
            f"amount {amount!r} is not representable with decimals={decimals} "
            f"(would create fractional smallest units)"
        )

    return int(scaled)


def value_to_amount(*, value: int | str | Decimal, decimals: int) -> str:
    """Convert a smallest-unit integer `value` into a human-readable decimal string.

    Args:
        value: Smallest-unit integer value (e.g. 1230000 for 1.23 USDT).
        decimals: Token decimals (e.g. 6 for USDT).

    Returns:
        str: Decimal string with exactly ``decimals`` fractional digits.

    Raises:
        ValueError: If inputs are invalid.
    """
    if not isinstance(decimals, int) or decimals < 0:
        raise ValueError("decimals must be a non-negative int")

    try:
        dec_value = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError) as e:
        raise ValueError(f"Invalid value: {value!r}") from e

    if dec_value < 0:
        raise ValueError("value must be non-negative")

    if dec_value != dec_value.to_integral_value():
        raise ValueError("value must be an integer in smallest units")

    scale = Decimal(10) ** decimals
    quantum = Decimal(1).scaleb(-decimals)
    return str((dec_value / scale).quantize(quantum))
