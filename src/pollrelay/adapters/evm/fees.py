"""
Fee Policy Engine

Turns network fee data into a versioned :class:`FeePolicy`. Fees are clamped
up to configured floors (Polygon nodes routinely under-report the priority
fee they will actually accept), and a failed refresh degrades to the last
known policy instead of failing the dispatch.
"""

import asyncio
from datetime import datetime, timezone

from ...utils import logger
from .chain import ChainClient
from .constants import ACTION_GAS_LIMITS, RelaySettings
from .schemas import FeeData, FeePolicy


class FeePolicyEngine:
    """
    Produces the fee policy each dispatch captures.

    ``current`` starts as the floor policy (version 0). Each successful
    :meth:`refresh` publishes a new policy with a higher version.
    """

    def __init__(self, chain: ChainClient, settings: RelaySettings):
        self._chain = chain
        self._settings = settings
        self._lock = asyncio.Lock()
        self._current = self.floor_policy()

    @property
    def current(self) -> FeePolicy:
        return self._current

    def floor_policy(self) -> FeePolicy:
        return FeePolicy(
            max_fee_per_gas=max(self._settings.min_max_fee_per_gas, self._settings.min_priority_fee_per_gas),
            max_priority_fee_per_gas=self._settings.min_priority_fee_per_gas,
            gas_limit=max(ACTION_GAS_LIMITS.values()),
            version=0,
        )

    def _clamp(self, data: FeeData, version: int) -> FeePolicy:
        network_priority = data.max_priority_fee_per_gas or data.gas_price or 0
        network_max = data.max_fee_per_gas or data.gas_price or 0
        priority = max(network_priority, self._settings.min_priority_fee_per_gas)
        max_fee = max(network_max, self._settings.min_max_fee_per_gas, priority)
        return FeePolicy(
            max_fee_per_gas=max_fee,
            max_priority_fee_per_gas=priority,
            gas_limit=max(ACTION_GAS_LIMITS.values()),
            last_updated=datetime.now(timezone.utc),
            version=version,
        )

    async def refresh(self) -> FeePolicy:
        """
        Query the network and publish a new policy.

        Returns:
            The new policy, or the last-known policy when the query fails.
        """
        try:
            data = await self._chain.estimate_fee()
        except Exception as e:
            logger.warning(
                f"Fee refresh failed ({type(e).__name__}: {e}); "
                f"keeping policy v{self._current.version}"
            )
            return self._current

        async with self._lock:
            policy = self._clamp(data, self._current.version + 1)
            self._current = policy
        logger.debug(
            f"Fee policy v{policy.version}: maxFee={policy.max_fee_per_gas} "
            f"priority={policy.max_priority_fee_per_gas} gas={policy.gas_limit}"
        )
        return policy
