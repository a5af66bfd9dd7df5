"""
Nonce Registry

Tracks the next expected meta-transaction nonce per (verifying contract,
signer). Read-and-advance is one critical section per key, so no two
in-flight requests can claim the same value. The first access for a key
seeds the counter from the contract's own ``getNonce``.

Each key also has a dispatch turn: a request holding nonce N enters its
turn only after every lower nonce has left its own, which keeps on-chain
submission in nonce order.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Dict, NamedTuple, Optional

from ...engine.exceptions import NonceMismatch
from ...utils import logger

NonceSeeder = Callable[[str, str], Awaitable[int]]


class NonceKey(NamedTuple):
    """Case-insensitive registry key."""
    verifying_contract: str
    signer: str

    @classmethod
    def of(cls, verifying_contract: str, signer: str) -> "NonceKey":
        return cls(verifying_contract.lower(), signer.lower())


@dataclass
class _NonceState:
    next_expected: int = 0
    next_dispatch: int = 0
    seeded: bool = False
    condition: asyncio.Condition = field(default_factory=asyncio.Condition)
    seed_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class NonceRegistry:
    """
    Per-signer replay protection.

    Args:
        seeder: Async callable ``(verifying_contract, signer) -> int`` returning
            the on-chain nonce. When omitted, counters start at zero.
        wait_timeout: How long a nonce ahead of the expected value waits for
            the earlier ones before being rejected.
        dispatch_timeout: How long a dispatch turn waits for lower nonces.
    """

    def __init__(
        self,
        seeder: Optional[NonceSeeder] = None,
        wait_timeout: float = 10.0,
        dispatch_timeout: float = 180.0,
    ):
        self._seeder = seeder
        self._wait_timeout = wait_timeout
        self._dispatch_timeout = dispatch_timeout
        self._states: Dict[NonceKey, _NonceState] = {}

    async def _state(self, key: NonceKey) -> _NonceState:
        state = self._states.get(key)
        if state is None:
            state = _NonceState()
            self._states[key] = state
        if not state.seeded:
            async with state.seed_lock:
                if not state.seeded:
                    start = await self._seeder(*key) if self._seeder else 0
                    state.next_expected = state.next_dispatch = int(start)
                    state.seeded = True
                    logger.debug(f"Seeded nonce for {key.signer} on {key.verifying_contract}: {start}")
        return state

    async def peek(self, key: NonceKey) -> int:
        """Return the next nonce the registry would accept for ``key``."""
        return (await self._state(key)).next_expected

    async def consume(self, key: NonceKey, nonce: int) -> int:
        """
        Atomically accept ``nonce`` and advance the counter.

        A nonce behind the expected value is rejected at once. A nonce ahead
        of it waits, up to ``wait_timeout``, for the earlier nonces to be
        consumed.

        Returns:
            The consumed nonce.

        Raises:
            NonceMismatch: If ``nonce`` is not, or does not become, the next expected value.
        """
        state = await self._state(key)
        async with state.condition:
            if nonce > state.next_expected:
                try:
                    await asyncio.wait_for(
                        state.condition.wait_for(lambda: state.next_expected >= nonce),
                        timeout=self._wait_timeout,
                    )
                except asyncio.TimeoutError:
                    raise NonceMismatch(
                        f"Nonce {nonce} is ahead of expected {state.next_expected}",
                        expected=state.next_expected,
                        provided=nonce,
                    )
            if nonce != state.next_expected:
                raise NonceMismatch(
                    f"Nonce {nonce} already used; expected {state.next_expected}",
                    expected=state.next_expected,
                    provided=nonce,
                )
            state.next_expected = nonce + 1
            state.condition.notify_all()
        return nonce

    async def resync(self, key: NonceKey) -> int:
        """
        Overwrite the counter for ``key`` with the contract's current nonce.

        Administrative only. The relay never calls this on its own, because
        moving the counter back re-opens nonces that were already consumed.
        It exists for an operator to unstick a signer whose consumed nonce
        never landed on-chain.

        Returns:
            The new next-expected nonce.
        """
        state = await self._state(key)
        if self._seeder is None:
            return state.next_expected
        on_chain = int(await self._seeder(*key))
        async with state.condition:
            if on_chain != state.next_expected:
                logger.warning(
                    f"Resync moved nonce for {key.signer} on {key.verifying_contract} "
                    f"from {state.next_expected} to {on_chain}"
                )
            state.next_expected = state.next_dispatch = on_chain
            state.condition.notify_all()
        return on_chain

    @asynccontextmanager
    async def dispatch_turn(self, key: NonceKey, nonce: int) -> AsyncIterator[None]:
        """
        Hold the submission turn for ``nonce``.

        Waits until every lower nonce for ``key`` has released its turn. The
        turn is released on exit whether or not the dispatch succeeded.
        """
        state = await self._state(key)
        async with state.condition:
            try:
                await asyncio.wait_for(
                    state.condition.wait_for(lambda: state.next_dispatch >= nonce),
                    timeout=self._dispatch_timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    f"Dispatch turn for nonce {nonce} of {key.signer} waited {self._dispatch_timeout}s "
                    f"for nonce {state.next_dispatch}; proceeding"
                )
        try:
            yield
        finally:
            async with state.condition:
                state.next_dispatch = max(state.next_dispatch, nonce + 1)
                state.condition.notify_all()
