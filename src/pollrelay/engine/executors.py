"""
Event chain execution engine.

Drives a relay request through the EventBus: every event a handler returns
is dispatched in turn until the chain runs dry or a BreakEvent is produced.
"""

import asyncio
from typing import AsyncGenerator, Optional, Tuple, Type

from .events import BaseEvent, BreakEvent, EventBus, Dependencies

# Marks the end of the stream on the hand-off queue
_DONE = object()


class EventChain:
    """Runs one request's event chain.

    The chain is walked by a background task that feeds a queue, so a
    caller that stops reading early (for example once the HTTP response is
    known) does not cancel handlers that are still running.
    """

    def __init__(self, event_bus: EventBus, deps: Dependencies) -> None:
        self.event_bus = event_bus
        self.deps = deps
        self.walker: Optional[asyncio.Task] = None

    async def execute(self, initial_event: BaseEvent) -> AsyncGenerator[BaseEvent, None]:
        """
        Yield every event produced from ``initial_event`` in the order the
        walker emits them.

        Raises:
            TypeError: A handler returned something that is not an event.
            Exception: Whatever a handler raised, once the stream is drained.
        """
        handoff: asyncio.Queue = asyncio.Queue()

        async def walk() -> None:
            try:
                async for produced in self._follow(initial_event):
                    handoff.put_nowait(produced)
            finally:
                handoff.put_nowait(_DONE)

        self.walker = asyncio.create_task(walk())

        item = await handoff.get()
        while item is not _DONE:
            yield item
            item = await handoff.get()

        # surfaces a handler failure
        await self.walker

    async def first_of(
        self,
        initial_event: BaseEvent,
        outcome_types: Tuple[Type[BaseEvent], ...],
    ) -> Optional[BaseEvent]:
        """Return the first produced event of one of ``outcome_types``.

        The rest of the chain keeps running in the background. Returns None
        when the chain finishes without producing such an event.
        """
        async for produced in self.execute(initial_event):
            if isinstance(produced, outcome_types):
                return produced
        return None

    async def _follow(self, event: BaseEvent) -> AsyncGenerator[BaseEvent, None]:
        # depth-first: a follow-up's own descendants come before its siblings
        if isinstance(event, BreakEvent):
            return

        async for follow_up in self.event_bus.dispatch(event, self.deps):
            if follow_up is None:
                continue
            if not isinstance(follow_up, BaseEvent):
                raise TypeError(
                    f"{type(event).__name__} handler returned {type(follow_up).__name__}, expected an event"
                )
            yield follow_up
            async for descendant in self._follow(follow_up):
                yield descendant
