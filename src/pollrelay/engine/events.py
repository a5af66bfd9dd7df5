"""
Typed events for the relay request pipeline.

Events carry their own data, handlers return next events, and dependencies
are injected separately from business data. A gasless request flows as:

    VoteRequestEvent / ClaimRequestEvent
        -> VerifySuccessEvent | VerifyFailedEvent
    VerifySuccessEvent
        -> RelayResultEvent | RelayFailedEvent
"""

import asyncio
import inspect
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Awaitable, Callable, DefaultDict, Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from ..adapters.evm.adapter import RelayHub
from ..adapters.evm.schemas import RelayResult, VerifiedRequest

# ==================== Base Event ====================

class BaseEvent(ABC):
    """Anything that can travel through the EventBus."""

    @abstractmethod
    def __repr__(self) -> str:
        """String representation of the event."""
        pass


class EventModel(BaseModel, BaseEvent):
    """Pydantic base for concrete events; payloads may hold adapter models."""

    model_config = ConfigDict(arbitrary_types_allowed=True)


# ==================== Trigger Events (External) ====================

class VoteRequestEvent(EventModel):
    """External trigger: signed gasless vote."""
    poll: str
    signer: str
    option: int
    signature: str
    nonce: Optional[int] = None
    already_voted_hint: Optional[bool] = None

    def __repr__(self) -> str:
        return f"VoteRequestEvent(poll={self.poll}, signer={self.signer}, option={self.option})"


class ClaimRequestEvent(EventModel):
    """External trigger: signed gasless reward claim."""
    poll: str
    signer: str
    signature: str
    nonce: Optional[int] = None

    def __repr__(self) -> str:
        return f"ClaimRequestEvent(poll={self.poll}, signer={self.signer})"


# ==================== Result Events ====================

class VerifySuccessEvent(EventModel):
    """Result: signature and nonce accepted."""
    verified: VerifiedRequest

    def __repr__(self) -> str:
        request = self.verified.request
        return f"VerifySuccessEvent(action={request.action_type}, signer={request.signer}, nonce={request.nonce})"


class VerifyFailedEvent(EventModel):
    """Result: request rejected before anything was sent to the chain."""
    error: Dict[str, Any]
    status_code: int = 400

    def __repr__(self) -> str:
        return f"VerifyFailedEvent(error_class={self.error.get('error_class')})"


class RelayResultEvent(EventModel):
    """Result: the relayed transaction reached a definite or pending outcome."""
    result: RelayResult
    verified: VerifiedRequest

    def __repr__(self) -> str:
        return f"RelayResultEvent(status={self.result.status.value}, tx={self.result.tx_hash})"


class RelayFailedEvent(EventModel):
    """Result: relay aborted before submission (deployment, configuration, RPC)."""
    error: Dict[str, Any]
    status_code: int = 500

    def __repr__(self) -> str:
        return f"RelayFailedEvent(error_class={self.error.get('error_class')})"


class BreakEvent(EventModel):
    """Stops the chain: nothing is dispatched for it."""
    break_reason: str = ""

    def __repr__(self) -> str:
        return "BreakEvent()"


# ==================== Dependencies Container ====================

@dataclass(frozen=True)
class Dependencies:
    """Services handed to every handler alongside the event."""
    hub: Optional[RelayHub] = None


# ==================== Event Bus ====================

EventHandlerFunc = Callable[[BaseEvent, Dependencies], Awaitable[Optional[BaseEvent]]]
EventHookFunc = Callable[[BaseEvent, Dependencies], Awaitable[None]]


def _require_coroutine(func: Callable, role: str) -> None:
    if not inspect.iscoroutinefunction(func):
        raise TypeError(f"Event {role} must be an async function, got {type(func).__name__}")


class EventBus:
    """Routes relay events to hooks and handlers registered per event class.

    Hooks are observers (logging, audit, test listeners): they all finish
    before any handler starts and their return values are ignored. Handlers
    for the same class run concurrently and each may return a follow-up
    event.
    """

    def __init__(self) -> None:
        self._handlers: DefaultDict[type, List[EventHandlerFunc]] = defaultdict(list)
        self._hooks: DefaultDict[type, List[EventHookFunc]] = defaultdict(list)

    def subscribe(self, event_class: type, handler: EventHandlerFunc) -> None:
        """
        Add a handler for ``event_class``.

        Raises:
            TypeError: If handler is not an async function.
        """
        _require_coroutine(handler, "handler")
        self._handlers[event_class].append(handler)

    def hook(self, event_class: type, hook_func: EventHookFunc) -> None:
        _require_coroutine(hook_func, "hook")
        self._hooks[event_class].append(hook_func)

    async def dispatch(self, event: BaseEvent, deps: Dependencies) -> AsyncGenerator[Optional[BaseEvent], None]:
        """Run the hooks, then yield each handler's return value as it finishes.

        Lookup is by exact class. Handler tasks are already scheduled when
        the first value is yielded, so they run to completion even if the
        caller stops iterating.
        """
        event_class = type(event)
        observers = self._hooks.get(event_class)
        if observers:
            await asyncio.gather(*(observer(event, deps) for observer in observers))

        pending = [asyncio.ensure_future(handler(event, deps)) for handler in self._handlers.get(event_class, ())]
        for finished in asyncio.as_completed(pending):
            yield await finished
