"""
Event-driven mint pipeline with typed events and clear data flow.

Events carry their own data, handlers return next events, and dependencies
are injected separately from business data.
"""

import asyncio
import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Callable, Optional, Awaitable, AsyncGenerator

from pydantic import BaseModel, ConfigDict

from .exceptions import MintError
from ..adapters.evm.builders import MetaTransactionBuilder
from ..adapters.evm.signatures import EVMSigner
from ..clients.relay_client import RelayClient
from ..clients.tracker import StatusTracker
from ..config import MintSettings
from ..ledgers.nonces import NonceLedger
from ..ledgers.submissions import SubmissionLedger
from ..schemas.https import MintResponse
from ..schemas.mints import MintRequest, SubmissionRecord, TrackingResult

# ==================== Base Event ====================

class BaseEvent(ABC):
    """Base class for all events in the system."""

    @abstractmethod
    def __repr__(self) -> str:
        """String representation of the event."""
        pass


# ==================== Trigger Events (External) ====================

class MintReceivedEvent(BaseModel, BaseEvent):
    """External trigger: a mint request entered the pipeline."""
    request: MintRequest

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def __repr__(self) -> str:
        return f"MintReceivedEvent(key={self.request.idempotency_key}, count={self.request.count})"


# ==================== Stage Events ====================

class SubmissionOpenedEvent(BaseModel, BaseEvent):
    """Stage: a new PENDING record was created; build, sign and submit."""
    request: MintRequest
    record: SubmissionRecord

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def __repr__(self) -> str:
        return f"SubmissionOpenedEvent(key={self.record.idempotency_key})"


class ExistingSubmissionEvent(BaseModel, BaseEvent):
    """Stage: the idempotency key already has a record."""
    request: MintRequest
    record: SubmissionRecord

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def __repr__(self) -> str:
        return f"ExistingSubmissionEvent(key={self.record.idempotency_key}, status={self.record.status.value})"


class ResumeSubmissionEvent(BaseModel, BaseEvent):
    """Stage: a PENDING record from an earlier attempt; finish preparing it and submit."""
    request: MintRequest
    record: SubmissionRecord

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def __repr__(self) -> str:
        return f"ResumeSubmissionEvent(key={self.record.idempotency_key}, nonce={self.record.assigned_nonce})"


class EnvelopeSubmittedEvent(BaseModel, BaseEvent):
    """Stage: the relay holds the envelope; track it."""
    record: SubmissionRecord

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def __repr__(self) -> str:
        return f"EnvelopeSubmittedEvent(key={self.record.idempotency_key}, handle={self.record.tracking_handle})"


# ==================== Result Events ====================

class MintResultEvent(BaseModel, BaseEvent):
    """Result: current view of the submission (terminal or not)."""
    record: SubmissionRecord
    tracking: Optional[TrackingResult] = None

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def __repr__(self) -> str:
        status = self.tracking.status if self.tracking else self.record.status
        return f"MintResultEvent(key={self.record.idempotency_key}, status={status.value})"

    def to_response(self) -> MintResponse:
        return MintResponse.from_record(self.record, self.tracking)


class MintFailedEvent(BaseModel, BaseEvent):
    """Result: the pipeline stopped with a taxonomy error to surface to the caller."""
    idempotency_key: str
    error: MintError

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def __repr__(self) -> str:
        return f"MintFailedEvent(key={self.idempotency_key}, error={self.error.code})"


# ==================== Dependencies Container ====================

@dataclass(frozen=True)
class Dependencies:
    """Container for infrastructure dependencies (read-only)."""
    settings: MintSettings
    signer: EVMSigner
    builder: MetaTransactionBuilder
    nonce_ledger: NonceLedger
    submission_ledger: SubmissionLedger
    relay_client: RelayClient
    tracker: StatusTracker


# ==================== Event Bus ====================

EventHandlerFunc = Callable[[BaseEvent, Dependencies], Awaitable[Optional[BaseEvent]]]
EventHookFunc = Callable[[BaseEvent, Dependencies], Awaitable[None]]


class EventBus:
    """Event dispatcher for publishing and subscribing to events."""

    def __init__(self) -> None:
        """Initialize with empty subscribers and hooks."""
        self._subscribers: Dict[type, list[EventHandlerFunc]] = {}
        self._hooks: Dict[type, list[EventHookFunc]] = {}

    def subscribe(self, event_class: type[BaseEvent], handler: EventHandlerFunc) -> None:
        """
        Register an async handler for the given event class.
        Multiple handlers can be subscribed to the same event type and run in parallel.

        Args:
            event_class: The event class to subscribe to.
            handler: The async handler function to call when the event is published.

        Raises:
            TypeError: If handler is not a coroutine function.
        """
        if not inspect.iscoroutinefunction(handler):
            raise TypeError(f"Handler must be a coroutine function, got {type(handler).__name__}")

        self._subscribers.setdefault(event_class, []).append(handler)

    def hook(self, event_class: type[BaseEvent], hook_func: EventHookFunc) -> None:
        """
        Register a hook for the given event class.
        Hooks are executed before subscribers when the event is dispatched.

        Args:
            event_class: The event class to hook into.
            hook_func: The hook function to call when the event is published.
        """
        if not inspect.iscoroutinefunction(hook_func):
            raise TypeError(f"Hook must be a coroutine function, got {type(hook_func).__name__}")

        self._hooks.setdefault(event_class, []).append(hook_func)

    async def dispatch(self, event: BaseEvent, deps: Dependencies) -> AsyncGenerator[Optional[BaseEvent], None]:
        """
        Dispatch an event to all registered hooks and subscribers.
        Hooks run first (concurrently), then all subscribers run in parallel.

        Args:
            event: The event to dispatch.
            deps: Dependencies container with injected services.

        Yields:
            Results from all subscribers as they complete. Yields nothing if no subscribers are registered.
        """
        hooks = self._hooks.get(type(event), [])
        await asyncio.gather(*(hook(event, deps) for hook in hooks))

        handlers = self._subscribers.get(type(event), [])
        if not handlers:
            return

        tasks = [asyncio.ensure_future(handler(event, deps)) for handler in handlers]
        try:
            for next_done in asyncio.as_completed(tasks):
                yield await next_done
        finally:
            pending = [task for task in tasks if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
