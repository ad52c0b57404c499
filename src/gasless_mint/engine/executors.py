"""
Event chain execution engine.

Provides workflow orchestration on top of EventBus, processing events
recursively until no handler returns a further event.
"""

import asyncio
from typing import AsyncGenerator, Union

from .events import BaseEvent, EventBus, Dependencies


class _ChainFailure:
    """Queue item carrying an exception raised inside the producer."""

    def __init__(self, error: BaseException) -> None:
        self.error = error


_DONE = object()


class EventChain:
    """Executes event-driven workflows by chaining event handler results.

    Events are yielded to the consumer as soon as they are produced. An
    exception raised by a handler is re-raised from ``execute``; closing or
    cancelling the consumer cancels the remaining handlers.
    """

    def __init__(
        self,
        event_bus: EventBus,
        deps: Dependencies,
    ) -> None:
        """
        Initialize event chain executor.

        Args:
            event_bus: The event bus to dispatch events through.
            deps: Dependencies container to pass to handlers.
        """
        self.event_bus = event_bus
        self.deps = deps

    async def execute(self, initial_event: BaseEvent) -> AsyncGenerator[BaseEvent, None]:
        """
        Execute event chain starting from initial event.

        Returns:
            Yields events encountered during chain execution.

        Note:
            Use with ``contextlib.aclosing`` when the consumer may stop early,
            so the producer task is cancelled deterministically.
        """
        events_queue: asyncio.Queue[Union[BaseEvent, _ChainFailure, object]] = asyncio.Queue()

        async def producer():
            try:
                async for event in self._process_event(initial_event):
                    await events_queue.put(event)
            except Exception as e:
                await events_queue.put(_ChainFailure(e))
            else:
                await events_queue.put(_DONE)

        producer_task = asyncio.create_task(producer())

        try:
            while True:
                item = await events_queue.get()
                if item is _DONE:
                    break
                if isinstance(item, _ChainFailure):
                    raise item.error
                yield item
        finally:
            if not producer_task.done():
                producer_task.cancel()
                await asyncio.gather(producer_task, return_exceptions=True)

    async def _process_event(self, event: BaseEvent) -> AsyncGenerator[BaseEvent, None]:
        """
        Process single event and recursively handle results.

        Args:
            event: The event to process.

        Yields:
            Events from the chain.
        """
        async for result in self.event_bus.dispatch(event, self.deps):
            if result is None:
                continue
            if isinstance(result, BaseEvent):
                yield result
                async for e in self._process_event(result):
                    yield e
            else:
                raise TypeError(f"Handler returned unsupported type: {type(result).__name__}")
