"""
Gasless Mint Server - Event-driven FastAPI wrapper.

Exposes the mint orchestrator over HTTP and maps the error taxonomy onto
status codes.
"""

import logging
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from ..config import MintSettings
from ..engine.events import BaseEvent, EventBus
from ..engine.exceptions import InvalidRequest, MintError
from ..engine.orchestrator import MintOrchestrator
from ..schemas.https import ErrorResponse, MintHttpRequest

logger = logging.getLogger(__name__)


class MintServer(FastAPI):
    """FastAPI server for gasless NFT mints."""

    def __init__(
        self,
        orchestrator: MintOrchestrator,
        mint_endpoint: str = "/mint",
        **fastapi_kwargs
    ):
        """Initialize mint server.

        Args:
            orchestrator: Fully wired mint orchestrator
            mint_endpoint: Mint endpoint path (default: /mint)
            **fastapi_kwargs: FastAPI arguments (title, version, etc.)
        """
        self.orchestrator = orchestrator
        self.event_bus: EventBus = orchestrator.event_bus

        super().__init__(**fastapi_kwargs)

        self.mint_endpoint = mint_endpoint
        self._setup_mint_endpoints(mint_endpoint)

    @classmethod
    def from_settings(cls, settings: Optional[MintSettings] = None, **fastapi_kwargs) -> "MintServer":
        """Build a server with default components from ``MintSettings.from_env()``."""
        settings = settings or MintSettings.from_env()
        return cls(MintOrchestrator.from_settings(settings), **fastapi_kwargs)

    def subscribe(self, event_class: type[BaseEvent], handler: Callable) -> None:
        """Register event handler.

        Args:
            event_class: Event type to handle
            handler: Async function(event, deps) -> Optional[BaseEvent]
        """
        self.event_bus.subscribe(event_class, handler)

    def add_hook(self, event_class: type[BaseEvent], hook: Callable) -> None:
        """Register event hook for side effects.

        Args:
            event_class: Event type to hook into
            hook: Async function(event, deps) -> None

        Example:
            ```python
            async def log_event(event, deps):
                logger.info("Event: %r", event)

            app.add_hook(EnvelopeSubmittedEvent, log_event)
            ```
        """
        self.event_bus.hook(event_class, hook)

    def hook(self, event_class: type[BaseEvent]) -> Callable:
        """Decorator for registering event hooks.

        Args:
            event_class: Event type to hook into

        Example:
            @app.hook(MintResultEvent)
            async def on_result(event, deps):
                await notify_owner(event.record)
        """
        def decorator(hook_func: Callable) -> Callable:
            self.event_bus.hook(event_class, hook_func)
            return hook_func
        return decorator

    @staticmethod
    def _error_response(error: MintError) -> JSONResponse:
        if error.status_code >= 500:
            logger.error("Mint request failed: %s: %s", error.code, error.message)
        else:
            logger.info("Mint request rejected: %s: %s", error.code, error.message)
        return JSONResponse(
            status_code=error.status_code,
            content=ErrorResponse(code=error.code, message=error.message).model_dump(mode="json"),
        )

    def _setup_mint_endpoints(self, path: str = "/mint") -> None:
        """Setup mint submission and status endpoints.

        Args:
            path: Endpoint path (default: /mint)
        """
        @self.post(path)
        async def mint(request: Request):
            """Accept a mint request and run it through the pipeline."""
            try:
                body = await request.json()
                mint_request = MintHttpRequest.model_validate(body).to_mint_request()
            except (ValueError, ValidationError) as e:
                return self._error_response(InvalidRequest(f"Malformed mint request: {e}"))

            try:
                response = await self.orchestrator.mint(mint_request)
            except MintError as e:
                return self._error_response(e)

            return JSONResponse(
                status_code=202,
                content=response.model_dump(mode="json", by_alias=True),
            )

        @self.get(path + "/{idempotency_key}")
        async def mint_status(idempotency_key: str):
            """Current status of a previously submitted mint."""
            try:
                response = await self.orchestrator.status(idempotency_key)
            except MintError as e:
                return self._error_response(e)

            return JSONResponse(
                status_code=200,
                content=response.model_dump(mode="json", by_alias=True),
            )
