"""
Async Invoker — fire-and-forget dispatch of long-running integrations.

The Integration rule type checkpoints state, invokes a function without
waiting for it, then polls session state for the worker to move
``IntegrationStatus`` from START/RUN to DONE or ERROR.

Backends:
  - rest: posts the payload to a function gateway that queues the work
  - mock: runs registered in-process coroutines as background tasks that
    write their results back to the state store, for development and tests
"""
from __future__ import annotations

import abc
import asyncio
import structlog
from typing import Any, Awaitable, Callable, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import InvokerConfig, get_settings
from database.store_base import BaseStateStore
from engine.errors import CollaboratorError

logger = structlog.get_logger()

# An in-process integration: receives the invoke payload, returns state updates
IntegrationFunction = Callable[[dict[str, Any]], Awaitable[Optional[dict[str, Any]]]]


class BaseAsyncInvoker(abc.ABC):

    @abc.abstractmethod
    async def invoke_async(self, function_ref: str, payload: dict[str, Any]) -> None:
        ...

    async def close(self):
        pass


class RESTAsyncInvoker(BaseAsyncInvoker):
    """
    Calls a function gateway:
      POST /functions/{function_ref}/invocations  (X-Invocation-Type: Event)
    A 2xx response means the work was accepted, not completed.
    """

    def __init__(self, config: InvokerConfig = None):
        self.config = config or get_settings().invoker
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {"X-Invocation-Type": "Event"}
            if self.config.api_key:
                headers["Authorization"] = f"Bearer {self.config.api_key}"
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=self.config.timeout_s,
            )
        return self.client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _post(self, function_ref: str, payload: dict[str, Any]) -> None:
        client = await self._get_client()
        response = await client.post(f"/functions/{function_ref}/invocations", json=payload)
        response.raise_for_status()

    async def invoke_async(self, function_ref: str, payload: dict[str, Any]) -> None:
        contact_id = payload.get("ContactId", "")
        try:
            await self._post(function_ref, payload)
        except httpx.HTTPError as e:
            logger.error("async_invoke_failed", function=function_ref, contact_id=contact_id, error=str(e))
            raise CollaboratorError(f"Failed to invoke {function_ref}: {e}", "invoker", contact_id) from e
        logger.info("async_invoke_accepted", function=function_ref, contact_id=contact_id)


class MockAsyncInvoker(BaseAsyncInvoker):
    """
    In-process invoker. Registered functions run as background tasks; the
    dict they return is written to the caller's session state together with
    ``IntegrationStatus`` (DONE unless the function sets it). A function that
    raises marks the integration ERROR with the exception text as
    ``IntegrationErrorCause``. Unregistered functions are recorded only, so
    the caller times out.
    """

    def __init__(self, store: Optional[BaseStateStore] = None):
        self.store = store
        self.invocations: list[tuple[str, dict[str, Any]]] = []
        self._functions: dict[str, tuple[IntegrationFunction, float]] = {}
        self._tasks: set[asyncio.Task] = set()

    def register(self, function_ref: str, fn: IntegrationFunction, delay_s: float = 0.0) -> None:
        self._functions[function_ref] = (fn, delay_s)

    async def invoke_async(self, function_ref: str, payload: dict[str, Any]) -> None:
        self.invocations.append((function_ref, payload))
        registered = self._functions.get(function_ref)
        if registered is None or self.store is None:
            logger.info("mock_invoke_recorded", function=function_ref, contact_id=payload.get("ContactId"))
            return
        fn, delay_s = registered
        task = asyncio.create_task(self._run(function_ref, fn, delay_s, payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, function_ref: str, fn: IntegrationFunction, delay_s: float, payload: dict[str, Any]) -> None:
        contact_id = payload["ContactId"]
        await self.store.update_keys(contact_id, {"IntegrationStatus": "RUN"})
        if delay_s > 0:
            await asyncio.sleep(delay_s)
        try:
            updates = dict(await fn(payload) or {})
            updates.setdefault("IntegrationStatus", "DONE")
        except Exception as e:
            logger.warning("mock_integration_failed", function=function_ref, contact_id=contact_id, error=str(e))
            updates = {"IntegrationStatus": "ERROR", "IntegrationErrorCause": str(e)}
        await self.store.update_keys(contact_id, updates)
        logger.info("mock_integration_finished", function=function_ref, contact_id=contact_id,
                    status=updates["IntegrationStatus"])

    async def drain(self) -> None:
        """Wait for outstanding background integrations (for testing)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def create_async_invoker(config: InvokerConfig = None, store: Optional[BaseStateStore] = None) -> BaseAsyncInvoker:
    """Factory function to create the configured async invoker."""
    config = config or get_settings().invoker
    if config.type == "rest" and config.base_url:
        return RESTAsyncInvoker(config)
    logger.warning("using_mock_invoker", reason="no invoker configured or base_url empty")
    return MockAsyncInvoker(store)
