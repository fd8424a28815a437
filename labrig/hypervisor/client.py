"""Client for a node's hypervisor backend control API.

Each backend serves HTTP on its node's loopback control port:

    GET  /instances/{name}/uuid    -> "<uuid>"
    GET  /instances/{id}           -> instance description
    PUT  /instances/{id}/state     <- "Run" | "Stop" | "Reboot"
    WS   /instances/{id}/serial       serial console byte stream

Any transport, HTTP or decoding failure is raised as BackendError.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator

import httpx
import websockets
from websockets.exceptions import WebSocketException

from labrig.config import settings
from labrig.errors import BackendError
from labrig.store import TopologyStore

logger = logging.getLogger(__name__)


class InstanceState(str, Enum):
    """Requestable instance states."""
    RUN = "Run"
    STOP = "Stop"
    REBOOT = "Reboot"


class HypervisorClient:
    """Async control client bound to one backend address."""

    def __init__(
        self,
        port: int,
        host: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.host = host or settings.backend_host
        self.port = port
        self.timeout = timeout if timeout is not None else settings.rpc_timeout
        # Injected transport lets tests use httpx.MockTransport
        self._transport = transport

    @classmethod
    def for_node(cls, store: TopologyStore, name: str) -> "HypervisorClient":
        """Client for a node, using its persisted control port."""
        return cls(port=store.read_port(name))

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _request(self, operation: str, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
                response.raise_for_status()
                return response
        except httpx.HTTPStatusError as e:
            detail = e.response.text.strip() or e.response.reason_phrase
            raise BackendError(operation, f"HTTP {e.response.status_code}: {detail}") from e
        except httpx.HTTPError as e:
            raise BackendError(operation, f"{type(e).__name__}: {e} ({self.base_url})") from e

    async def resolve_instance(self, name: str) -> uuid.UUID:
        """Map a node name to the backend's instance UUID."""
        operation = f"resolve instance {name}"
        response = await self._request(operation, "GET", f"/instances/{name}/uuid")
        try:
            return uuid.UUID(str(response.json()))
        except ValueError as e:
            raise BackendError(operation, f"malformed uuid response: {response.text!r}") from e

    async def get_instance(self, instance: uuid.UUID) -> dict[str, Any]:
        """Backend's description of an instance (includes its state)."""
        operation = f"get instance {instance}"
        response = await self._request(operation, "GET", f"/instances/{instance}")
        try:
            payload = response.json()
        except ValueError as e:
            raise BackendError(operation, f"malformed response: {response.text!r}") from e
        if not isinstance(payload, dict):
            raise BackendError(operation, f"unexpected response: {payload!r}")
        return payload.get("instance", payload)

    async def request_state(self, instance: uuid.UUID, state: InstanceState) -> None:
        """Ask the backend to move an instance to a new state."""
        await self._request(
            f"request {state.value} for {instance}",
            "PUT",
            f"/instances/{instance}/state",
            json=state.value,
        )
        logger.info(f"Requested {state.value} for instance {instance}")

    def console_url(self, instance: uuid.UUID) -> str:
        return f"ws://{self.host}:{self.port}/instances/{instance}/serial"

    @asynccontextmanager
    async def open_console_session(self, instance: uuid.UUID) -> AsyncIterator[Any]:
        """Open the instance's serial console websocket.

        Yields a connection with ``send(bytes)`` and ``recv()``; the
        connection is closed when the context exits.
        """
        url = self.console_url(instance)
        try:
            connection = await websockets.connect(url, max_size=None)
        except (OSError, WebSocketException) as e:
            raise BackendError(f"open console for {instance}", f"{type(e).__name__}: {e}") from e
        logger.debug(f"Console connected: {url}")
        try:
            yield connection
        finally:
            await connection.close()
