"""Asynchronous command/notification channel between execution contexts.

Each registered endpoint is its own context: it drains an inbox on a single
task and handles one envelope at a time. Contexts never share state; the only
way in is :meth:`MessageBus.request` (bounded wait for a reply) or
:meth:`MessageBus.notify` (fire-and-forget, failures logged, never raised).
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol, Union

from infra.errors import SurrogateCommunicationError
from infra.logging import log_event

logger = logging.getLogger("speakflow.bus")


@dataclass(frozen=True)
class Envelope:
    type: str
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "payload": dict(self.payload)}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Envelope":
        if not isinstance(raw, dict) or not isinstance(raw.get("type"), str):
            raise ValueError("envelope must be an object with a string 'type'")
        payload = raw.get("payload") or {}
        if not isinstance(payload, dict):
            raise ValueError("envelope payload must be an object")
        return cls(type=raw["type"], payload=payload)


Response = dict[str, Any]
Handler = Callable[[Envelope], Union[Response, None, Awaitable[Union[Response, None]]]]


class CommandChannel(Protocol):
    """The fire-and-forget half of the bus, which is all the controller needs."""

    def notify(self, target: str, envelope: Envelope) -> bool: ...


@dataclass
class _Delivery:
    envelope: Envelope
    reply: asyncio.Future | None = None


class Endpoint:
    """One context's inbox and the task that serves it."""

    def __init__(self, name: str, handler: Handler, inbox_size: int) -> None:
        self.name = name
        self._handler = handler
        self._inbox: asyncio.Queue[_Delivery] = asyncio.Queue(maxsize=inbox_size)
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._serve(), name=f"endpoint:{self.name}")

    def deliver(self, delivery: _Delivery) -> None:
        if not self.running:
            raise SurrogateCommunicationError(f"endpoint '{self.name}' is not running")
        try:
            self._inbox.put_nowait(delivery)
        except asyncio.QueueFull as exc:
            raise SurrogateCommunicationError(f"endpoint '{self.name}' inbox is full") from exc

    async def close(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        while not self._inbox.empty():
            delivery = self._inbox.get_nowait()
            if delivery.reply is not None and not delivery.reply.done():
                delivery.reply.set_exception(SurrogateCommunicationError(f"endpoint '{self.name}' closed"))

    async def _serve(self) -> None:
        while True:
            delivery = await self._inbox.get()
            response = await self._dispatch(delivery.envelope)
            if delivery.reply is not None and not delivery.reply.done():
                delivery.reply.set_result(response)

    async def _dispatch(self, envelope: Envelope) -> Response:
        try:
            result = self._handler(envelope)
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            log_event(
                logger,
                logging.ERROR,
                "handler raised; converted to error response",
                event_type="handler_error",
                endpoint=self.name,
                message_type=envelope.type,
                error=str(exc),
            )
            return {"success": False, "error": str(exc)}
        return result if result is not None else {}


class MessageBus:
    def __init__(self, *, request_timeout_s: float = 1.0, inbox_size: int = 64) -> None:
        self.request_timeout_s = request_timeout_s
        self._inbox_size = inbox_size
        self._endpoints: dict[str, Endpoint] = {}

    def register(self, name: str, handler: Handler) -> Endpoint:
        """Register and start an endpoint. Must be called from the running loop."""
        existing = self._endpoints.get(name)
        if existing is not None and existing.running:
            raise ValueError(f"endpoint '{name}' is already registered")
        endpoint = Endpoint(name, handler, self._inbox_size)
        self._endpoints[name] = endpoint
        endpoint.start()
        return endpoint

    async def unregister(self, name: str) -> None:
        endpoint = self._endpoints.pop(name, None)
        if endpoint is not None:
            await endpoint.close()

    async def close(self) -> None:
        for name in list(self._endpoints):
            await self.unregister(name)

    def is_registered(self, name: str) -> bool:
        endpoint = self._endpoints.get(name)
        return endpoint is not None and endpoint.running

    async def request(self, target: str, envelope: Envelope, timeout_s: float | None = None) -> Response:
        """Send and wait for the reply. Raises :class:`SurrogateCommunicationError`."""
        endpoint = self._endpoints.get(target)
        if endpoint is None:
            raise SurrogateCommunicationError(f"no endpoint named '{target}'")
        reply: asyncio.Future = asyncio.get_running_loop().create_future()
        endpoint.deliver(_Delivery(envelope, reply))
        wait_s = self.request_timeout_s if timeout_s is None else timeout_s
        try:
            return await asyncio.wait_for(reply, wait_s)
        except asyncio.TimeoutError:
            raise SurrogateCommunicationError(
                f"'{envelope.type}' to '{target}' got no reply within {wait_s:.2f}s"
            ) from None

    def notify(self, target: str, envelope: Envelope) -> bool:
        """Best-effort delivery. Returns False (and logs) when it could not be queued."""
        endpoint = self._endpoints.get(target)
        try:
            if endpoint is None:
                raise SurrogateCommunicationError(f"no endpoint named '{target}'")
            endpoint.deliver(_Delivery(envelope))
        except SurrogateCommunicationError as exc:
            log_event(
                logger,
                logging.WARNING,
                "notification not delivered",
                event_type="notify_failed",
                target=target,
                message_type=envelope.type,
                error=str(exc),
            )
            return False
        return True
