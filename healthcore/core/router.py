"""
Message router.

The only component that talks to the bus. Inbound messages on
``{bridge}/devices/...`` are parsed, validated against the command's
payload model and dispatched to exactly one handler. Handler failures are
logged and, where the command has a reply topic, answered with
``{"status": "error", "error": ...}``; they never stop the router loop.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple, Type

from pydantic import ValidationError

from .bus import BusMessage, MessageBus
from .errors import BridgeError
from .payloads import Command

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[None]]


# ============================================================================
# Topics
# ============================================================================

class Topics:
    """Outbound topics consumed by the server."""
    DISCOVER = "server/devices/discover"
    CONNECT = "server/devices/connect"
    DISCONNECT = "server/devices/disconnect"
    CREATE = "server/devices/create"
    REMOVE = "server/devices/remove"
    UPDATE = "server/devices/update"
    VALUES = "server/devices/values/get"
    LIST = "server/devices/list"
    REFRESH = "server/devices/refresh"
    SCAN_STATUS = "server/devices/scan/status"
    BRIDGE_STATUS = "server/bridge/status"


@dataclass
class Route:
    command: str
    model: Type[Command]
    handler: Handler
    reply_topic: Optional[str] = None


async def gather_batch(operations: Dict[str, Awaitable[Any]]) -> Tuple[Dict[str, Any], Dict[str, BaseException]]:
    """
    Run one operation per property concurrently.

    Returns the results of the operations that succeeded and the errors of
    those that failed; a failure never cancels its siblings.
    """
    names = list(operations)
    results = await asyncio.gather(*operations.values(), return_exceptions=True)
    succeeded: Dict[str, Any] = {}
    failed: Dict[str, BaseException] = {}
    for name, result in zip(names, results):
        if isinstance(result, asyncio.CancelledError):
            raise result
        if isinstance(result, BaseException):
            failed[name] = result
        else:
            succeeded[name] = result
    return succeeded, failed


class MessageRouter:
    """Dispatches bus commands for one bridge and publishes its events."""

    def __init__(self, bridge: str, bus: MessageBus):
        self.bridge = bridge
        self.bus = bus
        self._routes: Dict[str, Route] = {}
        self._tasks: Set[asyncio.Task] = set()

    @property
    def subscription(self) -> str:
        return f"{self.bridge}/devices/#"

    @property
    def routes(self) -> Dict[str, Route]:
        return dict(self._routes)

    def add_route(self, command: str, model: Type[Command], handler: Handler, reply_topic: Optional[str] = None) -> None:
        topic = f"{self.bridge}/{command}"
        if topic in self._routes:
            raise ValueError(f"Route for {topic} already registered")
        self._routes[topic] = Route(command, model, handler, reply_topic)

    # ========================================================================
    # Outbound
    # ========================================================================

    async def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        message = {"bridge": self.bridge, **{k: v for k, v in payload.items() if v is not None}}
        try:
            await self.bus.publish(topic, message)
        except BridgeError as e:
            logger.error(f"Failed to publish to {topic}: {e.message}")

    # ========================================================================
    # Inbound
    # ========================================================================

    def parse(self, message: BusMessage) -> Optional[Tuple[Route, Command]]:
        """Validate a message; protocol faults are logged and yield None."""
        route = self._routes.get(message.topic)
        if route is None:
            logger.warning(f"Ignoring message on unhandled topic {message.topic}")
            return None

        try:
            data = json.loads(message.payload.decode("utf-8")) if message.payload else {}
        except (UnicodeDecodeError, ValueError) as e:
            logger.warning(f"Dropping malformed message on {message.topic}: {e}")
            return None
        if not isinstance(data, dict):
            logger.warning(f"Dropping message on {message.topic}: payload is not an object")
            return None

        try:
            command = route.model.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Dropping invalid {route.command} command: {e.errors(include_url=False)}")
            return None
        return route, command

    async def dispatch(self, message: BusMessage) -> None:
        parsed = self.parse(message)
        if parsed is None:
            return
        route, command = parsed
        logger.debug(f"Dispatching {route.command}: {command}")

        try:
            await route.handler(command)
        except BridgeError as e:
            logger.warning(f"{route.command} failed: {e.message}")
            if route.reply_topic:
                await self.publish(route.reply_topic, {**command.reply_fields(), **e.to_reply()})
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"Unexpected error handling {route.command}")

    def spawn(self, message: BusMessage) -> asyncio.Task:
        task = asyncio.create_task(self.dispatch(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def run(self) -> None:
        """Subscribe and dispatch until the bus iterator ends or the task is cancelled."""
        await self.bus.subscribe(self.subscription)
        logger.info(f"Router for {self.bridge} listening on {self.subscription}")
        async for message in self.bus.messages():
            self.spawn(message)

    async def stop(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
