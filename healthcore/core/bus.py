"""
Message bus client.

MqttBus wraps an aiomqtt client: JSON payloads out, raw messages in, and
automatic reconnection with resubscription when the broker goes away.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from contextlib import AsyncExitStack
from dataclasses import dataclass
from typing import Any, AsyncIterator, List, Optional

import aiomqtt

from .errors import TransportError

logger = logging.getLogger(__name__)


@dataclass
class BusMessage:
    topic: str
    payload: bytes


class MessageBus(ABC):
    """Publish/subscribe bus used by the message router."""

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    async def publish(self, topic: str, payload: dict) -> None:
        ...

    @abstractmethod
    async def subscribe(self, topic: str) -> None:
        ...

    @abstractmethod
    def messages(self) -> AsyncIterator[BusMessage]:
        ...


def _payload_bytes(payload: Any) -> bytes:
    if payload is None:
        return b""
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return str(payload).encode("utf-8")


class MqttBus(MessageBus):
    """MQTT bus on aiomqtt."""

    def __init__(
        self,
        host: str,
        port: int = 1883,
        username: Optional[str] = None,
        password: Optional[str] = None,
        client_id: Optional[str] = None,
        reconnect_interval: float = 5.0,
        max_reconnect_attempts: int = 5,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.client_id = client_id
        self.reconnect_interval = reconnect_interval
        self.max_reconnect_attempts = max_reconnect_attempts

        self._client: Optional[aiomqtt.Client] = None
        self._stack: Optional[AsyncExitStack] = None
        self._topics: List[str] = []
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        self._closing = False
        attempt = 0
        while True:
            stack = AsyncExitStack()
            try:
                client = aiomqtt.Client(
                    hostname=self.host,
                    port=self.port,
                    username=self.username,
                    password=self.password,
                    identifier=self.client_id,
                )
                self._client = await stack.enter_async_context(client)
                self._stack = stack
                logger.info(f"Connected to MQTT broker {self.host}:{self.port}")
                break
            except aiomqtt.MqttError as e:
                await stack.aclose()
                attempt += 1
                logger.error(f"MQTT connection attempt {attempt} failed: {e}")
                if attempt >= self.max_reconnect_attempts:
                    raise TransportError(
                        f"Failed to connect to MQTT broker after {attempt} attempts"
                    ) from e
                await asyncio.sleep(self.reconnect_interval)

        for topic in self._topics:
            await self._client.subscribe(topic)
            logger.debug(f"Subscribed to {topic}")

    async def close(self) -> None:
        self._closing = True
        stack, self._stack = self._stack, None
        self._client = None
        if stack is not None:
            try:
                await stack.aclose()
            except aiomqtt.MqttError as e:
                logger.debug(f"Error closing MQTT client: {e}")
        logger.info("Disconnected from MQTT broker")

    async def publish(self, topic: str, payload: dict) -> None:
        if self._client is None:
            raise TransportError("Not connected to MQTT broker")
        try:
            await self._client.publish(topic, payload=json.dumps(payload))
        except aiomqtt.MqttError as e:
            raise TransportError(f"Publish to {topic} failed: {e}") from e
        logger.debug(f"Published to {topic}: {payload}")

    async def subscribe(self, topic: str) -> None:
        if topic not in self._topics:
            self._topics.append(topic)
        if self._client is not None:
            await self._client.subscribe(topic)
            logger.debug(f"Subscribed to {topic}")

    async def messages(self) -> AsyncIterator[BusMessage]:
        while not self._closing:
            if self._client is None:
                await self.connect()
            try:
                async for message in self._client.messages:
                    yield BusMessage(message.topic.value, _payload_bytes(message.payload))
            except aiomqtt.MqttError as e:
                if self._closing:
                    break
                logger.error(f"Lost connection to MQTT broker: {e}")
                stack, self._stack = self._stack, None
                self._client = None
                if stack is not None:
                    try:
                        await stack.aclose()
                    except aiomqtt.MqttError as close_error:
                        logger.debug(f"Error closing MQTT client: {close_error}")
                await asyncio.sleep(self.reconnect_interval)
