"""
LoRa adapter (pyserial-asyncio).

Talks to a LoRa modem over a serial port with AT commands. The modem
prints every received packet as ``Data: (HEX:) 30 31 ...``; the decoded
text starts with the sender's 16 character device ID followed by its
positional payload. The link is receive-only: values can be read from the
last frame a device sent, never written.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Hashable, List, Optional, Tuple

import serial
import serial_asyncio

from ...core.adapter import AdapterEvent, AdapterEventType, TransportAdapter
from ...core.errors import DeviceNotConnectedError, PropertyError, TransportError
from ...core.models import Device, Sighting
from .converters import DEVICE_ID_LENGTH, FieldSlice

logger = logging.getLogger(__name__)

FRAME_PREFIX = "Data: (HEX:) "
LINE_TERMINATOR = b"\r\n"
DEFAULT_COMMAND_PAUSE = 0.3
DEFAULT_COMMAND_TIMEOUT = 2.0


@dataclass
class ModemSettings:
    """Radio parameters sent to the modem after the port opens."""
    frequency: int = 868500000
    spreading_factor: int = 7
    bandwidth: int = 0
    power: int = 22
    crc: int = 1
    rx_mode: int = 0

    def commands(self) -> List[str]:
        return [
            f"AT+FRE={self.frequency}",
            f"AT+SF={self.spreading_factor}",
            f"AT+BW={self.bandwidth}",
            f"AT+POWER={self.power}",
            f"AT+CRC={self.crc}",
            f"AT+RXMOD={self.rx_mode}",
            "ATZ",
        ]


def parse_frame(line: str) -> Optional[Tuple[str, str]]:
    """Split a modem line into (device ID, payload); None for anything that is not a packet."""
    if not line.startswith(FRAME_PREFIX):
        return None
    hex_data = line[len(FRAME_PREFIX):].replace(" ", "").strip()
    try:
        text = bytes.fromhex(hex_data).decode("utf-8")
    except ValueError:
        logger.warning(f"Undecodable LoRa frame: {line!r}")
        return None
    if len(text) < DEVICE_ID_LENGTH:
        logger.debug(f"LoRa frame too short: {text!r}")
        return None
    return text[:DEVICE_ID_LENGTH], text[DEVICE_ID_LENGTH:]


@dataclass
class LoRaLink:
    """Handle of a registered LoRa sender and the last payload it sent."""
    device_id: str
    addresses: Tuple[FieldSlice, ...] = ()
    last_payload: Optional[str] = None


class LoRaAdapter(TransportAdapter):
    """Receive-only LoRa modem on a serial port."""

    registry_implies_connection = True

    def __init__(
        self,
        bridge: str = "lora",
        path: str = "/dev/ttyUSB0",
        baudrate: int = 115200,
        modem: Optional[ModemSettings] = None,
        command_pause: float = DEFAULT_COMMAND_PAUSE,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
        **kwargs,
    ):
        super().__init__(bridge, **kwargs)
        self.path = path
        self.baudrate = baudrate
        self.modem = modem or ModemSettings()
        self.command_pause = command_pause
        self.command_timeout = command_timeout

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._read_task: Optional[asyncio.Task] = None
        self._links: Dict[str, LoRaLink] = {}
        self._sightings: Optional["asyncio.Queue[Sighting]"] = None

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self) -> None:
        logger.info(f"Opening LoRa modem on {self.path} at {self.baudrate} baud")
        try:
            self._reader, self._writer = await serial_asyncio.open_serial_connection(
                url=self.path, baudrate=self.baudrate
            )
        except (serial.SerialException, OSError) as e:
            raise TransportError(f"Cannot open serial port {self.path}: {e}")

        await self.configure()
        self._read_task = asyncio.create_task(self._read_loop())
        self.go_online()

    async def configure(self) -> None:
        """Send the radio parameters; a command that hangs is skipped."""
        for command in self.modem.commands():
            try:
                await self.send(command)
            except asyncio.TimeoutError:
                logger.warning(f"LoRa modem did not accept {command} in time")
            await asyncio.sleep(self.command_pause)

    async def send(self, command: str) -> None:
        if self._writer is None:
            raise TransportError("Serial port is not open")
        logger.debug(f"LoRa modem <- {command}")
        self._writer.write(command.encode("ascii") + LINE_TERMINATOR)
        await asyncio.wait_for(self._writer.drain(), timeout=self.command_timeout)

    async def stop(self) -> None:
        if self._read_task:
            self._read_task.cancel()
            try:
                await self._read_task
            except asyncio.CancelledError:
                pass
            self._read_task = None

        writer, self._writer = self._writer, None
        self._reader = None
        self._links.clear()
        self.online = False
        if writer is not None:
            writer.close()
            try:
                await writer.wait_closed()
            except (serial.SerialException, OSError) as e:
                logger.debug(f"Error closing serial port: {e}")
        logger.info("LoRa modem closed")

    async def _read_loop(self) -> None:
        try:
            while True:
                try:
                    line = await self._reader.readuntil(LINE_TERMINATOR)
                except asyncio.LimitOverrunError as e:
                    # Line noise without a terminator; drop it and resync on the next CRLF
                    discarded = await self._reader.read(e.consumed)
                    logger.warning(f"Discarding {len(discarded)} bytes of oversized LoRa modem output")
                    continue
                self.handle_line(line.decode("utf-8", errors="replace").rstrip("\r\n"))
        except asyncio.IncompleteReadError:
            self._closed("serial port closed")
        except (serial.SerialException, OSError) as e:
            self._closed(f"serial port error: {e}")

    def _closed(self, reason: str) -> None:
        logger.error(f"LoRa modem lost: {reason}")
        self._links.clear()
        self.fault(reason)

    # ========================================================================
    # Frames
    # ========================================================================

    def handle_line(self, line: str) -> None:
        if not line:
            return
        frame = parse_frame(line)
        if frame is None:
            logger.debug(f"LoRa modem -> {line}")
            return
        device_id, payload = frame

        link = self._links.get(device_id)
        if link is not None:
            link.last_payload = payload
            values = {a: a.take(payload) for a in link.addresses if a.take(payload)}
            self.emit(AdapterEvent(AdapterEventType.VALUES, device_id, values=values))
        elif self._sightings is not None:
            self._sightings.put_nowait(Sighting(device_id=device_id, connectable=True))
        else:
            logger.info(f"Frame from unregistered device {device_id}")

    # ========================================================================
    # Discovery
    # ========================================================================

    async def discover(self, timeout: float) -> AsyncIterator[Sighting]:
        """Report unknown senders heard during ``timeout`` seconds."""
        if self._reader is None:
            raise TransportError("Serial port is not open")
        self._sightings = asyncio.Queue()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    sighting = await asyncio.wait_for(self._sightings.get(), timeout=remaining)
                except asyncio.TimeoutError:
                    break
                yield sighting
        finally:
            self._sightings = None

    async def stop_discovery(self) -> None:
        self._sightings = None

    # ========================================================================
    # Devices
    # ========================================================================

    async def connect(self, device: Device) -> LoRaLink:
        addresses = tuple(a for a, _ in device.converter.addresses()) if device.converter else ()
        link = LoRaLink(device.device_id, addresses)
        self._links[device.device_id] = link
        return link

    async def read(self, device: Device, address: Hashable) -> Any:
        link = self._links.get(device.device_id)
        if link is None:
            raise DeviceNotConnectedError(device.device_id)
        if link.last_payload is None:
            raise PropertyError(str(address), f"no frame received from {device.device_id} yet")
        value = FieldSlice(*address).take(link.last_payload)
        if not value:
            raise PropertyError(str(address), "payload too short")
        return value

    async def write(self, device: Device, address: Hashable, raw: Any) -> None:
        raise PropertyError(str(address), "LoRa link is receive-only")

    async def disconnect(self, device: Device) -> None:
        self._links.pop(device.device_id, None)
