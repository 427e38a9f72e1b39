"""Discovery service for Yeelight devices."""

from __future__ import annotations

import asyncio
import contextlib
import socket
import struct
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple

from .config import Config
from .logging import get_logger
from .metrics import record_discovery_error, record_discovery_response, record_discovery_search
from .models import DeviceRecord, Endpoint, device_identity
from .registry import SessionRegistry

SEARCH_TARGET = "wifi_bulb"

# Standard SSDP headers that say nothing about device features.
_TRANSPORT_HEADERS = {"location", "cache-control", "date", "ext", "server", "host", "nts", "nt", "st", "man"}
_RECORD_HEADERS = {"id", "model", "support"}


def build_search_request(target: str = SEARCH_TARGET) -> bytes:
    lines = ["M-SEARCH * HTTP/1.1", 'MAN: "ssdp:discover"', f"ST: {target}"]
    return "\r\n".join(lines).encode("ascii")


@dataclass(frozen=True)
class Advertisement:
    """A parsed advertisement or search response."""

    full_id: str
    identity: str
    model: str
    endpoint: Endpoint
    support: Tuple[str, ...] = ()
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def props(self) -> Dict[str, str]:
        return {key: value for key, value in self.headers.items() if key not in _RECORD_HEADERS}

    @property
    def features(self) -> Tuple[str, ...]:
        extra = tuple(key for key in self.props if key not in _TRANSPORT_HEADERS)
        return self.support + extra

    def to_record(self) -> DeviceRecord:
        return DeviceRecord(
            identity=self.identity,
            name=f"{self.model}-{self.identity}",
            model=self.model,
            endpoint=self.endpoint,
            features=self.features,
            props=self.props,
        )


def is_search_request(status_line: str) -> bool:
    return status_line.strip().upper().startswith("M-SEARCH")


def parse_headers(lines: Tuple[str, ...]) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    for line in lines:
        key, sep, value = line.partition(":")
        if not sep or not key.strip():
            continue
        headers[key.strip().lower()] = value.strip()
    return headers


def parse_advertisement(message: str) -> Optional[Advertisement]:
    """Parse a decoded datagram; ``None`` when it is not a usable advertisement."""

    lines = message.splitlines()
    if not lines or is_search_request(lines[0]):
        return None
    headers = parse_headers(tuple(lines[1:]))
    full_id = headers.get("id")
    location = headers.get("location")
    if not full_id or not location:
        return None
    try:
        endpoint = Endpoint.parse(location)
        identity = device_identity(full_id)
    except ValueError:
        return None
    return Advertisement(
        full_id=full_id,
        identity=identity,
        model=headers.get("model", ""),
        endpoint=endpoint,
        support=tuple(headers.get("support", "").split()),
        headers=headers,
    )


def _create_multicast_socket(
    address: str, port: int, ttl: int, interface: Optional[str] = None
) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    with contextlib.suppress(AttributeError):
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
    sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, ttl)
    sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_LOOP, 1)
    sock.bind(("", port))

    local = socket.inet_aton(interface or "0.0.0.0")
    if interface:
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_IF, local)
    mreq = struct.pack("4s4s", socket.inet_aton(address), local)
    sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
    sock.setblocking(False)
    return sock


class DiscoveryProtocol(asyncio.DatagramProtocol):
    """Asyncio protocol handling advertisements and search responses."""

    def __init__(self, config: Config, registry: SessionRegistry) -> None:
        self.config = config
        self.registry = registry
        self.transport: Optional[asyncio.DatagramTransport] = None
        self.logger = get_logger("yeelight.discovery.protocol")
        self._search_payload = build_search_request()

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport  # type: ignore[assignment]
        self.logger.info(
            "Discovery transport ready",
            extra={"local": transport.get_extra_info("sockname")},
        )

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if exc:
            self.logger.error(
                "Discovery transport error",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
        self.logger.info("Discovery transport closed")
        self.transport = None

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        try:
            message = data.decode("utf-8")
        except UnicodeDecodeError:
            record_discovery_error("non_utf8")
            self.logger.debug("Ignoring non-UTF8 datagram", extra={"from": addr})
            return
        first_line = message.split("\n", 1)[0]
        if is_search_request(first_line):
            self.logger.debug("Ignoring search request", extra={"from": addr})
            return

        advertisement = parse_advertisement(message)
        if advertisement is None:
            record_discovery_error("invalid_payload")
            self.logger.warning("Failed to parse advertisement", extra={"from": addr})
            return
        try:
            self.handle_advertisement(advertisement)
        except Exception:
            record_discovery_error("handler")
            self.logger.exception(
                "Failed to handle advertisement",
                extra={"device_id": advertisement.identity, "from": addr},
            )

    def handle_advertisement(self, advertisement: Advertisement) -> None:
        identity = advertisement.identity
        self.logger.debug(
            "Received advertisement",
            extra={"device_id": identity, "ip": advertisement.endpoint.host},
        )
        if self.registry.is_initialized(identity):
            self.registry.on_device_endpoint_changed(identity, advertisement.endpoint)
            record_discovery_response("known")
            return
        self.registry.on_device_discovered(advertisement.to_record())
        record_discovery_response("new")

    def send_search(self, target: Tuple[str, int]) -> bool:
        if not self.transport:
            self.logger.warning("Cannot send search request; transport not ready", extra={"target": target})
            return False
        try:
            self.transport.sendto(self._search_payload, target)
        except OSError as exc:
            self.logger.error(
                "Failed to send search request",
                exc_info=(type(exc), exc, exc.__traceback__),
                extra={"target": target},
            )
            return False
        record_discovery_search()
        return True


class DiscoveryState(Enum):
    IDLE = "idle"
    SEARCHING = "searching"
    SETTLED = "settled"


class DiscoveryService:
    """High-level discovery coordinator.

    The listener stays bound for the lifetime of the service so late or newly
    powered-on devices are still picked up after the proactive search loop
    has settled.
    """

    def __init__(self, config: Config, registry: SessionRegistry) -> None:
        self.config = config
        self.registry = registry
        self.logger = get_logger("yeelight.discovery")
        self.state = DiscoveryState.IDLE
        self._protocol: Optional[DiscoveryProtocol] = None
        self._transport: Optional[asyncio.DatagramTransport] = None
        self._socket: Optional[socket.socket] = None

    @property
    def protocol(self) -> Optional[DiscoveryProtocol]:
        return self._protocol

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        sock = _create_multicast_socket(
            self.config.discovery_multicast_address,
            self.config.discovery_port,
            self.config.discovery_ttl,
            self.config.discovery_interface,
        )
        transport, protocol = await loop.create_datagram_endpoint(
            lambda: DiscoveryProtocol(self.config, self.registry),
            sock=sock,
        )
        self._transport = transport  # type: ignore[assignment]
        self._protocol = protocol  # type: ignore[assignment]
        self._socket = sock
        self.logger.info(
            "Discovery service started",
            extra={
                "multicast": self.config.discovery_multicast_address,
                "port": self.config.discovery_port,
                "interface": self.config.discovery_interface,
            },
        )

    async def stop(self) -> None:
        if self._transport:
            self._transport.close()
        if self._socket:
            self._socket.close()
        self._protocol = None
        self._transport = None
        self._socket = None
        self.state = DiscoveryState.IDLE
        self.logger.info("Discovery service stopped")

    def search(self) -> bool:
        if self._protocol is None:
            self.logger.warning("Discovery service not started; search skipped")
            return False
        self.logger.debug("Sending search request")
        target = (self.config.discovery_multicast_address, self.config.discovery_port)
        return self._protocol.send_search(target)

    async def run_search_loop(self, stop_event: Optional[asyncio.Event] = None) -> DiscoveryState:
        """Search repeatedly until every known device has a session."""

        stop_event = stop_event or asyncio.Event()
        self.state = DiscoveryState.SEARCHING
        self.logger.info("Searching for known devices")
        while True:
            self.search()
            if await _wait_or_stop(stop_event, self.config.discovery_search_interval):
                self.state = DiscoveryState.IDLE
                return self.state
            if self.registry.all_initialized():
                break
        self.state = DiscoveryState.SETTLED
        self.logger.info("All known devices found. Stopping proactive search.")
        return self.state


async def _wait_or_stop(stop_event: asyncio.Event, delay: float) -> bool:
    """Sleep for ``delay`` seconds; ``True`` if ``stop_event`` was set meanwhile."""

    try:
        await asyncio.wait_for(stop_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return False
    return True
