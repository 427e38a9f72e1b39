"""Value types shared by discovery, the registry and device sessions."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Tuple

DEFAULT_CONTROL_PORT = 55443


def device_identity(full_id: str) -> str:
    """Derive the stable short identity from a vendor id.

    Yeelight advertises ids such as ``0x000000000015243f``; the last six hex
    characters are unique enough on a LAN and stay stable across reboots.
    """

    value = str(full_id).strip().lower()
    if not value:
        raise ValueError("device id must not be empty")
    return value[-6:]


@dataclass(frozen=True)
class Endpoint:
    """Host and port of a device control socket."""

    host: str
    port: int = DEFAULT_CONTROL_PORT

    @classmethod
    def parse(cls, value: str) -> "Endpoint":
        text = value.strip()
        if "//" in text:
            text = text.split("//", 1)[1]
        text = text.rstrip("/")
        host, sep, port = text.rpartition(":")
        if not sep:
            return cls(host=text)
        if not host:
            raise ValueError(f"Endpoint is missing a host: {value!r}")
        try:
            parsed_port = int(port)
        except ValueError as exc:
            raise ValueError(f"Endpoint port must be numeric: {value!r}") from exc
        if parsed_port <= 0 or parsed_port > 65535:
            raise ValueError(f"Endpoint port out of range: {value!r}")
        return cls(host=host, port=parsed_port)

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


class CommandKind(Enum):
    """Whether a command changes device state or only reads it."""

    MUTATING = "mutating"
    QUERY = "query"


@dataclass(frozen=True)
class DeviceRecord:
    """A discovered device, ready to be turned into a session."""

    identity: str
    name: str
    model: str
    endpoint: Endpoint
    features: Tuple[str, ...] = ()
    props: Mapping[str, Any] = field(default_factory=dict)

    def supports(self, feature: str) -> bool:
        return feature in self.features
