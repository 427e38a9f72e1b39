"""Per-device control session: reconnects, replays desired state, mirrors properties."""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from .backoff import RetryPolicy
from .config import Config
from .connection import FramedConnection
from .dispatcher import CommandDispatcher
from .exceptions import ConnectionFailed, YeelightError
from .logging import get_logger
from .metrics import adjust_sessions_online, record_flush
from .models import CommandKind, Endpoint
from .pending import PendingStateCache

PropertyListener = Callable[[str, Any], None]
PropertyConverter = Callable[[Any], Any]

IDENTIFY_FLOW = [10, 0, "500,2,0,10,500,2,0,100"]

# Mutating methods whose first parameter is the new value of a mirrored property.
OPTIMISTIC_PROPERTIES: Mapping[str, str] = {
    "set_power": "power",
    "bg_set_power": "bg_power",
    "set_bright": "bright",
    "bg_set_bright": "bg_bright",
    "set_ct_abx": "ct",
}


def power_value(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).lower() == "on"


class SessionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class DeviceSession:
    """Control channel for one device identity.

    Owns the framed connection, the dispatcher and the pending-state cache.
    The socket is opened lazily by the first command and reopened on demand;
    every new socket replays the cached desired state before any other
    command is written.
    """

    def __init__(
        self,
        identity: str,
        endpoint: Union[Endpoint, str],
        *,
        name: Optional[str] = None,
        model: str = "",
        config: Optional[Config] = None,
        policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.identity = identity
        self.model = model
        self.name = name or (f"{model}-{identity}" if model else identity)
        self.config = config or Config()
        self.logger = get_logger("yeelight.session")
        self.policy = policy or RetryPolicy(
            retries=self.config.connection_retries,
            timeout=self.config.connection_timeout,
        )
        self.cache = PendingStateCache()
        self.dispatcher = CommandDispatcher(self, self.cache, self.policy, device_id=identity)
        self.state = SessionState.DISCONNECTED
        self.reconciling = False
        self.initialized = False
        self.capabilities: List[Any] = []
        self._endpoint = endpoint if isinstance(endpoint, Endpoint) else Endpoint.parse(endpoint)
        self._connection: Optional[FramedConnection] = None
        self._closed = False
        self._properties: Dict[str, Any] = {}
        self._converters: Dict[str, PropertyConverter] = {"power": power_value}
        self._listeners: List[PropertyListener] = []

    def __repr__(self) -> str:
        return f"DeviceSession({self.identity!r}, {str(self._endpoint)!r}, state={self.state.value})"

    @property
    def endpoint(self) -> Endpoint:
        return self._endpoint

    @property
    def online(self) -> bool:
        return self.state is SessionState.CONNECTED

    @property
    def power(self) -> bool:
        return bool(self._properties.get("power", False))

    @property
    def properties(self) -> Mapping[str, Any]:
        return dict(self._properties)

    def get_property(self, name: str, default: Any = None) -> Any:
        return self._properties.get(name, default)

    def register_property(self, name: str, converter: PropertyConverter) -> None:
        """Give a device property a local representation so pushes update it."""

        self._converters[name] = converter

    def add_property_listener(self, listener: PropertyListener) -> None:
        self._listeners.append(listener)

    def remove_property_listener(self, listener: PropertyListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def set_state(self, method: str, params: Sequence[Any]) -> List[Any]:
        """Send a mutating command; never raises for transport failures."""

        result = await self.dispatcher.send_command(method, params, CommandKind.MUTATING)
        if result:
            prop = OPTIMISTIC_PROPERTIES.get(method)
            if prop is not None and params:
                self._apply_property(prop, params[0])
        return result

    async def query(self, properties: Sequence[str]) -> List[Any]:
        """Read properties from the device, in the order requested."""

        names = list(properties)
        values = await self.dispatcher.send_command("get_prop", names, CommandKind.QUERY)
        for name, value in zip(names, values):
            if value != "":
                self._apply_property(name, value)
        return values

    async def identify(self) -> List[Any]:
        """Flash the light a few times so the user can spot it."""

        return await self.set_state("start_cf", IDENTIFY_FLOW)

    def update_endpoint(self, endpoint: Union[Endpoint, str]) -> bool:
        """Point the session at a new address; the next command reconnects there."""

        new_endpoint = endpoint if isinstance(endpoint, Endpoint) else Endpoint.parse(endpoint)
        previous = self._endpoint
        if new_endpoint == previous:
            return False
        self.force_close()
        self._connection = None
        self._endpoint = new_endpoint
        self.logger.info(
            "Endpoint changed",
            extra={"device_id": self.identity, "previous": str(previous), "endpoint": str(new_endpoint)},
        )
        return True

    def close(self) -> None:
        """Tear the session down; used when the registry drops the device."""

        self._closed = True
        self.force_close()
        self._connection = None
        self.dispatcher.abandon_all("session closed")

    # CommandChannel implementation used by the dispatcher.

    async def connect(self) -> bool:
        if self._closed:
            raise ConnectionFailed(f"session {self.identity} is closed")
        if self._connection is None:
            self._connection = FramedConnection(
                self._endpoint,
                on_message=self._handle_message,
                on_closed=self._handle_closed,
                on_opened=self._handle_opened,
            )
        connection = self._connection
        if connection.is_open:
            return False
        self.state = SessionState.CONNECTING
        try:
            opened = await connection.open()
        except BaseException:
            if self.state is SessionState.CONNECTING:
                self.state = SessionState.DISCONNECTED
            raise
        if self._connection is not connection:
            # The endpoint changed while this connect was in progress.
            connection.close()
            raise ConnectionFailed(f"endpoint of {self.identity} changed during connect")
        return opened

    async def write(self, message: Mapping[str, Any]) -> None:
        connection = self._connection
        if connection is None:
            raise ConnectionFailed(f"not connected to {self._endpoint}")
        await connection.send(message)

    def force_close(self) -> None:
        connection = self._connection
        if connection is not None:
            connection.close()
        self.state = SessionState.DISCONNECTED

    async def reconcile(self) -> None:
        """Replay cached desired state; at most one replay runs at a time."""

        if self.reconciling:
            return
        self.reconciling = True
        try:
            await self._flush_pending()
        finally:
            self.reconciling = False

    async def _flush_pending(self) -> None:
        commands = self.cache.in_flush_order()
        if not commands:
            return
        self.logger.debug(
            "Replaying desired state",
            extra={"device_id": self.identity, "methods": [command.method for command in commands]},
        )
        failures = 0
        for command in commands:
            try:
                result = await self.set_state(command.method, command.params)
            except YeelightError as exc:
                failures += 1
                self.logger.debug(
                    "Replay failed; keeping command for next reconnect",
                    extra={"device_id": self.identity, "method": command.method, "error": str(exc)},
                )
                continue
            if not result:
                failures += 1
        record_flush("ok" if failures == 0 else "partial")

    # Connection callbacks.

    def _handle_opened(self) -> None:
        self.state = SessionState.CONNECTED
        adjust_sessions_online(1)
        self.logger.debug("Connected", extra={"device_id": self.identity, "endpoint": str(self._endpoint)})

    def _handle_closed(self, had_error: bool) -> None:
        was_online = self.state is SessionState.CONNECTED
        self.state = SessionState.DISCONNECTED
        if was_online:
            adjust_sessions_online(-1)
        abandoned = self.dispatcher.abandon_all()
        self.logger.warning(
            "Connection closed",
            extra={
                "device_id": self.identity,
                "endpoint": str(self._endpoint),
                "had_error": had_error,
                "abandoned": abandoned,
            },
        )

    def _handle_message(self, message: Dict[str, Any]) -> None:
        if self.dispatcher.handle_response(message):
            return
        if self._handle_push(message):
            return
        self.logger.debug("Unhandled message", extra={"device_id": self.identity, "payload": message})

    def _handle_push(self, message: Mapping[str, Any]) -> bool:
        if message.get("method") != "props":
            return False
        params = message.get("params")
        if not isinstance(params, Mapping):
            return True
        for name, value in params.items():
            self._apply_property(str(name), value)
        return True

    def _apply_property(self, name: str, value: Any) -> bool:
        converter = self._converters.get(name)
        if converter is None:
            self.logger.debug(
                "Property has no local representation; skipping",
                extra={"device_id": self.identity, "property": name},
            )
            return False
        try:
            converted = converter(value)
        except (TypeError, ValueError):
            self.logger.debug(
                "Ignoring unparseable property value",
                extra={"device_id": self.identity, "property": name, "value": value},
            )
            return False
        previous = self._properties.get(name)
        self._properties[name] = converted
        if previous != converted:
            for listener in list(self._listeners):
                try:
                    listener(name, converted)
                except Exception:
                    self.logger.exception(
                        "Property listener failed",
                        extra={"device_id": self.identity, "property": name},
                    )
        return True
