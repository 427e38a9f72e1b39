"""Registry mapping device identities to their sessions."""

from __future__ import annotations

from dataclasses import replace
from typing import Callable, Dict, Iterable, Iterator, Optional, Set, Union

from .capabilities import attach_capabilities
from .config import Config
from .logging import get_logger
from .metrics import set_sessions_total
from .models import DeviceRecord, Endpoint
from .session import DeviceSession

SessionFactory = Callable[[DeviceRecord], DeviceSession]


def build_session(record: DeviceRecord, config: Config) -> DeviceSession:
    """Default factory: a session with the capability variants its features enable."""

    session = DeviceSession(
        record.identity,
        record.endpoint,
        name=record.name,
        model=record.model,
        config=config,
    )
    override = config.override_for(record.identity)
    hidden = override.hidden_features if override else ()
    attach_capabilities(session, record.features, config, hidden)
    return session


class SessionRegistry:
    """Creates sessions on first discovery and reuses them across endpoint changes."""

    def __init__(self, config: Config, session_factory: Optional[SessionFactory] = None) -> None:
        self.config = config
        self.logger = get_logger("yeelight.registry")
        self._factory = session_factory or (lambda record: build_session(record, config))
        self._sessions: Dict[str, DeviceSession] = {}
        self._known: Set[str] = set()
        self.seed(config.known_devices)

    def __contains__(self, identity: object) -> bool:
        return identity in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[DeviceSession]:
        return iter(list(self._sessions.values()))

    def get(self, identity: str) -> Optional[DeviceSession]:
        return self._sessions.get(identity)

    def seed(self, identities: Iterable[str]) -> None:
        """Register identities expected on the network."""

        for identity in identities:
            override = self.config.override_for(identity)
            if override is None or not override.hidden:
                self._known.add(identity)

    def is_initialized(self, identity: str) -> bool:
        session = self._sessions.get(identity)
        return session is not None and session.initialized

    def all_initialized(self) -> bool:
        """True once every known identity has an initialized session."""

        identities = self._known | set(self._sessions)
        return all(self.is_initialized(identity) for identity in identities)

    def on_device_discovered(self, record: DeviceRecord) -> Optional[DeviceSession]:
        """Create (or refresh) the session for a discovered device."""

        identity = record.identity
        override = self.config.override_for(identity)
        if override is not None and override.hidden:
            if self.remove(identity):
                self.logger.info("Device was unregistered", extra={"device_id": identity})
            else:
                self.logger.debug("Device is blacklisted, ignoring", extra={"device_id": identity})
            return None

        existing = self._sessions.get(identity)
        if existing is not None and existing.initialized:
            existing.update_endpoint(record.endpoint)
            return existing

        hidden_features = set(override.hidden_features) if override else set()
        record = replace(
            record,
            name=self.config.device_name(identity, record.name),
            features=tuple(feature for feature in record.features if feature not in hidden_features),
        )
        self.logger.info(
            "Initializing new device",
            extra={"device_id": identity, "device_name": record.name, "model": record.model},
        )
        session = self._factory(record)
        session.initialized = True
        self._sessions[identity] = session
        set_sessions_total(len(self._sessions))
        self.logger.info(
            "Initialized device",
            extra={"device_id": identity, "device_name": session.name, "endpoint": str(session.endpoint)},
        )
        return session

    def on_device_endpoint_changed(self, identity: str, endpoint: Union[Endpoint, str]) -> bool:
        session = self._sessions.get(identity)
        if session is None:
            return False
        return session.update_endpoint(endpoint)

    def remove(self, identity: str) -> bool:
        """Drop a session and close its socket."""

        session = self._sessions.pop(identity, None)
        self._known.discard(identity)
        if session is None:
            return False
        session.close()
        set_sessions_total(len(self._sessions))
        return True

    def close(self) -> None:
        for session in list(self._sessions.values()):
            session.close()
        self._sessions.clear()
        set_sessions_total(0)
