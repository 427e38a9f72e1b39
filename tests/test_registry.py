from yeelight_lan_bridge.capabilities import (
    BrightnessCapability,
    ColorCapability,
    MoonlightCapability,
    PowerCapability,
    capability,
)
from yeelight_lan_bridge.config import Config, DeviceOverride
from yeelight_lan_bridge.models import DeviceRecord, Endpoint
from yeelight_lan_bridge.registry import SessionRegistry


def _record(identity: str = "15243f", host: str = "192.168.1.239") -> DeviceRecord:
    return DeviceRecord(
        identity=identity,
        name=f"color-{identity}",
        model="color",
        endpoint=Endpoint(host),
        features=("get_prop", "set_power", "set_bright", "set_hsv"),
    )


def test_discovered_device_gets_capabilities() -> None:
    registry = SessionRegistry(Config())
    session = registry.on_device_discovered(_record())

    assert session is not None
    assert session.name == "color-15243f"
    assert "15243f" in registry
    for capability_type in (PowerCapability, BrightnessCapability, ColorCapability, MoonlightCapability):
        assert capability(session, capability_type) is not None


def test_overrides_rename_and_hide_features() -> None:
    config = Config(
        devices=(DeviceOverride(id="15243f", name="Desk Lamp", hidden_features=("set_hsv", "active_mode")),)
    )
    registry = SessionRegistry(config)
    session = registry.on_device_discovered(_record())

    assert session is not None
    assert session.name == "Desk Lamp"
    assert capability(session, ColorCapability) is None
    assert capability(session, MoonlightCapability) is None
    assert capability(session, BrightnessCapability) is not None


def test_hidden_device_is_ignored_and_unregistered() -> None:
    registry = SessionRegistry(Config())
    existing = registry.on_device_discovered(_record())
    assert existing is not None

    hidden = SessionRegistry(Config(devices=(DeviceOverride(id="15243f", hidden=True),)))
    assert hidden.on_device_discovered(_record()) is None
    assert len(hidden) == 0

    registry.config = Config(devices=(DeviceOverride(id="15243f", hidden=True),))
    assert registry.on_device_discovered(_record()) is None
    assert "15243f" not in registry


def test_rediscovery_reuses_session() -> None:
    registry = SessionRegistry(Config())
    first = registry.on_device_discovered(_record())
    second = registry.on_device_discovered(_record(host="192.168.1.80"))

    assert first is second
    assert len(registry) == 1
    assert second is not None
    assert second.endpoint == Endpoint("192.168.1.80")


def test_endpoint_change_for_unknown_device() -> None:
    registry = SessionRegistry(Config())
    assert registry.on_device_endpoint_changed("abcdef", "10.0.0.9:55443") is False


def test_all_initialized_tracks_known_devices() -> None:
    config = Config(
        known_devices=("15243f", "0abcde", "ffffff"),
        devices=(DeviceOverride(id="ffffff", hidden=True),),
    )
    registry = SessionRegistry(config)
    assert not registry.all_initialized()

    registry.on_device_discovered(_record("15243f"))
    assert not registry.all_initialized()

    registry.on_device_discovered(_record("0abcde", host="192.168.1.240"))
    assert registry.all_initialized()


def test_close_drops_every_session() -> None:
    registry = SessionRegistry(Config())
    session = registry.on_device_discovered(_record())
    registry.close()
    assert len(registry) == 0
    assert session is not None
    assert not session.online
