from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pytest

from yeelight_lan_bridge.capabilities import (
    BacklightCapability,
    BrightnessCapability,
    ColorCapability,
    MoonlightCapability,
    PowerCapability,
    TemperatureCapability,
    attach_capabilities,
    limits_for,
    select_capabilities,
)
from yeelight_lan_bridge.config import Config
from yeelight_lan_bridge.session import DeviceSession


class _RecordingSession:
    """Session double capturing set_state calls."""

    def __init__(self, model: str = "color", properties: Optional[Dict[str, Any]] = None) -> None:
        self.identity = "15243f"
        self.model = model
        self.capabilities: List[Any] = []
        self.calls: List[Tuple[str, List[Any]]] = []
        self.converters: Dict[str, Callable[[Any], Any]] = {}
        self._properties = dict(properties or {})

    @property
    def power(self) -> bool:
        return bool(self._properties.get("power", False))

    def get_property(self, name: str, default: Any = None) -> Any:
        return self._properties.get(name, default)

    def register_property(self, name: str, converter: Callable[[Any], Any]) -> None:
        self.converters[name] = converter

    async def set_state(self, method: str, params: Sequence[Any]) -> List[Any]:
        self.calls.append((method, list(params)))
        return ["ok"]

    async def query(self, properties: Sequence[str]) -> List[Any]:
        return [self._properties.get(name, "") for name in properties]


def _attach(session: Any, features: Sequence[str], config: Optional[Config] = None) -> Dict[type, Any]:
    return attach_capabilities(session, features, config or Config())


def test_selection_follows_features_and_hidden() -> None:
    assert select_capabilities([]) == [PowerCapability, MoonlightCapability]
    assert select_capabilities(["set_bright"], hidden=["active_mode", "set_bright"]) == [PowerCapability]
    selected = select_capabilities(["set_bright", "set_ct_abx", "bg_set_power"])
    assert selected == [
        PowerCapability,
        MoonlightCapability,
        BrightnessCapability,
        TemperatureCapability,
        BacklightCapability,
    ]


def test_limits_fall_back_to_defaults() -> None:
    assert limits_for("mono").color_temperature == (2700, 2700)
    assert limits_for("COLOR").color_temperature == (1700, 6500)
    assert limits_for("unknown-model").color_temperature == (1700, 6500)
    assert limits_for(None).brightness == (1, 100)


@pytest.mark.asyncio
async def test_set_power_uses_smooth_transition() -> None:
    session = _RecordingSession()
    power = _attach(session, [])[PowerCapability]

    assert await power.set_power(True) == ["ok"]
    assert session.calls == [("set_power", ["on", "smooth", 400])]


@pytest.mark.asyncio
async def test_set_power_skipped_when_already_in_state() -> None:
    session = _RecordingSession(properties={"power": True})
    power = _attach(session, [], Config(transition_power=800))[PowerCapability]

    assert await power.set_power(True) == []
    assert await power.set_power(False) == ["ok"]
    assert session.calls == [("set_power", ["off", "smooth", 800])]


@pytest.mark.asyncio
async def test_get_power_reads_device() -> None:
    session = _RecordingSession(properties={"power": "on"})
    power = _attach(session, [])[PowerCapability]
    assert await power.get_power() is True


@pytest.mark.asyncio
async def test_levels_are_clamped_to_model_limits() -> None:
    session = _RecordingSession(model="mono")
    attached = _attach(session, ["set_bright", "set_ct_abx", "set_hsv"], Config(transition_default=250))

    await attached[BrightnessCapability].set_brightness(0)
    await attached[TemperatureCapability].set_temperature(6500)
    await attached[ColorCapability].set_color(400, 55.4)

    assert session.calls == [
        ("set_bright", [1, "smooth", 250]),
        ("set_ct_abx", [2700, "smooth", 250]),
        ("set_hsv", [359, 55, "smooth", 250]),
    ]


@pytest.mark.asyncio
async def test_moonlight_switches_power_mode() -> None:
    session = _RecordingSession(properties={"active_mode": 1})
    moonlight = _attach(session, [])[MoonlightCapability]

    assert moonlight.moonlight is True
    await moonlight.set_moonlight(True)
    await moonlight.set_moonlight(False)
    assert session.calls == [
        ("set_power", ["on", "smooth", 400, 5]),
        ("set_power", ["on", "smooth", 400, 1]),
    ]


def test_capability_properties_follow_pushes() -> None:
    session = DeviceSession("15243f", "192.168.1.239:55443", model="color")
    attach_capabilities(session, ["set_bright", "bg_set_power"], Config())

    session._handle_message({"method": "props", "params": {"bright": "42", "bg_power": "on", "hue": 10}})

    assert session.get_property("bright") == 42
    assert session.get_property("bg_power") is True
    assert session.get_property("hue") is None
    assert len(session.capabilities) == 4


