"""Capability variants attached to a device session based on its advertised features."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Collection, Dict, List, Mapping, Optional, Tuple, Type

from .config import Config
from .logging import get_logger
from .session import DeviceSession, power_value

# Yeelight ``set_power`` modes.
POWER_MODE_NORMAL = 0
POWER_MODE_CT = 1
POWER_MODE_MOONLIGHT = 5


@dataclass(frozen=True)
class ModelLimits:
    """Numeric ranges a model accepts."""

    color_temperature: Tuple[int, int] = (1700, 6500)
    brightness: Tuple[int, int] = (1, 100)


DEFAULT_LIMITS = ModelLimits()

MODEL_LIMITS: Mapping[str, ModelLimits] = {
    "mono": ModelLimits(color_temperature=(2700, 2700)),
    "mono1": ModelLimits(color_temperature=(2700, 2700)),
    "ct_bulb": ModelLimits(color_temperature=(2700, 6500)),
    "ceiling": ModelLimits(color_temperature=(2700, 6500)),
    "ceiling1": ModelLimits(color_temperature=(2700, 6500)),
    "ceiling4": ModelLimits(color_temperature=(2700, 6500)),
    "desklamp": ModelLimits(color_temperature=(2700, 6500)),
    "lamp1": ModelLimits(color_temperature=(2700, 5000)),
    "color": ModelLimits(color_temperature=(1700, 6500)),
    "stripe": ModelLimits(color_temperature=(1700, 6500)),
    "bslamp1": ModelLimits(color_temperature=(1700, 6500)),
}


def limits_for(model: Optional[str]) -> ModelLimits:
    if not model:
        return DEFAULT_LIMITS
    return MODEL_LIMITS.get(model.lower(), DEFAULT_LIMITS)


def _clamp(value: float, bounds: Tuple[int, int]) -> int:
    low, high = bounds
    return int(max(low, min(high, round(value))))


class Capability:
    """A feature of a device, driven only through the session's public contract."""

    feature: ClassVar[Optional[str]] = None
    properties: ClassVar[Mapping[str, Callable[[Any], Any]]] = {}

    def __init__(self, session: DeviceSession, limits: ModelLimits, config: Config) -> None:
        self.session = session
        self.limits = limits
        self.config = config
        for name, converter in self.properties.items():
            session.register_property(name, converter)

    @classmethod
    def supported(cls, features: Collection[str], hidden: Collection[str] = ()) -> bool:
        if cls.feature is None:
            return True
        return cls.feature in features and cls.feature not in hidden

    @property
    def transition(self) -> int:
        return self.config.transition_default


class PowerCapability(Capability):
    """Main light on/off; every device has it."""

    async def set_power(self, on: bool) -> List[Any]:
        if self.session.power == on:
            return []
        state = "on" if on else "off"
        return await self.session.set_state(
            "set_power", [state, "smooth", self.config.transition_power]
        )

    async def get_power(self) -> bool:
        (value,) = await self.session.query(["power"])
        return power_value(value)


class MoonlightCapability(Capability):
    """Moonlight mode; devices do not advertise it, so only hiding turns it off."""

    feature = "active_mode"
    properties = {"active_mode": int}

    @classmethod
    def supported(cls, features: Collection[str], hidden: Collection[str] = ()) -> bool:
        return "active_mode" not in hidden

    async def set_moonlight(self, enabled: bool) -> List[Any]:
        mode = POWER_MODE_MOONLIGHT if enabled else POWER_MODE_CT
        return await self.session.set_state(
            "set_power", ["on", "smooth", self.config.transition_power, mode]
        )

    @property
    def moonlight(self) -> bool:
        return self.session.get_property("active_mode") == 1


class BrightnessCapability(Capability):
    feature = "set_bright"
    properties = {"bright": int}

    async def set_brightness(self, value: float) -> List[Any]:
        level = _clamp(value, self.limits.brightness)
        return await self.session.set_state("set_bright", [level, "smooth", self.transition])

    @property
    def brightness(self) -> Optional[int]:
        return self.session.get_property("bright")


class ColorCapability(Capability):
    feature = "set_hsv"
    properties = {"hue": int, "sat": int}

    async def set_color(self, hue: float, saturation: float) -> List[Any]:
        return await self.session.set_state(
            "set_hsv",
            [_clamp(hue, (0, 359)), _clamp(saturation, (0, 100)), "smooth", self.transition],
        )


class TemperatureCapability(Capability):
    feature = "set_ct_abx"
    properties = {"ct": int}

    async def set_temperature(self, kelvin: float) -> List[Any]:
        value = _clamp(kelvin, self.limits.color_temperature)
        return await self.session.set_state("set_ct_abx", [value, "smooth", self.transition])


class BacklightCapability(Capability):
    feature = "bg_set_power"
    properties = {"bg_power": power_value}

    async def set_backlight_power(self, on: bool) -> List[Any]:
        if bool(self.session.get_property("bg_power", False)) == on:
            return []
        state = "on" if on else "off"
        return await self.session.set_state(
            "bg_set_power", [state, "smooth", self.config.transition_power]
        )


class BacklightBrightnessCapability(Capability):
    feature = "bg_set_bright"
    properties = {"bg_bright": int}

    async def set_backlight_brightness(self, value: float) -> List[Any]:
        level = _clamp(value, self.limits.brightness)
        return await self.session.set_state("bg_set_bright", [level, "smooth", self.transition])


class BacklightColorCapability(Capability):
    feature = "bg_set_hsv"
    properties = {"bg_hue": int, "bg_sat": int}

    async def set_backlight_color(self, hue: float, saturation: float) -> List[Any]:
        return await self.session.set_state(
            "bg_set_hsv",
            [_clamp(hue, (0, 359)), _clamp(saturation, (0, 100)), "smooth", self.transition],
        )


CAPABILITY_TYPES: Tuple[Type[Capability], ...] = (
    PowerCapability,
    MoonlightCapability,
    BrightnessCapability,
    ColorCapability,
    TemperatureCapability,
    BacklightCapability,
    BacklightBrightnessCapability,
    BacklightColorCapability,
)


def select_capabilities(
    features: Collection[str], hidden: Collection[str] = ()
) -> List[Type[Capability]]:
    """Capability types enabled by a discovered feature list, minus hidden ones."""

    return [capability for capability in CAPABILITY_TYPES if capability.supported(features, hidden)]


def attach_capabilities(
    session: DeviceSession,
    features: Collection[str],
    config: Config,
    hidden: Collection[str] = (),
) -> Dict[Type[Capability], Capability]:
    """Instantiate and attach the capabilities a device supports."""

    logger = get_logger("yeelight.registry")
    limits = limits_for(session.model)
    attached: Dict[Type[Capability], Capability] = {}
    for capability_type in select_capabilities(features, hidden):
        capability = capability_type(session, limits, config)
        attached[capability_type] = capability
        session.capabilities.append(capability)
        if capability_type.feature:
            logger.debug(
                "Device supports feature",
                extra={"device_id": session.identity, "feature": capability_type.feature},
            )
    return attached


def capability(session: DeviceSession, capability_type: Type[Capability]) -> Optional[Capability]:
    """Return the attached capability of the given type, if the device has it."""

    for attached in session.capabilities:
        if isinstance(attached, capability_type):
            return attached
    return None
