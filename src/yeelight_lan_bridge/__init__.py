"""Core package for the Yeelight LAN bridge - session management and discovery for Yeelight bulbs."""

__all__ = ["config", "logging", "connection", "dispatcher", "session", "registry", "discovery"]
__version__ = "1.0.0"
