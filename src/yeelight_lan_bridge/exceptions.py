"""Errors raised by the Yeelight LAN bridge."""

from __future__ import annotations

import errno as _errno
from typing import Optional


class YeelightError(Exception):
    """Base class for all errors raised by this package."""


class ConnectionFailed(YeelightError):
    """Transport-level failure (connect, reset, write or socket close)."""

    def __init__(self, message: str, errno: Optional[int] = None) -> None:
        super().__init__(message)
        self.errno = errno


class HostUnreachable(ConnectionFailed):
    """The device host is unreachable; retrying the same endpoint is pointless."""

    def __init__(self, message: str) -> None:
        super().__init__(message, errno=_errno.EHOSTUNREACH)


class CommandTimeout(YeelightError):
    """No response arrived before the attempt deadline."""

    def __init__(self, command_id: int, deadline: float) -> None:
        super().__init__(f"command {command_id} timed out after {deadline * 1000:.0f}ms")
        self.command_id = command_id
        self.deadline = deadline


class CommandError(YeelightError):
    """The device answered with an error payload."""

    def __init__(self, command_id: int, code: Optional[int], message: str) -> None:
        super().__init__(f"command {command_id} rejected by device: {message} (code {code})")
        self.command_id = command_id
        self.code = code
        self.message = message


class CommandFailed(YeelightError):
    """A query could not be completed within the retry budget."""

    def __init__(self, command_id: int, attempts: int) -> None:
        super().__init__(f"{command_id}")
        self.command_id = command_id
        self.attempts = attempts
