"""Newline-delimited JSON control socket for a single device."""

from __future__ import annotations

import asyncio
import contextlib
import errno
import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional

from .exceptions import ConnectionFailed, HostUnreachable
from .logging import get_logger
from .metrics import record_malformed_message
from .models import Endpoint

MessageCallback = Callable[[Dict[str, Any]], None]
ClosedCallback = Callable[[bool], None]
OpenedCallback = Callable[[], None]

LINE_TERMINATOR = b"\r\n"


@dataclass
class _Channel:
    """One socket instance; ``closed`` flips exactly once."""

    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    task: Optional["asyncio.Task[None]"] = None
    closed: bool = False
    had_error: bool = field(default=False)
    subscribers: List["asyncio.Queue[Optional[Dict[str, Any]]]"] = field(default_factory=list)


def parse_line(line: bytes) -> Optional[Dict[str, Any]]:
    """Decode one inbound line, returning ``None`` for anything that is not a JSON object."""

    text = line.strip()
    if not text:
        return None
    try:
        message = json.loads(text.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(message, dict):
        return None
    return message


class FramedConnection:
    """Owns the TCP socket to one device endpoint.

    ``open`` is idempotent and serialised, so concurrent callers share one
    connect. Inbound lines are parsed and handed to ``on_message`` from a
    background reader task; ``on_closed`` fires once per socket.
    """

    def __init__(
        self,
        endpoint: Endpoint,
        on_message: Optional[MessageCallback] = None,
        on_closed: Optional[ClosedCallback] = None,
        on_opened: Optional[OpenedCallback] = None,
    ) -> None:
        self.endpoint = endpoint
        self.logger = get_logger("yeelight.connection")
        self._on_message = on_message
        self._on_closed = on_closed
        self._on_opened = on_opened
        self._channel: Optional[_Channel] = None
        self._lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        channel = self._channel
        return channel is not None and not channel.closed and not channel.writer.is_closing()

    async def open(self) -> bool:
        """Connect if needed; return ``True`` only when a new socket was opened."""

        async with self._lock:
            if self.is_open:
                return False
            host, port = self.endpoint.host, self.endpoint.port
            try:
                reader, writer = await asyncio.open_connection(host, port)
            except OSError as exc:
                self.logger.debug(
                    "Connect failed",
                    extra={"endpoint": str(self.endpoint), "errno": exc.errno, "error": str(exc)},
                )
                if exc.errno == errno.EHOSTUNREACH:
                    raise HostUnreachable(f"{self.endpoint} unreachable") from exc
                raise ConnectionFailed(f"connect to {self.endpoint} failed: {exc}", errno=exc.errno) from exc
            channel = _Channel(reader=reader, writer=writer)
            self._channel = channel
            channel.task = asyncio.create_task(self._read_loop(channel))
            self.logger.debug("Connected", extra={"endpoint": str(self.endpoint)})
            if self._on_opened is not None:
                self._on_opened()
            return True

    async def send(self, message: Mapping[str, Any]) -> None:
        """Write one framed JSON message."""

        channel = self._channel
        if channel is None or channel.closed or channel.writer.is_closing():
            raise ConnectionFailed(f"not connected to {self.endpoint}")
        data = json.dumps(message, separators=(",", ":")).encode("utf-8") + LINE_TERMINATOR
        try:
            channel.writer.write(data)
            await channel.writer.drain()
        except (OSError, RuntimeError) as exc:
            self._shutdown(channel, had_error=True)
            raise ConnectionFailed(
                f"write to {self.endpoint} failed: {exc}",
                errno=getattr(exc, "errno", None),
            ) from exc

    async def messages(self) -> AsyncIterator[Dict[str, Any]]:
        """Parsed inbound messages from the current socket until it closes.

        Lines are read by the single reader task; each call gets its own
        copy of the messages that arrive after it started iterating, so it
        can run alongside ``on_message``. Call again after a reconnect.
        """

        channel = self._channel
        if channel is None or channel.closed:
            return
        queue: "asyncio.Queue[Optional[Dict[str, Any]]]" = asyncio.Queue()
        channel.subscribers.append(queue)
        try:
            while True:
                message = await queue.get()
                if message is None:
                    return
                yield message
        finally:
            if queue in channel.subscribers:
                channel.subscribers.remove(queue)

    def close(self) -> None:
        """Close the current socket; safe to call repeatedly."""

        channel = self._channel
        if channel is not None:
            self._shutdown(channel, had_error=False)

    async def _iter_channel(self, channel: _Channel) -> AsyncIterator[Dict[str, Any]]:
        while not channel.closed:
            try:
                line = await channel.reader.readline()
            except ValueError:
                # Line exceeded the stream limit; the buffer has been discarded.
                record_malformed_message()
                continue
            if not line:
                return
            message = parse_line(line)
            if message is None:
                if line.strip():
                    record_malformed_message()
                    self.logger.debug(
                        "Ignoring malformed line",
                        extra={"endpoint": str(self.endpoint), "line": line[:200]},
                    )
                continue
            yield message

    async def _read_loop(self, channel: _Channel) -> None:
        had_error = False
        try:
            async for message in self._iter_channel(channel):
                if self._on_message is not None:
                    self._on_message(message)
                for queue in list(channel.subscribers):
                    queue.put_nowait(message)
        except asyncio.CancelledError:
            raise
        except (OSError, asyncio.IncompleteReadError) as exc:
            had_error = True
            self.logger.error(
                "Connection error",
                extra={"endpoint": str(self.endpoint), "error": str(exc)},
            )
        finally:
            self._shutdown(channel, had_error=had_error)

    def _shutdown(self, channel: _Channel, had_error: bool) -> None:
        if channel.closed:
            return
        channel.closed = True
        channel.had_error = had_error
        if self._channel is channel:
            self._channel = None
        with contextlib.suppress(Exception):
            channel.writer.close()
        task = channel.task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        for queue in channel.subscribers:
            queue.put_nowait(None)
        self.logger.debug(
            "Connection closed",
            extra={"endpoint": str(self.endpoint), "had_error": had_error},
        )
        if self._on_closed is not None:
            try:
                self._on_closed(had_error)
            except Exception:  # pragma: no cover - callback bugs must not break close()
                self.logger.exception("Close callback failed", extra={"endpoint": str(self.endpoint)})
