"""Correlated request/response exchange with retries over a device channel."""

from __future__ import annotations

import asyncio
import itertools
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

from .backoff import Attempt, AttemptOutcome, RetryDecision, RetryPolicy
from .exceptions import (
    CommandError,
    CommandFailed,
    CommandTimeout,
    ConnectionFailed,
    HostUnreachable,
)
from .logging import get_logger
from .metrics import record_command_attempt, record_command_result
from .models import CommandKind, Endpoint
from .pending import PendingStateCache

_REQUEST_IDS = itertools.count(1)


def next_request_id() -> int:
    """Return a request id unique within this process."""

    return next(_REQUEST_IDS)


class CommandChannel(Protocol):
    """What the dispatcher needs from the owner of the device socket."""

    @property
    def endpoint(self) -> Endpoint: ...

    async def connect(self) -> bool:
        """Ensure a socket is open; ``True`` when a new one was opened."""

    async def write(self, message: Mapping[str, Any]) -> None: ...

    def force_close(self) -> None: ...

    async def reconcile(self) -> None:
        """Replay desired state on a freshly opened socket."""


@dataclass
class InFlightRequest:
    """A transmitted request awaiting its response or deadline."""

    id: int
    method: str
    future: "asyncio.Future[List[Any]]"
    timer: asyncio.TimerHandle


class CommandDispatcher:
    """Sends commands through a :class:`CommandChannel` and matches responses by id."""

    def __init__(
        self,
        channel: CommandChannel,
        cache: PendingStateCache,
        policy: Optional[RetryPolicy] = None,
        device_id: str = "",
    ) -> None:
        self.channel = channel
        self.cache = cache
        self.policy = policy or RetryPolicy()
        self.device_id = device_id
        self.logger = get_logger("yeelight.dispatcher")
        self._in_flight: Dict[int, InFlightRequest] = {}

    @property
    def in_flight(self) -> Mapping[int, InFlightRequest]:
        return dict(self._in_flight)

    async def send_command(
        self, method: str, params: Sequence[Any], kind: CommandKind
    ) -> List[Any]:
        """Send ``method`` and return the device result.

        Mutating commands are cached before transmission and resolve with an
        empty result when the device cannot be reached; the cached entry is
        replayed on the next reconnect. Queries raise :class:`CommandFailed`
        (or :class:`CommandError` when the device rejects them).
        """

        command_id = next_request_id()
        params = list(params)
        if kind is CommandKind.MUTATING:
            self.cache.upsert(method, params)
        request = {"id": command_id, "method": method, "params": params}
        context = self._context(command_id, method)
        self.logger.debug("Sending command", extra={**context, "params": params})

        started = time.perf_counter()
        state = self.policy.start()
        error: Optional[BaseException] = None
        while True:
            attempt = state.current
            try:
                result = await self._attempt(request, attempt)
            except HostUnreachable as exc:
                outcome, error = AttemptOutcome.UNREACHABLE, exc
            except CommandError as exc:
                outcome, error = AttemptOutcome.REJECTED, exc
            except (ConnectionFailed, CommandTimeout, asyncio.TimeoutError, OSError) as exc:
                outcome, error = AttemptOutcome.TRANSIENT, exc
            else:
                outcome = AttemptOutcome.SUCCESS
            record_command_attempt(outcome.value)
            decision = state.record(outcome)
            if decision is RetryDecision.DONE:
                record_command_result(method, kind.value, "success", time.perf_counter() - started)
                return result
            if decision is not RetryDecision.RETRY:
                break
            self.logger.debug(
                "Command attempt failed; retrying",
                extra={
                    **context,
                    "attempt": attempt.index,
                    "deadline_ms": round(attempt.deadline * 1000),
                    "error": repr(error),
                },
            )

        duration = time.perf_counter() - started
        if decision is RetryDecision.REJECTED:
            record_command_result(method, kind.value, "rejected", duration)
            self.logger.error("Device rejected command", extra={**context, "error": str(error)})
            if kind is CommandKind.QUERY and isinstance(error, CommandError):
                raise error
            return []

        self.channel.force_close()
        if kind is CommandKind.MUTATING:
            record_command_result(method, kind.value, "queued", duration)
            self.logger.debug(
                "Queued command for replay on reconnect",
                extra={**context, "attempts": state.attempts_made, "reason": decision.value},
            )
            return []
        record_command_result(method, kind.value, "failed", duration)
        self.logger.error(
            "Failed to send command",
            extra={**context, "attempts": state.attempts_made, "reason": decision.value},
        )
        raise CommandFailed(command_id, state.attempts_made) from error

    async def _attempt(self, request: Mapping[str, Any], attempt: Attempt) -> List[Any]:
        opened = await asyncio.wait_for(self.channel.connect(), timeout=attempt.deadline)
        if opened:
            await self.channel.reconcile()

        loop = asyncio.get_running_loop()
        command_id = int(request["id"])
        future: "asyncio.Future[List[Any]]" = loop.create_future()
        timer = loop.call_later(attempt.deadline, self._expire, command_id, future, attempt.deadline)
        previous = self._in_flight.pop(command_id, None)
        if previous is not None:
            previous.timer.cancel()
        self._in_flight[command_id] = InFlightRequest(
            id=command_id, method=str(request["method"]), future=future, timer=timer
        )
        try:
            await self.channel.write(request)
        except BaseException:
            self._discard(command_id, future)
            raise
        try:
            return await future
        finally:
            self._discard(command_id, future)

    def handle_response(self, message: Mapping[str, Any]) -> bool:
        """Resolve the in-flight request a message answers; ``False`` if it is not a response."""

        if "id" not in message:
            return False
        try:
            command_id = int(message["id"])
        except (TypeError, ValueError):
            self.logger.debug("Ignoring response with invalid id", extra={"device_id": self.device_id, "id": message["id"]})
            return True
        request = self._in_flight.pop(command_id, None)
        if request is None:
            self.logger.debug("Ignoring late response", extra=self._context(command_id, None))
            return True
        request.timer.cancel()
        if request.future.done():
            return True

        if "result" in message:
            result = message["result"]
            self.logger.debug("Received response", extra={**self._context(command_id, request.method), "result": result})
            request.future.set_result(list(result) if isinstance(result, (list, tuple)) else [result])
            return True
        error = message.get("error")
        if isinstance(error, Mapping):
            code = error.get("code")
            text = str(error.get("message", "unknown error"))
        else:
            code = None
            text = f"unexpected response: {message!r}"
        request.future.set_exception(
            CommandError(command_id, code if isinstance(code, int) else None, text)
        )
        return True

    def abandon_all(self, reason: str = "connection closed") -> int:
        """Fail every in-flight request, e.g. because its socket closed."""

        requests = list(self._in_flight.values())
        self._in_flight.clear()
        for request in requests:
            request.timer.cancel()
            if not request.future.done():
                request.future.set_exception(ConnectionFailed(f"{reason} (command {request.id})"))
        return len(requests)

    def _expire(self, command_id: int, future: "asyncio.Future[List[Any]]", deadline: float) -> None:
        current = self._in_flight.get(command_id)
        if current is not None and current.future is future:
            del self._in_flight[command_id]
        if not future.done():
            future.set_exception(CommandTimeout(command_id, deadline))

    def _discard(self, command_id: int, future: "asyncio.Future[List[Any]]") -> None:
        current = self._in_flight.get(command_id)
        if current is not None and current.future is future:
            current.timer.cancel()
            del self._in_flight[command_id]

    def _context(self, command_id: int, method: Optional[str]) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "endpoint": str(self.channel.endpoint),
            "command_id": command_id,
            "method": method,
        }
