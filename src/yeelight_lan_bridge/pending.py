"""Last-writer-wins cache of desired device state."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

# Replay order after a reconnect: power first, levels last.
FLUSH_ORDER: Tuple[str, ...] = (
    "set_power",
    "bg_set_power",
    "set_ct_abx",
    "set_hsv",
    "set_bright",
    "bg_set_hsv",
    "bg_set_bright",
)


@dataclass(frozen=True)
class PendingCommand:
    """Desired state expressed as the mutating command that produces it."""

    method: str
    params: Tuple[Any, ...]

    def as_request(self, request_id: int) -> Dict[str, Any]:
        return {"id": request_id, "method": self.method, "params": list(self.params)}


class PendingStateCache:
    """Holds at most one pending command per method name."""

    def __init__(self) -> None:
        self._entries: Dict[str, PendingCommand] = {}

    def upsert(self, method: str, params: Sequence[Any]) -> PendingCommand:
        command = PendingCommand(method=method, params=tuple(params))
        self._entries[method] = command
        return command

    def get(self, method: str) -> Optional[PendingCommand]:
        return self._entries.get(method)

    def in_flush_order(self) -> List[PendingCommand]:
        """Cached commands that take part in a replay, in replay order."""

        return [self._entries[method] for method in FLUSH_ORDER if method in self._entries]

    def snapshot(self) -> Dict[str, PendingCommand]:
        return dict(self._entries)

    def __contains__(self, method: object) -> bool:
        return method in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[PendingCommand]:
        return iter(list(self._entries.values()))
