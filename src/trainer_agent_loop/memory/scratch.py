from __future__ import annotations

from collections import OrderedDict
from typing import Any

MAX_SCRATCH_SESSIONS = 1024


class SessionScratch:
    """Per-session, in-process key/value space for tools.

    Replaces module-level maps: a tool receives its session's view through
    ``ToolContext.scratch`` and can never see another session's entries.
    Only the ``max_sessions`` most recently written sessions are kept.
    """

    def __init__(self, max_sessions: int = MAX_SCRATCH_SESSIONS) -> None:
        self._data: OrderedDict[str, dict[str, Any]] = OrderedDict()
        self._max_sessions = max(1, max_sessions)

    def view(self, session_id: str) -> ScratchView:
        return ScratchView(self, session_id)

    def get(self, session_id: str, key: str, default: Any = None) -> Any:
        return self._data.get(session_id, {}).get(key, default)

    def set(self, session_id: str, key: str, value: Any) -> None:
        self._data.setdefault(session_id, {})[key] = value
        self._data.move_to_end(session_id)
        while len(self._data) > self._max_sessions:
            self._data.popitem(last=False)

    def delete(self, session_id: str, key: str) -> None:
        self._data.get(session_id, {}).pop(key, None)

    def clear(self, session_id: str) -> None:
        self._data.pop(session_id, None)

    def keys(self, session_id: str) -> list[str]:
        return sorted(self._data.get(session_id, {}))

    def __len__(self) -> int:
        return len(self._data)


class ScratchView:
    def __init__(self, scratch: SessionScratch, session_id: str):
        self._scratch = scratch
        self._session_id = session_id

    @property
    def session_id(self) -> str:
        return self._session_id

    def get(self, key: str, default: Any = None) -> Any:
        return self._scratch.get(self._session_id, key, default)

    def set(self, key: str, value: Any) -> None:
        self._scratch.set(self._session_id, key, value)

    def delete(self, key: str) -> None:
        self._scratch.delete(self._session_id, key)

    def keys(self) -> list[str]:
        return self._scratch.keys(self._session_id)
