from __future__ import annotations

import copy
from threading import Lock
from typing import Any, Callable, Protocol

UpdateFn = Callable[[Any], Any]


class DataStoreError(RuntimeError):
    """Raised when the backing data store cannot serve a read or write."""


def split_path(path: str) -> list[str]:
    parts = [part for part in str(path).split("/") if part]
    if not parts:
        raise ValueError("data store path must not be empty")
    return parts


def join_path(*parts: str) -> str:
    return "/".join(str(part).strip("/") for part in parts if str(part).strip("/"))


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, dict) and not value)


class DataStore(Protocol):
    def read_snapshot(self, path: str) -> Any: ...

    def atomic_update(self, path: str, fn: UpdateFn) -> bool:
        """Apply ``fn`` to the current value; ``fn`` returning None declines.

        Returns True when a new value was committed.
        """
        ...

    def write(self, path: str, value: Any) -> None: ...

    def delete(self, path: str) -> None: ...


class InMemoryDataStore:
    """Nested-dict tree with the realtime database's path semantics."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._lock = Lock()
        self._root: dict[str, Any] = copy.deepcopy(initial) if initial else {}

    def reset(self, initial: dict[str, Any] | None = None) -> None:
        with self._lock:
            self._root = copy.deepcopy(initial) if initial else {}

    def read_snapshot(self, path: str) -> Any:
        with self._lock:
            return copy.deepcopy(self._get(split_path(path)))

    def atomic_update(self, path: str, fn: UpdateFn) -> bool:
        parts = split_path(path)
        with self._lock:
            current = copy.deepcopy(self._get(parts))
            updated = fn(current)
            if updated is None:
                return False
            self._set(parts, copy.deepcopy(updated))
            return True

    def write(self, path: str, value: Any) -> None:
        parts = split_path(path)
        with self._lock:
            self._set(parts, copy.deepcopy(value))

    def delete(self, path: str) -> None:
        parts = split_path(path)
        with self._lock:
            self._set(parts, None)

    def _get(self, parts: list[str]) -> Any:
        node: Any = self._root
        for part in parts:
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return node

    def _set(self, parts: list[str], value: Any) -> None:
        if _is_empty(value):
            self._remove(parts)
            return
        node = self._root
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value

    def _remove(self, parts: list[str]) -> None:
        trail: list[tuple[dict[str, Any], str]] = []
        node: Any = self._root
        for part in parts:
            if not isinstance(node, dict) or part not in node:
                return
            trail.append((node, part))
            node = node[part]
        parent, key = trail.pop()
        del parent[key]
        # empty parents disappear, as they do in the realtime database
        while trail:
            parent, key = trail.pop()
            if parent[key]:
                break
            del parent[key]
