"""Run-scoped key/value and key/object store shared between flow tasks.

The whiteboard carries discovered or created resource identities from one
task to its dependents. Scalars are exported to a flat string map after every
task so an interrupted run can resume; objects live only for the run.

Ordering between writers and readers is guaranteed by the graph's
dependency edges, not by the whiteboard.
"""

from __future__ import annotations

import copy
import threading
from typing import Any, TypeVar

T = TypeVar("T")

# Separator between a child prefix and its keys in the flat export
CHILD_SEPARATOR = "/"


class Whiteboard:
    """Thread-safe store with a value namespace, an object namespace and child scopes.

    A key lives in at most one namespace: writing a value drops an object
    stored under the same key and vice versa. Objects are deep-copied on the
    way in and on the way out so tasks never share a mutable reference.

    Child scopes share the lock of the root whiteboard.
    """

    def __init__(self, *, _lock: threading.RLock | None = None) -> None:
        self._lock = _lock or threading.RLock()
        self._values: dict[str, str] = {}
        self._objects: dict[str, Any] = {}
        self._children: dict[str, Whiteboard] = {}

    # ------------------------------------------------------------------
    # Values
    # ------------------------------------------------------------------

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._objects.pop(key, None)
            self._values[key] = value

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._values.get(key)

    def delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)

    # ------------------------------------------------------------------
    # Objects
    # ------------------------------------------------------------------

    def set_object(self, key: str, obj: Any) -> None:
        if obj is None:
            self.delete_object(key)
            return
        stored = copy.deepcopy(obj)
        with self._lock:
            self._values.pop(key, None)
            self._objects[key] = stored

    def get_object(self, key: str) -> Any | None:
        with self._lock:
            obj = self._objects.get(key)
        return copy.deepcopy(obj) if obj is not None else None

    def get_object_as(self, key: str, cls: type[T]) -> T | None:
        """Return the object under key, checked against the expected type.

        Raises:
            TypeError: If an object of another type is stored under key.
        """
        obj = self.get_object(key)
        if obj is None:
            return None
        if not isinstance(obj, cls):
            raise TypeError(
                f"whiteboard object {key!r} is {type(obj).__name__}, expected {cls.__name__}"
            )
        return obj

    def has_object(self, key: str) -> bool:
        with self._lock:
            return key in self._objects

    def delete_object(self, key: str) -> None:
        with self._lock:
            self._objects.pop(key, None)

    # ------------------------------------------------------------------
    # Children
    # ------------------------------------------------------------------

    def get_child(self, prefix: str) -> Whiteboard:
        """Return the child scope for prefix, creating it on first access."""
        if not prefix or CHILD_SEPARATOR in prefix:
            raise ValueError(f"invalid child prefix: {prefix!r}")
        with self._lock:
            child = self._children.get(prefix)
            if child is None:
                child = Whiteboard(_lock=self._lock)
                self._children[prefix] = child
            return child

    def has_child(self, prefix: str) -> bool:
        with self._lock:
            return prefix in self._children

    # ------------------------------------------------------------------
    # Flat map persistence
    # ------------------------------------------------------------------

    def export_flat(self) -> dict[str, str]:
        """Export all scalar values, children included, as a flat map.

        Objects are not exported.
        """
        with self._lock:
            result = dict(self._values)
            for prefix, child in self._children.items():
                for key, value in child.export_flat().items():
                    result[f"{prefix}{CHILD_SEPARATOR}{key}"] = value
            return result

    def import_flat(self, data: dict[str, str] | None) -> None:
        """Import a flat map produced by export_flat.

        Keys containing the separator are routed into the child named by the
        first segment. Unknown keys are kept as-is and exported again.
        """
        if not data:
            return
        with self._lock:
            for key, value in data.items():
                prefix, sep, rest = key.partition(CHILD_SEPARATOR)
                if sep and prefix and rest:
                    self.get_child(prefix).import_flat({rest: value})
                else:
                    self.set(key, value)

    def __repr__(self) -> str:
        with self._lock:
            return (
                f"Whiteboard(values={sorted(self._values)}, objects={sorted(self._objects)}, "
                f"children={sorted(self._children)})"
            )
