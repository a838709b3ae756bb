"""Tri-state patch model for partial resource updates.

Every optional, patchable field of a patch is in exactly one of three states:

- unset: the field is absent from the request body and left untouched remotely
- cleared: the field is sent as an explicit JSON null
- present: the value is sent, including falsy values such as 0, False or []

The Compute API treats a missing field as "no change".
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any, TypeVar

from pydantic import BaseModel
from pydantic.alias_generators import to_camel


class _Sentinel:
    """Named singleton marker."""

    __slots__ = ("_name",)

    def __init__(self, name: str) -> None:
        self._name = name

    def __repr__(self) -> str:
        return self._name

    def __bool__(self) -> bool:
        return False

    def __copy__(self) -> _Sentinel:
        return self

    def __deepcopy__(self, memo: dict[int, Any]) -> _Sentinel:
        return self


UNSET = _Sentinel("UNSET")
CLEARED = _Sentinel("CLEARED")

R = TypeVar("R", bound=BaseModel)


def _serialize(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True, exclude_none=True)
    if isinstance(value, list | tuple):
        return [_serialize(v) for v in value]
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    return value


class Patch:
    """Partial update for one resource, keyed by python field name.

    Example:
        >>> p = Patch().set("priority", 0).clear("log_config")
        >>> p.to_api()
        {'priority': 0, 'logConfig': None}
    """

    def __init__(self, **fields: Any) -> None:
        self._fields: dict[str, Any] = {}
        for name, value in fields.items():
            self.set(name, value)

    def set(self, name: str, value: Any) -> Patch:
        """Mark a field as present. None is treated as cleared."""
        if value is UNSET:
            self._fields.pop(name, None)
        elif value is None or value is CLEARED:
            self._fields[name] = CLEARED
        else:
            self._fields[name] = value
        return self

    def clear(self, name: str) -> Patch:
        self._fields[name] = CLEARED
        return self

    def get(self, name: str) -> Any:
        return self._fields.get(name, UNSET)

    def is_set(self, name: str) -> bool:
        return name in self._fields

    def is_cleared(self, name: str) -> bool:
        return self._fields.get(name) is CLEARED

    @property
    def fields(self) -> list[str]:
        return list(self._fields)

    def with_fingerprint(self, fingerprint: str | None) -> Patch:
        """Return a copy carrying the optimistic-locking fingerprint."""
        result = Patch()
        result._fields = dict(self._fields)
        if fingerprint:
            result._fields["fingerprint"] = fingerprint
        return result

    def to_api(self) -> dict[str, Any]:
        """Render the REST body: camelCase keys, cleared fields as null."""
        body: dict[str, Any] = {}
        for name, value in self._fields.items():
            key = _API_NAME_OVERRIDES.get(name, to_camel(name))
            body[key] = None if value is CLEARED else _serialize(value)
        return body

    def __bool__(self) -> bool:
        return bool(self._fields)

    def __len__(self) -> int:
        return len(self._fields)

    def __iter__(self) -> Iterator[tuple[str, Any]]:
        return iter(list(self._fields.items()))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Patch):
            return NotImplemented
        return self._fields == other._fields

    def __repr__(self) -> str:
        return f"Patch({self._fields!r})"


_API_NAME_OVERRIDES = {
    "ip_protocol": "IPProtocol",
}


def apply_patch(resource: R, patch: Patch | None) -> R:
    """Return a copy of resource with the patch applied.

    Cleared fields are reset to None. The fingerprint is not applied; the
    remote side assigns a new one on every successful update.
    """
    if not patch:
        return resource.model_copy(deep=True)
    updates: dict[str, Any] = {}
    for name, value in patch:
        if name == "fingerprint":
            continue
        if name not in type(resource).model_fields:
            raise KeyError(f"{type(resource).__name__} has no field {name!r}")
        updates[name] = None if value is CLEARED else value
    data = resource.model_dump()
    data.update({k: _serialize_for_validate(v) for k, v in updates.items()})
    return type(resource).model_validate(data)


def _serialize_for_validate(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump()
    if isinstance(value, list | tuple):
        return [_serialize_for_validate(v) for v in value]
    return value
