"""Persisted flow state and the control-plane store.

The persisted state is a versioned envelope around the whiteboard's flat
export. A payload whose kind or apiVersion differs from the expected markers
is foreign (or legacy) state and is ignored as a whole, never partially read.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, Field, ValidationError

from .config import MAX_STATE_FILE_SIZE_BYTES
from .errors import InfraflowError

logger = logging.getLogger(__name__)

FLOW_STATE_KIND = "FlowState"
FLOW_STATE_API_VERSION = "infraflow.gardener.cloud/v1alpha1"


class StateStoreError(InfraflowError):
    """Raised when the persisted document cannot be read or written."""

    pass


class RouteEntry(BaseModel):
    """A kubernetes route recorded for cleanup."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: str
    destination_range: str = Field("", alias="destinationRange")
    next_hop_instance: str = Field("", alias="nextHopInstance")


class FlowState(BaseModel):
    """Versioned envelope of the whiteboard's flat export."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    kind: str = FLOW_STATE_KIND
    api_version: str = Field(FLOW_STATE_API_VERSION, alias="apiVersion")
    data: dict[str, str] = Field(default_factory=dict)
    routes: list[RouteEntry] = Field(default_factory=list)

    def has_valid_version(self) -> bool:
        return self.kind == FLOW_STATE_KIND and self.api_version == FLOW_STATE_API_VERSION

    @classmethod
    def from_payload(cls, payload: dict[str, Any] | None) -> FlowState | None:
        """Parse a persisted payload.

        Returns:
            The state, or None when the payload is absent, foreign or malformed.
        """
        if not payload:
            return None
        if (
            payload.get("kind") != FLOW_STATE_KIND
            or payload.get("apiVersion") != FLOW_STATE_API_VERSION
        ):
            logger.info(
                "Ignoring persisted state with unexpected markers",
                extra={"kind": payload.get("kind"), "api_version": payload.get("apiVersion")},
            )
            return None
        try:
            state = cls.model_validate(payload)
        except ValidationError as e:
            logger.warning("Ignoring malformed persisted state", extra={"error": str(e)})
            return None
        return state

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


@dataclass
class StoredInfrastructure:
    """What the control plane holds for one infrastructure object.

    Attributes:
        status: Last written status, if any
        state: Raw persisted state payload, if any
    """

    status: dict[str, Any] | None = None
    state: dict[str, Any] | None = None


class StateStore(Protocol):
    """Control-plane collaborator holding status and persisted state."""

    async def load(self) -> StoredInfrastructure: ...

    async def patch_status_and_state(
        self,
        status: dict[str, Any] | None,
        state: dict[str, Any] | None,
    ) -> None:
        """Write status and state; a None argument leaves that part unchanged."""
        ...


class FileStateStore:
    """StateStore keeping one JSON document on disk.

    Writes go to a temporary file in the same directory which then replaces
    the document, so readers never see a partial write.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def load(self) -> StoredInfrastructure:
        doc = await asyncio.to_thread(self._read_locked)
        return StoredInfrastructure(status=doc.get("status"), state=doc.get("state"))

    async def patch_status_and_state(
        self,
        status: dict[str, Any] | None,
        state: dict[str, Any] | None,
    ) -> None:
        await asyncio.to_thread(self._patch_locked, status, state)

    def _read_locked(self) -> dict[str, Any]:
        with self._lock:
            return self._read()

    def _patch_locked(self, status: dict[str, Any] | None, state: dict[str, Any] | None) -> None:
        with self._lock:
            doc = self._read()
            if status is not None:
                doc["status"] = status
            if state is not None:
                doc["state"] = state
            self._write(doc)

    def _read(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            size = self._path.stat().st_size
        except OSError as e:
            raise StateStoreError(f"Failed to stat state file {self._path}: {e}") from e
        if size > MAX_STATE_FILE_SIZE_BYTES:
            raise StateStoreError(
                f"State file exceeds maximum size of {MAX_STATE_FILE_SIZE_BYTES} bytes: {self._path}"
            )
        try:
            doc = json.loads(self._path.read_text(encoding="utf-8") or "{}")
        except (OSError, json.JSONDecodeError) as e:
            raise StateStoreError(f"Failed to read state file {self._path}: {e}") from e
        if not isinstance(doc, dict):
            raise StateStoreError(f"State file must contain a JSON object: {self._path}")
        return doc

    def _write(self, doc: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self._path.parent, prefix=f".{self._path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(doc, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self._path)
        except OSError as e:
            Path(tmp).unlink(missing_ok=True)
            raise StateStoreError(f"Failed to write state file {self._path}: {e}") from e
