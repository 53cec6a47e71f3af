from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Literal

from ori.errors import FileOpError
from ori.packet import PhaseId

FileOperationKind = Literal["create", "edit", "delete"]
FILE_OPERATION_KINDS = ("create", "edit", "delete")


@dataclass(frozen=True, slots=True)
class FileOperation:
    kind: FileOperationKind
    path: str
    content: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "path": self.path, "content": self.content}

    @classmethod
    def from_dict(cls, data: Any) -> FileOperation:
        if not isinstance(data, dict):
            raise FileOpError("File operation must be an object.", retriable=False)
        kind = data.get("kind")
        path = data.get("path")
        if kind not in FILE_OPERATION_KINDS:
            raise FileOpError(f"Unsupported file operation kind: {kind!r}", retriable=False)
        if not isinstance(path, str) or not path.strip():
            raise FileOpError("File operation requires a path.", retriable=False)
        content = data.get("content")
        if kind != "delete" and not isinstance(content, str):
            raise FileOpError(f"{kind} operation on {path} requires content.", path=path)
        return cls(kind=kind, path=path, content=content)


class ModelExecutionCapability(ABC):
    @abstractmethod
    async def invoke(self, role: PhaseId, request: dict[str, Any]) -> dict[str, Any]:
        """Ask a reasoning backend to perform ``role`` and return a structured response."""


class FileMutationCapability(ABC):
    @abstractmethod
    async def apply(self, operation: FileOperation) -> None:
        """Apply one file operation or raise FileOpError."""

    @abstractmethod
    async def rollback(self, applied: list[FileOperation]) -> None:
        """Undo operations applied since the last ``begin_batch``, most recent first."""

    def begin_batch(self) -> None:
        """Start a new batch; earlier changes are treated as committed."""


class PersistenceCapability(ABC):
    @abstractmethod
    def append_log(self, trace_id: str, phase: str, payload: dict[str, Any]) -> bool:
        """Append an audit entry; return False when it was already recorded."""

    @abstractmethod
    def read_log(self, trace_id: str) -> list[dict[str, Any]]:
        """Return every entry recorded for ``trace_id`` in append order."""
