from __future__ import annotations

from pathlib import Path

from ori.capabilities.base import FileMutationCapability, FileOperation
from ori.errors import FileOpError, PathEscapeError


class LocalFileMutation(FileMutationCapability):
    """Applies file operations beneath ``root`` and remembers how to undo them."""

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()
        self._originals: dict[Path, str | None] = {}

    def _resolve(self, relative: str) -> Path:
        target = (self.root / relative).resolve()
        if not target.is_relative_to(self.root):
            raise PathEscapeError(
                f"Refusing to touch path outside workspace: {relative}", path=relative
            )
        return target

    def begin_batch(self) -> None:
        self._originals.clear()

    def _remember(self, target: Path) -> None:
        if target in self._originals:
            return
        self._originals[target] = (
            target.read_text(encoding="utf-8") if target.exists() else None
        )

    async def apply(self, operation: FileOperation) -> None:
        target = self._resolve(operation.path)
        try:
            if operation.kind == "create":
                if target.exists():
                    raise FileOpError(
                        f"Cannot create {operation.path}: file already exists.",
                        path=operation.path,
                        retriable=False,
                    )
                self._remember(target)
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(operation.content or "", encoding="utf-8")
            elif operation.kind == "edit":
                if not target.is_file():
                    raise FileOpError(
                        f"Cannot edit {operation.path}: file does not exist.",
                        path=operation.path,
                        retriable=False,
                    )
                self._remember(target)
                target.write_text(operation.content or "", encoding="utf-8")
            else:
                if not target.is_file():
                    raise FileOpError(
                        f"Cannot delete {operation.path}: file does not exist.",
                        path=operation.path,
                        retriable=False,
                    )
                self._remember(target)
                target.unlink()
        except OSError as exc:
            raise FileOpError(
                f"{operation.kind} {operation.path} failed: {exc}",
                path=operation.path,
            ) from exc

    async def rollback(self, applied: list[FileOperation]) -> None:
        for operation in reversed(applied):
            target = self._resolve(operation.path)
            if target not in self._originals:
                continue
            original = self._originals.pop(target)
            if original is None:
                target.unlink(missing_ok=True)
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(original, encoding="utf-8")
