from __future__ import annotations

import json
import os
import re
import time
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from ori.capabilities.base import PersistenceCapability
from ori.errors import InvalidInputError, OriError

SAFE_TRACE_ID = re.compile(r"^[A-Za-z0-9_.-]+$")


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _entry_key(phase: str, payload: dict[str, Any]) -> tuple[str, str, int]:
    return (phase, str(payload.get("event", "")), int(payload.get("seq", 0)))


class InMemoryLogStore(PersistenceCapability):
    def __init__(self) -> None:
        self._entries: dict[str, list[dict[str, Any]]] = {}

    def append_log(self, trace_id: str, phase: str, payload: dict[str, Any]) -> bool:
        entries = self._entries.setdefault(trace_id, [])
        key = _entry_key(phase, payload)
        if any(_entry_key(entry["phase"], entry) == key for entry in entries):
            return False
        entries.append({**payload, "trace_id": trace_id, "phase": phase, "at": _utcnow_iso()})
        return True

    def read_log(self, trace_id: str) -> list[dict[str, Any]]:
        return [dict(entry) for entry in self._entries.get(trace_id, [])]


class JsonlLogStore(PersistenceCapability):
    """Append-only audit log with one ``<trace_id>.jsonl`` file per workflow run."""

    def __init__(self, log_directory: Path, *, retention_days: float | None = None) -> None:
        self.log_directory = log_directory.resolve()
        self.log_directory.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.log_directory / ".lock"
        if retention_days is not None and retention_days > 0:
            self.prune(retention_days)

    def _log_file(self, trace_id: str) -> Path:
        if not SAFE_TRACE_ID.match(trace_id):
            raise InvalidInputError(f"Trace id is not usable as a log key: {trace_id!r}")
        return self.log_directory / f"{trace_id}.jsonl"

    @contextmanager
    def _lock(self, timeout_seconds: float = 3.0):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise OriError("Timed out waiting for log store lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_entries(self, log_file: Path) -> list[dict[str, Any]]:
        if not log_file.exists():
            return []
        entries: list[dict[str, Any]] = []
        for line in log_file.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                entries.append(parsed)
        return entries

    def append_log(self, trace_id: str, phase: str, payload: dict[str, Any]) -> bool:
        log_file = self._log_file(trace_id)
        key = _entry_key(phase, payload)
        with self._lock():
            for entry in self._read_entries(log_file):
                if _entry_key(str(entry.get("phase", "")), entry) == key:
                    return False
            record = {**payload, "trace_id": trace_id, "phase": phase, "at": _utcnow_iso()}
            with log_file.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, ensure_ascii=False, separators=(",", ":")))
                handle.write("\n")
        return True

    def read_log(self, trace_id: str) -> list[dict[str, Any]]:
        return self._read_entries(self._log_file(trace_id))

    def prune(self, retention_days: float) -> list[str]:
        cutoff = time.time() - retention_days * 86400
        removed: list[str] = []
        for log_file in sorted(self.log_directory.glob("*.jsonl")):
            if log_file.stat().st_mtime < cutoff:
                log_file.unlink(missing_ok=True)
                removed.append(log_file.stem)
        return removed
