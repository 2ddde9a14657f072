"""
grpcdeck/storage.py

Durable storage for workspaces, recent endpoints and call history.

Layout under the base directory:

    workspaces/<name>.json
    recent.json            most-recent-first, capped at MAX_RECENT
    history.json           most-recent-first, capped at MAX_HISTORY

Every write goes to a sibling temp file which is fsynced and renamed over
the target, so readers see either the old or the new file.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from grpcdeck.domain import CallRecord, Endpoint, Workspace
from grpcdeck.errors import GrpcDeckError, StorageIOError, ValidationError

log = logging.getLogger(__name__)

T = TypeVar("T")

MAX_RECENT  = 10
MAX_HISTORY = 100

FILE_MODE = 0o644
DIR_MODE  = 0o755


def validate_workspace_name(name: str) -> None:
    if not name:
        raise ValidationError("workspace name must not be empty")
    if "\x00" in name:
        raise ValidationError("workspace name must not contain null bytes")
    if "/" in name or "\\" in name:
        raise ValidationError("workspace name must not contain path separators")
    if ".." in name:
        raise ValidationError("workspace name must not contain '..'")


class Repository(ABC):
    """Persistence contract; every method raises StorageIOError on failure."""

    # ── Workspaces ───────────────────────────────────────────────────────────
    @abstractmethod
    def save_workspace(self, workspace: Workspace) -> None: ...

    @abstractmethod
    def load_workspace(self, name: str) -> Workspace: ...

    @abstractmethod
    def list_workspaces(self) -> list[str]: ...

    @abstractmethod
    def delete_workspace(self, name: str) -> None: ...

    @abstractmethod
    def workspace_exists(self, name: str) -> bool: ...

    # ── Recents ──────────────────────────────────────────────────────────────
    @abstractmethod
    def add_recent(self, endpoint: Endpoint) -> None: ...

    @abstractmethod
    def recent(self) -> list[Endpoint]: ...

    @abstractmethod
    def clear_recent(self) -> None: ...

    # ── History ──────────────────────────────────────────────────────────────
    @abstractmethod
    def add_history(self, record: CallRecord) -> None: ...

    @abstractmethod
    def history(self, limit: int = 0) -> list[CallRecord]: ...

    @abstractmethod
    def delete_history(self, record_id: str) -> None: ...

    @abstractmethod
    def clear_history(self) -> None: ...


def _push_recent(items: list[Endpoint], endpoint: Endpoint) -> list[Endpoint]:
    rest = [e for e in items if not endpoint.same_target(e)]
    return ([endpoint] + rest)[:MAX_RECENT]


def _push_history(items: list[CallRecord], record: CallRecord) -> list[CallRecord]:
    rest = [r for r in items if r.id != record.id]
    return ([record] + rest)[:MAX_HISTORY]


# ──────────────────────────────────────────────────────────────────────────────
# JSON files
# ──────────────────────────────────────────────────────────────────────────────

class JSONRepository(Repository):

    def __init__(self, base_dir: str) -> None:
        self._base       = Path(base_dir)
        self._workspaces = self._base / "workspaces"
        self._recent     = self._base / "recent.json"
        self._history    = self._base / "history.json"
        self._lock       = threading.Lock()
        self._ensure_dir(self._base)
        self._ensure_dir(self._workspaces)

    @property
    def base_dir(self) -> Path:
        return self._base

    # ── Workspaces ───────────────────────────────────────────────────────────

    def save_workspace(self, workspace: Workspace) -> None:
        path = self._workspace_path(workspace.name)
        with self._lock:
            self._write_json(path, workspace.to_dict())
        log.debug("saved workspace %s", workspace.name)

    def load_workspace(self, name: str) -> Workspace:
        path = self._workspace_path(name)
        data = self._read_json(path, None)
        if data is None:
            raise StorageIOError(f"workspace {name!r} not found", path=str(path))
        return self._convert(path, lambda: Workspace.from_dict(data))

    def list_workspaces(self) -> list[str]:
        try:
            entries = list(self._workspaces.iterdir())
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise StorageIOError("cannot list workspaces", cause=exc) from exc
        return sorted(p.stem for p in entries if p.suffix == ".json" and p.is_file())

    def delete_workspace(self, name: str) -> None:
        path = self._workspace_path(name)
        try:
            path.unlink()
        except FileNotFoundError as exc:
            raise StorageIOError(f"workspace {name!r} not found", cause=exc) from exc
        except OSError as exc:
            raise StorageIOError(f"cannot delete workspace {name!r}", cause=exc) from exc

    def workspace_exists(self, name: str) -> bool:
        return self._workspace_path(name).is_file()

    # ── Recents ──────────────────────────────────────────────────────────────

    def add_recent(self, endpoint: Endpoint) -> None:
        with self._lock:
            items = _push_recent(self.recent(), endpoint)
            self._write_json(self._recent, [e.to_dict() for e in items])

    def recent(self) -> list[Endpoint]:
        return self._read_list(self._recent, Endpoint.from_dict)

    def clear_recent(self) -> None:
        self._remove(self._recent)

    # ── History ──────────────────────────────────────────────────────────────

    def add_history(self, record: CallRecord) -> None:
        with self._lock:
            items = _push_history(self.history(), record)
            self._write_json(self._history, [r.to_dict() for r in items])

    def history(self, limit: int = 0) -> list[CallRecord]:
        items = self._read_list(self._history, CallRecord.from_dict)
        return items[:limit] if limit > 0 else items

    def delete_history(self, record_id: str) -> None:
        with self._lock:
            items = [r for r in self.history() if r.id != record_id]
            self._write_json(self._history, [r.to_dict() for r in items])

    def clear_history(self) -> None:
        self._remove(self._history)

    # ── Internals ────────────────────────────────────────────────────────────

    def _workspace_path(self, name: str) -> Path:
        validate_workspace_name(name)
        path = (self._workspaces / f"{name}.json").resolve()
        root = self._workspaces.resolve()
        if path.parent != root:
            raise ValidationError(f"workspace name {name!r} escapes the workspace directory")
        return path

    @staticmethod
    def _ensure_dir(path: Path) -> None:
        try:
            path.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageIOError(f"cannot create {path}", cause=exc) from exc

    @staticmethod
    def _read_json(path: Path, default: Any) -> Any:
        try:
            with open(path, "r", encoding="utf-8") as fh:
                return json.load(fh)
        except FileNotFoundError:
            return default
        except (OSError, ValueError) as exc:
            raise StorageIOError(f"cannot read {path.name}", path=str(path), cause=exc) from exc

    def _read_list(self, path: Path, from_dict: Callable[[Any], T]) -> list[T]:
        data = self._read_json(path, [])

        def _items() -> list[T]:
            if not isinstance(data, list):
                raise TypeError(f"expected a list, got {type(data).__name__}")
            return [from_dict(d) for d in data]
        return self._convert(path, _items)

    @staticmethod
    def _convert(path: Path, build: Callable[[], T]) -> T:
        """Well-formed JSON with the wrong shape is a storage failure too."""
        try:
            return build()
        except (ValueError, TypeError, KeyError, AttributeError, GrpcDeckError) as exc:
            raise StorageIOError(f"malformed {path.name}: {exc}", path=str(path), cause=exc) from exc

    @staticmethod
    def _write_json(path: Path, data: Any) -> None:
        payload = json.dumps(data, indent=2) + "\n"
        fd, tmp = tempfile.mkstemp(prefix=".tmp-", suffix=".json", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.chmod(tmp, FILE_MODE)
            os.replace(tmp, path)
        except OSError as exc:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise StorageIOError(f"cannot write {path.name}", path=str(path), cause=exc) from exc

    @staticmethod
    def _remove(path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise StorageIOError(f"cannot remove {path.name}", cause=exc) from exc


# ──────────────────────────────────────────────────────────────────────────────
# In memory
# ──────────────────────────────────────────────────────────────────────────────

class MemoryRepository(Repository):
    """Same contract as JSONRepository, nothing touches disk."""

    def __init__(self) -> None:
        self._lock       = threading.Lock()
        self._workspaces: dict[str, Workspace] = {}
        self._recent:     list[Endpoint] = []
        self._history:    list[CallRecord] = []

    def save_workspace(self, workspace: Workspace) -> None:
        validate_workspace_name(workspace.name)
        with self._lock:
            self._workspaces[workspace.name] = workspace

    def load_workspace(self, name: str) -> Workspace:
        validate_workspace_name(name)
        with self._lock:
            ws: Optional[Workspace] = self._workspaces.get(name)
        if ws is None:
            raise StorageIOError(f"workspace {name!r} not found")
        return ws

    def list_workspaces(self) -> list[str]:
        with self._lock:
            return sorted(self._workspaces)

    def delete_workspace(self, name: str) -> None:
        validate_workspace_name(name)
        with self._lock:
            if self._workspaces.pop(name, None) is None:
                raise StorageIOError(f"workspace {name!r} not found")

    def workspace_exists(self, name: str) -> bool:
        validate_workspace_name(name)
        with self._lock:
            return name in self._workspaces

    def add_recent(self, endpoint: Endpoint) -> None:
        with self._lock:
            self._recent = _push_recent(self._recent, endpoint)

    def recent(self) -> list[Endpoint]:
        with self._lock:
            return list(self._recent)

    def clear_recent(self) -> None:
        with self._lock:
            self._recent = []

    def add_history(self, record: CallRecord) -> None:
        with self._lock:
            self._history = _push_history(self._history, record)

    def history(self, limit: int = 0) -> list[CallRecord]:
        with self._lock:
            items = list(self._history)
        return items[:limit] if limit > 0 else items

    def delete_history(self, record_id: str) -> None:
        with self._lock:
            self._history = [r for r in self._history if r.id != record_id]

    def clear_history(self) -> None:
        with self._lock:
            self._history = []
