"""JSON document persistence for the VPS fleet manager."""

from __future__ import annotations

import fcntl
import json
import os
import tempfile
import threading
import weakref
from pathlib import Path
from typing import IO, Any, List, Optional

from fleet.constants import DOCUMENT_NAME_RE
from fleet.exceptions import StorageError
from fleet.utils import ensure_directory, log


class DocumentLock:
    """Re-entrant lock on one document, shared by threads and by other processes.

    Threads of this process queue on an ``RLock``; the outermost holder also
    takes an exclusive ``flock`` on ``.<name>.lock`` next to the document, so
    every process working on the same data directory serialises too.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._thread_lock = threading.RLock()
        self._depth = 0
        self._handle: Optional[IO[str]] = None

    def acquire(self) -> None:
        self._thread_lock.acquire()
        if self._depth == 0:
            try:
                handle = open(self.path, "a", encoding="utf-8")
            except OSError as exc:
                self._thread_lock.release()
                raise StorageError(f"Cannot open lock file {self.path}: {exc}") from exc
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            except OSError as exc:
                handle.close()
                self._thread_lock.release()
                raise StorageError(f"Cannot lock {self.path}: {exc}") from exc
            self._handle = handle
        self._depth += 1

    def release(self) -> None:
        self._depth -= 1
        try:
            if self._depth == 0 and self._handle is not None:
                handle, self._handle = self._handle, None
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
                finally:
                    handle.close()
        finally:
            self._thread_lock.release()

    def __enter__(self) -> "DocumentLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


class DocumentStore:
    """Named JSON documents under one directory.

    Writes are atomic per document (temporary file in the same directory,
    then ``replace``), so readers only ever see a complete snapshot. Callers
    serialise their own read-modify-write cycles with ``lock(name)``.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        try:
            ensure_directory(self.root)
        except OSError as exc:
            raise StorageError(f"Cannot create data directory {self.root}: {exc}") from exc
        # Entries vanish once no caller holds the lock object.
        self._locks: "weakref.WeakValueDictionary[str, DocumentLock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _path(self, name: str) -> Path:
        if not DOCUMENT_NAME_RE.match(name):
            raise StorageError(f"Invalid document name '{name}'")
        return self.root / f"{name}.json"

    def lock(self, name: str) -> DocumentLock:
        """Return the lock guarding ``name``; the same object while anyone holds it."""
        self._path(name)
        with self._locks_guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = DocumentLock(self.root / f".{name}.lock")
                self._locks[name] = lock
            return lock

    def read_document(self, name: str, default: Any = None) -> Any:
        path = self._path(name)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return default
        except OSError as exc:
            raise StorageError(f"Failed to read document '{name}': {exc}") from exc
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StorageError(f"Document '{name}' is corrupt: {exc}") from exc

    def write_document(self, name: str, value: Any) -> None:
        path = self._path(name)
        try:
            payload = json.dumps(value, indent=2)
        except (TypeError, ValueError) as exc:
            raise StorageError(f"Document '{name}' is not serialisable: {exc}") from exc
        tmp_path = None
        try:
            with tempfile.NamedTemporaryFile(
                "w", encoding="utf-8", delete=False, dir=self.root, prefix=f".{name}.", suffix=".tmp"
            ) as tmp:
                tmp_path = Path(tmp.name)
                tmp.write(payload + "\n")
                tmp.flush()
                os.fsync(tmp.fileno())
            tmp_path.replace(path)
        except OSError as exc:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)
            raise StorageError(f"Failed to write document '{name}': {exc}") from exc
        log("DEBUG", f"Wrote document {path}")

    def list_documents(self, prefix: str = "") -> List[str]:
        try:
            names = [p.stem for p in self.root.glob(f"{prefix}*.json")]
        except OSError as exc:
            raise StorageError(f"Failed to list documents in {self.root}: {exc}") from exc
        return sorted(name for name in names if DOCUMENT_NAME_RE.match(name))
