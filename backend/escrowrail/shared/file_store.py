"""Atomic, concurrency-safe file operations for JSON and JSONL documents.

Every document has a sibling ``.lock`` file. Lock objects are cached per path
so a thread that already holds a document lock can re-enter it (for example a
state machine transition that reads and writes a booking while holding that
booking's lock), while other threads and other processes block on it.
"""

import json
import os
import tempfile
import threading
from contextlib import contextmanager
from typing import Any, Callable, Optional

from filelock import FileLock

_locks: dict[str, FileLock] = {}
_locks_guard = threading.Lock()


class FileStore:

    @staticmethod
    def _lock_path(file_path: str) -> str:
        return f"{file_path}.lock"

    @staticmethod
    def lock(file_path: str) -> FileLock:
        lock_path = FileStore._lock_path(file_path)
        with _locks_guard:
            lock = _locks.get(lock_path)
            if lock is None:
                os.makedirs(os.path.dirname(lock_path) or ".", exist_ok=True)
                lock = FileLock(lock_path)
                _locks[lock_path] = lock
            return lock

    @staticmethod
    @contextmanager
    def locked(file_path: str, timeout: Optional[float] = None):
        lock = FileStore.lock(file_path)
        lock.acquire(timeout=-1 if timeout is None else timeout)
        try:
            yield
        finally:
            lock.release()

    @staticmethod
    def _read_json_unlocked(file_path: str, default: Any) -> Any:
        if not os.path.exists(file_path):
            return default
        with open(file_path, "r") as f:
            return json.load(f)

    @staticmethod
    def _write_json_unlocked(file_path: str, data: Any) -> None:
        os.makedirs(os.path.dirname(file_path), exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=os.path.dirname(file_path), suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2, default=str)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, file_path)
        except Exception:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    @staticmethod
    def read_json(file_path: str, default: Any = None) -> Any:
        with FileStore.locked(file_path):
            return FileStore._read_json_unlocked(
                file_path, default if default is not None else {}
            )

    @staticmethod
    def write_json(file_path: str, data: Any) -> None:
        with FileStore.locked(file_path):
            FileStore._write_json_unlocked(file_path, data)

    @staticmethod
    def update_json(file_path: str, mutate: Callable[[Any], Any], default: Any = None) -> Any:
        """Read-modify-write a JSON document under its lock; returns what ``mutate`` returns."""
        with FileStore.locked(file_path):
            data = FileStore._read_json_unlocked(
                file_path, default if default is not None else {}
            )
            result = mutate(data)
            FileStore._write_json_unlocked(file_path, data)
            return result

    @staticmethod
    def append_jsonl(file_path: str, record: dict) -> None:
        with FileStore.locked(file_path):
            os.makedirs(os.path.dirname(file_path), exist_ok=True)
            with open(file_path, "a") as f:
                f.write(json.dumps(record, default=str) + "\n")

    @staticmethod
    def read_jsonl(file_path: str) -> list[dict]:
        with FileStore.locked(file_path):
            if not os.path.exists(file_path):
                return []
            records = []
            with open(file_path, "r") as f:
                for line in f:
                    line = line.strip()
                    if line:
                        records.append(json.loads(line))
            return records

    @staticmethod
    def rewrite_jsonl(file_path: str, keep: Callable[[dict], bool]) -> int:
        """Atomically drop the records ``keep`` rejects; returns how many were dropped."""
        with FileStore.locked(file_path):
            if not os.path.exists(file_path):
                return 0
            with open(file_path, "r") as f:
                records = [json.loads(line) for line in f if line.strip()]
            kept = [r for r in records if keep(r)]
            if len(kept) == len(records):
                return 0
            fd, tmp = tempfile.mkstemp(dir=os.path.dirname(file_path), suffix=".tmp")
            try:
                with os.fdopen(fd, "w") as f:
                    for record in kept:
                        f.write(json.dumps(record, default=str) + "\n")
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp, file_path)
            except Exception:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
            return len(records) - len(kept)

    @staticmethod
    def list_json(dir_path: str) -> list[str]:
        """Paths of the JSON documents directly inside ``dir_path``, sorted by name."""
        if not os.path.isdir(dir_path):
            return []
        return sorted(
            os.path.join(dir_path, name)
            for name in os.listdir(dir_path)
            if name.endswith(".json") and not name.startswith("_")
        )
