"""Atomic JSON file primitives.

Every JSON artifact is replaced through ``<file>.tmp`` followed by a rename,
so a reader never observes a half-written document. Writers of the same
path are serialized in-process with a per-path lock; the lock is
re-entrant so a read-modify-write cycle can hold it around both steps.
"""

from __future__ import annotations

import logging
import os
import shutil
import threading
import weakref
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Union

import orjson

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

# Errors a corrupted or unreadable JSON artifact can raise on load.
READ_ERRORS = (OSError, ValueError)
# Errors a write can raise (filesystem failure or unserializable payload).
WRITE_ERRORS = (OSError, TypeError)


class _PathLock:
    """RLock referenciable débilmente; vive mientras alguien lo retiene."""

    __slots__ = ("_lock", "__weakref__")

    def __init__(self):
        self._lock = threading.RLock()

    def __enter__(self):
        self._lock.acquire()
        return self

    def __exit__(self, *exc_info):
        self._lock.release()


# Una entrada por ruta en uso; desaparece al soltarse el último holder
_locks: "weakref.WeakValueDictionary[str, _PathLock]" = weakref.WeakValueDictionary()
_locks_guard = threading.Lock()


def _lock_for(path: PathLike) -> _PathLock:
    key = os.path.abspath(os.fspath(path))
    with _locks_guard:
        lock = _locks.get(key)
        if lock is None:
            lock = _PathLock()
            _locks[key] = lock
        return lock


@contextmanager
def file_lock(path: PathLike) -> Iterator[None]:
    """Exclusión mutua in-process para un read-modify-replace sobre ``path``."""
    lock = _lock_for(path)
    with lock:
        yield


def read_json(path: PathLike) -> Any:
    """Load a JSON document. Raises ``OSError`` or ``ValueError``."""
    with file_lock(path):
        return orjson.loads(Path(path).read_bytes())


def dumps(data: Any) -> bytes:
    return orjson.dumps(data, option=orjson.OPT_INDENT_2)


def atomic_write_json(path: PathLike, data: Any) -> None:
    """Write ``data`` to ``path`` via temp file + rename.

    If the rename fails (e.g. cross-device), the temp file is copied over the
    target and then removed best-effort.
    """
    target = Path(path)
    tmp = target.with_name(target.name + ".tmp")
    content = dumps(data)

    with file_lock(target):
        with open(tmp, "wb") as fh:
            fh.write(content)
            fh.flush()
            os.fsync(fh.fileno())

        try:
            os.replace(tmp, target)
        except OSError as e:
            logger.warning("[STORE] Rename %s failed (%s), falling back to copy", tmp, e)
            try:
                shutil.copyfile(tmp, target)
            finally:
                try:
                    os.unlink(tmp)
                except OSError as unlink_error:
                    logger.debug("[STORE] Could not remove %s: %s", tmp, unlink_error)


def copy_file(source: PathLike, destination: PathLike) -> None:
    """Copy ``source`` verbatim while holding its lock; the copy lands atomically."""
    target = Path(destination)
    tmp = target.with_name(target.name + ".tmp")
    with file_lock(source):
        shutil.copyfile(source, tmp)
    os.replace(tmp, target)
