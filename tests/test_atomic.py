"""Tests de las primitivas de escritura atómica de JSON."""

import os

import pytest

from capture_api.storage import atomic
from capture_api.storage.atomic import atomic_write_json, read_json


def tmp_of(path):
    return path.with_name(path.name + ".tmp")


# =============================================================================
# RENAME Y FALLBACK POR COPIA
# =============================================================================

class TestAtomicWrite:

    def test_replaces_existing_document(self, tmp_path):
        target = tmp_path / "data.json"
        atomic_write_json(target, {"v": 1})
        atomic_write_json(target, {"v": 2})

        assert read_json(target) == {"v": 2}
        assert not tmp_of(target).exists()

    def test_copy_fallback_when_rename_fails(self, tmp_path, monkeypatch):
        """Rename cross-device: se copia el temporal y luego se elimina."""
        target = tmp_path / "data.json"
        atomic_write_json(target, {"v": 1})

        def cross_device(src, dst):
            raise OSError(18, "Invalid cross-device link")

        monkeypatch.setattr(atomic.os, "replace", cross_device)
        atomic_write_json(target, {"v": 2})
        monkeypatch.undo()

        assert read_json(target) == {"v": 2}
        assert not tmp_of(target).exists()

    def test_temp_removed_when_copy_also_fails(self, tmp_path):
        target = tmp_path / "data.json"
        target.mkdir()

        with pytest.raises(OSError):
            atomic_write_json(target, {"v": 1})

        assert not tmp_of(target).exists()
        assert target.is_dir()


# =============================================================================
# LOCKS POR RUTA
# =============================================================================

class TestPathLocks:

    def test_locks_released_after_use(self, tmp_path):
        for i in range(200):
            path = tmp_path / f"device_{i}.json"
            atomic_write_json(path, {"i": i})
            read_json(path)
            os.unlink(path)

        prefix = str(tmp_path)
        assert [key for key in list(atomic._locks.keys()) if key.startswith(prefix)] == []

    def test_lock_is_reentrant(self, tmp_path):
        target = tmp_path / "data.json"
        atomic_write_json(target, [])

        with atomic.file_lock(target):
            rows = read_json(target)
            rows.append(1)
            atomic_write_json(target, rows)

        assert read_json(target) == [1]
