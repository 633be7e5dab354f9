"""Tests de backups y rotación."""

import pytest

from capture_api.storage.atomic import atomic_write_json, read_json
from capture_api.storage.backups import BackupManager
from capture_api.storage.models import CaptureSession, SessionLayout, new_primary_record


@pytest.fixture
def session(tmp_path):
    layout = SessionLayout.resolve(tmp_path, "S1", "capture.json")
    layout.session_dir.mkdir(parents=True)
    s = CaptureSession(session_id="S1", layout=layout, device_filters=[])
    atomic_write_json(layout.data_file_path, new_primary_record(s))
    return s


class TestBackupManager:

    def test_rotation_keeps_five_newest(self, session):
        manager = BackupManager(max_backups=5)
        created = [manager.create_backup(session) for _ in range(7)]

        remaining = manager.list_backups(session)
        assert remaining == created[2:]
        assert not created[0].exists()
        assert not created[1].exists()

    def test_stamps_strictly_increase(self, session):
        manager = BackupManager()
        first = manager.create_backup(session)
        second = manager.create_backup(session)
        assert first != second
        assert manager.list_backups(session) == [first, second]

    def test_backup_is_copy_of_primary(self, session):
        path = BackupManager().create_backup(session)
        assert read_json(path) == read_json(session.data_file_path)
        assert read_json(session.backup_path) == read_json(session.data_file_path)

    def test_missing_primary_skips(self, session):
        session.data_file_path.unlink()
        manager = BackupManager()
        assert manager.create_backup(session) is None
        assert manager.create_final_backup(session) is None

    def test_final_backup_is_not_rotated(self, session):
        manager = BackupManager(max_backups=1)
        final = manager.create_final_backup(session)
        manager.create_backup(session)
        manager.create_backup(session)

        assert final.exists()
        assert final.name.startswith("session_S1_final_")
        assert len(manager.list_backups(session)) == 1

    def test_unrelated_files_are_ignored(self, session):
        manager = BackupManager(max_backups=1)
        session.layout.backup_dir.mkdir(parents=True, exist_ok=True)
        stray = session.layout.backup_dir / "session_S1_backup_notes.json"
        stray.write_text("{}")

        manager.create_backup(session)
        manager.create_backup(session)

        assert stray.exists()
        assert manager.stats["created"] == 2
