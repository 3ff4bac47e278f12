"""Tests for CheckpointManager."""

import os

import pytest

from shardboost import CheckpointManager

from conftest import FakeBackend, FakeModel


@pytest.fixture
def manager(tmp_path):
    return CheckpointManager(tmp_path / "ckpt", FakeBackend())


class TestCheckpointManager:
    def test_empty(self, manager):
        """A fresh directory has no checkpoint."""
        assert manager.versions() == []
        assert manager.latest_version() == 0
        assert manager.load_latest_as_model() is None

    def test_update_and_load(self, manager):
        """A saved checkpoint is found and loaded back."""
        manager.update_checkpoint(FakeModel(4, b"4"))
        assert manager.versions() == [4]
        model = manager.load_latest_as_model()
        assert model.rounds == 4

    def test_update_keeps_only_latest(self, manager):
        """Older checkpoints are removed after a newer one is saved."""
        manager.update_checkpoint(FakeModel(2, b"2"))
        manager.update_checkpoint(FakeModel(4, b"4"))
        assert manager.versions() == [4]
        assert sorted(os.listdir(manager.path)) == ["4.ubj"]

    def test_failed_save_leaves_no_temp_file(self, manager, monkeypatch):
        """A failed save keeps the previous checkpoint and leaves no partial file."""
        manager.update_checkpoint(FakeModel(2, b"2"))

        def broken_save(model, path):
            raise OSError("disk full")

        monkeypatch.setattr(manager.backend, "save_model", broken_save)
        with pytest.raises(OSError, match="disk full"):
            manager.update_checkpoint(FakeModel(4, b"4"))
        assert sorted(os.listdir(manager.path)) == ["2.ubj"]

    def test_clean_up_higher_versions(self, manager):
        """Checkpoints newer than the given version are removed."""
        os.makedirs(manager.path)
        for version in (3, 6, 9):
            with open(os.path.join(manager.path, f"{version}.ubj"), "w") as f:
                f.write('{"rounds": %d, "fingerprint": ""}' % version)
        manager.clean_up_higher_versions(6)
        assert manager.versions() == [3]

    @pytest.mark.parametrize("interval, total, expected", [
        (0, 10, [10]),
        (-1, 10, [10]),
        (4, 10, [4, 8, 10]),
        (5, 10, [5, 10]),
        (20, 10, [10]),
    ])
    def test_round_boundaries(self, manager, interval, total, expected):
        """Boundaries fall every interval rounds and always end at the total."""
        assert manager.get_round_boundaries(interval, total) == expected

    def test_round_boundaries_resume(self, manager):
        """Boundaries continue from the latest checkpoint."""
        manager.update_checkpoint(FakeModel(4, b"4"))
        assert manager.get_round_boundaries(3, 12) == [7, 10, 12]

    def test_unrelated_files_ignored(self, manager):
        """Files that are not checkpoints are not versions."""
        os.makedirs(manager.path)
        open(os.path.join(manager.path, "notes.txt"), "w").close()
        assert manager.versions() == []
