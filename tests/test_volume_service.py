"""Tests for per-database data directories."""

import pytest

from datafork.errors import InternalError
from datafork.services.volume_service import VolumeService


class TestVolumeNames:
    def test_valid_names(self):
        for name in ["1234abcd-ffff", "db.data", "a"]:
            assert VolumeService.validate_volume_name(name) is True

    def test_unsafe_names(self):
        for name in ["", "../etc", "a/b", ".hidden", "abc\n", "x" * 65]:
            assert VolumeService.validate_volume_name(name) is False


class TestVolumeLifecycle:
    def test_create_and_remove(self, tmp_path):
        volumes = VolumeService(tmp_path / "databases")
        volumes.ensure_base_path()

        path = volumes.create_volume("1234abcd")
        (path / "PG_VERSION").write_text("16")

        assert path == tmp_path / "databases" / "1234abcd"
        assert volumes.remove_volume("1234abcd") is True
        assert not path.exists()
        assert volumes.remove_volume("1234abcd") is False

    def test_traversal_rejected(self, tmp_path):
        volumes = VolumeService(tmp_path)
        with pytest.raises(InternalError):
            volumes.create_volume("..")
