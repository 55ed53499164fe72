"""Tests for plugin bundle staging."""

import zipfile

import pytest

from gatebot.bundles import (
    bundle_root_dir,
    is_backup_dir_name,
    is_bundle_name,
    stage_bundle,
    stage_bundles,
)
from gatebot.exceptions import InvalidBundleError


def _make_zip(path, entries):
    with zipfile.ZipFile(path, "w") as archive:
        for name, content in entries.items():
            archive.writestr(name, content)
    return path


class TestNames:

    def test_bundle_name(self):
        assert is_bundle_name("weather.zip")
        assert not is_bundle_name("weather")
        assert not is_bundle_name("weather.zip.part")

    def test_backup_dir_name(self):
        assert is_backup_dir_name("weather_1718000000000")
        assert not is_backup_dir_name("weather")
        assert not is_backup_dir_name("weather_2024")


class TestRootDir:

    def test_single_root(self, tmp_path):
        path = _make_zip(tmp_path / "a.zip", {"a/manifest.json": "{}", "a/lib/x.py": ""})
        with zipfile.ZipFile(path) as archive:
            assert bundle_root_dir(archive, "a.zip") == "a"

    def test_two_roots_rejected(self, tmp_path):
        path = _make_zip(tmp_path / "a.zip", {"a/manifest.json": "{}", "b/manifest.json": "{}"})
        with zipfile.ZipFile(path) as archive:
            with pytest.raises(InvalidBundleError) as exc_info:
                bundle_root_dir(archive, "a.zip")
        assert exc_info.value.bundle == "a.zip"

    def test_root_level_file_rejected(self, tmp_path):
        path = _make_zip(tmp_path / "a.zip", {"a/manifest.json": "{}", "README": ""})
        with zipfile.ZipFile(path) as archive:
            with pytest.raises(InvalidBundleError):
                bundle_root_dir(archive, "a.zip")

    def test_empty_archive_rejected(self, tmp_path):
        path = _make_zip(tmp_path / "a.zip", {})
        with zipfile.ZipFile(path) as archive:
            with pytest.raises(InvalidBundleError):
                bundle_root_dir(archive, "a.zip")

    def test_path_traversal_rejected(self, tmp_path):
        path = _make_zip(tmp_path / "a.zip", {"a/../../evil.py": ""})
        with zipfile.ZipFile(path) as archive:
            with pytest.raises(InvalidBundleError):
                bundle_root_dir(archive, "a.zip")


class TestStage:

    def test_extracts_and_removes_archive(self, tmp_path):
        bundle = _make_zip(tmp_path / "weather.zip", {"weather/manifest.json": '{"name": "weather"}'})
        target = stage_bundle(bundle)
        assert target == tmp_path / "weather"
        assert (target / "manifest.json").read_text() == '{"name": "weather"}'
        assert not bundle.exists()

    def test_existing_dir_renamed_aside(self, tmp_path):
        old = tmp_path / "weather"
        old.mkdir()
        (old / "plugin.py").write_text("old = 1")
        bundle = _make_zip(tmp_path / "weather.zip", {"weather/plugin.py": "new = 1"})

        stage_bundle(bundle)

        assert (tmp_path / "weather" / "plugin.py").read_text() == "new = 1"
        backups = [p for p in tmp_path.iterdir() if is_backup_dir_name(p.name)]
        assert len(backups) == 1
        assert backups[0].name.startswith("weather_")
        assert (backups[0] / "plugin.py").read_text() == "old = 1"

    def test_corrupt_archive_raises(self, tmp_path):
        bundle = tmp_path / "broken.zip"
        bundle.write_bytes(b"not a zip file")
        with pytest.raises(InvalidBundleError):
            stage_bundle(bundle)
        assert bundle.exists()


class TestStageAll:

    def test_invalid_bundle_left_untouched(self, tmp_path):
        bad = _make_zip(tmp_path / "bad.zip", {"a/x.py": "", "b/y.py": ""})
        good = _make_zip(tmp_path / "good.zip", {"good/manifest.json": "{}"})

        staged = stage_bundles(tmp_path)

        assert staged == [tmp_path / "good"]
        assert bad.exists()
        assert not good.exists()
        assert not (tmp_path / "a").exists()
        assert not (tmp_path / "b").exists()

    def test_creates_missing_dir(self, tmp_path):
        plugins_dir = tmp_path / "plugins"
        assert stage_bundles(plugins_dir) == []
        assert plugins_dir.is_dir()

    def test_ignores_non_zip_entries(self, tmp_path):
        (tmp_path / "notes.txt").write_text("hi")
        (tmp_path / "dir.zip").mkdir()
        assert stage_bundles(tmp_path) == []
        assert (tmp_path / "notes.txt").exists()
