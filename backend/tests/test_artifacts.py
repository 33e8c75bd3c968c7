"""Tests for artifact lookup and copy helpers."""

from datetime import datetime

import pytest

from packager.errors import SourceNotFoundError
from packager.services.artifacts import (
    FileInfo,
    copy_tree,
    date_folder_name,
    describe_file,
    find_by_extension,
    find_output_root,
    locate_artifacts,
    timestamped_dir_name,
)


def _touch(path, data=b"x"):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


class TestNames:
    def test_date_folder(self):
        assert date_folder_name(datetime(2024, 3, 7, 9, 5)) == "2024-03-07"

    def test_timestamped_dir(self):
        now = datetime(2024, 3, 7, 9, 5, 1)
        assert timestamped_dir_name("Runner", now) == "Runner 2024-03-07 09-05-01"


class TestCopyTree:
    def test_copies_directory_recursively(self, tmp_path):
        _touch(tmp_path / "src" / "a.apk")
        _touch(tmp_path / "src" / "nested" / "b.json")
        result = copy_tree(tmp_path / "src", tmp_path / "dst" / "deep")
        assert result.success
        assert (tmp_path / "dst" / "deep" / "a.apk").is_file()
        assert (tmp_path / "dst" / "deep" / "nested" / "b.json").is_file()

    def test_merges_into_existing_destination(self, tmp_path):
        _touch(tmp_path / "src" / "new.apk")
        _touch(tmp_path / "dst" / "old.apk")
        copy_tree(tmp_path / "src", tmp_path / "dst")
        assert sorted(p.name for p in (tmp_path / "dst").iterdir()) == ["new.apk", "old.apk"]

    def test_copies_single_file(self, tmp_path):
        _touch(tmp_path / "one.ipa", b"ipa")
        copy_tree(tmp_path / "one.ipa", tmp_path / "out" / "one.ipa")
        assert (tmp_path / "out" / "one.ipa").read_bytes() == b"ipa"

    def test_missing_source(self, tmp_path):
        with pytest.raises(SourceNotFoundError):
            copy_tree(tmp_path / "missing", tmp_path / "dst")


class TestLocateArtifacts:
    def test_flutter_layout_preferred(self, tmp_path):
        _touch(tmp_path / "build" / "app" / "outputs" / "apk" / "jc" / "release" / "a.apk")
        _touch(tmp_path / "app" / "build" / "outputs" / "apk" / "jc" / "release" / "b.apk")
        assert find_output_root(tmp_path, "apk") == tmp_path / "build" / "app" / "outputs" / "apk"
        assert [p.name for p in locate_artifacts(tmp_path, "apk", ".apk")] == ["a.apk"]

    def test_variants_in_name_order_release_only(self, tmp_path):
        root = tmp_path / "app" / "build" / "outputs" / "apk"
        _touch(root / "zz" / "release" / "zz.apk")
        _touch(root / "aa" / "release" / "aa.apk")
        _touch(root / "aa" / "debug" / "aa-debug.apk")
        _touch(root / "aa" / "release" / "output-metadata.json")
        found = locate_artifacts(tmp_path, "apk", ".apk")
        assert [p.name for p in found] == ["aa.apk", "zz.apk"]

    def test_no_output_root(self, tmp_path):
        assert find_output_root(tmp_path, "bundle") is None
        assert locate_artifacts(tmp_path, "bundle", ".aab") == []


class TestFindByExtension:
    def test_recursive_and_sorted(self, tmp_path):
        _touch(tmp_path / "b" / "Two.ipa")
        _touch(tmp_path / "a" / "One.ipa")
        _touch(tmp_path / "a" / "notes.txt")
        assert [p.name for p in find_by_extension(tmp_path)] == ["One.ipa", "Two.ipa"]

    def test_missing_directory_yields_nothing(self, tmp_path):
        assert find_by_extension(tmp_path / "absent") == []


class TestFileInfo:
    def test_describe_file(self, tmp_path):
        info = describe_file(_touch(tmp_path / "a.apk", b"x" * 2048))
        assert info.name == "a.apk"
        assert info.size_bytes == 2048
        assert info.size_label == "2.0 KB"

    def test_size_labels(self):
        assert FileInfo("a", "a", 512).size_label == "512 B"
        assert FileInfo("a", "a", 5 * 1024 * 1024).size_label == "5.0 MB"
