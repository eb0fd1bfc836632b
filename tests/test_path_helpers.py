"""Tests for fileworks/utils/path_helpers.py."""

from __future__ import annotations

from pathlib import Path

import pytest

from fileworks.utils.path_helpers import (
    human_readable_size,
    is_archive_file,
    is_valid_filename,
    is_valid_relative_path,
    is_within,
    join_base,
    remote_spec,
    same_directory,
    split_extension,
    strip_archive_extension,
    validate_remote_path,
)


class TestFilenames:
    @pytest.mark.parametrize("name", ["a.txt", ".bashrc", "with space", "ünïcode"])
    def test_valid(self, name: str) -> None:
        assert is_valid_filename(name) is None

    @pytest.mark.parametrize("name", ["", "   ", ".", "..", "a/b", "a\\b", "a\x00b", "x" * 256])
    def test_invalid(self, name: str) -> None:
        assert is_valid_filename(name) is not None

    def test_relative_paths(self) -> None:
        assert is_valid_relative_path("sub/dir/file") is None
        assert is_valid_relative_path("/etc/passwd") == "Path must be relative"
        assert is_valid_relative_path("a/../../b") == "Path cannot contain '..'"
        assert is_valid_relative_path("") is not None


class TestRemotePaths:
    def test_join_base_is_plain_concatenation(self) -> None:
        assert join_base("/srv/", "a b") == "/srv/a b"
        assert join_base("/srv", "x#y") == "/srv/x#y"
        assert join_base("", "rel") == "rel"

    def test_remote_spec(self) -> None:
        assert remote_spec("deck", "deck.local", "/home/deck") == "deck@deck.local:/home/deck"

    def test_traversal_rejected(self) -> None:
        assert validate_remote_path("/home/deck/games")
        assert not validate_remote_path("/home/../etc")
        assert not validate_remote_path("/home/\x00")


class TestExtensions:
    @pytest.mark.parametrize(
        "name, expected",
        [
            ("a.txt", ("a", ".txt")),
            ("archive.tar.gz", ("archive.tar", ".gz")),
            (".bashrc", (".bashrc", "")),
            (".config.json", (".config", ".json")),
            ("README", ("README", "")),
        ],
    )
    def test_split_extension(self, name: str, expected: tuple[str, str]) -> None:
        assert split_extension(name) == expected

    @pytest.mark.parametrize(
        "name, expected",
        [("a.tar.gz", "a"), ("b.TGZ", "b"), ("c.tar", "c"), ("d.tar.xz", "d"), ("e.zip", "e.zip")],
    )
    def test_strip_archive_extension(self, name: str, expected: str) -> None:
        assert strip_archive_extension(name) == expected

    def test_is_archive_file(self) -> None:
        assert is_archive_file("a.tar.bz2")
        assert is_archive_file("A.TAR")
        assert not is_archive_file("notes.txt")


class TestSizes:
    @pytest.mark.parametrize(
        "size, expected",
        [(0, "0 B"), (512, "512 B"), (2048, "2.0 KB"), (5 * 1024 ** 2, "5.0 MB"), (-1, "0 B")],
    )
    def test_human_readable_size(self, size: int, expected: str) -> None:
        assert human_readable_size(size) == expected


class TestContainment:
    def test_is_within(self, tmp_path: Path) -> None:
        assert is_within(tmp_path / "a" / "b", tmp_path)
        assert is_within(tmp_path, tmp_path)
        assert not is_within(tmp_path.parent, tmp_path)
        assert not is_within(str(tmp_path) + "-sibling", tmp_path)

    def test_same_directory_follows_symlinks(self, tmp_path: Path) -> None:
        real = tmp_path / "real"
        real.mkdir()
        link = tmp_path / "link"
        try:
            link.symlink_to(real, target_is_directory=True)
        except OSError:
            pytest.skip("symlinks not supported")
        assert same_directory(real, link)
        assert not same_directory(real, tmp_path)
