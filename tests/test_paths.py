import pytest
from pathlib import Path

from transfer_service.errors import PathScopeError
from transfer_service.paths import (
    directory_prefix,
    local_path,
    relative_key,
    relative_remote_key,
    remote_key,
)


@pytest.mark.parametrize("root,file_path,expected", [
    ("/data/in", "/data/in/a.txt", "a.txt"),
    ("/data/in/", "/data/in/sub/b.txt", "sub/b.txt"),
    ("/data/in", "sub/c.txt", "sub/c.txt"),
    ("/data/in", "/data/in/./sub/../d.txt", "d.txt"),
    (".", "e.txt", "e.txt"),
    ("data", "f.txt", "f.txt"),
    ("//data/in", "/data/in/a/b.txt", "a/b.txt"),
    ("//data/in//", "/data/in/a/b.txt", "a/b.txt"),
    ("/data/in", "//data/in/a/b.txt", "a/b.txt"),
    ("///data/in", "a/b.txt", "a/b.txt"),
])
def test_relative_key(root, file_path, expected):
    assert relative_key(root, file_path) == expected


@pytest.mark.parametrize("root,file_path", [
    ("/data/in", "/data/other/a.txt"),
    ("/data/in", "/data/input/a.txt"),
    ("/data/in", "../a.txt"),
    ("/data/in", "/data/in"),
    (".", "../a.txt"),
    (".", "/etc/passwd"),
])
def test_relative_key_outside_root(root, file_path):
    with pytest.raises(PathScopeError):
        relative_key(root, file_path)


@pytest.mark.parametrize("prefix,relative,expected", [
    ("", "a.txt", "a.txt"),
    ("backups", "a.txt", "backups/a.txt"),
    ("backups/", "sub/a.txt", "backups/sub/a.txt"),
    ("backups//", "/a.txt", "backups/a.txt"),
])
def test_remote_key(prefix, relative, expected):
    assert remote_key(prefix, relative) == expected


def test_directory_prefix():
    assert directory_prefix("") == ""
    assert directory_prefix("/") == ""
    assert directory_prefix("dir") == "dir/"
    assert directory_prefix("dir///") == "dir/"


def test_relative_remote_key():
    assert relative_remote_key("dir", "dir/sub/a.txt") == "sub/a.txt"
    assert relative_remote_key("", "a.txt") == "a.txt"

    with pytest.raises(PathScopeError):
        relative_remote_key("dir", "directory/a.txt")
    with pytest.raises(PathScopeError):
        relative_remote_key("dir", "dir/")


def test_local_path(tmp_path):
    assert local_path(tmp_path, "sub/a.txt") == tmp_path / "sub" / "a.txt"
    assert local_path(tmp_path, "/a.txt") == tmp_path / "a.txt"

    with pytest.raises(PathScopeError):
        local_path(tmp_path, "../escape.txt")
    with pytest.raises(PathScopeError):
        local_path(tmp_path, "sub/../../escape.txt")


def test_local_to_remote_and_back(tmp_path):
    """A file mapped to a key maps back to the same file."""
    source = tmp_path / "a" / "b.txt"
    key = remote_key("prefix", relative_key(tmp_path, source))

    assert key == "prefix/a/b.txt"
    assert local_path(Path(tmp_path), relative_remote_key("prefix", key)) == source


@pytest.mark.parametrize("root", ["/data/in", "/data/in/", "//data/in", "//data/in//"])
def test_key_ignores_separators_around_root(root):
    assert remote_key("p", relative_key(root, "/data/in/a/b.txt")) == "p/a/b.txt"
