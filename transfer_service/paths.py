"""
Mapping between local filesystem paths and remote keys.

Everything here is pure string manipulation: no filesystem access, so the
same inputs always produce the same keys.
"""
import posixpath
from pathlib import Path, PurePosixPath
from typing import Union

from .errors import PathScopeError

SEPARATOR = '/'

PathLike = Union[str, Path]


def _normalize(path: PathLike) -> str:
    text = str(path).replace('\\', SEPARATOR)
    if not text:
        return '.'
    # normpath keeps a leading "//"; treat it like a single root separator
    if text.startswith(SEPARATOR):
        text = SEPARATOR + text.lstrip(SEPARATOR)
    return posixpath.normpath(text)


def relative_key(local_root: PathLike, file_path: PathLike) -> str:
    """Get the key suffix of a file relative to the local root.

    Relative file paths are interpreted against the root.

    Args:
        local_root: Common parent directory of the transfer
        file_path: File inside the root

    Returns:
        The root-relative path using '/' separators

    Raises:
        PathScopeError: If the file is not strictly inside the root
    """
    root = _normalize(local_root)
    candidate = str(file_path).replace('\\', SEPARATOR)
    if not posixpath.isabs(candidate):
        candidate = posixpath.join(root, candidate)
    candidate = _normalize(candidate)

    if root == '.':
        if candidate == '.' or candidate == '..' or candidate.startswith('../') \
                or posixpath.isabs(candidate):
            raise PathScopeError(f"{file_path} is outside of {local_root}")
        return candidate

    root_with_sep = root if root.endswith(SEPARATOR) else root + SEPARATOR
    if not candidate.startswith(root_with_sep):
        raise PathScopeError(f"{file_path} is outside of {local_root}")
    return candidate[len(root_with_sep):]


def remote_key(prefix: str, relative: str) -> str:
    """Join a key prefix and a relative key with exactly one separator."""
    relative = relative.replace('\\', SEPARATOR).lstrip(SEPARATOR)
    prefix = prefix.rstrip(SEPARATOR)
    if not prefix:
        return relative
    return f"{prefix}{SEPARATOR}{relative}"


def directory_prefix(prefix: str) -> str:
    """Return the prefix with exactly one trailing separator, or '' for the root."""
    prefix = prefix.rstrip(SEPARATOR)
    return f"{prefix}{SEPARATOR}" if prefix else ''


def relative_remote_key(prefix: str, key: str) -> str:
    """Strip a directory prefix from a key listed under it.

    Raises:
        PathScopeError: If the key is not under the prefix
    """
    directory = directory_prefix(prefix)
    if not key.startswith(directory) or key == directory:
        raise PathScopeError(f"Key {key} is not under prefix {prefix}", key=key)
    return key[len(directory):]


def local_path(local_root: Path, relative: str) -> Path:
    """Map a remote key suffix onto a path under the local root.

    Raises:
        PathScopeError: If the suffix would escape the root
    """
    parts = PurePosixPath(posixpath.normpath(relative.lstrip(SEPARATOR) or '.')).parts
    if not parts or parts[0] in ('.', '..'):
        raise PathScopeError(f"Key suffix {relative} escapes {local_root}")
    return Path(local_root).joinpath(*parts)
