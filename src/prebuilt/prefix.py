"""
Installation prefixes.

A Prefix is a root directory holding one isolated installation target with
a fixed layout (bin, lib, include, logs, downloads, manifests). Every
lifecycle operation receives its prefix explicitly.
"""

import contextlib
import os
import shutil
import sys
import tempfile
from typing import Iterator, List, Optional

from prebuilt.artifacts import source_basename, strip_tarball_extension
from prebuilt.constants import (
    BIN_DIR_NAME,
    DOWNLOADS_DIR_NAME,
    INCLUDE_DIR_NAME,
    LIB_DIR_NAME,
    LOGS_DIR_NAME,
    MANIFEST_EXTENSION,
    MANIFESTS_DIR_NAME,
    PREFIX_SUBDIRS,
)
from prebuilt.exceptions import ManifestError
from prebuilt.log_utils import logger
from prebuilt.utils import read_lines


class Prefix:
    """
    A binary installation location.

    The path is made absolute and the root directory is created on
    construction; `ensure_layout()` creates the standard subdirectories.
    """

    def __init__(self, path: str) -> None:
        self.path = os.path.abspath(os.fspath(path))
        os.makedirs(self.path, exist_ok=True)

    def __repr__(self) -> str:
        return f"Prefix({self.path!r})"

    def __fspath__(self) -> str:
        return self.path

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Prefix):
            return NotImplemented
        return self.path == other.path

    def __hash__(self) -> int:
        return hash(self.path)

    def join(self, *parts: str) -> str:
        return os.path.join(self.path, *parts)

    @property
    def bin_dir(self) -> str:
        return self.join(BIN_DIR_NAME)

    @property
    def lib_dir(self) -> str:
        # Windows loads DLLs from the directory of the executable
        if sys.platform == "win32":
            return self.bin_dir
        return self.join(LIB_DIR_NAME)

    @property
    def include_dir(self) -> str:
        return self.join(INCLUDE_DIR_NAME)

    @property
    def log_dir(self) -> str:
        return self.join(LOGS_DIR_NAME)

    @property
    def downloads_dir(self) -> str:
        return self.join(DOWNLOADS_DIR_NAME)

    @property
    def manifests_dir(self) -> str:
        return self.join(MANIFESTS_DIR_NAME)

    def layout(self) -> List[str]:
        dirs = [
            self.lib_dir if name == LIB_DIR_NAME else self.join(name)
            for name in PREFIX_SUBDIRS
        ]
        return list(dict.fromkeys(dirs))

    def ensure_layout(self) -> None:
        """Create the standard subdirectories; safe to call repeatedly."""
        for directory in self.layout():
            os.makedirs(directory, exist_ok=True)

    def relpath(self, path: str) -> Optional[str]:
        """
        Return `path` relative to the prefix root, or None if it lies outside.
        """
        rel = os.path.relpath(os.path.abspath(path), self.path)
        if rel == os.pardir or rel.startswith(os.pardir + os.sep) or os.path.isabs(rel):
            return None
        return rel

    def contains(self, member: str) -> bool:
        """Return True if the relative `member` path stays inside the prefix."""
        if os.path.isabs(member) or not member:
            return False
        return self.relpath(self.join(member)) not in (None, os.curdir)


def manifest_from_url(url: str, prefix: Prefix) -> str:
    """Return the manifest path that records the install of the tarball at `url`."""
    name = strip_tarball_extension(source_basename(url))
    return os.path.join(prefix.manifests_dir, name + MANIFEST_EXTENSION)


def manifest_for_file(path: str, prefix: Prefix) -> str:
    """
    Return the manifest that lists the installed file at `path`.

    Raises:
        ManifestError: If the file is missing, lies outside the prefix, or no
            manifest lists it.
    """
    if not os.path.isfile(path):
        raise ManifestError(f"File {path} does not exist", manifest_path=None)

    search_path = prefix.relpath(path)
    if search_path is None:
        raise ManifestError(
            "Cannot search for paths outside of the given prefix",
            manifest_path=None,
            details=path,
        )
    search_path = search_path.replace(os.sep, "/")

    if os.path.isdir(prefix.manifests_dir):
        for fname in sorted(os.listdir(prefix.manifests_dir)):
            if not fname.endswith(MANIFEST_EXTENSION):
                continue
            manifest_path = os.path.join(prefix.manifests_dir, fname)
            entries = [e.replace("\\", "/") for e in read_lines(manifest_path)]
            if search_path in entries:
                return manifest_path

    raise ManifestError(
        f"Could not find {search_path} in any manifest files", manifest_path=None
    )


def _split_path(value: str) -> List[str]:
    return [p for p in value.split(os.pathsep) if p]


def activate(prefix: Prefix) -> None:
    """Prepend the prefix's bin directory to PATH if not already present."""
    paths = _split_path(os.environ.get("PATH", ""))
    if prefix.bin_dir not in paths:
        paths.insert(0, prefix.bin_dir)
        logger.debug(f"Activated {prefix.bin_dir}")
    os.environ["PATH"] = os.pathsep.join(paths)


def deactivate(prefix: Prefix) -> None:
    """Remove the prefix's bin directory from PATH."""
    paths = _split_path(os.environ.get("PATH", ""))
    os.environ["PATH"] = os.pathsep.join(p for p in paths if p != prefix.bin_dir)


@contextlib.contextmanager
def activated(prefix: Prefix) -> Iterator[Prefix]:
    """Activate `prefix` for the duration of the `with` block."""
    activate(prefix)
    try:
        yield prefix
    finally:
        deactivate(prefix)


@contextlib.contextmanager
def temp_prefix() -> Iterator[Prefix]:
    """Yield a throwaway Prefix that is removed when the block exits."""
    path = tempfile.mkdtemp(prefix="prebuilt-")
    try:
        yield Prefix(path)
    finally:
        shutil.rmtree(path, ignore_errors=True)
