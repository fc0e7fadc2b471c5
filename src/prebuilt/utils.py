# src/prebuilt/utils.py
import hashlib
import os
import tempfile
from typing import Callable, Iterable, Optional, TextIO

from prebuilt.constants import HASH_CHUNK_SIZE, HASH_FILE_EXTENSION
from prebuilt.log_utils import logger


def calculate_sha256(file_path: str) -> str:
    """
    Compute the SHA-256 hex digest of a file.

    Streams the file in chunks without loading it into memory and returns
    the 64-character lowercase hexadecimal digest. I/O errors propagate.
    """
    sha256_hash = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
            sha256_hash.update(chunk)
    return sha256_hash.hexdigest()


def get_hash_file_path(file_path: str) -> str:
    """Get the path for storing the hash file."""
    return file_path + HASH_FILE_EXTENSION


def save_file_hash(hash_path: str, hash_value: str) -> None:
    """
    Write a bare SHA-256 hex digest to the sidecar at `hash_path`.

    The sidecar is written through a temporary file and moved into place so
    a concurrent reader never sees a partial digest.
    """
    tmp_file = f"{hash_path}.tmp.{os.getpid()}"
    try:
        with open(tmp_file, "w", encoding="ascii", newline="\n") as f:
            f.write(hash_value)
        os.replace(tmp_file, hash_path)
        logger.debug("Saved hash cache %s", hash_path)
    finally:
        if os.path.exists(tmp_file):
            os.remove(tmp_file)


def load_file_hash(hash_path: str) -> Optional[str]:
    """
    Return the digest stored in the sidecar at `hash_path`, if available.

    Only the first whitespace-separated token is used, so sidecars written
    in `sha256sum` format are accepted too. Missing, unreadable or empty
    sidecars yield None.
    """
    try:
        with open(hash_path, "r", encoding="ascii", errors="replace") as f:
            line = f.readline().strip()
    except (IOError, OSError):
        return None
    if not line:
        return None
    return line.split()[0]


def remove_file_and_hash(path: str) -> None:
    """Remove a file and its `.sha256` sidecar if present."""
    for candidate in (path, get_hash_file_path(path)):
        if os.path.lexists(candidate):
            os.remove(candidate)


def atomic_write(
    file_path: str, writer_func: Callable[[TextIO], None], suffix: str = ".tmp"
) -> None:
    """
    Write a text file atomically by writing to a temporary file in the same
    directory and replacing the target on success. Errors propagate after
    the temporary file is cleaned up.
    """
    temp_fd, temp_path = tempfile.mkstemp(
        dir=os.path.dirname(file_path) or ".", prefix="tmp-", suffix=suffix
    )
    try:
        with os.fdopen(temp_fd, "w", encoding="utf-8", newline="\n") as temp_f:
            writer_func(temp_f)
        os.replace(temp_path, file_path)
    finally:
        if os.path.exists(temp_path):
            os.remove(temp_path)


def write_lines(file_path: str, lines: Iterable[str]) -> None:
    """Atomically write one entry per line."""
    atomic_write(file_path, lambda f: f.write("".join(f"{line}\n" for line in lines)))


def read_lines(file_path: str) -> list[str]:
    """Return the non-empty lines of a text file with line endings removed."""
    with open(file_path, "r", encoding="utf-8") as f:
        return [line.rstrip("\r\n") for line in f if line.strip()]
