"""
Install / verify / uninstall lifecycle.

Artifacts are fetched (or taken from a local path), verified against an
expected SHA-256 digest, checked for conflicts against what is already in
the prefix, unpacked, and recorded in a manifest so they can be removed
again. The manifest is written only after extraction succeeds.
"""

import os
import re
import shutil
import sys
import tempfile
from enum import Enum
from typing import List, Optional, Tuple

from prebuilt.artifacts import platform_from_filename, source_basename
from prebuilt.constants import SHA256_HEX_LENGTH, TARBALL_EXTENSION
from prebuilt.engines import PlatformEngines, default_engines
from prebuilt.exceptions import (
    ConflictError,
    IntegrityError,
    ManifestError,
    PlatformError,
    PlatformMismatchError,
    PlatformParseError,
)
from prebuilt.log_utils import logger
from prebuilt.output_collector import run
from prebuilt.platforms import UnknownPlatform, Platform, matches, platform_key, triplet
from prebuilt.prefix import Prefix, manifest_from_url
from prebuilt.utils import (
    calculate_sha256,
    get_hash_file_path,
    load_file_hash,
    read_lines,
    remove_file_and_hash,
    save_file_hash,
    write_lines,
)

_SHA256_RX = re.compile(r"^[0-9a-fA-F]{%d}\Z" % SHA256_HEX_LENGTH)


class CacheStatus(str, Enum):
    """State of the `.sha256` hash cache observed by `verify()`."""

    MISSING = "hash_cache_missing"
    CONSISTENT = "hash_cache_consistent"
    FILE_MODIFIED = "file_modified"
    MISMATCH = "hash_cache_mismatch"


def _normalize_hash(sha256: str, path: Optional[str] = None) -> str:
    if not isinstance(sha256, str) or not _SHA256_RX.match(sha256):
        raise IntegrityError(
            "Hash must be 256 bits (64 hex characters) long",
            path=path,
            expected=sha256 if isinstance(sha256, str) else None,
            details=f"given hash is {len(sha256) if isinstance(sha256, str) else 0} characters long",
        )
    return sha256.lower()


def verify(
    path: str,
    sha256: str,
    *,
    hash_path: Optional[str] = None,
    verbose: bool = False,
) -> Tuple[bool, CacheStatus]:
    """
    Verify the SHA-256 digest of `path` against `sha256`.

    A `<path>.sha256` sidecar caches successful verifications. If it holds
    the expected digest and is no older than the file, the file is not
    hashed again. Otherwise the digest is recomputed and, on success, the
    sidecar is rewritten.

    Parameters:
        path: File to verify.
        sha256: Expected hex digest.
        hash_path: Sidecar location; defaults to `<path>.sha256`.
        verbose: Log cache decisions at INFO instead of DEBUG.

    Returns:
        (True, CacheStatus): the status describes the cache as it was found.

    Raises:
        IntegrityError: If `sha256` is malformed or the file's digest does
            not match it, whatever the cache says.
    """
    expected = _normalize_hash(sha256, path)
    if hash_path is None:
        hash_path = get_hash_file_path(path)
    log = logger.info if verbose else logger.debug

    cached = load_file_hash(hash_path)
    if cached is None:
        log(f"No hash cache found for {path}")
        status = CacheStatus.MISSING
    elif cached.lower() == expected:
        if os.path.getmtime(hash_path) >= os.path.getmtime(path):
            log(f"Hash cache is consistent for {path}")
            return True, CacheStatus.CONSISTENT
        log(f"{path} has been modified, hash cache invalidated")
        status = CacheStatus.FILE_MODIFIED
    else:
        log(f"Verification hash mismatch for {path}, hash cache invalidated")
        status = CacheStatus.MISMATCH

    calculated = calculate_sha256(path)
    log(f"Calculated hash {calculated} for file {path}")
    if calculated != expected:
        raise IntegrityError(
            f"Hash mismatch for {path}",
            path=path,
            expected=expected,
            calculated=calculated,
            details=f"expected sha256 {expected}, calculated sha256 {calculated}",
        )

    save_file_hash(hash_path, expected)
    return True, status


# =============================================================================
# Collaborators
# =============================================================================


def _resolve_verbose(engines: PlatformEngines, verbose: Optional[bool]) -> bool:
    return engines.verbose if verbose is None else verbose


def download(
    url: str,
    dest: str,
    *,
    engines: Optional[PlatformEngines] = None,
    verbose: Optional[bool] = None,
) -> None:
    """Download `url` to `dest` with the configured download engine."""
    engines = engines or default_engines()
    verbose = _resolve_verbose(engines, verbose)
    dest_dir = os.path.dirname(os.path.abspath(dest))
    os.makedirs(dest_dir, exist_ok=True)
    logger.info(f"Downloading {url} to {dest}")
    engines.download.download(url, dest, verbose=verbose, tee_stream=sys.stderr)


def download_verify(
    url: str,
    sha256: str,
    dest: str,
    *,
    force: bool = False,
    verbose: Optional[bool] = None,
    engines: Optional[PlatformEngines] = None,
) -> bool:
    """
    Download `url` to `dest` and verify it, reusing an existing valid file.

    An existing `dest` that fails verification is fatal unless `force` is
    set, in which case it is replaced. With `force`, a freshly downloaded
    file that fails verification is deleted and downloaded exactly once
    more; a second failure propagates.

    Returns:
        bool: False if an existing file was replaced, True otherwise.
    """
    _normalize_hash(sha256, dest)
    engines = engines or default_engines()
    verbose = _resolve_verbose(engines, verbose)
    file_existed = False

    if os.path.isfile(dest):
        file_existed = True
        log = logger.info if verbose else logger.debug
        log(f"Destination file {dest} already exists, verifying...")
        try:
            verify(dest, sha256, verbose=verbose)
            return True
        except IntegrityError:
            if not force:
                raise
            logger.info(f"Verification of {dest} failed, re-downloading...")
            remove_file_and_hash(dest)

    download(url, dest, engines=engines, verbose=verbose)
    try:
        verify(dest, sha256, verbose=verbose)
    except IntegrityError:
        if not force:
            raise
        logger.info(f"Downloaded file {dest} failed verification, restarting from scratch")
        remove_file_and_hash(dest)
        download(url, dest, engines=engines, verbose=verbose)
        verify(dest, sha256, verbose=verbose)

    return not file_existed


def _run_unpack(
    engines: PlatformEngines, tarball_path: str, dest: str, verbose: bool
) -> None:
    run(
        engines.compression.unpack_cmd(tarball_path, dest),
        verbose=verbose,
        tee_stream=sys.stderr,
        message=f"Could not unpack {tarball_path} into {dest}",
    )


def unpack(
    tarball_path: str,
    dest: str,
    *,
    engines: Optional[PlatformEngines] = None,
    verbose: Optional[bool] = None,
    copy_symlinks: Optional[bool] = None,
) -> None:
    """
    Unpack the tarball at `tarball_path` into the directory `dest`.

    With `copy_symlinks` (defaulting to the engines' setting) the archive is
    first unpacked into a temporary directory and then copied into `dest`
    with symlinks replaced by the files they point to.

    Raises:
        ProcessError: If the compression engine fails.
    """
    engines = engines or default_engines()
    verbose = _resolve_verbose(engines, verbose)
    if copy_symlinks is None:
        copy_symlinks = engines.copy_symlinks
    os.makedirs(dest, exist_ok=True)

    if not copy_symlinks:
        _run_unpack(engines, tarball_path, dest, verbose)
        return

    with tempfile.TemporaryDirectory(prefix="prebuilt-unpack-") as staging:
        _run_unpack(engines, tarball_path, staging, verbose)
        shutil.copytree(staging, dest, symlinks=False, dirs_exist_ok=True)


def list_archive_files(
    tarball_path: str,
    *,
    engines: Optional[PlatformEngines] = None,
    verbose: Optional[bool] = None,
) -> List[str]:
    """List the member files of a tarball without extracting it."""
    if not os.path.isfile(tarball_path):
        raise FileNotFoundError(f"Tarball path {tarball_path} does not exist")
    engines = engines or default_engines()
    verbose = _resolve_verbose(engines, verbose)
    oc = run(
        engines.compression.list_cmd(tarball_path),
        verbose=verbose,
        tee_stream=sys.stderr,
        message=f"Could not list contents of tarball {tarball_path}",
    )
    return engines.compression.parse_listing(oc.stdout_only())


# =============================================================================
# Install / uninstall
# =============================================================================


def _check_platform(source: str, host: Platform) -> None:
    try:
        artifact_platform = platform_from_filename(source)
    except PlatformParseError as e:
        raise PlatformParseError(
            f"{e.message}, override this by setting ignore_platform",
            triplet=e.triplet,
            details=e.details,
        ) from e

    if not matches(artifact_platform, host):
        raise PlatformMismatchError(
            f"Will not install a tarball of platform {triplet(artifact_platform)} "
            f"on a system of platform {triplet(host)} unless ignore_platform is set",
            artifact_platform=artifact_platform,
            host_platform=host,
        )


def _default_tarball_path(source: str, prefix: Prefix) -> str:
    return os.path.join(prefix.downloads_dir, source_basename(source))


def install(
    source: str,
    sha256: str,
    prefix: Prefix,
    *,
    tarball_path: Optional[str] = None,
    force: bool = False,
    ignore_platform: bool = False,
    verbose: Optional[bool] = None,
    engines: Optional[PlatformEngines] = None,
    platform: Optional[Platform] = None,
    copy_symlinks: Optional[bool] = None,
) -> bool:
    """
    Install the tarball at `source` (URL or local path) into `prefix`.

    Parameters:
        source: URL or local path of a `<name>.v<version>.<triplet>.tar.gz`.
        sha256: Expected digest of the tarball.
        prefix: Installation target.
        tarball_path: Where a downloaded tarball is stored; defaults to the
            prefix's downloads directory.
        force: Replace a previous installation of the same source and
            overwrite conflicting files.
        ignore_platform: Skip the platform compatibility check.
        engines: Download/compression strategy; probed when omitted.
        platform: Platform to check against; the running host by default.
        verbose: Tee subprocess output and log detail at INFO; defaults
            to the engines' setting.

    Returns:
        bool: True once the artifact is unpacked and its manifest written.

    Raises:
        PlatformParseError: The filename carries no recognisable triplet.
        PlatformMismatchError: The triplet is valid but incompatible.
        IntegrityError: The tarball does not match `sha256`.
        ManifestError: A member path would escape the prefix.
        ConflictError: A member would overwrite an existing file.
        ProcessError: Listing or unpacking the tarball failed.
    """
    if not ignore_platform:
        _check_platform(source, platform if platform is not None else platform_key())

    engines = engines or default_engines()
    verbose = _resolve_verbose(engines, verbose)
    if tarball_path is None:
        tarball_path = _default_tarball_path(source, prefix)

    if os.path.isfile(source):
        tarball_path = source
        verify(tarball_path, sha256, verbose=verbose)
    else:
        download_verify(
            source, sha256, tarball_path, force=force, verbose=verbose, engines=engines
        )

    logger.info(f"Installing {source_basename(tarball_path)} into {prefix.path}")

    manifest_path = manifest_from_url(source, prefix)
    if force and os.path.isfile(manifest_path):
        uninstall(manifest_path, verbose=verbose)

    file_list = list_archive_files(tarball_path, engines=engines, verbose=verbose)

    escaping = [f for f in file_list if not prefix.contains(f)]
    if escaping:
        raise ManifestError(
            f"{source_basename(tarball_path)} contains paths outside the prefix",
            manifest_path=manifest_path,
            details=", ".join(escaping),
        )

    for member in file_list:
        target = prefix.join(member)
        if os.path.isfile(target) or os.path.islink(target):
            if not force:
                raise ConflictError(
                    f"{member} already exists and would be overwritten while "
                    f"installing {source_basename(tarball_path)}",
                    path=member,
                    artifact=source_basename(tarball_path),
                    details="Will not overwrite unless force is set",
                )
            logger.info(f"{member} already exists, force-removing")
            os.remove(target)

    unpack(
        tarball_path,
        prefix.path,
        engines=engines,
        verbose=verbose,
        copy_symlinks=copy_symlinks,
    )

    os.makedirs(os.path.dirname(manifest_path), exist_ok=True)
    write_lines(manifest_path, file_list)
    logger.debug(f"Wrote manifest {manifest_path} ({len(file_list)} files)")
    return True


def _cull_empty_dirs(directory: str, prefix_path: str) -> None:
    directory = os.path.abspath(directory)
    while directory != prefix_path and os.path.isdir(directory):
        if os.listdir(directory):
            return
        logger.debug(f"Culling empty directory {os.path.relpath(directory, prefix_path)}")
        os.rmdir(directory)
        directory = os.path.dirname(directory)


def uninstall(manifest_path: str, *, verbose: bool = False) -> bool:
    """
    Remove every file listed in `manifest_path`, then the manifest itself.

    Missing files are skipped. Directories left empty are removed up to,
    but never including, the prefix root.

    Raises:
        ManifestError: If the manifest does not exist or lists a path
            outside its prefix.
    """
    if not os.path.isfile(manifest_path):
        raise ManifestError(
            f"Manifest path {manifest_path} does not exist", manifest_path=manifest_path
        )

    prefix_path = os.path.dirname(os.path.dirname(os.path.abspath(manifest_path)))
    prefix = Prefix(prefix_path)
    entries = read_lines(manifest_path)
    escaping = [e for e in entries if not prefix.contains(e)]
    if escaping:
        raise ManifestError(
            f"Manifest {manifest_path} lists paths outside its prefix",
            manifest_path=manifest_path,
            details=", ".join(escaping),
        )

    log = logger.info if verbose else logger.debug
    log(f"Removing files installed by {os.path.relpath(manifest_path, prefix_path)}")
    for entry in entries:
        delpath = prefix.join(entry)
        if not os.path.isfile(delpath) and not os.path.islink(delpath):
            log(f"  {entry} does not exist, but ignoring")
            continue
        os.remove(delpath)
        log(f"  {entry} removed")
        _cull_empty_dirs(os.path.dirname(delpath), prefix.path)

    os.remove(manifest_path)
    return True


def isinstalled(
    source: str,
    sha256: str,
    prefix: Prefix,
    *,
    tarball_path: Optional[str] = None,
) -> bool:
    """
    Return True if the tarball at `source` is installed intact in `prefix`.

    The tarball must verify, its manifest must be no older than the
    tarball, and every listed file must exist and have been changed no
    earlier than the tarball was written.
    """
    if os.path.isfile(source):
        tarball_path = source
    elif tarball_path is None:
        tarball_path = _default_tarball_path(source, prefix)

    try:
        verify(tarball_path, sha256)
    except (IntegrityError, OSError) as e:
        logger.debug(f"{tarball_path} does not verify: {e}")
        return False
    tarball_time = os.path.getmtime(tarball_path)

    manifest_path = manifest_from_url(source, prefix)
    if not os.path.isfile(manifest_path):
        return False
    if os.path.getmtime(manifest_path) < tarball_time:
        return False

    for entry in read_lines(manifest_path):
        installed_file = prefix.join(entry)
        if not os.path.isfile(installed_file) and not os.path.islink(installed_file):
            return False
        if os.lstat(installed_file).st_ctime < tarball_time:
            return False
    return True


# =============================================================================
# Convenience operations
# =============================================================================


def download_verify_unpack(
    url: str,
    sha256: str,
    dest: str,
    *,
    tarball_path: Optional[str] = None,
    force: bool = False,
    verbose: Optional[bool] = None,
    engines: Optional[PlatformEngines] = None,
    copy_symlinks: Optional[bool] = None,
) -> bool:
    """
    Download and verify the tarball at `url`, then unpack it into `dest`.

    Without `tarball_path` the tarball goes to a temporary file that is
    removed afterwards. If a previously downloaded tarball had to be
    replaced, `dest` is removed and unpacked again. An existing `dest` is
    otherwise left alone.

    Returns:
        bool: True if the tarball was unpacked, False if `dest` already existed.
    """
    engines = engines or default_engines()
    verbose = _resolve_verbose(engines, verbose)
    remove_tarball = tarball_path is None
    if tarball_path is None:
        fd, tarball_path = tempfile.mkstemp(suffix=f"-download{TARBALL_EXTENSION}")
        os.close(fd)
        os.remove(tarball_path)

    try:
        fresh = download_verify(
            url, sha256, tarball_path, force=force, verbose=verbose, engines=engines
        )
        if not fresh and os.path.isdir(dest):
            logger.info(f"Removing dest directory {dest} as source tarball changed")
            shutil.rmtree(dest)

        if os.path.isdir(dest):
            logger.info(f"Destination directory {dest} already exists, returning")
            return False

        logger.info(f"Unpacking {tarball_path} into {dest}...")
        unpack(
            tarball_path,
            dest,
            engines=engines,
            verbose=verbose,
            copy_symlinks=copy_symlinks,
        )
        return True
    finally:
        if remove_tarball:
            remove_file_and_hash(tarball_path)


def package(
    prefix: Prefix,
    tarball_base: str,
    *,
    platform: Optional[Platform] = None,
    force: bool = False,
    verbose: Optional[bool] = None,
    engines: Optional[PlatformEngines] = None,
) -> Tuple[str, str]:
    """
    Build `<tarball_base>.<triplet>.tar.gz` from the contents of `prefix`.

    Returns:
        Tuple[str, str]: The tarball path and its SHA-256 digest.

    Raises:
        PlatformError: If `platform` is the unknown platform.
        ConflictError: If the tarball exists and `force` is not set.
    """
    if platform is None:
        platform = platform_key()
    if isinstance(platform, UnknownPlatform):
        raise PlatformError(f"Platform key {triplet(platform)} not recognized")

    out_path = os.path.abspath(f"{tarball_base}.{triplet(platform)}{TARBALL_EXTENSION}")
    if os.path.isfile(out_path):
        if not force:
            raise ConflictError(
                f"{out_path} already exists, refusing to package into it without force",
                path=out_path,
            )
        logger.info(f"{out_path} already exists, force-overwriting...")
        os.remove(out_path)

    engines = engines or default_engines()
    verbose = _resolve_verbose(engines, verbose)
    os.makedirs(os.path.dirname(out_path), exist_ok=True)
    run(
        engines.compression.package_cmd(prefix.path, out_path),
        verbose=verbose,
        tee_stream=sys.stderr,
        message=f"Could not package {prefix.path} into {out_path}",
    )

    digest = calculate_sha256(out_path)
    logger.info(f"SHA256 of {os.path.basename(out_path)}: {digest}")
    return out_path, digest
