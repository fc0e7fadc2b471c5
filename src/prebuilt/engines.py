"""
Download and compression engines.

An engine is a named strategy for one external concern: fetching a URL to a
file, or listing/unpacking/packaging a tarball. Engines are probed in rank
order once and bundled into an immutable PlatformEngines object that the
install lifecycle receives explicitly (tests inject fakes).

Overrides: the `download_engine` / `compression_engine` settings (or the
PREBUILT_DOWNLOAD_ENGINE / PREBUILT_COMPRESSION_ENGINE environment
variables) restrict probing to the named engine. An unknown name is
ignored with a warning.
"""

import functools
import os
import shutil
import subprocess
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, TextIO, Tuple, Union

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry  # type: ignore

from prebuilt.config import Settings, load_settings
from prebuilt.constants import (
    DEFAULT_BACKOFF_FACTOR,
    DEFAULT_CHUNK_SIZE,
    DEFAULT_CONNECT_RETRIES,
    DEFAULT_REQUEST_TIMEOUT,
    PROBE_TIMEOUT,
)
from prebuilt.exceptions import DownloadError, EngineNotFoundError
from prebuilt.log_utils import logger
from prebuilt.output_collector import CommandOrPipeline, run

ListingParser = Callable[[str], List[str]]


def probe_cmd(cmd: Sequence[str], verbose: bool = False) -> bool:
    """Return True if `cmd` is on PATH and exits successfully."""
    if verbose:
        logger.info(f"Probing {cmd[0]} as a possibility...")
    if shutil.which(cmd[0]) is None:
        return False
    try:
        result = subprocess.run(
            list(cmd),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=PROBE_TIMEOUT,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug(f"Probe of {cmd[0]} failed: {e}")
        return False
    if verbose and result.returncode == 0:
        logger.info(f"  Probe successful for {cmd[0]}")
    return result.returncode == 0


# =============================================================================
# Listing parsers
# =============================================================================


def _strip_dot_prefix(path: str) -> str:
    if path.startswith("./") or path.startswith(".\\"):
        return path[2:]
    return path


def parse_tar_list(output: str) -> List[str]:
    """
    Parse the output of `tar -t` into member file paths.

    Directories (entries ending in `/`) and empty lines are dropped and a
    leading `./` is removed.
    """
    files = []
    for line in output.splitlines():
        if not line or line.endswith("/") or line.endswith("\\"):
            continue
        path = _strip_dot_prefix(line)
        if path and path != ".":
            files.append(path)
    return files


def parse_7z_list(output: str) -> List[str]:
    """
    Parse the output of `7z l` into member file paths.

    The column positions of `Name` and `Attr` are taken from the header row;
    rows whose attribute column starts with `D` are directories. File rows
    sit between the two dashed separator lines.
    """
    lines = output.splitlines()
    header = next((l for l in lines if " Name" in l and " Attr" in l), None)
    if header is None:
        return []
    name_idx = header.index("Name")
    attr_idx = header.index("Attr") - 1

    entries = [
        l[name_idx:] for l in lines if len(l) > name_idx and l[attr_idx] != "D"
    ]
    bounds = [i for i, l in enumerate(entries) if l and set(l) == {"-"}]
    if len(bounds) < 2:
        return []
    return [_strip_dot_prefix(l) for l in entries[bounds[0] + 1 : bounds[1]]]


# =============================================================================
# Download engines
# =============================================================================


@dataclass(frozen=True)
class CommandDownloadEngine:
    """Download by running an external program through the output collector."""

    name: str
    probe_command: Tuple[str, ...]
    build: Callable[[str, str], CommandOrPipeline]

    def probe(self, verbose: bool = False) -> bool:
        return probe_cmd(self.probe_command, verbose=verbose)

    def download(
        self,
        url: str,
        dest: str,
        *,
        verbose: bool = False,
        tee_stream: Optional[TextIO] = None,
    ) -> None:
        run(
            self.build(url, dest),
            verbose=verbose,
            tee_stream=tee_stream,
            message=f"Could not download {url} to {dest}",
        )


@dataclass(frozen=True)
class RequestsDownloadEngine:
    """Download in-process with requests, retrying transient HTTP failures."""

    name: str = "requests"

    def probe(self, verbose: bool = False) -> bool:
        return True

    def download(
        self,
        url: str,
        dest: str,
        *,
        verbose: bool = False,
        tee_stream: Optional[TextIO] = None,
    ) -> None:
        temp_path = f"{dest}.tmp.{os.getpid()}.{int(time.time() * 1000)}"
        retry_strategy: Retry = Retry(
            total=DEFAULT_CONNECT_RETRIES,
            connect=DEFAULT_CONNECT_RETRIES,
            read=DEFAULT_CONNECT_RETRIES,
            status=DEFAULT_CONNECT_RETRIES,
            backoff_factor=DEFAULT_BACKOFF_FACTOR,
            status_forcelist=[408, 429, 500, 502, 503, 504],
            allowed_methods=frozenset({"GET", "HEAD"}),
            raise_on_status=False,
            respect_retry_after_header=True,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session = requests.Session()
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        try:
            logger.debug(f"Downloading {url} to temp path {temp_path}")
            with session.get(url, stream=True, timeout=DEFAULT_REQUEST_TIMEOUT) as response:
                response.raise_for_status()
                downloaded_bytes = 0
                with open(temp_path, "wb") as f:
                    for chunk in response.iter_content(chunk_size=DEFAULT_CHUNK_SIZE):
                        if chunk:
                            f.write(chunk)
                            downloaded_bytes += len(chunk)
            os.replace(temp_path, dest)
            logger.debug(f"Finished downloading {url} ({downloaded_bytes} bytes)")
        except requests.RequestException as e:
            raise DownloadError(
                f"Could not download {url} to {dest}", url=url, details=str(e)
            ) from e
        finally:
            session.close()
            if os.path.exists(temp_path):
                os.remove(temp_path)


DownloadEngine = Union[CommandDownloadEngine, RequestsDownloadEngine]


def _curl_cmd(url: str, path: str) -> List[str]:
    return ["curl", "-C", "-", "-#", "-f", "-o", path, "-L", url]


def _wget_cmd(url: str, path: str) -> List[str]:
    return ["wget", "-c", "-O", path, url]


def _fetch_cmd(url: str, path: str) -> List[str]:
    return ["fetch", "-f", path, url]


def _powershell_cmd(psh: str, url: str, path: str) -> List[str]:
    webclient_code = (
        "[System.Net.ServicePointManager]::SecurityProtocol = "
        "[System.Net.SecurityProtocolType]::Tls12; "
        "$webclient = (New-Object System.Net.Webclient); "
        f'$webclient.DownloadFile("{url}", "{path}")'
    )
    return [psh, "-NoProfile", "-Command", webclient_code]


def default_download_engines() -> List[DownloadEngine]:
    """Return download engines in rank order for this operating system."""
    engines: List[DownloadEngine] = [
        CommandDownloadEngine("curl", ("curl", "--help"), _curl_cmd),
        CommandDownloadEngine("wget", ("wget", "--help"), _wget_cmd),
        CommandDownloadEngine("fetch", ("fetch", "--help"), _fetch_cmd),
    ]
    if os.name == "nt":
        engines.insert(
            0,
            CommandDownloadEngine(
                "powershell",
                ("powershell", "-Help"),
                functools.partial(_powershell_cmd, "powershell"),
            ),
        )
    engines.append(RequestsDownloadEngine())
    return engines


# =============================================================================
# Compression engines
# =============================================================================


@dataclass(frozen=True)
class CompressionEngine:
    name: str
    probe_command: Tuple[str, ...]
    unpack_cmd: Callable[[str, str], CommandOrPipeline]
    package_cmd: Callable[[str, str], CommandOrPipeline]
    list_cmd: Callable[[str], CommandOrPipeline]
    parse_listing: ListingParser

    def probe(self, verbose: bool = False) -> bool:
        return probe_cmd(self.probe_command, verbose=verbose)


def _tar_unpack(tarball_path: str, out_path: str) -> List[str]:
    return ["tar", "xf", tarball_path, f"--directory={out_path}"]


def _tar_package(in_path: str, tarball_path: str) -> List[str]:
    return ["tar", "-czvf", tarball_path, "-C", in_path, "."]


def _tar_list(tarball_path: str) -> List[str]:
    return ["tar", "tf", tarball_path]


def _7z_unpack(exe7z: str, tarball_path: str, out_path: str) -> List[List[str]]:
    return [
        [exe7z, "x", tarball_path, "-y", "-so"],
        [exe7z, "x", "-si", "-y", "-ttar", f"-o{out_path}"],
    ]


def _7z_package(exe7z: str, in_path: str, tarball_path: str) -> List[List[str]]:
    return [
        [exe7z, "a", "-ttar", "-so", "a.tar", os.path.join(".", in_path, "*")],
        [exe7z, "a", "-si", tarball_path],
    ]


def _7z_list(exe7z: str, tarball_path: str) -> List[List[str]]:
    return [[exe7z, "x", tarball_path, "-so"], [exe7z, "l", "-ttar", "-y", "-si"]]


def sevenzip_engine(exe7z: str = "7z") -> CompressionEngine:
    return CompressionEngine(
        name="7z",
        probe_command=(exe7z, "--help"),
        unpack_cmd=functools.partial(_7z_unpack, exe7z),
        package_cmd=functools.partial(_7z_package, exe7z),
        list_cmd=functools.partial(_7z_list, exe7z),
        parse_listing=parse_7z_list,
    )


TAR_ENGINE = CompressionEngine(
    name="tar",
    probe_command=("tar", "--help"),
    unpack_cmd=_tar_unpack,
    package_cmd=_tar_package,
    list_cmd=_tar_list,
    parse_listing=parse_tar_list,
)


def default_compression_engines() -> List[CompressionEngine]:
    """Return compression engines in rank order; 7z is preferred on Windows."""
    if os.name == "nt":
        return [sevenzip_engine(), TAR_ENGINE]
    return [TAR_ENGINE, sevenzip_engine()]


# =============================================================================
# Strategy object
# =============================================================================


@dataclass(frozen=True)
class PlatformEngines:
    download: DownloadEngine
    compression: CompressionEngine
    copy_symlinks: bool = False
    verbose: bool = False


def _apply_override(engines: list, override: Optional[str], kind: str) -> list:
    if not override:
        return engines
    selected = [e for e in engines if e.name == override]
    if selected:
        return selected
    valid = ", ".join(e.name for e in engines)
    logger.warning(
        f"Ignoring {kind} engine override {override!r} as it doesn't match any "
        f"known engine. Try one of {valid}."
    )
    return engines


def probe_platform_engines(
    settings: Optional[Settings] = None,
    verbose: bool = False,
    download_engines: Optional[Sequence[DownloadEngine]] = None,
    compression_engines: Optional[Sequence[CompressionEngine]] = None,
) -> PlatformEngines:
    """
    Probe ranked engine lists and return the first usable engine of each kind.

    The result carries the `copy_symlinks` and `verbose` settings so that
    lifecycle operations can fall back to them.

    Raises:
        EngineNotFoundError: If no download or no compression engine works.
    """
    if settings is None:
        settings = load_settings()
    verbose = verbose or settings.verbose
    downloads = _apply_override(
        list(download_engines or default_download_engines()),
        settings.download_engine,
        "download",
    )
    compressions = _apply_override(
        list(compression_engines or default_compression_engines()),
        settings.compression_engine,
        "compression",
    )

    if verbose:
        logger.info("Probing for download engine...")
    download = next((e for e in downloads if e.probe(verbose=verbose)), None)
    if verbose:
        logger.info("Probing for compression engine...")
    compression = next((e for e in compressions if e.probe(verbose=verbose)), None)

    errmsg = []
    if download is None:
        errmsg.append(
            "No download engines found. We looked for: "
            + ", ".join(e.name for e in downloads)
        )
    if compression is None:
        errmsg.append(
            "No compression engines found. We looked for: "
            + ", ".join(e.name for e in compressions)
        )
    if errmsg:
        raise EngineNotFoundError(
            "Install one and ensure it is available on the path",
            details="; ".join(errmsg),
        )

    logger.debug(f"Using download engine {download.name}, compression engine {compression.name}")
    return PlatformEngines(
        download=download,
        compression=compression,
        copy_symlinks=settings.copy_symlinks,
        verbose=verbose,
    )


@functools.lru_cache(maxsize=None)
def default_engines() -> PlatformEngines:
    """Return the engines probed from the current settings, probing only once."""
    return probe_platform_engines()


def reset_default_engines() -> None:
    default_engines.cache_clear()
