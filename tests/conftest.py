import io
import os
import sys
import tarfile
import time
from pathlib import Path

import platformdirs
import pytest
import requests

from prebuilt import engines as engines_module
from prebuilt.engines import TAR_ENGINE, PlatformEngines, RequestsDownloadEngine
from prebuilt.prefix import Prefix

_NETWORK_BLOCK_MSG = (
    "Network access is blocked during tests. Mock requests.* or Session.request."
)


def _block_network(*_args, **_kwargs):
    """
    Prevent network calls in tests by raising a RuntimeError.

    Raises:
        RuntimeError: with `_NETWORK_BLOCK_MSG` indicating that network access is blocked during tests.
    """
    raise RuntimeError(_NETWORK_BLOCK_MSG)


def pytest_configure(config):
    """Register the markers used to group the test suite."""
    for marker in (
        "unit: fast tests with no subprocesses",
        "integration: tests that run external programs",
        "configuration: settings and logging tests",
        "lifecycle: install/verify/uninstall tests",
    ):
        config.addinivalue_line("markers", marker)


@pytest.fixture(autouse=True)
def _isolate_test_environment(tmp_path_factory, monkeypatch):
    """
    Point XDG and platformdirs locations at a temporary tree and clear every
    PREBUILT_* variable so host settings never leak into a test.
    """
    base = tmp_path_factory.mktemp("prebuilt")
    cache_dir = base / "cache"
    config_dir = base / "config"
    data_dir = base / "data"
    log_dir = base / "log"

    for path in (cache_dir, config_dir, data_dir, log_dir):
        path.mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("XDG_CACHE_HOME", str(cache_dir))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(config_dir))
    monkeypatch.setenv("XDG_DATA_HOME", str(data_dir))
    for key in list(os.environ):
        if key.startswith("PREBUILT_"):
            monkeypatch.delenv(key, raising=False)

    monkeypatch.setattr(
        platformdirs, "user_cache_dir", lambda *_args, **_kwargs: str(cache_dir)
    )
    monkeypatch.setattr(
        platformdirs, "user_config_dir", lambda *_args, **_kwargs: str(config_dir)
    )
    monkeypatch.setattr(
        platformdirs, "user_data_dir", lambda *_args, **_kwargs: str(data_dir)
    )
    monkeypatch.setattr(
        platformdirs, "user_log_dir", lambda *_args, **_kwargs: str(log_dir)
    )

    engines_module.reset_default_engines()
    yield
    engines_module.reset_default_engines()


def pytest_runtest_setup():
    """
    Prevent real network requests during tests by replacing HTTP entry points with blocking callables.
    """
    requests.get = _block_network
    requests.post = _block_network
    requests.put = _block_network
    requests.delete = _block_network
    requests.head = _block_network
    requests.patch = _block_network
    requests.options = _block_network
    requests.Session.request = _block_network


# =============================================================================
# Shared fixtures
# =============================================================================


def _make_tarball(path: Path, files: dict) -> Path:
    """
    Write a gzipped tarball at `path` containing `files` (relative name to
    bytes). Only file members are added, mirroring what the listing parsers
    return.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, "w:gz") as tar:
        for name, content in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            info.mtime = int(time.time())
            info.mode = 0o755 if name.startswith("bin/") else 0o644
            tar.addfile(info, io.BytesIO(content))
    return path


@pytest.fixture
def make_tarball():
    return _make_tarball


@pytest.fixture
def python_cmd():
    """Build an argv running a snippet in a fresh interpreter."""
    return lambda code: [sys.executable, "-c", code]


@pytest.fixture
def prefix(tmp_path):
    return Prefix(str(tmp_path / "prefix"))


@pytest.fixture
def tar_engines():
    """Real tar compression with the network-free requests download engine."""
    return PlatformEngines(download=RequestsDownloadEngine(), compression=TAR_ENGINE)
