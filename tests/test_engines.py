import os
import subprocess
import sys
from unittest.mock import MagicMock

import pytest
import requests

from prebuilt import engines
from prebuilt.config import Settings
from prebuilt.engines import (
    TAR_ENGINE,
    CommandDownloadEngine,
    PlatformEngines,
    RequestsDownloadEngine,
    default_compression_engines,
    default_download_engines,
    default_engines,
    parse_7z_list,
    parse_tar_list,
    probe_cmd,
    probe_platform_engines,
    sevenzip_engine,
)
from prebuilt.exceptions import DownloadError, EngineNotFoundError, ProcessError

SEVENZIP_HEADER = "   Date      Time    Attr         Size   Compressed  Name"
SEVENZIP_RULE = "-" * 19 + " " + "-" * 5 + " " + "-" * 12 + " " + "-" * 12 + "  " + "-" * 24


def _7z_row(attr, name, size=0):
    return f"2018-04-02 18:08:32 {attr:5} {size:>12} {0:>12}  {name}"


SEVENZIP_LISTING = "\n".join(
    [
        "7-Zip [64] 16.02 : Copyright (c) 1999-2016 Igor Pavlov : 2016-05-21",
        "p7zip Version 16.02 (locale=utf8,Utf16=on,HugeFiles=on,64 bits,4 CPUs x64)",
        "",
        "Listing archive: stdin",
        "",
        "--",
        "Path = stdin",
        "Type = tar",
        "",
        SEVENZIP_HEADER,
        SEVENZIP_RULE,
        _7z_row("D....", "bin"),
        _7z_row(".....", "bin/bar.sh", 12),
        _7z_row("D....", "lib"),
        _7z_row(".....", "lib/baz.so", 3),
        _7z_row("D....", "etc"),
        _7z_row(".....", "etc/qux.conf", 7),
        SEVENZIP_RULE,
        "2018-04-02 18:08:32                 22            0  3 files, 3 folders",
    ]
)


class FakeEngine:
    """Minimal engine double recording probe calls."""

    def __init__(self, name, available=True):
        self.name = name
        self.available = available
        self.probed = 0

    def probe(self, verbose=False):
        self.probed += 1
        return self.available


@pytest.mark.unit
class TestListingParsers:
    def test_parse_tar_list(self):
        output = "./\n./bin/\n./bin/bar.sh\n./lib/\n./lib/baz.so\n./etc/qux.conf\n"
        assert parse_tar_list(output) == ["bin/bar.sh", "lib/baz.so", "etc/qux.conf"]

    def test_parse_tar_list_without_dot_prefix(self):
        assert parse_tar_list("bin/bar.sh\nlib/baz.so\n") == ["bin/bar.sh", "lib/baz.so"]

    def test_parse_tar_list_handles_crlf(self):
        output = "./bin/\r\n./bin/bar.sh\r\n\r\n./lib/baz.so\r\n"
        assert parse_tar_list(output) == ["bin/bar.sh", "lib/baz.so"]

    def test_parse_tar_list_empty(self):
        assert parse_tar_list("") == []

    def test_parse_7z_list(self):
        assert parse_7z_list(SEVENZIP_LISTING) == ["bin/bar.sh", "lib/baz.so", "etc/qux.conf"]

    def test_parse_7z_list_handles_crlf(self):
        crlf = SEVENZIP_LISTING.replace("\n", "\r\n")
        assert parse_7z_list(crlf) == ["bin/bar.sh", "lib/baz.so", "etc/qux.conf"]

    def test_parse_7z_list_without_header(self):
        assert parse_7z_list("Error: not an archive\n") == []


@pytest.mark.unit
class TestCommandBuilders:
    def test_download_engine_rank_order(self, mocker):
        mocker.patch.object(engines.os, "name", "posix")
        names = [e.name for e in default_download_engines()]
        assert names == ["curl", "wget", "fetch", "requests"]

    def test_download_commands(self):
        by_name = {e.name: e for e in default_download_engines()}
        assert by_name["curl"].build("https://h.invalid/f", "/tmp/f") == [
            "curl", "-C", "-", "-#", "-f", "-o", "/tmp/f", "-L", "https://h.invalid/f",
        ]
        assert by_name["wget"].build("u", "p") == ["wget", "-c", "-O", "p", "u"]
        assert by_name["fetch"].build("u", "p") == ["fetch", "-f", "p", "u"]

    def test_compression_rank_order(self, mocker):
        mocker.patch.object(engines.os, "name", "posix")
        assert [e.name for e in default_compression_engines()] == ["tar", "7z"]
        mocker.patch.object(engines.os, "name", "nt")
        assert [e.name for e in default_compression_engines()] == ["7z", "tar"]

    def test_tar_commands(self):
        assert TAR_ENGINE.list_cmd("a.tar.gz") == ["tar", "tf", "a.tar.gz"]
        assert TAR_ENGINE.unpack_cmd("a.tar.gz", "/out") == [
            "tar", "xf", "a.tar.gz", "--directory=/out",
        ]
        assert TAR_ENGINE.package_cmd("/in", "a.tar.gz") == [
            "tar", "-czvf", "a.tar.gz", "-C", "/in", ".",
        ]
        assert TAR_ENGINE.parse_listing is parse_tar_list

    def test_7z_pipelines(self):
        engine = sevenzip_engine("7za")
        assert engine.unpack_cmd("a.tar.gz", "/out") == [
            ["7za", "x", "a.tar.gz", "-y", "-so"],
            ["7za", "x", "-si", "-y", "-ttar", "-o/out"],
        ]
        assert engine.list_cmd("a.tar.gz") == [
            ["7za", "x", "a.tar.gz", "-so"],
            ["7za", "l", "-ttar", "-y", "-si"],
        ]
        assert engine.package_cmd("/in", "a.tar.gz")[1] == ["7za", "a", "-si", "a.tar.gz"]
        assert engine.parse_listing is parse_7z_list


@pytest.mark.unit
class TestProbing:
    def test_probe_cmd_missing_program(self, mocker):
        mocker.patch.object(engines.shutil, "which", return_value=None)
        run = mocker.patch.object(engines.subprocess, "run")
        assert probe_cmd(["curl", "--help"]) is False
        run.assert_not_called()

    def test_probe_cmd_exit_status(self, mocker):
        mocker.patch.object(engines.shutil, "which", return_value="/usr/bin/curl")
        run = mocker.patch.object(engines.subprocess, "run")
        run.return_value = subprocess.CompletedProcess(["curl"], 0)
        assert probe_cmd(["curl", "--help"]) is True
        run.return_value = subprocess.CompletedProcess(["curl"], 1)
        assert probe_cmd(["curl", "--help"]) is False

    def test_probe_cmd_timeout(self, mocker):
        mocker.patch.object(engines.shutil, "which", return_value="/usr/bin/curl")
        mocker.patch.object(
            engines.subprocess, "run", side_effect=subprocess.TimeoutExpired("curl", 10)
        )
        assert probe_cmd(["curl", "--help"]) is False

    def test_probe_cmd_real_interpreter(self):
        assert probe_cmd([sys.executable, "--version"]) is True

    def test_first_working_engine_wins(self):
        curl, wget = FakeEngine("curl", available=False), FakeEngine("wget")
        tar = FakeEngine("tar")
        result = probe_platform_engines(
            Settings(), download_engines=[curl, wget], compression_engines=[tar]
        )
        assert result.download is wget
        assert result.compression is tar
        assert curl.probed == 1

    def test_override_selects_named_engine(self):
        curl, wget = FakeEngine("curl"), FakeEngine("wget")
        tar, sevenzip = FakeEngine("tar"), FakeEngine("7z")
        result = probe_platform_engines(
            Settings(download_engine="wget", compression_engine="7z", copy_symlinks=True),
            download_engines=[curl, wget],
            compression_engines=[tar, sevenzip],
        )
        assert result.download is wget
        assert result.compression is sevenzip
        assert result.copy_symlinks is True
        assert curl.probed == 0

    def test_verbose_setting_is_carried(self):
        result = probe_platform_engines(
            Settings(verbose=True),
            download_engines=[FakeEngine("curl")],
            compression_engines=[FakeEngine("tar")],
        )
        assert result.verbose is True
        assert result.copy_symlinks is False

    def test_verbose_argument_is_carried(self):
        result = probe_platform_engines(
            Settings(),
            verbose=True,
            download_engines=[FakeEngine("curl")],
            compression_engines=[FakeEngine("tar")],
        )
        assert result.verbose is True

    def test_unknown_override_is_ignored_with_warning(self, mocker):
        warning = mocker.patch.object(engines.logger, "warning")
        curl = FakeEngine("curl")
        result = probe_platform_engines(
            Settings(download_engine="aria2"),
            download_engines=[curl],
            compression_engines=[FakeEngine("tar")],
        )
        assert result.download is curl
        warning.assert_called_once()
        assert "aria2" in warning.call_args[0][0]

    def test_no_engine_raises(self):
        with pytest.raises(EngineNotFoundError) as exc_info:
            probe_platform_engines(
                Settings(),
                download_engines=[FakeEngine("curl", available=False)],
                compression_engines=[FakeEngine("tar", available=False)],
            )
        message = str(exc_info.value)
        assert "curl" in message and "tar" in message

    def test_settings_read_from_environment(self, monkeypatch):
        monkeypatch.setenv("PREBUILT_COMPRESSION_ENGINE", "7z")
        result = probe_platform_engines(
            download_engines=[FakeEngine("curl")],
            compression_engines=[FakeEngine("tar"), FakeEngine("7z")],
        )
        assert result.compression.name == "7z"

    def test_default_engines_probes_once(self, mocker):
        sentinel = PlatformEngines(download=FakeEngine("curl"), compression=FakeEngine("tar"))
        probe = mocker.patch.object(engines, "probe_platform_engines", return_value=sentinel)
        assert default_engines() is sentinel
        assert default_engines() is sentinel
        probe.assert_called_once_with()


@pytest.mark.integration
class TestCommandDownloadEngine:
    def _engine(self, code):
        return CommandDownloadEngine(
            "fake", ("fake", "--help"), lambda url, path: [sys.executable, "-c", code(url, path)]
        )

    def test_download_runs_command(self, tmp_path):
        dest = str(tmp_path / "file.bin")
        engine = self._engine(lambda url, path: f"open({path!r}, 'w').write({url!r})")
        engine.download("https://h.invalid/file.bin", dest)
        with open(dest) as f:
            assert f.read() == "https://h.invalid/file.bin"

    def test_download_failure_raises_process_error(self, tmp_path):
        engine = self._engine(lambda url, path: "import sys; sys.stderr.write('404\\n'); sys.exit(22)")
        with pytest.raises(ProcessError) as exc_info:
            engine.download("https://h.invalid/x", str(tmp_path / "x"))
        assert exc_info.value.returncode == 22
        assert "404" in str(exc_info.value)


@pytest.mark.unit
class TestRequestsDownloadEngine:
    @pytest.fixture
    def session(self, mocker):
        session = MagicMock()
        mocker.patch.object(engines.requests, "Session", return_value=session)
        return session

    def _response(self, chunks):
        response = MagicMock()
        response.__enter__.return_value = response
        response.__exit__.return_value = False
        response.iter_content.return_value = chunks
        return response

    def test_streams_to_destination(self, session, tmp_path):
        session.get.return_value = self._response([b"abc", b"", b"def"])
        dest = tmp_path / "artifact.tar.gz"
        RequestsDownloadEngine().download("https://h.invalid/artifact.tar.gz", str(dest))

        assert dest.read_bytes() == b"abcdef"
        assert os.listdir(tmp_path) == ["artifact.tar.gz"]
        session.get.assert_called_once()
        assert session.get.call_args.kwargs["stream"] is True
        session.close.assert_called_once()

    def test_http_error_raises_download_error(self, session, tmp_path):
        response = self._response([])
        response.raise_for_status.side_effect = requests.HTTPError("404 Not Found")
        session.get.return_value = response
        dest = tmp_path / "missing.tar.gz"

        with pytest.raises(DownloadError) as exc_info:
            RequestsDownloadEngine().download("https://h.invalid/missing.tar.gz", str(dest))
        assert exc_info.value.url == "https://h.invalid/missing.tar.gz"
        assert "404" in str(exc_info.value)
        assert os.listdir(tmp_path) == []

    def test_always_available(self):
        assert RequestsDownloadEngine().probe() is True
