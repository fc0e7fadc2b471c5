import os
import sys

import pytest

from prebuilt.constants import PREFIX_SUBDIRS
from prebuilt.exceptions import ManifestError
from prebuilt.prefix import (
    Prefix,
    activate,
    activated,
    deactivate,
    manifest_for_file,
    manifest_from_url,
    temp_prefix,
)


@pytest.mark.unit
class TestPrefix:
    def test_creates_absolute_root_only(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        prefix = Prefix("relative/root")
        assert os.path.isabs(prefix.path)
        assert os.path.isdir(prefix.path)
        assert os.listdir(prefix.path) == []

    def test_layout(self, prefix):
        assert prefix.bin_dir == os.path.join(prefix.path, "bin")
        assert prefix.include_dir == os.path.join(prefix.path, "include")
        assert prefix.log_dir == os.path.join(prefix.path, "logs")
        assert prefix.downloads_dir == os.path.join(prefix.path, "downloads")
        assert prefix.manifests_dir == os.path.join(prefix.path, "manifests")
        expected_lib = "bin" if sys.platform == "win32" else "lib"
        assert prefix.lib_dir == os.path.join(prefix.path, expected_lib)

    def test_layout_follows_subdir_constant(self, prefix):
        expected = [prefix.join(name) for name in PREFIX_SUBDIRS]
        if sys.platform == "win32":
            expected.remove(prefix.join("lib"))
        assert prefix.layout() == expected

    def test_ensure_layout_is_idempotent(self, prefix):
        prefix.ensure_layout()
        prefix.ensure_layout()
        for directory in prefix.layout():
            assert os.path.isdir(directory)

    def test_equality_and_fspath(self, tmp_path):
        a = Prefix(str(tmp_path / "p"))
        b = Prefix(str(tmp_path / "p" / ".." / "p"))
        assert a == b
        assert len({a, b}) == 1
        assert os.fspath(a) == a.path

    @pytest.mark.parametrize(
        "member, inside",
        [
            ("bin/foo", True),
            ("a/../b", True),
            ("../outside", False),
            ("bin/../../outside", False),
            ("", False),
            (".", False),
        ],
    )
    def test_contains(self, prefix, member, inside):
        assert prefix.contains(member) is inside

    def test_contains_rejects_absolute(self, prefix):
        assert prefix.contains(os.path.abspath(os.sep + "etc")) is False


@pytest.mark.unit
class TestManifests:
    def test_manifest_from_url(self, prefix):
        url = "https://h.invalid/dl/libfoo.v1.0.0.x86_64-linux-gnu.tar.gz"
        assert manifest_from_url(url, prefix) == os.path.join(
            prefix.manifests_dir, "libfoo.v1.0.0.x86_64-linux-gnu.list"
        )

    def test_manifest_from_local_path(self, prefix, tmp_path):
        path = str(tmp_path / "libbar.v2.0.0.x86_64-w64-mingw32.tar.gz")
        assert os.path.basename(manifest_from_url(path, prefix)) == (
            "libbar.v2.0.0.x86_64-w64-mingw32.list"
        )

    def test_manifest_for_file(self, prefix):
        prefix.ensure_layout()
        with open(prefix.join("bin", "foo"), "w") as f:
            f.write("#!/bin/sh\n")
        other = os.path.join(prefix.manifests_dir, "other.list")
        owner = os.path.join(prefix.manifests_dir, "libfoo.list")
        with open(other, "w") as f:
            f.write("lib/libother.so\n")
        with open(owner, "w") as f:
            f.write("lib/libfoo.so\nbin/foo\n")

        assert manifest_for_file(prefix.join("bin", "foo"), prefix) == owner

    def test_manifest_for_unowned_file(self, prefix):
        prefix.ensure_layout()
        path = prefix.join("bin", "stray")
        open(path, "w").close()
        with pytest.raises(ManifestError):
            manifest_for_file(path, prefix)

    def test_manifest_for_file_outside_prefix(self, prefix, tmp_path):
        outside = tmp_path / "outside.txt"
        outside.write_text("x")
        with pytest.raises(ManifestError) as exc_info:
            manifest_for_file(str(outside), prefix)
        assert "outside" in str(exc_info.value)

    def test_manifest_for_missing_file(self, prefix):
        with pytest.raises(ManifestError):
            manifest_for_file(prefix.join("bin", "nope"), prefix)


@pytest.mark.unit
class TestActivation:
    def test_activate_and_deactivate(self, prefix, monkeypatch):
        monkeypatch.setenv("PATH", os.pathsep.join(["/usr/bin", "/bin"]))
        activate(prefix)
        activate(prefix)
        paths = os.environ["PATH"].split(os.pathsep)
        assert paths[0] == prefix.bin_dir
        assert paths.count(prefix.bin_dir) == 1

        deactivate(prefix)
        assert os.environ["PATH"].split(os.pathsep) == ["/usr/bin", "/bin"]

    def test_activated_context(self, prefix, monkeypatch):
        monkeypatch.setenv("PATH", "/usr/bin")
        with activated(prefix) as active:
            assert active is prefix
            assert os.environ["PATH"].startswith(prefix.bin_dir)
        assert os.environ["PATH"] == "/usr/bin"

    def test_temp_prefix_is_removed(self):
        with temp_prefix() as prefix:
            path = prefix.path
            prefix.ensure_layout()
            assert os.path.isdir(prefix.bin_dir)
        assert not os.path.exists(path)
