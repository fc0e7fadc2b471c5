"""
Artifact references and the tarball filename convention.

Artifacts are named `<name>.v<version>.<triplet>.tar.gz`, where the
version follows Semantic Versioning 2.0; the triplet part is the only
source of platform information for a bare filename.
"""

import os
import re
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import urlparse

from packaging.version import InvalidVersion, Version

from prebuilt.constants import TARBALL_EXTENSION
from prebuilt.exceptions import PlatformParseError
from prebuilt.log_utils import logger
from prebuilt.platforms import UNKNOWN, Platform, parse, parse_triplet, triplet

_SEMVER_IDENT = r"(?:0|[1-9]\d*|\d*[A-Za-z-][0-9A-Za-z-]*)"
SEMVER_PATTERN = (
    r"(?P<major>0|[1-9]\d*)\.(?P<minor>0|[1-9]\d*)\.(?P<patch>0|[1-9]\d*)"
    rf"(?:-(?P<prerelease>{_SEMVER_IDENT}(?:\.{_SEMVER_IDENT})*))?"
    r"(?:\+(?P<build>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
)
SEMVER_RX = re.compile(rf"{SEMVER_PATTERN}\Z")
ARTIFACT_NAME_RX = re.compile(rf"(?P<name>.+?)\.v(?P<version>{SEMVER_PATTERN})\Z")


def source_basename(source: str) -> str:
    """Return the final path component of a URL or local path."""
    if "://" in source:
        return os.path.basename(urlparse(source).path)
    return os.path.basename(source)


def strip_tarball_extension(filename: str) -> str:
    if filename.endswith(TARBALL_EXTENSION):
        return filename[: -len(TARBALL_EXTENSION)]
    return filename


def _triplet_candidates(stem: str) -> List[str]:
    # A triplet starts after a "." that precedes its first "-"; candidates
    # run from the shortest suffix to the longest.
    idx_dash = stem.rfind("-")
    if idx_dash == -1:
        return []
    return [
        stem[i + 1 :]
        for i in range(idx_dash - 1, -1, -1)
        if stem[i] == "."
    ]


def _triplet_part(path: str) -> Optional[str]:
    # Versioned OS tokens such as freebsd11.1 contain dots, so prefer the
    # shortest suffix that parses and fall back to the shortest suffix.
    candidates = _triplet_candidates(strip_tarball_extension(source_basename(path)))
    if not candidates:
        return None
    for candidate in candidates:
        if parse(candidate) is not UNKNOWN:
            return candidate
    return candidates[0]


def platform_from_filename(path: str) -> Platform:
    """
    Return the platform encoded in a tarball filename.

    Raises:
        PlatformParseError: If no triplet can be located or recognised.
    """
    part = _triplet_part(path)
    if part is None:
        raise PlatformParseError(
            f"Could not locate a platform triplet in {source_basename(path)}",
            triplet=source_basename(path),
        )
    return parse_triplet(part)


def extract_platform_key(path: str) -> Platform:
    """Return the platform encoded in a tarball filename, or UNKNOWN."""
    part = _triplet_part(path)
    if part is None:
        logger.warning(f"Could not extract the platform key of {path}")
        return UNKNOWN
    return parse(part)


@dataclass(frozen=True)
class ArtifactReference:
    name: str
    version: str
    platform: Platform
    source: Optional[str] = None
    sha256: Optional[str] = None

    @property
    def filename(self) -> str:
        return f"{self.name}.v{self.version}.{triplet(self.platform)}{TARBALL_EXTENSION}"

    @property
    def parsed_version(self) -> Version:
        """
        The version as a `packaging` Version for ordering.

        SemVer prerelease and build identifiers that PEP 440 cannot express
        are dropped, leaving the `major.minor.patch` core.
        """
        try:
            return Version(self.version)
        except InvalidVersion:
            m = SEMVER_RX.match(self.version)
            if m is None:
                raise
            return Version(f"{m.group('major')}.{m.group('minor')}.{m.group('patch')}")

    @classmethod
    def from_source(cls, source: str, sha256: Optional[str] = None) -> "ArtifactReference":
        """
        Build a reference from a URL or path following the naming convention.

        Raises:
            ValueError: If the name/version shape does not match or the
                version is not a valid semantic version.
            PlatformParseError: If the triplet is not recognised.
        """
        filename = source_basename(source)
        stem = strip_tarball_extension(filename)
        part = _triplet_part(filename)
        m = ARTIFACT_NAME_RX.match(stem[: -len(part) - 1]) if part else None
        if m is None:
            raise ValueError(
                f"{filename} does not follow <name>.v<semver>.<triplet>{TARBALL_EXTENSION}"
            )

        platform = parse_triplet(part)
        return cls(
            name=m.group("name"),
            version=m.group("version"),
            platform=platform,
            source=source,
            sha256=sha256,
        )
