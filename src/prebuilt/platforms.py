"""
Platform compatibility model.

A platform is one of a closed set of kinds (Linux, MacOS, Windows, FreeBSD)
carrying an architecture, a libc, a calling ABI and a compiler ABI, or the
UNKNOWN sentinel when a triplet cannot be recognised. Platforms are
immutable and validated at construction time.

Compiler ABI fields may hold a wildcard ("gcc_any" / "cxx_any"). Wildcards
only loosen compatibility checks; they are never written into a triplet.
"""

import glob
import platform as _host
import re
from dataclasses import dataclass, field
from typing import (
    ClassVar,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Tuple,
    TypeVar,
)

from prebuilt.config import Settings, load_settings
from prebuilt.constants import UNKNOWN_TRIPLET
from prebuilt.exceptions import PlatformParseError, PlatformValidationError
from prebuilt.log_utils import logger

GCC_ANY = "gcc_any"
CXX_ANY = "cxx_any"
GCC_VERSIONS = ("gcc4", "gcc5", "gcc6", "gcc7", "gcc8")
CXX_ABIS = ("cxx03", "cxx11")

# gcc tag -> libgfortran generation; 4, 5 and 6 ship the same runtime
GCC_GENERATIONS: Dict[str, int] = {
    "gcc4": 3,
    "gcc5": 3,
    "gcc6": 3,
    "gcc7": 4,
    "gcc8": 5,
}

EABIHF = "eabihf"
GLIBC = "glibc"
MUSL = "musl"

V = TypeVar("V")


@dataclass(frozen=True)
class CompilerABI:
    """GCC generation and C++ string ABI an artifact was built against."""

    gcc_version: str = GCC_ANY
    cxx_abi: str = CXX_ANY

    def __post_init__(self) -> None:
        if self.gcc_version != GCC_ANY and self.gcc_version not in GCC_VERSIONS:
            raise PlatformValidationError(
                f"Unsupported GCC version {self.gcc_version!r}",
                details=f"expected one of {', '.join(GCC_VERSIONS)} or {GCC_ANY}",
            )
        if self.cxx_abi != CXX_ANY and self.cxx_abi not in CXX_ABIS:
            raise PlatformValidationError(
                f"Unsupported C++ ABI {self.cxx_abi!r}",
                details=f"expected one of {', '.join(CXX_ABIS)} or {CXX_ANY}",
            )


class Platform:
    """Common base of every platform kind, including UNKNOWN."""

    kind: ClassVar[str] = ""


@dataclass(frozen=True)
class _ConcretePlatform(Platform):
    arch: str
    libc: Optional[str] = None
    call_abi: Optional[str] = None
    compiler_abi: CompilerABI = field(default_factory=CompilerABI)

    ARCHES: ClassVar[Tuple[str, ...]] = ()
    LIBCS: ClassVar[Tuple[Optional[str], ...]] = (None,)
    ARCH_ALIASES: ClassVar[Mapping[str, str]] = {}

    def __post_init__(self) -> None:
        if type(self) is _ConcretePlatform:
            raise TypeError("Construct Linux, MacOS, Windows or FreeBSD instead")

        arch = self.ARCH_ALIASES.get(self.arch, self.arch)
        object.__setattr__(self, "arch", arch)
        if arch not in self.ARCHES:
            raise PlatformValidationError(
                f"Unsupported architecture {arch!r} for {self.kind}",
                details=f"expected one of {', '.join(self.ARCHES)}",
            )

        if self.libc not in self.LIBCS:
            raise PlatformValidationError(
                f"Unsupported libc {self.libc!r} for {self.kind}",
                details=f"expected one of {', '.join(map(str, self.LIBCS))}",
            )

        if arch == "armv7l" and self.call_abi is None:
            object.__setattr__(self, "call_abi", EABIHF)
        if self.call_abi is not None and self.call_abi != EABIHF:
            raise PlatformValidationError(
                f"Unsupported calling ABI {self.call_abi!r}"
            )
        if self.call_abi == EABIHF and arch != "armv7l":
            raise PlatformValidationError(
                f"Calling ABI {EABIHF!r} is only valid with armv7l",
                details=f"got architecture {arch!r}",
            )

        if not isinstance(self.compiler_abi, CompilerABI):
            raise PlatformValidationError(
                "compiler_abi must be a CompilerABI",
                details=f"got {type(self.compiler_abi).__name__}",
            )

    def __str__(self) -> str:
        return triplet(self)


@dataclass(frozen=True)
class Linux(_ConcretePlatform):
    libc: Optional[str] = GLIBC

    kind: ClassVar[str] = "linux"
    ARCHES: ClassVar[Tuple[str, ...]] = (
        "x86_64",
        "i686",
        "aarch64",
        "armv7l",
        "powerpc64le",
    )
    LIBCS: ClassVar[Tuple[Optional[str], ...]] = (GLIBC, MUSL)


@dataclass(frozen=True)
class MacOS(_ConcretePlatform):
    arch: str = "x86_64"

    kind: ClassVar[str] = "macos"
    ARCHES: ClassVar[Tuple[str, ...]] = ("x86_64",)


@dataclass(frozen=True)
class Windows(_ConcretePlatform):
    kind: ClassVar[str] = "windows"
    ARCHES: ClassVar[Tuple[str, ...]] = ("x86_64", "i686")


@dataclass(frozen=True)
class FreeBSD(_ConcretePlatform):
    kind: ClassVar[str] = "freebsd"
    ARCHES: ClassVar[Tuple[str, ...]] = (
        "x86_64",
        "i686",
        "aarch64",
        "armv7l",
        "powerpc64le",
    )
    ARCH_ALIASES: ClassVar[Mapping[str, str]] = {"amd64": "x86_64", "i386": "i686"}


@dataclass(frozen=True)
class UnknownPlatform(Platform):
    """Sentinel for triplets that could not be recognised."""

    kind: ClassVar[str] = "unknown"

    def __str__(self) -> str:
        return UNKNOWN_TRIPLET


UNKNOWN = UnknownPlatform()

PLATFORM_KINDS = (Linux, MacOS, Windows, FreeBSD)

# =============================================================================
# Triplet parsing
# =============================================================================

# Ordered (family, ((value, pattern), ...)) pairs. Blank alternatives come
# last so the regex engine tries concrete tokens first.
TRIPLET_FAMILIES: Tuple[Tuple[str, Tuple[Tuple[str, str], ...]], ...] = (
    (
        "arch",
        (
            ("x86_64", r"(?:x86_|amd)64"),
            ("i686", r"i\d86"),
            ("aarch64", r"aarch64"),
            ("armv7l", r"arm(?:v7l)?"),
            ("powerpc64le", r"p(?:ower)?pc64le"),
        ),
    ),
    (
        "os",
        (
            ("darwin", r"-apple-darwin[\d.]*"),
            ("freebsd", r"-(?:.*-)?freebsd[\d.]*"),
            ("mingw32", r"-w64-mingw32"),
            ("linux", r"-(?:.*-)?linux"),
        ),
    ),
    ("libc", (("gnu", r"-gnu"), ("musl", r"-musl"), ("blank", r""))),
    ("call_abi", ((EABIHF, EABIHF), ("blank", r""))),
    ("gcc", tuple((v, f"-{v}") for v in GCC_VERSIONS) + ((GCC_ANY, r""),)),
    ("cxx", tuple((v, f"-{v}") for v in CXX_ABIS) + ((CXX_ANY, r""),)),
)

_GROUP_SEP = "__"


def _compile_triplet_regex() -> "re.Pattern[str]":
    parts = []
    for family, alternatives in TRIPLET_FAMILIES:
        branches = "|".join(
            f"(?P<{family}{_GROUP_SEP}{value}>{pattern})"
            for value, pattern in alternatives
        )
        parts.append(f"(?:{branches})")
    return re.compile("^" + "".join(parts) + r"\Z")


_TRIPLET_RX = _compile_triplet_regex()


def _family_value(match: "re.Match[str]", family: str) -> str:
    prefix = family + _GROUP_SEP
    hits = [
        name[len(prefix) :]
        for name, text in match.groupdict().items()
        if name.startswith(prefix) and text is not None
    ]
    if len(hits) != 1:
        raise PlatformParseError(
            f"Ambiguous {family} in triplet", triplet=match.string
        )
    return hits[0]


def parse_triplet(machine: str) -> Platform:
    """
    Parse `machine` into a concrete platform.

    Raises:
        PlatformParseError: If the string is not a recognised triplet or
            describes an incoherent platform.
    """
    m = _TRIPLET_RX.match(machine)
    if m is None:
        raise PlatformParseError(
            f"Platform `{machine}` is not an officially supported platform",
            triplet=machine,
        )

    arch = _family_value(m, "arch")
    os_name = _family_value(m, "os")
    libc = _family_value(m, "libc")
    call_abi = _family_value(m, "call_abi")
    compiler_abi_args = {
        "gcc_version": _family_value(m, "gcc"),
        "cxx_abi": _family_value(m, "cxx"),
    }
    call_abi_value = None if call_abi == "blank" else call_abi

    try:
        compiler_abi = CompilerABI(**compiler_abi_args)
        if os_name == "linux":
            return Linux(
                arch,
                libc=MUSL if libc == "musl" else GLIBC,
                call_abi=call_abi_value,
                compiler_abi=compiler_abi,
            )
        if libc != "blank":
            raise PlatformValidationError(f"{os_name} does not take a libc token")
        if os_name == "darwin":
            return MacOS(arch, call_abi=call_abi_value, compiler_abi=compiler_abi)
        if os_name == "mingw32":
            return Windows(arch, call_abi=call_abi_value, compiler_abi=compiler_abi)
        return FreeBSD(arch, call_abi=call_abi_value, compiler_abi=compiler_abi)
    except PlatformValidationError as e:
        raise PlatformParseError(
            f"Platform `{machine}` is not a valid platform", triplet=machine, details=str(e)
        ) from e


def parse(machine: str) -> Platform:
    """Parse `machine`, returning UNKNOWN instead of raising on failure."""
    try:
        return parse_triplet(machine)
    except PlatformParseError as e:
        logger.debug(str(e))
        return UNKNOWN


# =============================================================================
# Triplet serialization
# =============================================================================


def _compiler_abi_suffix(cabi: CompilerABI) -> str:
    suffix = ""
    if cabi.gcc_version != GCC_ANY:
        suffix += f"-{cabi.gcc_version}"
    if cabi.cxx_abi != CXX_ANY:
        suffix += f"-{cabi.cxx_abi}"
    return suffix


def triplet(p: Platform) -> str:
    """Return the canonical triplet of `p`; UNKNOWN has a fixed placeholder."""
    if isinstance(p, UnknownPlatform):
        return UNKNOWN_TRIPLET
    if not isinstance(p, PLATFORM_KINDS):
        raise TypeError(f"Not a platform: {p!r}")

    arch = "arm" if p.arch == "armv7l" else p.arch
    call_abi = p.call_abi or ""
    if isinstance(p, Linux):
        libc = "musl" if p.libc == MUSL else "gnu"
        os_str = f"-linux-{libc}{call_abi}"
    elif isinstance(p, MacOS):
        os_str = f"-apple-darwin14{call_abi}"
    elif isinstance(p, Windows):
        os_str = f"-w64-mingw32{call_abi}"
    else:
        os_str = f"-unknown-freebsd11.1{call_abi}"
    return arch + os_str + _compiler_abi_suffix(p.compiler_abi)


# =============================================================================
# Compatibility
# =============================================================================


def gcc_generation(gcc_version: str) -> Optional[int]:
    """Return the native runtime generation for a gcc tag, or None for the wildcard."""
    return GCC_GENERATIONS.get(gcc_version)


def compiler_abis_compatible(a: CompilerABI, b: CompilerABI) -> bool:
    gcc_ok = (
        a.gcc_version == GCC_ANY
        or b.gcc_version == GCC_ANY
        or gcc_generation(a.gcc_version) == gcc_generation(b.gcc_version)
    )
    cxx_ok = a.cxx_abi == CXX_ANY or b.cxx_abi == CXX_ANY or a.cxx_abi == b.cxx_abi
    return gcc_ok and cxx_ok


def matches(a: Platform, b: Platform) -> bool:
    """
    Return True if binaries built for `a` can run on `b` (and vice versa).

    Kind, architecture, libc and calling ABI must be equal; compiler ABI
    wildcards absorb any concrete value, and gcc tags of the same runtime
    generation are interchangeable. UNKNOWN matches nothing.
    """
    if isinstance(a, UnknownPlatform) or isinstance(b, UnknownPlatform):
        return False
    if type(a) is not type(b):
        return False
    if (a.arch, a.libc, a.call_abi) != (b.arch, b.libc, b.call_abi):
        return False
    return compiler_abis_compatible(a.compiler_abi, b.compiler_abi)


def select_best(candidates: Iterable[Platform], target: Platform) -> Optional[Platform]:
    """
    Return the candidate that best matches `target`, or None.

    Ties between several matching candidates go to the lexicographically
    greatest triplet, which favours the newest runtime generation.
    """
    matching = [p for p in candidates if matches(p, target)]
    if not matching:
        return None
    return max(matching, key=triplet)


def select_platform(
    download_info: Mapping[Platform, V], target: Optional[Platform] = None
) -> Optional[V]:
    """Return the value whose platform key best matches `target` (default: host)."""
    if target is None:
        target = platform_key()
    best = select_best(download_info.keys(), target)
    if best is None:
        return None
    return download_info[best]


def supported_platforms() -> List[Platform]:
    """Return the canonical concrete platforms artifacts are usually built for."""
    return [
        Linux("i686"),
        Linux("x86_64"),
        Linux("aarch64"),
        Linux("armv7l"),
        Linux("powerpc64le"),
        Linux("i686", libc=MUSL),
        Linux("x86_64", libc=MUSL),
        Linux("aarch64", libc=MUSL),
        Linux("armv7l", libc=MUSL),
        MacOS(),
        Windows("i686"),
        Windows("x86_64"),
        FreeBSD("x86_64"),
    ]


# =============================================================================
# Shared library naming
# =============================================================================

_DL_PATH_RX = {
    "linux": re.compile(r"^(.*?)\.so(\.\d+)*\Z"),
    "freebsd": re.compile(r"^(.*?)\.so(\.\d+)*\Z"),
    "macos": re.compile(r"^(.*?)(\.\d+)*\.dylib\Z"),
    "windows": re.compile(r"^(.*?)\.dll\Z"),
}


def platform_dlext(p: Platform) -> str:
    """Return the shared library extension (without dot) used on `p`."""
    if isinstance(p, Windows):
        return "dll"
    if isinstance(p, MacOS):
        return "dylib"
    if isinstance(p, (Linux, FreeBSD)):
        return "so"
    raise PlatformParseError("Unknown platform has no library extension")


def valid_dl_path(path: str, p: Platform) -> bool:
    """Return True if `path` looks like a shared library name on `p`."""
    rx = _DL_PATH_RX.get(p.kind)
    if rx is None:
        return False
    return rx.match(path.rsplit("/", 1)[-1]) is not None


# =============================================================================
# Host detection
# =============================================================================

_MACHINE_ALIASES = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "i386": "i686",
    "i686": "i686",
    "x86": "i686",
    "aarch64": "aarch64",
    "arm64": "aarch64",
    "armv7l": "armv7l",
    "ppc64le": "powerpc64le",
    "powerpc64le": "powerpc64le",
}


def _host_libc() -> str:
    libc_name, _version = _host.libc_ver()
    if libc_name == "glibc":
        return GLIBC
    if glob.glob("/lib/ld-musl-*"):
        return MUSL
    return GLIBC


def detect_host_platform() -> Platform:
    """Build the platform of the running system from the `platform` module."""
    system = _host.system().lower()
    arch = _MACHINE_ALIASES.get(_host.machine().lower())
    if arch is None:
        logger.warning(f"Unrecognised host architecture {_host.machine()!r}")
        return UNKNOWN

    try:
        if system == "linux":
            return Linux(arch, libc=_host_libc())
        if system == "darwin":
            return MacOS(arch)
        if system == "windows":
            return Windows(arch)
        if system == "freebsd":
            return FreeBSD(arch)
    except PlatformValidationError as e:
        logger.warning(f"Host platform is not supported: {e}")
        return UNKNOWN

    logger.warning(f"Unrecognised host operating system {system!r}")
    return UNKNOWN


def platform_key(
    machine: Optional[str] = None, settings: Optional[Settings] = None
) -> Platform:
    """
    Return the platform for `machine`, or for the running system.

    Without `machine`, a `platform` triplet in the settings takes priority
    over detection. The result may be UNKNOWN.
    """
    if machine is not None:
        return parse(machine)

    if settings is None:
        settings = load_settings()
    if settings.platform:
        return parse(settings.platform)
    return detect_host_platform()
