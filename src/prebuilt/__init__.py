# src/prebuilt/__init__.py
from prebuilt.config import Settings, configure, load_settings
from prebuilt.artifacts import ArtifactReference, extract_platform_key
from prebuilt.engines import PlatformEngines, default_engines, probe_platform_engines
from prebuilt.install import (
    CacheStatus,
    download,
    download_verify,
    download_verify_unpack,
    install,
    isinstalled,
    list_archive_files,
    package,
    uninstall,
    unpack,
    verify,
)
from prebuilt.output_collector import OutputCollector
from prebuilt.platforms import (
    UNKNOWN,
    CompilerABI,
    FreeBSD,
    Linux,
    MacOS,
    Windows,
    matches,
    parse,
    platform_key,
    select_best,
    triplet,
)
from prebuilt.prefix import (
    Prefix,
    activate,
    activated,
    deactivate,
    manifest_for_file,
    manifest_from_url,
    temp_prefix,
)

__version__ = "0.1.0"
