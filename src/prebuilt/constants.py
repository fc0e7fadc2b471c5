"""
Constants and configuration values for prebuilt.

This module contains all hardcoded names, file suffixes, environment
variable keys and other constants used throughout the package.
"""

# Prefix layout
BIN_DIR_NAME = "bin"
LIB_DIR_NAME = "lib"
INCLUDE_DIR_NAME = "include"
LOGS_DIR_NAME = "logs"
DOWNLOADS_DIR_NAME = "downloads"
MANIFESTS_DIR_NAME = "manifests"
PREFIX_SUBDIRS = (
    BIN_DIR_NAME,
    LIB_DIR_NAME,
    INCLUDE_DIR_NAME,
    LOGS_DIR_NAME,
    DOWNLOADS_DIR_NAME,
    MANIFESTS_DIR_NAME,
)

# File extensions and patterns
TARBALL_EXTENSION = ".tar.gz"
HASH_FILE_EXTENSION = ".sha256"
MANIFEST_EXTENSION = ".list"
SHA256_HEX_LENGTH = 64
HASH_CHUNK_SIZE = 4096

# Triplet used when a platform cannot be determined
UNKNOWN_TRIPLET = "unknown-unknown-unknown"

# Configuration
APP_NAME = "prebuilt"
CONFIG_FILE_NAME = "prebuilt.yaml"
DOWNLOAD_ENGINE_ENV_VAR = "PREBUILT_DOWNLOAD_ENGINE"
COMPRESSION_ENGINE_ENV_VAR = "PREBUILT_COMPRESSION_ENGINE"
COPYDEREF_ENV_VAR = "PREBUILT_COPYDEREF"
VERBOSE_ENV_VAR = "PREBUILT_VERBOSE"
PLATFORM_ENV_VAR = "PREBUILT_PLATFORM"
TRUTHY_VALUES = frozenset({"1", "true", "yes", "on"})

# Download configuration defaults
DEFAULT_CONNECT_RETRIES = 5
DEFAULT_BACKOFF_FACTOR = 0.3
DEFAULT_REQUEST_TIMEOUT = 30
DEFAULT_CHUNK_SIZE = 8192
PROBE_TIMEOUT = 10

# Output collector
DEFAULT_TAIL_LINES = 100
READ_CHUNK_SIZE = 65536
STDOUT_TAG = "stdout"
STDERR_TAG = "stderr"
ANSI_RED = "\033[31m"
ANSI_RESET = "\033[0m"
TEE_TIME_FORMAT = "%H:%M:%S"

# Logging configuration
LOGGER_NAME = "prebuilt"
LOG_LEVEL_ENV_VAR = "PREBUILT_LOG_LEVEL"
LOG_FILE_NAME = "prebuilt.log"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
INFO_LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
DEBUG_LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s: %(message)s"
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
LOG_FILE_BACKUP_COUNT = 5
