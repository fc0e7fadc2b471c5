"""
Settings for prebuilt.

Settings are read from a YAML file in the user configuration directory and
then overridden by environment variables. They only feed hooks (engine
selection, symlink handling, verbosity, host platform override); the
install lifecycle itself takes explicit arguments.
"""

import os
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Mapping, Optional

import platformdirs
import yaml

from prebuilt.constants import (
    APP_NAME,
    COMPRESSION_ENGINE_ENV_VAR,
    CONFIG_FILE_NAME,
    COPYDEREF_ENV_VAR,
    DOWNLOAD_ENGINE_ENV_VAR,
    LOG_LEVEL_ENV_VAR,
    PLATFORM_ENV_VAR,
    TRUTHY_VALUES,
    VERBOSE_ENV_VAR,
)
from prebuilt.exceptions import ConfigFileError, ConfigValidationError
from prebuilt.log_utils import logger, set_log_level


@dataclass(frozen=True)
class Settings:
    download_engine: Optional[str] = None
    compression_engine: Optional[str] = None
    copy_symlinks: bool = False
    verbose: bool = False
    log_level: str = "INFO"
    platform: Optional[str] = None


_BOOL_FIELDS = ("copy_symlinks", "verbose")

_ENV_OVERRIDES = {
    DOWNLOAD_ENGINE_ENV_VAR: "download_engine",
    COMPRESSION_ENGINE_ENV_VAR: "compression_engine",
    COPYDEREF_ENV_VAR: "copy_symlinks",
    VERBOSE_ENV_VAR: "verbose",
    LOG_LEVEL_ENV_VAR: "log_level",
    PLATFORM_ENV_VAR: "platform",
}


def get_config_file_path() -> str:
    """Return the default location of the settings file."""
    return os.path.join(platformdirs.user_config_dir(APP_NAME), CONFIG_FILE_NAME)


def _validate(data: Mapping[str, Any], source: str) -> Dict[str, Any]:
    known = {f.name for f in fields(Settings)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigValidationError(
            f"Unknown settings in {source}", details=", ".join(unknown)
        )

    validated: Dict[str, Any] = {}
    for key, value in data.items():
        if key in _BOOL_FIELDS:
            if not isinstance(value, bool):
                raise ConfigValidationError(
                    f"Setting '{key}' must be a boolean", details=f"got {value!r}"
                )
        elif value is not None and not isinstance(value, str):
            raise ConfigValidationError(
                f"Setting '{key}' must be a string", details=f"got {value!r}"
            )
        validated[key] = value
    return validated


def _read_config_file(path: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigFileError(f"Could not read settings file {path}", str(e)) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigFileError(
            f"Settings file {path} must contain a mapping",
            details=f"found {type(data).__name__}",
        )
    return _validate(data, path)


def _env_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for env_var, key in _ENV_OVERRIDES.items():
        raw = environ.get(env_var)
        if raw is None or raw == "":
            continue
        if key in _BOOL_FIELDS:
            overrides[key] = raw.strip().lower() in TRUTHY_VALUES
        else:
            overrides[key] = raw.strip()
    return overrides


def load_settings(
    path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None
) -> Settings:
    """
    Load settings from the YAML file at `path` and apply environment overrides.

    A missing file yields the defaults. Environment variables always win
    over file values.

    Raises:
        ConfigFileError: If the file exists but cannot be parsed as a mapping.
        ConfigValidationError: If the file holds unknown keys or wrong types.
    """
    config_path = path or get_config_file_path()
    settings = Settings(**_read_config_file(config_path))
    overrides = _env_overrides(os.environ if environ is None else environ)
    if overrides:
        logger.debug(f"Applying environment overrides: {sorted(overrides)}")
        settings = replace(settings, **overrides)
    return settings


def save_settings(settings: Settings, path: Optional[str] = None) -> str:
    """Write `settings` to the YAML settings file and return its path."""
    config_path = path or get_config_file_path()
    os.makedirs(os.path.dirname(config_path), exist_ok=True)
    data = {
        f.name: getattr(settings, f.name)
        for f in fields(Settings)
        if getattr(settings, f.name) != f.default
    }
    try:
        with open(config_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False)
    except OSError as e:
        raise ConfigFileError(
            f"Could not write settings file {config_path}", str(e)
        ) from e
    return config_path


def configure(path: Optional[str] = None) -> Settings:
    """Load settings and apply their log level to the prebuilt logger."""
    settings = load_settings(path)
    set_log_level(settings.log_level)
    return settings
