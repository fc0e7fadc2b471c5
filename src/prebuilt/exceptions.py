"""
Custom exceptions for prebuilt.

This module defines the error taxonomy raised by the platform model, the
output collector and the install lifecycle. Every error is fatal to the
operation that raised it.
"""


class PrebuiltError(Exception):
    """
    Base exception for all prebuilt errors.

    All custom exceptions in prebuilt inherit from this class so callers
    can catch every package-specific failure in one place.
    """

    def __init__(self, message: str, details: str | None = None) -> None:
        """
        Initialize the exception.

        Args:
            message: The primary error message.
            details: Optional additional context about the error.
        """
        self.message = message
        self.details = details
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(PrebuiltError):
    """
    Exception raised when configuration is invalid or missing.

    This includes:
    - Unreadable settings files
    - Unknown settings keys or values of the wrong type
    - No usable download or compression engine on this system
    """

    pass


class ConfigFileError(ConfigurationError):
    """Exception raised when the settings file cannot be read or parsed."""

    pass


class ConfigValidationError(ConfigurationError):
    """Exception raised when settings validation fails."""

    pass


class EngineNotFoundError(ConfigurationError):
    """Exception raised when no download or compression engine can be probed."""

    pass


# =============================================================================
# Platform Errors
# =============================================================================


class PlatformError(PrebuiltError):
    """Base exception for platform-related errors."""

    pass


class PlatformValidationError(PlatformError, ValueError):
    """
    Exception raised when a platform is constructed from an incoherent
    combination of architecture, libc and calling ABI.
    """

    pass


class PlatformParseError(PlatformError):
    """
    Exception raised when a triplet cannot be recognised.

    Attributes:
        triplet: The string that failed to parse.
    """

    def __init__(
        self,
        message: str,
        triplet: str | None = None,
        details: str | None = None,
    ) -> None:
        super().__init__(message, details)
        self.triplet = triplet


class PlatformMismatchError(PlatformError):
    """
    Exception raised when an artifact's platform is well-formed but not
    compatible with the host platform.

    Attributes:
        artifact_platform: Platform encoded in the artifact.
        host_platform: Platform of the running system.
    """

    def __init__(
        self,
        message: str,
        artifact_platform=None,
        host_platform=None,
        details: str | None = None,
    ) -> None:
        super().__init__(message, details)
        self.artifact_platform = artifact_platform
        self.host_platform = host_platform


# =============================================================================
# Lifecycle Errors
# =============================================================================


class IntegrityError(PrebuiltError):
    """
    Exception raised when a file's SHA-256 digest does not match the
    expected hash.

    Attributes:
        path: The file that was verified.
        expected: The expected hex digest.
        calculated: The digest that was actually computed, if any.
    """

    def __init__(
        self,
        message: str,
        path: str | None = None,
        expected: str | None = None,
        calculated: str | None = None,
        details: str | None = None,
    ) -> None:
        super().__init__(message, details)
        self.path = path
        self.expected = expected
        self.calculated = calculated


class ConflictError(PrebuiltError):
    """
    Exception raised when installing would overwrite an existing file
    without ``force``.

    Attributes:
        path: Prefix-relative path of the conflicting file.
        artifact: Name of the artifact being installed.
    """

    def __init__(
        self,
        message: str,
        path: str | None = None,
        artifact: str | None = None,
        details: str | None = None,
    ) -> None:
        super().__init__(message, details)
        self.path = path
        self.artifact = artifact


class ManifestError(PrebuiltError):
    """
    Exception raised when a manifest is missing or lists a path that
    escapes its prefix.

    Attributes:
        manifest_path: Path to the manifest involved, if known.
    """

    def __init__(
        self,
        message: str,
        manifest_path: str | None = None,
        details: str | None = None,
    ) -> None:
        super().__init__(message, details)
        self.manifest_path = manifest_path


class ProcessError(PrebuiltError):
    """
    Exception raised when a subprocess fails to start or exits non-zero.

    Attributes:
        command: The command (or pipeline) that was run.
        returncode: Exit status of the failing stage, if it ran.
        tail: Tail of the captured output for diagnostics.
    """

    def __init__(
        self,
        message: str,
        command=None,
        returncode: int | None = None,
        tail: str | None = None,
    ) -> None:
        super().__init__(message, tail.strip() if tail else None)
        self.command = command
        self.returncode = returncode
        self.tail = tail


class DownloadError(PrebuiltError):
    """
    Exception raised when the in-process HTTP download engine fails.

    Attributes:
        url: The URL that was being downloaded.
    """

    def __init__(
        self,
        message: str,
        url: str | None = None,
        details: str | None = None,
    ) -> None:
        super().__init__(message, details)
        self.url = url
