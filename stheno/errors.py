"""Exception types for Stheno.

Every failure the build pipeline knows how to handle is one of these.
Most of them are recoverable: the caller logs the error and degrades
toward treating the affected page as stale. Only CacheDirectoryError and
ConfigError stop a build outright.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any


class SthenoError(Exception):
    """Base class for all Stheno errors."""


class BuildError(SthenoError):
    """Error while rendering a single page.

    Attributes:
        source_path: Path to the source file that caused the error.
        message: Human-readable error message.
        original_error: The original exception that was caught.
    """

    def __init__(
        self,
        source_path: Path,
        message: str,
        original_error: Exception | None = None,
    ):
        self.source_path = source_path
        self.message = message
        self.original_error = original_error
        super().__init__(f"{source_path}: {message}")


class DataFileError(SthenoError):
    """A file under ``data/`` cannot be read or parsed.

    Attributes:
        path: The offending data file.
    """

    def __init__(self, path: Path, message: str):
        self.path = path
        super().__init__(f"Cannot load data file {path}: {message}")


class ManifestCorrupt(SthenoError):
    """The manifest on disk is unreadable, malformed or has another schema."""


class ManifestWriteFailed(SthenoError):
    """The manifest could not be persisted.

    Attributes:
        path: Manifest path that was being written.
    """

    def __init__(self, path: Path, message: str):
        self.path = path
        super().__init__(f"Failed to save cache manifest to {path}: {message}")


class CacheDirectoryError(SthenoError):
    """The cache directory cannot be created or opened at all."""


class DependencyResolutionFailed(SthenoError):
    """A page's layout/partial chain cannot be resolved.

    Attributes:
        page_url: URL of the page whose dependencies failed.
        reason: Short description of what could not be resolved.
    """

    def __init__(self, page_url: str, reason: str):
        self.page_url = page_url
        self.reason = reason
        super().__init__(f"Cannot resolve dependencies of {page_url}: {reason}")


class CircularDependencyError(DependencyResolutionFailed):
    """Templates include or extend each other in a loop."""

    def __init__(self, page_url: str, chain: list[str]):
        self.chain = chain
        super().__init__(
            page_url, "circular dependency detected: " + " -> ".join(chain)
        )


class InvalidInvalidationQuery(SthenoError):
    """A tag or path invalidation argument was rejected."""


class ConfigErrorCode(str, Enum):
    INVALID_TTL = "ISG_INVALID_TTL"
    INVALID_MAX_AGE_CAP = "ISG_INVALID_MAX_AGE_CAP"
    INVALID_AGING_RULE = "ISG_INVALID_AGING_RULE"
    DUPLICATE_AGING_RULE = "ISG_DUPLICATE_AGING_RULE"
    UNSORTED_AGING_RULES = "ISG_UNSORTED_AGING_RULES"
    AGING_RULE_EXCEEDS_CAP = "ISG_AGING_RULE_EXCEEDS_CAP"
    INVALID_SETTING = "ISG_INVALID_SETTING"
    UNKNOWN_RENDERER = "UNKNOWN_RENDERER"


class ConfigError(SthenoError):
    """Invalid configuration in stheno.yaml.

    Attributes:
        code: Machine-readable error code.
        field: Dotted name of the offending setting.
        value: The rejected value.
    """

    def __init__(self, code: ConfigErrorCode, field: str, value: Any, message: str):
        self.code = code
        self.field = field
        self.value = value
        super().__init__(f"{code.value}: {message}")


class BuildLockError(SthenoError):
    """Another build holds the build lock for this cache directory."""
