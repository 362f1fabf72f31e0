"""Durable ISG manifest: per-page cache entries and pending invalidations.

The manifest lives at ``<cache_dir>/cache/manifest.json``. Reading never
fails a build: anything unreadable degrades to an empty manifest, which
means every page is rebuilt. Writing goes through a temporary file and
``os.replace`` so a crash mid-write leaves the previous manifest intact.

Only the build orchestrator saves full manifests. ``invalidate`` appends
pending records on its own; both paths take the same lock file and merge
pending records already on disk so neither loses the other's work.
"""

from __future__ import annotations

import json
import logging
import os
import socket
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from .errors import CacheDirectoryError, ManifestCorrupt, ManifestWriteFailed

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1"
CACHE_SUBDIR = "cache"
MANIFEST_FILENAME = "manifest.json"
LOCK_FILENAME = "manifest.lock"
BUILD_LOCK_FILENAME = "build.lock"
EMPTY_LOCK_GRACE_SECONDS = 5.0

INVALIDATION_KINDS = ("tag", "path")


def format_timestamp(value: datetime) -> str:
    """Serialize a datetime as ISO-8601 in UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string into an aware UTC datetime.

    Raises:
        ValueError: If the value is not a valid timestamp string.
    """
    if not isinstance(value, str):
        raise ValueError(f"expected ISO-8601 string, got {type(value).__name__}")
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass
class PageCacheEntry:
    """Cache state of one page after its last successful render.

    Attributes:
        content_hash: Hash of the source body and frontmatter.
        dependency_hashes: Dependency path to its hash at render time.
        built_at: When the page was last rendered successfully.
        published_at: Publication time from frontmatter, drives aging.
        ttl_seconds_override: Page-level TTL from frontmatter.
        max_age_cap_days_override: Page-level max age cap from frontmatter.
        tags: Tags used for tag invalidation.
        source_path: Project-relative source path, used for path invalidation.
        force_rebuild: Set when dependency resolution failed; forces the next
            evaluation to go stale.
    """

    content_hash: str
    dependency_hashes: dict[str, str]
    built_at: datetime
    published_at: datetime | None = None
    ttl_seconds_override: int | None = None
    max_age_cap_days_override: int | None = None
    tags: frozenset[str] = frozenset()
    source_path: str | None = None
    force_rebuild: bool = False

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "contentHash": self.content_hash,
            "dependencyHashes": dict(sorted(self.dependency_hashes.items())),
            "builtAt": format_timestamp(self.built_at),
            "tags": sorted(self.tags),
        }
        if self.published_at is not None:
            payload["publishedAt"] = format_timestamp(self.published_at)
        if self.ttl_seconds_override is not None:
            payload["ttlSeconds"] = self.ttl_seconds_override
        if self.max_age_cap_days_override is not None:
            payload["maxAgeCapDays"] = self.max_age_cap_days_override
        if self.source_path is not None:
            payload["sourcePath"] = self.source_path
        if self.force_rebuild:
            payload["forceRebuild"] = True
        return payload

    @classmethod
    def from_dict(cls, payload: Any) -> PageCacheEntry:
        """Decode one entry.

        Raises:
            ValueError: If a field is missing or has the wrong type.
        """
        if not isinstance(payload, dict):
            raise ValueError("entry is not an object")
        content = payload.get("contentHash")
        if not isinstance(content, str) or not content:
            raise ValueError('"contentHash" must be a non-empty string')
        deps = payload.get("dependencyHashes")
        if not isinstance(deps, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in deps.items()
        ):
            raise ValueError('"dependencyHashes" must map strings to strings')
        tags = payload.get("tags", [])
        if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
            raise ValueError('"tags" must be a list of strings')
        published = payload.get("publishedAt")
        source_path = payload.get("sourcePath")
        if source_path is not None and not isinstance(source_path, str):
            raise ValueError('"sourcePath" must be a string')
        return cls(
            content_hash=content,
            dependency_hashes=dict(deps),
            built_at=parse_timestamp(payload.get("builtAt")),
            published_at=parse_timestamp(published) if published is not None else None,
            ttl_seconds_override=_optional_int(payload, "ttlSeconds"),
            max_age_cap_days_override=_optional_int(payload, "maxAgeCapDays"),
            tags=frozenset(tags),
            source_path=source_path,
            force_rebuild=bool(payload.get("forceRebuild", False)),
        )


def _optional_int(payload: dict[str, Any], key: str) -> int | None:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise ValueError(f'"{key}" must be a non-negative number')
    return int(value)


@dataclass(frozen=True)
class PendingInvalidation:
    """A manual invalidation waiting to be applied by a build."""

    kind: str
    value: str
    requested_at: datetime

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.kind, self.value, format_timestamp(self.requested_at))

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "value": self.value,
            "requestedAt": format_timestamp(self.requested_at),
        }

    @classmethod
    def from_dict(cls, payload: Any) -> PendingInvalidation:
        if not isinstance(payload, dict):
            raise ValueError("pending invalidation is not an object")
        kind = payload.get("kind")
        value = payload.get("value")
        if kind not in INVALIDATION_KINDS:
            raise ValueError(f"unknown invalidation kind {kind!r}")
        if not isinstance(value, str) or not value:
            raise ValueError('"value" must be a non-empty string')
        return cls(kind=kind, value=value, requested_at=parse_timestamp(payload.get("requestedAt")))


@dataclass
class Manifest:
    """In-memory manifest for one build cycle."""

    schema_version: str = SCHEMA_VERSION
    generated_at: datetime | None = None
    entries: dict[str, PageCacheEntry] = field(default_factory=dict)
    pending_invalidations: list[PendingInvalidation] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        generated = self.generated_at or datetime.now(timezone.utc)
        return {
            "schemaVersion": self.schema_version,
            "generatedAt": format_timestamp(generated),
            "entries": {url: self.entries[url].to_dict() for url in sorted(self.entries)},
            "pendingInvalidations": [p.to_dict() for p in self.pending_invalidations],
        }

    @classmethod
    def from_dict(cls, payload: Any) -> Manifest:
        """Decode a manifest document.

        Individually invalid entries are dropped with a warning. Anything
        else that is wrong, including a bad pending record, makes the whole
        document unusable.

        Raises:
            ManifestCorrupt: If the document cannot be used at all.
        """
        if not isinstance(payload, dict):
            raise ManifestCorrupt("manifest is not a JSON object")
        version = payload.get("schemaVersion")
        if version != SCHEMA_VERSION:
            raise ManifestCorrupt(
                f"schema version {version!r} does not match {SCHEMA_VERSION!r}"
            )
        raw_entries = payload.get("entries")
        if not isinstance(raw_entries, dict):
            raise ManifestCorrupt('"entries" must be an object')
        raw_pending = payload.get("pendingInvalidations", [])
        if not isinstance(raw_pending, list):
            raise ManifestCorrupt('"pendingInvalidations" must be a list')
        try:
            pending = [PendingInvalidation.from_dict(item) for item in raw_pending]
            generated = payload.get("generatedAt")
            generated_at = parse_timestamp(generated) if generated else None
        except ValueError as exc:
            raise ManifestCorrupt(str(exc)) from exc

        entries: dict[str, PageCacheEntry] = {}
        invalid = 0
        for url, raw in raw_entries.items():
            try:
                entries[url] = PageCacheEntry.from_dict(raw)
            except ValueError as exc:
                invalid += 1
                logger.warning("Invalid cache entry for %s: %s", url, exc)
        if invalid:
            logger.warning("Removed %d invalid cache entries", invalid)
        return cls(
            schema_version=version,
            generated_at=generated_at,
            entries=entries,
            pending_invalidations=pending,
        )


class LockFile:
    """Exclusive lock file shared across processes.

    The lock holds the owner's PID and hostname. A lock left behind by a
    dead process on the same host is removed.
    """

    def __init__(self, path: Path, timeout: float = 10.0, poll: float = 0.05):
        self.path = path
        self.timeout = timeout
        self.poll = poll
        self._fd: int | None = None

    def __enter__(self) -> LockFile:
        deadline = time.monotonic() + self.timeout
        while True:
            try:
                self._fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                if self._remove_if_stale():
                    continue
                if time.monotonic() >= deadline:
                    raise TimeoutError(
                        f"Timed out waiting for lock {self.path}"
                    ) from None
                time.sleep(self.poll)
                continue
            os.write(self._fd, f"{os.getpid()}\n{socket.gethostname()}\n".encode())
            return self

    def __exit__(self, *exc_info) -> None:
        if self._fd is not None:
            os.close(self._fd)
            self._fd = None
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def _remove_if_stale(self) -> bool:
        try:
            pid_line, host_line, *_ = self.path.read_text(encoding="utf-8").splitlines() + ["", ""]
            pid = int(pid_line)
        except OSError:
            return False
        except ValueError:
            return self._remove_if_abandoned()
        if host_line and host_line != socket.gethostname():
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            logger.warning("Removing stale lock (PID %d no longer running)", pid)
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
            return True
        except PermissionError:
            return False
        return False

    def _remove_if_abandoned(self) -> bool:
        """Remove an unparseable lock once it is older than the grace period.

        A lock being created is empty until its owner writes the PID.
        """
        try:
            age = time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return True
        if age < EMPTY_LOCK_GRACE_SECONDS:
            return False
        logger.warning("Removing unreadable lock %s (%.0fs old)", self.path, age)
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        return True


class ManifestStore:
    """Loads and persists the manifest under a cache directory.

    Attributes:
        cache_dir: Project cache directory (e.g. ``.stheno``).
        path: Full path of ``manifest.json``.
        pending_ttl: Optional maximum age of pending invalidations.
    """

    def __init__(
        self,
        cache_dir: Path,
        pending_ttl: timedelta | None = None,
        lock_timeout: float = 10.0,
    ):
        self.cache_dir = cache_dir
        self.directory = cache_dir / CACHE_SUBDIR
        self.path = self.directory / MANIFEST_FILENAME
        self.pending_ttl = pending_ttl
        self.lock_timeout = lock_timeout
        self._loaded_pending: set[tuple[str, str, str]] = set()

    def ensure_directory(self) -> None:
        """Create the cache directory.

        Raises:
            CacheDirectoryError: If it cannot be created or is not a directory.
        """
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise CacheDirectoryError(
                f"Cannot create cache directory {self.directory}: {exc}"
            ) from exc
        if not os.access(self.directory, os.W_OK | os.X_OK):
            raise CacheDirectoryError(f"Cache directory {self.directory} is not writable")

    def load(self) -> Manifest:
        """Read the manifest, degrading to an empty one on any problem."""
        try:
            manifest = self._read()
        except ManifestCorrupt as exc:
            logger.warning("Cache manifest ignored, rebuilding all pages: %s", exc)
            manifest = Manifest()
        self._loaded_pending = {p.key for p in manifest.pending_invalidations}
        return manifest

    def save(self, manifest: Manifest) -> None:
        """Persist ``manifest`` atomically.

        Pending records that another process appended since ``load`` are
        merged into ``manifest`` first.

        Raises:
            ManifestWriteFailed: If the file cannot be written.
        """
        try:
            with self._lock():
                self._merge_foreign_pending(manifest)
                manifest.generated_at = datetime.now(timezone.utc)
                self._write(manifest)
        except (OSError, TimeoutError) as exc:
            raise ManifestWriteFailed(self.path, str(exc)) from exc
        self._loaded_pending = {p.key for p in manifest.pending_invalidations}

    def append_pending_invalidation(self, record: PendingInvalidation) -> Manifest:
        """Durably append one pending invalidation, independent of any build.

        Returns:
            The manifest as written.

        Raises:
            ManifestWriteFailed: If the file cannot be written.
        """
        return self.append_pending_invalidations([record])

    def append_pending_invalidations(
        self, records: Iterable[PendingInvalidation]
    ) -> Manifest:
        records = list(records)
        try:
            with self._lock():
                try:
                    manifest = self._read()
                except ManifestCorrupt as exc:
                    logger.warning("Cache manifest ignored while recording invalidation: %s", exc)
                    manifest = Manifest()
                known = {p.key for p in manifest.pending_invalidations}
                for record in records:
                    if record.key not in known:
                        manifest.pending_invalidations.append(record)
                        known.add(record.key)
                manifest.generated_at = datetime.now(timezone.utc)
                self._write(manifest)
        except (OSError, TimeoutError) as exc:
            raise ManifestWriteFailed(self.path, str(exc)) from exc
        return manifest

    def consume_pending_invalidations(
        self,
        manifest: Manifest,
        consumed: Iterable[PendingInvalidation],
        as_of: datetime,
    ) -> list[PendingInvalidation]:
        """Remove applied records, and expired ones, from ``manifest``.

        The change is in memory only; it is persisted by the next ``save``.

        Returns:
            The records that were removed.
        """
        consumed_keys = {record.key for record in consumed}
        kept: list[PendingInvalidation] = []
        removed: list[PendingInvalidation] = []
        for record in manifest.pending_invalidations:
            expired = (
                self.pending_ttl is not None
                and as_of - record.requested_at > self.pending_ttl
            )
            if record.key in consumed_keys or expired:
                removed.append(record)
                if expired and record.key not in consumed_keys:
                    logger.info(
                        "Pending %s invalidation %r expired without matches",
                        record.kind,
                        record.value,
                    )
            else:
                kept.append(record)
        manifest.pending_invalidations = kept
        # Records removed here must not come back through the merge in save().
        self._loaded_pending.update(record.key for record in removed)
        return removed

    def discard(self) -> None:
        """Delete the manifest file (``build --clean``)."""
        try:
            with self._lock():
                self.path.unlink(missing_ok=True)
        except (OSError, TimeoutError) as exc:
            raise ManifestWriteFailed(self.path, str(exc)) from exc
        self._loaded_pending = set()

    def _read(self) -> Manifest:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return Manifest()
        except (OSError, UnicodeDecodeError) as exc:
            raise ManifestCorrupt(f"cannot read {self.path}: {exc}") from exc
        if not text.strip():
            raise ManifestCorrupt("manifest file is empty")
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ManifestCorrupt(f"invalid JSON: {exc}") from exc
        return Manifest.from_dict(payload)

    def _write(self, manifest: Manifest) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f".{self.path.name}.{os.getpid()}.tmp")
        payload = json.dumps(manifest.to_dict(), indent=2, sort_keys=True)
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(payload)
                f.write("\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        finally:
            tmp_path.unlink(missing_ok=True)

    def _merge_foreign_pending(self, manifest: Manifest) -> None:
        try:
            on_disk = self._read()
        except ManifestCorrupt:
            return
        known = {p.key for p in manifest.pending_invalidations} | self._loaded_pending
        for record in on_disk.pending_invalidations:
            if record.key not in known:
                manifest.pending_invalidations.append(record)
                known.add(record.key)

    def _lock(self) -> LockFile:
        self.directory.mkdir(parents=True, exist_ok=True)
        return LockFile(self.directory / LOCK_FILENAME, timeout=self.lock_timeout)

    def build_lock(self, timeout: float = 0.0) -> LockFile:
        """Lock held for a whole build cycle so two builds never interleave."""
        self.directory.mkdir(parents=True, exist_ok=True)
        return LockFile(self.directory / BUILD_LOCK_FILENAME, timeout=timeout)
