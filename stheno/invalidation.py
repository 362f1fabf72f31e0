"""Manual cache invalidation by tag or by path.

Requests are validated here, before anything touches the manifest, and are
then recorded as pending invalidations. A build applies them to every
discovered page they match and sweeps them once all of those pages have
been rebuilt.

Path patterns use glob semantics against the normalized page URL and the
project-relative source path:

- ``*`` matches any run of characters except ``/``
- ``**`` matches across ``/``
- ``?`` matches one character except ``/``
- ``[abc]`` / ``[!abc]`` match character classes

Matching is anchored. ``/about`` and ``/about/`` are treated as the same
URL; there is no implicit prefix matching (use ``/blog/**``).
"""

from __future__ import annotations

import functools
import logging
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime

from .errors import InvalidInvalidationQuery
from .manifest import ManifestStore, Manifest, PageCacheEntry, PendingInvalidation

logger = logging.getLogger(__name__)

MAX_QUERY_LENGTH = 512
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")


@dataclass(frozen=True)
class PageRef:
    """Identity of a discovered page as seen by invalidation matching."""

    url: str
    source_path: str | None
    tags: frozenset[str]


def validate_tag(tag: str) -> str:
    """Validate a tag argument.

    Raises:
        InvalidInvalidationQuery: If the tag is empty, too long, or contains
            whitespace or control characters.
    """
    if not isinstance(tag, str) or not tag.strip():
        raise InvalidInvalidationQuery("Tag must be a non-empty string")
    tag = tag.strip()
    if len(tag) > MAX_QUERY_LENGTH:
        raise InvalidInvalidationQuery(f"Tag is longer than {MAX_QUERY_LENGTH} characters")
    if _CONTROL_RE.search(tag) or any(ch.isspace() for ch in tag):
        raise InvalidInvalidationQuery(f"Tag {tag!r} contains whitespace or control characters")
    return tag


def validate_path_pattern(pattern: str) -> str:
    """Validate a path glob.

    Raises:
        InvalidInvalidationQuery: If the pattern is empty, too long, contains
            control characters, has an unterminated ``[`` class or a run of
            three or more ``*``.
    """
    if not isinstance(pattern, str) or not pattern.strip():
        raise InvalidInvalidationQuery("Path pattern must be a non-empty string")
    pattern = pattern.strip()
    if len(pattern) > MAX_QUERY_LENGTH:
        raise InvalidInvalidationQuery(
            f"Path pattern is longer than {MAX_QUERY_LENGTH} characters"
        )
    if _CONTROL_RE.search(pattern):
        raise InvalidInvalidationQuery(f"Path pattern {pattern!r} contains control characters")
    if "***" in pattern:
        raise InvalidInvalidationQuery(f"Path pattern {pattern!r} has an invalid '***' wildcard")
    try:
        _compile_glob(pattern)
    except ValueError as exc:
        raise InvalidInvalidationQuery(f"Path pattern {pattern!r}: {exc}") from exc
    return pattern


def parse_invalidation_argument(argument: str) -> tuple[str, str]:
    """Split a CLI argument like ``tag=blog`` or ``path=/posts/**``.

    Returns:
        Tuple of (kind, validated value).

    Raises:
        InvalidInvalidationQuery: If the argument is malformed.
    """
    kind, sep, value = argument.partition("=")
    kind = kind.strip().lower()
    if not sep:
        raise InvalidInvalidationQuery(
            f"Expected tag=<value> or path=<value>, got {argument!r}"
        )
    if kind == "tag":
        return "tag", validate_tag(value)
    if kind == "path":
        return "path", validate_path_pattern(value)
    raise InvalidInvalidationQuery(f"Unknown invalidation kind {kind!r} in {argument!r}")


@functools.lru_cache(maxsize=256)
def _compile_glob(pattern: str) -> re.Pattern[str]:
    out: list[str] = []
    i = 0
    n = len(pattern)
    while i < n:
        ch = pattern[i]
        if ch == "*":
            if pattern.startswith("**", i):
                # "/**/" also matches a single "/".
                if pattern.startswith("**/", i):
                    out.append("(?:.*/)?")
                    i += 3
                else:
                    out.append(".*")
                    i += 2
                continue
            out.append("[^/]*")
        elif ch == "?":
            out.append("[^/]")
        elif ch == "[":
            end = pattern.find("]", i + 2 if pattern.startswith("[!", i) else i + 1)
            if end == -1:
                raise ValueError("unterminated character class")
            body = pattern[i + 1 : end]
            if body.startswith("!"):
                body = "^" + body[1:]
            out.append(f"[{body.replace(chr(92), chr(92) * 2)}]")
            i = end
        else:
            out.append(re.escape(ch))
        i += 1
    return re.compile("".join(out) + r"\Z")


def glob_match(pattern: str, value: str) -> bool:
    return _compile_glob(pattern).match(value) is not None


def _url_variants(url: str) -> tuple[str, ...]:
    stripped = url.rstrip("/")
    if not stripped:
        return ("/",)
    return (stripped, stripped + "/")


def path_matches(pattern: str, url: str, source_path: str | None) -> bool:
    """Check a path glob against a page URL (either slash form) or source path."""
    candidates = list(_url_variants(url))
    if pattern != "/" and pattern.endswith("/"):
        pattern = pattern.rstrip("/")
    if source_path:
        candidates.append(source_path)
    return any(glob_match(pattern, candidate) for candidate in candidates)


def record_matches(
    record: PendingInvalidation,
    url: str,
    source_path: str | None,
    tags: Iterable[str],
) -> bool:
    if record.kind == "tag":
        return record.value in set(tags)
    if record.kind == "path":
        return path_matches(record.value, url, source_path)
    return False


def pending_invalidation_for(
    pending: Iterable[PendingInvalidation],
    url: str,
    entry: PageCacheEntry,
    source_path: str | None = None,
) -> PendingInvalidation | None:
    """Return the first pending record that invalidates ``entry``, if any.

    A record only applies when it was requested after the entry was built.
    """
    source = source_path or entry.source_path
    for record in pending:
        if record.requested_at <= entry.built_at:
            continue
        if record_matches(record, url, source, entry.tags):
            return record
    return None


class InvalidationGateway:
    """Accepts invalidation requests and sweeps applied ones.

    Attributes:
        store: Manifest store the requests are persisted to.
        clock: Callable returning the current aware datetime.
    """

    def __init__(self, store: ManifestStore, clock: Callable[[], datetime]):
        self.store = store
        self.clock = clock

    def invalidate_by_tag(self, tag: str) -> PendingInvalidation:
        record = PendingInvalidation("tag", validate_tag(tag), self.clock())
        self.store.append_pending_invalidation(record)
        logger.info("Recorded tag invalidation %r", record.value)
        return record

    def invalidate_by_path(self, pattern: str) -> PendingInvalidation:
        record = PendingInvalidation("path", validate_path_pattern(pattern), self.clock())
        self.store.append_pending_invalidation(record)
        logger.info("Recorded path invalidation %r", record.value)
        return record

    def invalidate(self, arguments: Iterable[str]) -> list[PendingInvalidation]:
        """Record several ``kind=value`` arguments in one durable write.

        Every argument is validated before anything is written.
        """
        parsed = [parse_invalidation_argument(arg) for arg in arguments]
        if not parsed:
            raise InvalidInvalidationQuery("No invalidation arguments given")
        now = self.clock()
        records = [PendingInvalidation(kind, value, now) for kind, value in parsed]
        self.store.append_pending_invalidations(records)
        for record in records:
            logger.info("Recorded %s invalidation %r", record.kind, record.value)
        return records

    def sweep(
        self,
        manifest: Manifest,
        pages: Iterable[PageRef],
        as_of: datetime,
    ) -> list[PendingInvalidation]:
        """Consume pending records that every matching page has absorbed.

        A record is consumed once at least one discovered page matches it and
        every matching page has an entry built at or after the request time.
        Records that match nothing stay pending (until the store's pending
        TTL, when one is configured).

        Returns:
            The records removed from ``manifest``.
        """
        pages = list(pages)
        consumed: list[PendingInvalidation] = []
        for record in manifest.pending_invalidations:
            matching = [
                page
                for page in pages
                if record_matches(record, page.url, page.source_path, page.tags)
            ]
            if not matching:
                continue
            if all(_absorbed(manifest.entries, page.url, record) for page in matching):
                consumed.append(record)
        return self.store.consume_pending_invalidations(manifest, consumed, as_of)


def _absorbed(
    entries: Mapping[str, PageCacheEntry], url: str, record: PendingInvalidation
) -> bool:
    entry = entries.get(url)
    return entry is not None and entry.built_at >= record.requested_at
