"""Metadata extractors for Stheno.

Each extractor implements the MetadataExtractor protocol and handles one
kind of metadata. CompositeMetadataExtractor runs them in order and merges
their results.

Key classes:
- FrontmatterExtractor: Splits the YAML frontmatter block from the body.
- TitleExtractor: Title from frontmatter, first heading, or filename.
- TagExtractor: Hashtags from the body.
- DateExtractor: Date from filename prefix or file mtime.
- DescriptionExtractor: Description/excerpt from the first paragraph.
- CacheMetadataExtractor: Publication date and cache overrides used by ISG.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from .utils import (
    extract_date_from_name,
    extract_tags,
    first_paragraph,
    strip_hashtags,
    titleize,
)

if TYPE_CHECKING:
    from .protocols import MetadataExtractor

logger = logging.getLogger(__name__)

FRONTMATTER_RE = re.compile(r"^---\s*\n(.*?)\n---\s*\n", re.DOTALL)

PUBLISHED_KEYS = ("publishedAt", "published", "date", "createdAt")


def extract_frontmatter(text: str) -> tuple[dict[str, Any], str]:
    """Split YAML frontmatter from content.

    Args:
        text: Raw file content.

    Returns:
        Tuple of (frontmatter dict, remaining content). Content without a
        valid frontmatter block is returned unchanged with an empty dict.
    """
    match = FRONTMATTER_RE.match(text)
    if not match:
        return {}, text
    try:
        data = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as exc:
        logger.warning("Ignoring invalid frontmatter: %s", exc)
        return {}, text
    if not isinstance(data, dict):
        return {}, text
    return data, text[match.end() :]


def parse_published_at(value: Any) -> datetime | None:
    """Coerce a frontmatter date value to an aware UTC datetime.

    PyYAML already turns unquoted ISO dates into ``date``/``datetime``
    objects; strings are parsed with ``datetime.fromisoformat``. Naive values
    are taken as UTC.

    Returns:
        The datetime, or None if the value is not a usable date.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _frontmatter_tags(value: Any) -> list[str]:
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = value
    else:
        return []
    tags: list[str] = []
    for item in items:
        tag = str(item).strip().lstrip("#")
        if tag and tag not in tags:
            tags.append(tag)
    return tags


class FrontmatterExtractor:
    """Extracts YAML frontmatter between ``---`` markers."""

    def extract(self, content: str, path: Path) -> dict[str, Any]:
        frontmatter, body = extract_frontmatter(content)
        return {"frontmatter": frontmatter, "body": body}


class TitleExtractor:
    """Extracts a title.

    Uses the ``title`` frontmatter key, then the first level-1 heading, then
    the titleized filename.
    """

    def extract(self, content: str, path: Path) -> dict[str, Any]:
        frontmatter, body = extract_frontmatter(content)
        title = frontmatter.get("title")
        if isinstance(title, str) and title.strip():
            return {"title": title.strip()}
        for line in body.splitlines():
            stripped = line.strip()
            if stripped.startswith("# "):
                return {"title": stripped.lstrip("# ").strip()}
        return {"title": titleize(path.name)}


class TagExtractor:
    """Extracts tags from the ``tags`` frontmatter key and body hashtags."""

    def extract(self, content: str, path: Path) -> dict[str, Any]:
        frontmatter, body = extract_frontmatter(content)
        tags = _frontmatter_tags(frontmatter.get("tags"))
        for tag in extract_tags(body):
            if tag not in tags:
                tags.append(tag)
        return {"tags": tags}


class DateExtractor:
    """Extracts a display date from the filename prefix or file mtime."""

    def extract(self, content: str, path: Path) -> dict[str, Any]:
        found = extract_date_from_name(path.stem)
        if found is None:
            found = datetime.fromtimestamp(path.stat().st_mtime)
        return {"date": found}


class DescriptionExtractor:
    """Extracts description (first 160 chars) and excerpt (markdown only)."""

    def extract(self, content: str, path: Path) -> dict[str, Any]:
        _, body = extract_frontmatter(content)
        cleaned = strip_hashtags(body)
        excerpt = self._extract_excerpt(cleaned) if path.suffix.lower() == ".md" else ""
        return {"description": first_paragraph(cleaned), "excerpt": excerpt}

    def _extract_excerpt(self, text: str) -> str:
        """Return the first paragraph that is not a heading, image, fence or rule."""
        paragraphs = [p.strip() for p in text.split("\n\n") if p.strip()]
        for para in paragraphs:
            if para.startswith(("#", "![", "```", "---")):
                continue
            return " ".join(para.split())
        return ""


class CacheMetadataExtractor:
    """Extracts the frontmatter fields the incremental build cache reads.

    Produces ``published_at`` (first of publishedAt, published, date,
    createdAt that parses), ``ttl_seconds``, ``max_age_cap_days``, ``layout``
    and ``draft``. Invalid values are ignored with a warning so that a typo
    in one page does not stop the build.
    """

    def extract(self, content: str, path: Path) -> dict[str, Any]:
        frontmatter, _ = extract_frontmatter(content)
        result: dict[str, Any] = {
            "published_at": None,
            "ttl_seconds": None,
            "max_age_cap_days": None,
            "layout": None,
            "draft": bool(frontmatter.get("draft", False)),
        }
        for key in PUBLISHED_KEYS:
            if key not in frontmatter:
                continue
            parsed = parse_published_at(frontmatter[key])
            if parsed is None:
                logger.warning("%s: ignoring unparseable %s %r", path, key, frontmatter[key])
                continue
            result["published_at"] = parsed
            break

        ttl = frontmatter.get("ttlSeconds")
        if ttl is not None:
            if isinstance(ttl, int) and not isinstance(ttl, bool) and ttl >= 0:
                result["ttl_seconds"] = ttl
            else:
                logger.warning("%s: ttlSeconds must be a non-negative integer, got %r", path, ttl)

        cap = frontmatter.get("maxAgeCapDays")
        if cap is not None:
            if isinstance(cap, int) and not isinstance(cap, bool) and cap > 0:
                result["max_age_cap_days"] = cap
            else:
                logger.warning("%s: maxAgeCapDays must be a positive integer, got %r", path, cap)

        layout = frontmatter.get("layout")
        if isinstance(layout, str) and layout.strip():
            result["layout"] = layout.strip()
        return result


class CompositeMetadataExtractor:
    """Runs several extractors and merges their results, later ones winning."""

    def __init__(self, extractors: list | None = None):
        """Initialize with a list of extractors.

        Args:
            extractors: MetadataExtractor implementations. If None, uses the
                default set.
        """
        if extractors is None:
            self._extractors = [
                FrontmatterExtractor(),
                TitleExtractor(),
                TagExtractor(),
                DateExtractor(),
                DescriptionExtractor(),
                CacheMetadataExtractor(),
            ]
        else:
            self._extractors = list(extractors)

    def add_extractor(self, extractor: MetadataExtractor) -> None:
        self._extractors.append(extractor)

    def extract(self, content: str, path: Path) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for extractor in self._extractors:
            result.update(extractor.extract(content, path))
        return result
