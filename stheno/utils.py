"""Utility functions for Stheno.

String helpers for turning source filenames into slugs, titles and dates,
hashtag handling, source type checks, and the filesystem helpers the build
uses to write output safely.

Key functions:
    slugify: Convert filenames to URL slugs.
    titleize: Convert filenames to human-readable titles.
    extract_tags: Extract hashtags from text.
    build_tags_index: Build index of pages by tags.
    atomic_write_text: Write a file through a temporary sibling.
    remove_output_page: Delete a page's output file and empty parents.
    absolutize_html_urls: Point root-relative links at the configured root URL.
"""

from __future__ import annotations

import os
import re
import shutil
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path

HASHTAG_RE = re.compile(r"#([a-zA-Z][a-zA-Z0-9]{2,}(?:/[a-zA-Z0-9]+)*)")


def _strip_date_prefix(stem: str) -> str:
    parts = stem.split("-")
    if len(parts) >= 4 and all(p.isdigit() for p in parts[:3]):
        return "-".join(parts[3:])
    return stem


def source_stem(path: Path) -> str:
    """File name without its source suffixes: ``about.html.jinja`` -> ``about``."""
    name = path.name
    for suffix in (".jinja", ".html", ".md"):
        if name.lower().endswith(suffix) and len(name) > len(suffix):
            name = name[: -len(suffix)]
    return name


def slugify(name: str) -> str:
    """Convert a filename stem to a slug, dropping any YYYY-MM-DD prefix.

    Examples:
        >>> slugify("2024-01-15-Hello World")
        'hello-world'
    """
    cleaned = re.sub(r"[^a-zA-Z0-9]+", "-", _strip_date_prefix(name))
    cleaned = cleaned.strip("-").lower()
    return cleaned or "index"


def titleize(filename: str) -> str:
    """Convert a filename to a human-readable title.

    Examples:
        >>> titleize("2024-01-15-hello-world.md")
        'Hello World'
    """
    base = _strip_date_prefix(source_stem(Path(filename)))
    words = re.split(r"[\s\-_]+", base)
    return " ".join(word.capitalize() for word in words if word) or "Untitled"


def extract_date_from_name(name: str) -> datetime | None:
    """Extract a date from a filename stem with a YYYY-MM-DD prefix."""
    parts = name.split("-")
    if len(parts) >= 3 and all(p.isdigit() for p in parts[:3]):
        try:
            return datetime(int(parts[0]), int(parts[1]), int(parts[2]))
        except ValueError:
            return None
    return None


def extract_tags(text: str) -> list[str]:
    """Extract unique hashtags (without ``#``) in order of appearance.

    A tag starts with a letter and is at least three characters long;
    hierarchical tags like ``#topic/subtopic`` are kept whole.
    """
    seen: list[str] = []
    for tag in HASHTAG_RE.findall(text):
        if tag not in seen:
            seen.append(tag)
    return seen


def strip_hashtags(text: str) -> str:
    """Remove ``#`` from hashtags, keeping the words."""
    return HASHTAG_RE.sub(lambda m: m.group(1), text)


def first_paragraph(text: str, limit: int = 160) -> str:
    """Return the first paragraph as plain text, truncated to ``limit``.

    Leading heading markers, HTML tags and Jinja syntax are removed.
    """
    paragraphs = [p.strip() for p in text.split("\n\n") if p.strip()]
    if not paragraphs:
        return ""
    para = paragraphs[0].lstrip("# ").strip()
    para = re.sub(r"<[^>]+>", "", para)
    para = re.sub(r"\{[%#{].*?[%#}]\}", "", para)
    return " ".join(para.split())[:limit]


def is_markdown(path: Path) -> bool:
    return path.suffix.lower() == ".md"


def is_template(path: Path) -> bool:
    """True for ``.jinja`` and ``.html.jinja`` files."""
    return path.suffixes[-2:] == [".html", ".jinja"] or path.suffix == ".jinja"


def is_html(path: Path) -> bool:
    """True for plain ``.html`` files (not ``.html.jinja``)."""
    return path.suffix.lower() == ".html" and not is_template(path)


def extract_number_from_name(name: str) -> int | None:
    """Extract a leading ordering number, e.g. ``01-intro`` -> 1.

    With a date prefix, the number directly after the date is used.
    """
    parts = name.split("-")
    if len(parts) >= 4 and all(p.isdigit() for p in parts[:3]):
        return int(parts[3]) if parts[3].isdigit() else None
    if parts and parts[0].isdigit():
        return int(parts[0])
    return None


def strip_number_prefix(name: str) -> str:
    """Strip date and ordering-number prefixes for name comparison."""
    parts = name.split("-")
    if len(parts) >= 4 and all(p.isdigit() for p in parts[:3]):
        parts = parts[3:]
        if parts and parts[0].isdigit():
            parts = parts[1:]
    elif parts and parts[0].isdigit():
        parts = parts[1:]
    return "-".join(parts) if parts else name


def build_tags_index(pages: Iterable) -> dict[str, list]:
    """Map each tag to the pages carrying it, in page order."""
    tags: dict[str, list] = {}
    for page in pages:
        for tag in page.tags:
            tags.setdefault(tag, []).append(page)
    return tags


def ensure_clean_dir(path: Path) -> None:
    """Remove a directory's contents, creating it if needed."""
    if path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True, exist_ok=True)


def output_path_for(output_dir: Path, url: str) -> Path:
    """Output file for a page URL: ``/a/b/`` -> ``<output>/a/b/index.html``."""
    url_path = url.strip("/")
    target_dir = output_dir / url_path if url_path else output_dir
    return target_dir / "index.html"


def atomic_write_text(path: Path, text: str) -> None:
    """Write ``text`` to ``path`` through a temporary file and ``os.replace``.

    Readers see either the old file or the new one, never a partial write.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.{id(text):x}.tmp")
    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)


def remove_output_page(output_dir: Path, url: str) -> bool:
    """Delete a page's output file and any directories it leaves empty.

    Returns:
        True if a file was removed.
    """
    target = output_path_for(output_dir, url)
    try:
        target.unlink()
    except FileNotFoundError:
        return False
    parent = target.parent
    root = output_dir.resolve()
    while parent.resolve() != root:
        try:
            parent.rmdir()
        except OSError:
            break
        parent = parent.parent
    return True


# href="/x", src='/x' and action="/x"; protocol-relative "//host" is left alone.
_ROOT_RELATIVE_ATTR_RE = re.compile(r"""\b(href|src|action)=(["'])(/(?!/)[^"']*)\2""")


def join_root_url(root_url: str, path: str) -> str:
    """``root_url`` followed by ``path`` with exactly one slash between them."""
    if not root_url:
        return path
    return root_url.rstrip("/") + "/" + path.lstrip("/")


def absolutize_html_urls(html: str, root_url: str) -> str:
    """Prefix root-relative link targets in rendered HTML with ``root_url``.

    Relative targets (``img.png``), anchors and links with a scheme are
    kept as written.
    """
    if not root_url:
        return html
    return _ROOT_RELATIVE_ATTR_RE.sub(
        lambda m: f"{m.group(1)}={m.group(2)}{join_root_url(root_url, m.group(3))}{m.group(2)}",
        html,
    )
