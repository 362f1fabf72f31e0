"""Content discovery and page construction for Stheno.

Pages are discovered under ``site/``, their frontmatter and metadata are
extracted, and a Page is built for each. Converting the body to HTML is a
separate step (``ContentProcessor.render_content``) so that a build only
pays for it on pages that are actually stale.

Key classes:
- Page: A site page with its metadata and cache-relevant fields.
- FileContentLoader: Discovers source files.
- LayoutResolver: Chooses the layout for a page.
- UrlDeriver: Derives normalized page URLs.
- DefaultPageBuilder: Builds Page objects from source files.
- ContentProcessor: Facade tying the above together.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .errors import BuildError
from .extractors import CompositeMetadataExtractor
from .hashing import content_hash
from .protocols import ContentLoader, PageBuilder
from .renderers import Heading, RendererRegistry
from .utils import slugify, source_stem, strip_hashtags, titleize

logger = logging.getLogger(__name__)

LAYOUT_SUFFIXES = (".html.jinja", ".jinja", ".html")


@dataclass
class Page:
    """A site page.

    Attributes:
        title: Human-readable title.
        body: Source body without frontmatter.
        content: Rendered body HTML; empty until ``render_content`` runs.
        description: Short description from the first paragraph.
        excerpt: First paragraph (markdown only).
        url: Normalized URL, ``/`` or ``/a/b/``.
        slug: URL-friendly slug.
        date: Display date (publication date when known).
        tags: Frontmatter tags followed by body hashtags.
        draft: Whether this is a draft page.
        layout: Layout name, resolved against ``site/_layouts``.
        group: First folder component (e.g. ``posts``).
        path: Absolute path to the source file.
        folder: Folder relative to ``site/``.
        filename: Source file name.
        source_type: "markdown", "html" or "jinja".
        source_path: Project-relative POSIX source path.
        content_hash: Hash of body and frontmatter.
        published_at: Publication time, drives cache aging.
        ttl_seconds: Page-level TTL override.
        max_age_cap_days: Page-level max age cap override.
    """

    title: str
    body: str
    content: str
    description: str
    excerpt: str
    url: str
    slug: str
    date: datetime
    tags: list[str]
    draft: bool
    layout: str
    group: str
    path: Path
    folder: str
    filename: str
    source_type: str
    source_path: str = ""
    content_hash: str = ""
    published_at: datetime | None = None
    ttl_seconds: int | None = None
    max_age_cap_days: int | None = None
    frontmatter: dict[str, Any] = field(default_factory=dict)
    toc: list[Heading] = field(default_factory=list)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class FileContentLoader:
    """Discovers content files under the site directory.

    Files inside ``_``-prefixed folders (layouts, partials) are never pages.
    ``_``-prefixed files are drafts.

    Attributes:
        site_dir: Directory containing site content.
        renderer_registry: Only files some renderer handles are returned.
    """

    def __init__(self, site_dir: Path, renderer_registry: RendererRegistry):
        self.site_dir = site_dir
        self.renderer_registry = renderer_registry

    def iter_files(self, include_drafts: bool = False) -> list[Path]:
        files: list[Path] = []
        if not self.site_dir.exists():
            return files
        for path in sorted(self.site_dir.rglob("*")):
            if path.is_dir():
                continue
            rel = path.relative_to(self.site_dir)
            if any(part.startswith("_") for part in rel.parts[:-1]):
                continue
            if rel.name.startswith("_") and not include_drafts:
                continue
            if self.renderer_registry.handles(path):
                files.append(path)
        return files


class LayoutResolver:
    """Chooses the layout for a page.

    An explicit ``layout`` frontmatter value wins. Otherwise the first
    existing candidate of ``{folder}/{name}``, ``{group}`` and ``default`` is
    used (``{name}`` for pages at the site root).

    Attributes:
        site_dir: Directory containing site content.
        layout_dir: ``site/_layouts``.
    """

    def __init__(self, site_dir: Path):
        self.site_dir = site_dir
        self.layout_dir = site_dir / "_layouts"

    def resolve(self, path: Path, folder: str, explicit: str | None = None) -> str:
        if explicit:
            return explicit
        candidates: list[str] = []
        if folder:
            candidates.append(f"{folder}/{source_stem(path)}")
            candidates.append(self.group_from_folder(folder))
        else:
            candidates.append(source_stem(path))
        candidates.append("default")
        for candidate in candidates:
            if self.template_name(candidate) is not None:
                return candidate
        return "default"

    def template_name(self, layout: str) -> str | None:
        """Loader-relative file name for ``layout``, or None if it does not exist."""
        for suffix in LAYOUT_SUFFIXES + ("",):
            target = self.layout_dir / f"{layout}{suffix}"
            if target.is_file():
                return f"{layout}{suffix}"
        return None

    @staticmethod
    def group_from_folder(folder: str) -> str:
        if not folder:
            return ""
        return Path(folder).parts[0]


class UrlDeriver:
    """Derives normalized page URLs from site-relative paths."""

    def derive(self, rel: Path, slug: str) -> str:
        """Return ``/`` for the root index, else ``/segments/slug/``."""
        segments = [p for p in rel.parent.parts if p and p != "."]
        url_parts = segments if slug == "index" else segments + [slug]
        path = "/".join(url_parts)
        return f"/{path}/" if path else "/"


class DefaultPageBuilder:
    """Builds Page objects from source files.

    Attributes:
        site_dir: Directory containing site content.
        project_root: Root that ``source_path`` is relative to.
        renderer_registry: Registry of content renderers.
        metadata_extractor: Composite metadata extractor.
    """

    def __init__(
        self,
        site_dir: Path,
        renderer_registry: RendererRegistry,
        project_root: Path | None = None,
        metadata_extractor: CompositeMetadataExtractor | None = None,
    ):
        self.site_dir = site_dir
        self.project_root = project_root or site_dir.parent
        self.renderer_registry = renderer_registry
        self.metadata_extractor = metadata_extractor or CompositeMetadataExtractor()
        self.layout_resolver = LayoutResolver(site_dir)
        self.url_deriver = UrlDeriver()

    def build(self, path: Path, draft: bool = False) -> Page:
        """Build a Page from ``path`` without rendering its body."""
        rel = path.relative_to(self.site_dir)
        folder = rel.parent.as_posix() if rel.parent != Path(".") else ""
        raw = path.read_text(encoding="utf-8")

        metadata = self.metadata_extractor.extract(raw, path)
        frontmatter = metadata.get("frontmatter", {})
        body = metadata.get("body", raw)

        renderer = self.renderer_registry.get_renderer(path)
        source_type = renderer.source_type if renderer else "unknown"
        slug = slugify(source_stem(path))
        published_at = metadata.get("published_at")
        try:
            source_path = path.resolve().relative_to(self.project_root.resolve()).as_posix()
        except ValueError:
            source_path = path.as_posix()

        return Page(
            title=metadata.get("title", titleize(path.name)),
            body=body,
            content="",
            description=metadata.get("description", ""),
            excerpt=metadata.get("excerpt", ""),
            url=self.url_deriver.derive(rel, slug),
            slug=slug,
            date=_aware(published_at or metadata.get("date") or datetime.now()),
            tags=metadata.get("tags", []),
            draft=draft or metadata.get("draft", False),
            layout=self.layout_resolver.resolve(path, folder, metadata.get("layout")),
            group=LayoutResolver.group_from_folder(folder),
            path=path,
            folder=folder,
            filename=path.name,
            source_type=source_type,
            source_path=source_path,
            content_hash=content_hash(body, frontmatter),
            published_at=published_at,
            ttl_seconds=metadata.get("ttl_seconds"),
            max_age_cap_days=metadata.get("max_age_cap_days"),
            frontmatter=frontmatter,
        )


class ContentProcessor:
    """Loads pages from the site directory and renders their bodies.

    Attributes:
        site_dir: Directory containing site content.
        renderer_registry: Registry resolved from configuration.
        errors: Sources the last ``load`` could not read.
    """

    def __init__(
        self,
        site_dir: Path,
        renderer_registry: RendererRegistry,
        project_root: Path | None = None,
        content_loader: ContentLoader | None = None,
        page_builder: PageBuilder | None = None,
    ):
        self.site_dir = site_dir
        self.renderer_registry = renderer_registry
        self._content_loader = content_loader or FileContentLoader(site_dir, renderer_registry)
        self._page_builder = page_builder or DefaultPageBuilder(
            site_dir, renderer_registry, project_root=project_root
        )
        self.errors: list[BuildError] = []

    def load(self, include_drafts: bool = False) -> list[Page]:
        """Discover and build every page, sorted by URL.

        Pages marked ``draft: true`` in frontmatter are skipped unless
        ``include_drafts`` is set. When two sources map to the same URL the
        first in path order wins and the other is skipped with a warning.
        A source that cannot be read is left out and recorded in ``errors``.
        """
        pages: dict[str, Page] = {}
        self.errors = []
        for path in self._content_loader.iter_files(include_drafts):
            try:
                page = self._page_builder.build(path, draft=path.name.startswith("_"))
            except (OSError, UnicodeDecodeError) as exc:
                logger.error("Cannot read %s: %s", path, exc)
                self.errors.append(BuildError(path, f"Cannot read source: {exc}", exc))
                continue
            if page.draft and not include_drafts:
                continue
            if page.url in pages:
                logger.warning(
                    "%s maps to %s, already produced by %s; skipping",
                    page.source_path,
                    page.url,
                    pages[page.url].source_path,
                )
                continue
            pages[page.url] = page
        return [pages[url] for url in sorted(pages)]

    def render_content(self, page: Page) -> Page:
        """Fill ``page.content`` and ``page.toc`` from the page's renderer."""
        renderer = self.renderer_registry.get_renderer(page.path)
        if renderer is None:
            page.content, page.toc = page.body, []
        else:
            page.content, page.toc = renderer.render(strip_hashtags(page.body), page.folder)
        return page
