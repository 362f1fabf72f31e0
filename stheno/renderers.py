"""Content renderers for Stheno.

Each renderer implements the ContentRenderer protocol for one source type.
The set of active renderers is chosen by name in ``stheno.yaml`` and
resolved once into a RendererRegistry, which is passed into the content
pipeline.

Key classes:
- MarkdownRenderer: Markdown to HTML via mistune, code highlighted by Pygments.
- JinjaContentRenderer: Jinja page bodies, rendered later by the TemplateEngine.
- HTMLRenderer: Plain HTML passthrough.
- RendererRegistry: Ordered lookup of the renderer for a path.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import mistune
from markupsafe import escape
from pygments import highlight
from pygments.formatters import HtmlFormatter
from pygments.lexers import get_lexer_by_name
from pygments.util import ClassNotFound

from .errors import ConfigError, ConfigErrorCode
from .utils import is_html, is_markdown, is_template, strip_hashtags

if TYPE_CHECKING:
    from .protocols import ContentRenderer


@dataclass
class Heading:
    """A heading extracted from markdown, for tables of contents.

    Attributes:
        id: Anchor ID for the heading.
        text: The heading text.
        level: Heading level (1-6).
    """

    id: str
    text: str
    level: int


def _generate_heading_id(text: str) -> str:
    slug = text.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[-\s]+", "-", slug)
    return slug.strip("-")


class _HighlightRenderer(mistune.HTMLRenderer):
    """mistune renderer that assigns heading IDs and highlights code blocks.

    Attributes:
        headings: Headings seen during rendering, in document order.
    """

    def __init__(self):
        super().__init__(escape=False)
        self.headings: list[Heading] = []
        self._heading_id_counts: dict[str, int] = {}

    def heading(self, text: str, level: int, **attrs) -> str:
        base_id = _generate_heading_id(text)
        if base_id in self._heading_id_counts:
            self._heading_id_counts[base_id] += 1
            heading_id = f"{base_id}-{self._heading_id_counts[base_id]}"
        else:
            self._heading_id_counts[base_id] = 0
            heading_id = base_id
        self.headings.append(Heading(id=heading_id, text=text, level=level))
        return f'<h{level} id="{heading_id}">{text}</h{level}>\n'

    def block_code(self, code: str, info: str | None = None) -> str:
        if info:
            try:
                lexer = get_lexer_by_name(info.split()[0], stripall=True)
            except ClassNotFound:
                lexer = None
            if lexer is not None:
                return highlight(code, lexer, HtmlFormatter(cssclass="highlight"))
        lang_class = f' class="language-{escape(info)}"' if info else ""
        return f"<pre><code{lang_class}>{escape(code)}</code></pre>\n"


class MarkdownRenderer:
    """Renders Markdown to HTML and collects headings for the TOC."""

    @property
    def source_type(self) -> str:
        return "markdown"

    def can_render(self, path: Path) -> bool:
        return is_markdown(path)

    def render(self, content: str, folder: str) -> tuple[str, list[Heading]]:
        """Render Markdown content.

        Args:
            content: Markdown source (frontmatter already removed).
            folder: Folder containing the page (unused).

        Returns:
            Tuple of (rendered HTML, list of Heading objects).
        """
        renderer = _HighlightRenderer()
        markdown = mistune.create_markdown(
            renderer=renderer, plugins=["strikethrough", "footnotes", "table", "url"]
        )
        html = markdown(strip_hashtags(content))
        return html, renderer.headings


class HTMLRenderer:
    """Passes plain HTML through unchanged."""

    @property
    def source_type(self) -> str:
        return "html"

    def can_render(self, path: Path) -> bool:
        return is_html(path)

    def render(self, content: str, folder: str) -> tuple[str, list[Heading]]:
        return content, []


class JinjaContentRenderer:
    """Identifies Jinja page bodies.

    The body is returned as-is; TemplateEngine renders it with the full
    site context at page render time.
    """

    @property
    def source_type(self) -> str:
        return "jinja"

    def can_render(self, path: Path) -> bool:
        return is_template(path)

    def render(self, content: str, folder: str) -> tuple[str, list[Heading]]:
        return content, []


AVAILABLE_RENDERERS = {
    "markdown": MarkdownRenderer,
    "jinja": JinjaContentRenderer,
    "html": HTMLRenderer,
}


class RendererRegistry:
    """Ordered collection of content renderers.

    The first registered renderer that can handle a path wins.
    """

    def __init__(self, renderers: Iterable | None = None):
        self._renderers: list = list(renderers or [])

    def register(self, renderer: ContentRenderer) -> None:
        self._renderers.append(renderer)

    def get_renderer(self, path: Path) -> ContentRenderer | None:
        """Return the renderer for ``path``, or None if no renderer handles it."""
        for renderer in self._renderers:
            if renderer.can_render(path):
                return renderer
        return None

    def handles(self, path: Path) -> bool:
        return self.get_renderer(path) is not None

    @property
    def source_types(self) -> list[str]:
        return [renderer.source_type for renderer in self._renderers]


def create_renderer_registry(names: Iterable[str]) -> RendererRegistry:
    """Build a registry from renderer names in configuration order.

    Raises:
        ConfigError: If a name is not a known renderer.
    """
    registry = RendererRegistry()
    for name in names:
        factory = AVAILABLE_RENDERERS.get(str(name).strip().lower())
        if factory is None:
            raise ConfigError(
                ConfigErrorCode.UNKNOWN_RENDERER,
                "renderers",
                name,
                f"Unknown renderer {name!r}. Available: {', '.join(AVAILABLE_RENDERERS)}",
            )
        registry.register(factory())
    return registry
