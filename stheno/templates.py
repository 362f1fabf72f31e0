"""Template rendering and dependency resolution for Stheno.

TemplateEngine renders pages through Jinja2 layouts and also works out,
without rendering, which template and data files a page will use. The
latter is what the incremental build records as the page's dependencies.

Key functions/classes:
- TemplateEngine: Renders pages and resolves their template dependencies.
- render_toc: Nested table-of-contents HTML from a page's headings.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, TemplateNotFound, meta, nodes, select_autoescape
from jinja2.exceptions import TemplateError
from markupsafe import Markup, escape
from pygments.formatters import HtmlFormatter

from .collections import PageCollection, TagCollection
from .config import data_files
from .content import LayoutResolver, Page
from .dependencies import COLLECTIONS_DEPENDENCY
from .errors import CircularDependencyError, DependencyResolutionFailed
from .renderers import Heading
from .utils import join_root_url

logger = logging.getLogger(__name__)

__all__ = ["TemplateEngine", "render_toc"]

COLLECTION_GLOBALS = frozenset({"pages", "tags"})
DATA_GLOBAL = "data"
_BODY_TEMPLATE = "<page body>"


def _loaded_names(ast: nodes.Template) -> set[str]:
    """Every variable name a template reads, environment globals included."""
    return {node.name for node in ast.find_all(nodes.Name) if node.ctx == "load"}


def render_toc(page: Page) -> Markup:
    """Render a page's headings as nested ``<ul>`` lists."""
    return _render_toc_from_headings(page.toc)


def _render_toc_from_headings(headings: list[Heading]) -> Markup:
    if not headings:
        return Markup("")

    html_parts: list[str] = []
    level_stack: list[int] = []
    for heading in headings:
        level = heading.level
        while level_stack and level_stack[-1] > level:
            level_stack.pop()
            html_parts.append("</li></ul>")
        if level_stack and level_stack[-1] == level:
            html_parts.append("</li>")
        else:
            html_parts.append("<ul>")
            level_stack.append(level)
        html_parts.append(
            f'<li><a href="#{escape(heading.id)}">{escape(heading.text)}</a>'
        )
    while level_stack:
        level_stack.pop()
        html_parts.append("</li></ul>")
    return Markup("".join(html_parts))


class TemplateEngine:
    """Jinja2 template engine.

    Templates are looked up in ``site/_layouts``, then ``site/_partials``,
    then ``site``.

    Attributes:
        site_dir: Directory containing templates.
        project_root: Project root, used to locate data files.
        data: Global site data.
        root_url: Base URL applied by ``url_for``.
        env: Jinja2 environment.
        pages: All discovered pages.
        tags: Tag to pages mapping.
    """

    def __init__(
        self,
        site_dir: Path,
        data: dict[str, Any],
        root_url: str | None = None,
        project_root: Path | None = None,
    ):
        self.site_dir = site_dir
        self.project_root = project_root or site_dir.parent
        self.data = data
        self.root_url = root_url or (data.get("root_url") if isinstance(data, dict) else "") or ""
        self.layout_resolver = LayoutResolver(site_dir)
        self.env = Environment(
            loader=FileSystemLoader(
                [site_dir / "_layouts", site_dir / "_partials", site_dir]
            ),
            autoescape=select_autoescape(["html", "xml", "jinja"]),
            auto_reload=True,
        )
        self.pages: PageCollection = PageCollection([])
        self.tags: TagCollection = TagCollection({})
        self._install_globals()

    def _install_globals(self) -> None:
        self.env.globals["data"] = self.data
        self.env.globals["pages"] = self.pages
        self.env.globals["tags"] = self.tags
        self.env.globals["url_for"] = self._url_for
        self.env.globals["pygments_css"] = self._pygments_css
        self.env.globals["render_toc"] = render_toc

    @staticmethod
    def _pygments_css() -> str:
        return HtmlFormatter().get_style_defs(".highlight")

    def update_collections(self, pages: Iterable[Page], tags: dict[str, list[Page]]) -> None:
        """Replace the ``pages`` and ``tags`` globals."""
        self.pages = PageCollection(pages)
        self.tags = TagCollection(tags)
        self.env.globals["pages"] = self.pages
        self.env.globals["tags"] = self.tags

    def update_data(self, data: dict[str, Any]) -> None:
        self.data = data
        self.env.globals["data"] = data

    def _url_for(self, path: str) -> str:
        """Prefix a site path with ``root_url`` when one is configured."""
        if path.startswith(("http://", "https://", "//")):
            return path
        normalized = path if path.startswith("/") else f"/{path}"
        if self.root_url:
            return join_root_url(self.root_url, normalized)
        return normalized

    def layout_template_name(self, layout: str) -> str | None:
        """Template name used for ``layout``, falling back to ``default``.

        Returns None when neither exists; the page body is then rendered
        without a layout.
        """
        for candidate in (layout, "default"):
            name = self.layout_resolver.template_name(candidate)
            if name is not None:
                return name
        return None

    def render_page(self, page: Page) -> str:
        """Render a page's body inside its layout.

        ``page.content`` must already hold the converted body.
        """
        context = {
            "data": self.data,
            "current_page": page,
            "frontmatter": page.frontmatter,
            "pages": self.pages,
            "tags": self.tags,
            "url_for": self._url_for,
        }
        body_html = self._render_body(page, context)
        layout_name = self.layout_template_name(page.layout)
        if layout_name is None:
            logger.debug("No layout %r for %s; rendering body only", page.layout, page.url)
            return body_html
        template = self.env.get_template(layout_name)
        return template.render(page_content=Markup(body_html), **context)

    def _render_body(self, page: Page, context: dict[str, Any]) -> str:
        if page.source_type == "jinja":
            return self.env.from_string(page.content).render(**context)
        return page.content

    def resolve_dependencies(self, page: Page) -> list[Path | str]:
        """Statically resolve the files a page's render will read.

        Follows the layout and every ``extends``/``include``/``import``
        reference recursively. Adds the data files when any template in the
        chain uses ``data`` and ``@collections`` when one uses ``pages`` or
        ``tags``.

        Args:
            page: Page to resolve.

        Returns:
            Sorted list of template file paths and virtual dependency names.

        Raises:
            CircularDependencyError: If templates reference each other in a loop.
            DependencyResolutionFailed: If a referenced template is missing,
                is named dynamically, or does not parse.
        """
        files: set[Path] = set()
        names_used: set[str] = set()
        visited: set[str] = set()

        if page.source_type == "jinja":
            ast = self._parse(page, page.body, page.source_path or page.url)
            names_used |= _loaded_names(ast)
            for ref in meta.find_referenced_templates(ast):
                self._visit(page, ref, [_BODY_TEMPLATE], visited, files, names_used)

        layout_name = self.layout_template_name(page.layout)
        if layout_name is not None:
            self._visit(page, layout_name, [], visited, files, names_used)

        deps: list[Path | str] = sorted(files)
        if DATA_GLOBAL in names_used:
            deps.extend(data_files(self.project_root))
        if names_used & COLLECTION_GLOBALS:
            deps.append(COLLECTIONS_DEPENDENCY)
        return deps

    def _visit(
        self,
        page: Page,
        name: str | None,
        stack: list[str],
        visited: set[str],
        files: set[Path],
        names_used: set[str],
    ) -> None:
        if name is None:
            raise DependencyResolutionFailed(
                page.url, "template name is computed at render time"
            )
        if name in stack:
            raise CircularDependencyError(page.url, stack[stack.index(name):] + [name])
        if name in visited:
            return
        try:
            source, filename, _ = self.env.loader.get_source(self.env, name)
        except TemplateNotFound:
            chain = " -> ".join(stack + [name])
            raise DependencyResolutionFailed(page.url, f"template {name!r} not found ({chain})") from None
        except (OSError, UnicodeDecodeError) as exc:
            raise DependencyResolutionFailed(page.url, f"cannot read template {name!r}: {exc}") from exc
        files.add(Path(filename))
        ast = self._parse(page, source, name)
        names_used |= _loaded_names(ast)
        for ref in meta.find_referenced_templates(ast):
            self._visit(page, ref, stack + [name], visited, files, names_used)
        visited.add(name)

    def _parse(self, page: Page, source: str, name: str):
        try:
            return self.env.parse(source)
        except TemplateError as exc:
            line = getattr(exc, "lineno", None)
            raise DependencyResolutionFailed(
                page.url, f"syntax error in {name} line {line}: {exc.message}"
            ) from exc
