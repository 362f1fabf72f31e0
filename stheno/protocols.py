"""Protocol definitions for Stheno.

The content pipeline depends on these interfaces rather than on concrete
classes, so renderers, extractors and loaders can be swapped or faked in
tests.
"""

from __future__ import annotations

from abc import abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .content import Page
    from .renderers import Heading


@runtime_checkable
class ContentRenderer(Protocol):
    """Converts one source type to HTML."""

    @abstractmethod
    def can_render(self, path: Path) -> bool:
        ...

    @abstractmethod
    def render(self, content: str, folder: str) -> tuple[str, list[Heading]]:
        """Render content to HTML.

        Args:
            content: Source body without frontmatter.
            folder: Folder containing the page, relative to ``site/``.

        Returns:
            Tuple of (rendered HTML, list of headings for TOC).
        """
        ...

    @property
    @abstractmethod
    def source_type(self) -> str:
        """Source type identifier, also the name used in ``renderers`` config."""
        ...


@runtime_checkable
class MetadataExtractor(Protocol):
    """Extracts one kind of metadata from raw file content."""

    @abstractmethod
    def extract(self, content: str, path: Path) -> dict[str, Any]:
        ...


@runtime_checkable
class TemplateRenderer(Protocol):
    """Renders pages and reports which files a render would read."""

    @abstractmethod
    def render_page(self, page: Page) -> str:
        ...

    @abstractmethod
    def resolve_dependencies(self, page: Page) -> list[Path | str]:
        """Files (and virtual ``@`` names) the page's render depends on.

        Raises:
            DependencyResolutionFailed: If the chain cannot be resolved.
        """
        ...


@runtime_checkable
class ContentLoader(Protocol):
    """Discovers content files."""

    @abstractmethod
    def iter_files(self, include_drafts: bool = False) -> list[Path]:
        ...


@runtime_checkable
class PageBuilder(Protocol):
    """Builds a Page from a source file."""

    @abstractmethod
    def build(self, path: Path, draft: bool = False) -> Page:
        ...
