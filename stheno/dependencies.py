"""Dependency tracking between pages and the files they render with.

The tracker is filled during the dependency phase of a build cycle (possibly
from several worker threads) and then frozen into a DependencyGraph that the
freshness evaluator and the dev server read.

Dependency paths are project-relative POSIX strings so that manifests stay
identical across machines. Names starting with ``@`` are virtual
dependencies that do not correspond to a single file.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

COLLECTIONS_DEPENDENCY = "@collections"


def normalize_dependency_path(path: Path | str, project_root: Path) -> str:
    """Normalize a dependency to a project-relative POSIX path.

    Virtual dependencies and paths outside the project are returned as
    absolute POSIX strings (virtual ones unchanged).
    """
    if isinstance(path, str) and path.startswith("@"):
        return path
    candidate = Path(path)
    if not candidate.is_absolute():
        candidate = project_root / candidate
    try:
        return candidate.resolve().relative_to(project_root.resolve()).as_posix()
    except ValueError:
        return candidate.resolve().as_posix()


@dataclass(frozen=True)
class DependencyGraph:
    """Read-only snapshot of the page/file dependency relation.

    Attributes:
        forward: Page URL to the sorted tuple of its dependency paths.
        reverse: Dependency path to the frozenset of dependent page URLs.
        failed: Page URLs whose dependency resolution failed this cycle.
    """

    forward: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    reverse: Mapping[str, frozenset[str]] = field(default_factory=dict)
    failed: frozenset[str] = frozenset()

    def dependencies_of(self, page: str) -> tuple[str, ...]:
        return self.forward.get(page, ())

    def dependents_of(self, path: str) -> frozenset[str]:
        return self.reverse.get(path, frozenset())


class DependencyTracker:
    """Records which files each page used while being resolved.

    Attributes:
        project_root: Root used to normalize dependency paths.
    """

    def __init__(self, project_root: Path):
        self.project_root = project_root
        self._lock = threading.Lock()
        self._forward: dict[str, set[str]] = {}
        self._reverse: dict[str, set[str]] = {}
        self._failed: set[str] = set()
        self._frozen = False

    def register_page(self, page: str) -> None:
        """Make a page known even if it ends up with no dependencies."""
        with self._lock:
            self._check_writable()
            self._forward.setdefault(page, set())

    def register_dependency(self, page: str, path: Path | str) -> None:
        """Record that ``page`` depends on ``path``. Re-registering is a no-op."""
        normalized = normalize_dependency_path(path, self.project_root)
        with self._lock:
            self._check_writable()
            self._forward.setdefault(page, set()).add(normalized)
            self._reverse.setdefault(normalized, set()).add(page)

    def register_dependencies(self, page: str, paths: Iterable[Path | str]) -> None:
        self.register_page(page)
        for path in paths:
            self.register_dependency(page, path)

    def record_failure(self, page: str, error: Exception) -> None:
        """Give ``page`` an empty dependency list and flag it for a forced rebuild."""
        logger.warning("Dependency resolution failed for %s: %s", page, error)
        with self._lock:
            self._check_writable()
            self._drop_edges(page)
            self._forward[page] = set()
            self._failed.add(page)

    def reset_page(self, page: str) -> None:
        """Forget a page's edges so it can be resolved again (watch mode)."""
        with self._lock:
            self._drop_edges(page)
            self._forward.pop(page, None)
            self._failed.discard(page)
            self._frozen = False

    def reset(self) -> None:
        with self._lock:
            self._forward.clear()
            self._reverse.clear()
            self._failed.clear()
            self._frozen = False

    def get_dependents(self, path: Path | str) -> set[str]:
        normalized = normalize_dependency_path(path, self.project_root)
        with self._lock:
            return set(self._reverse.get(normalized, ()))

    def failed_pages(self) -> set[str]:
        with self._lock:
            return set(self._failed)

    def snapshot(self) -> DependencyGraph:
        """Freeze the tracker and return an immutable graph.

        Further registrations raise until ``reset`` or ``reset_page`` is
        called, which keeps the render and evaluation phases separate.
        """
        with self._lock:
            self._frozen = True
            return DependencyGraph(
                forward={
                    page: tuple(sorted(paths))
                    for page, paths in sorted(self._forward.items())
                },
                reverse={
                    path: frozenset(pages)
                    for path, pages in sorted(self._reverse.items())
                },
                failed=frozenset(self._failed),
            )

    def _drop_edges(self, page: str) -> None:
        for path in self._forward.get(page, ()):
            dependents = self._reverse.get(path)
            if dependents is None:
                continue
            dependents.discard(page)
            if not dependents:
                del self._reverse[path]

    def _check_writable(self) -> None:
        if self._frozen:
            raise RuntimeError("DependencyTracker is frozen after snapshot()")
