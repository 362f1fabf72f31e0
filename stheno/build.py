"""Incremental site building for Stheno.

SiteBuilder runs one build cycle: discover pages, resolve every page's
template dependencies, decide per page whether cached output can be reused,
render the stale ones and record the results in the cache manifest.

A cycle never leaves the cache worse than it found it. A page that fails to
render keeps its previous output and cache entry, so the next cycle retries
it. The manifest is written atomically at the end of the cycle (and every
``checkpoint_every`` renders) and a failed write only costs extra rebuilds
later.

Key functions/classes:
- SiteBuilder: Owns the per-project state and runs build cycles.
- BuildResult: What a cycle did.
- build_site: One-shot convenience wrapper used by the CLI.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from jinja2 import TemplateSyntaxError

from .collections import listing_rows
from .config import (
    IsgSettings,
    cache_dir_for,
    data_files,
    load_config,
    load_data,
    load_isg_settings,
    output_dir_for,
)
from .content import ContentProcessor, Page
from .context import ExecutionContext, utc_now
from .dependencies import (
    COLLECTIONS_DEPENDENCY,
    DependencyGraph,
    DependencyTracker,
    normalize_dependency_path,
)
from .errors import (
    BuildError,
    BuildLockError,
    DataFileError,
    DependencyResolutionFailed,
    ManifestWriteFailed,
)
from .freshness import Freshness, StaleReason, evaluate, stale
from .hashing import file_hash, listing_hash
from .invalidation import InvalidationGateway, PageRef
from .manifest import Manifest, ManifestStore, PageCacheEntry, PendingInvalidation
from .renderers import RendererRegistry, create_renderer_registry
from .templates import TemplateEngine
from .utils import (
    absolutize_html_urls,
    atomic_write_text,
    build_tags_index,
    ensure_clean_dir,
    output_path_for,
    remove_output_page,
)

logger = logging.getLogger(__name__)

MISSING_DEPENDENCY_HASH = "missing"
_POLL_SECONDS = 0.05


@dataclass
class BuildResult:
    """Outcome of one build cycle.

    Attributes:
        pages: All discovered pages.
        output_dir: Directory the site was written to.
        data: Global site data.
        rendered: URLs rendered this cycle.
        skipped: URLs whose cached output was reused.
        failures: Per-page errors; those pages kept their previous state.
        reasons: Freshness decision for every evaluated URL.
        pruned: URLs removed because their source disappeared.
        consumed_invalidations: Pending invalidations swept this cycle.
        superseded: URLs whose render result was discarded for a newer change.
        manifest_saved: Whether the final manifest write succeeded.
    """

    pages: list[Page]
    output_dir: Path
    data: dict[str, Any]
    rendered: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failures: list[BuildError] = field(default_factory=list)
    reasons: dict[str, Freshness] = field(default_factory=dict)
    pruned: list[str] = field(default_factory=list)
    consumed_invalidations: list[PendingInvalidation] = field(default_factory=list)
    superseded: list[str] = field(default_factory=list)
    manifest_saved: bool = True

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass(eq=False)
class _RenderJob:
    page: Page
    started: float


class SiteBuilder:
    """Runs build cycles for one project.

    The builder is long-lived in the dev server, where its dependency
    tracker keeps the edges of pages that a selective cycle does not
    re-resolve.

    Attributes:
        project_root: Root directory of the project.
        config: Loaded ``stheno.yaml`` with defaults.
        settings: Validated ``isg`` settings.
        output_dir: Where pages are written.
        store: Manifest store under the cache directory.
        tracker: Page to file dependency tracker.
        gateway: Invalidation gateway sharing ``store``.
    """

    def __init__(
        self,
        project_root: Path,
        config: dict[str, Any] | None = None,
        settings: IsgSettings | None = None,
        renderer_registry: RendererRegistry | None = None,
        root_url: str | None = None,
        output_dir_override: Path | None = None,
    ):
        """Initialize the builder.

        Args:
            project_root: Root directory of the project.
            config: Preloaded configuration; loaded from disk when None.
            settings: Preloaded ISG settings; validated from config when None.
            renderer_registry: Renderers to use; built from config when None.
            root_url: Base URL that overrides ``root_url`` in config.
            output_dir_override: Write output here instead of ``output_dir``.

        Raises:
            ConfigError: If the configuration is invalid.
        """
        self.project_root = project_root
        self.config = config if config is not None else load_config(project_root)
        if root_url is not None:
            self.config["root_url"] = root_url
        self.settings = settings if settings is not None else load_isg_settings(self.config)
        self.renderer_registry = renderer_registry or create_renderer_registry(
            self.config.get("renderers") or []
        )
        self.output_dir = output_dir_override or output_dir_for(project_root, self.config)
        self.site_dir = project_root / "site"
        self.root_url = str(self.config.get("root_url") or "")
        self.store = ManifestStore(
            cache_dir_for(project_root, self.config), pending_ttl=self.settings.pending_ttl
        )
        self.tracker = DependencyTracker(project_root)
        self.gateway = InvalidationGateway(self.store, utc_now)
        self.processor = ContentProcessor(
            self.site_dir, self.renderer_registry, project_root=project_root
        )
        self.engine = TemplateEngine(self.site_dir, {}, root_url=self.root_url, project_root=project_root)

    def build(
        self,
        ctx: ExecutionContext,
        only: Iterable[str] | None = None,
        is_current: Callable[[str], bool] | None = None,
    ) -> BuildResult:
        """Run one build cycle.

        Args:
            ctx: Execution context of the cycle.
            only: Restrict evaluation to these page URLs (dev server). Pages
                outside the set keep their entries and dependency edges, and
                orphan pruning is skipped.
            is_current: Called before committing a render; returning False
                discards the result because a newer change superseded it.

        Returns:
            BuildResult describing the cycle.

        Raises:
            CacheDirectoryError: If the cache directory is unusable.
            BuildLockError: If another build holds the lock.
            FileNotFoundError: If there is no ``site/`` directory.
        """
        self.store.ensure_directory()
        with ExitStack() as stack:
            try:
                stack.enter_context(self.store.build_lock())
            except TimeoutError as exc:
                raise BuildLockError(
                    f"Another build is running for {self.project_root} ({exc})"
                ) from exc
            return self._run(ctx, set(only) if only is not None else None, is_current)

    def _run(
        self,
        ctx: ExecutionContext,
        only: set[str] | None,
        is_current: Callable[[str], bool] | None,
    ) -> BuildResult:
        if not self.site_dir.exists():
            raise FileNotFoundError(f"Expected site directory at {self.site_dir}")
        if ctx.clean:
            logger.info("Discarding cache manifest and output")
            self.store.discard()
            ensure_clean_dir(self.output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)

        manifest = self.store.load()
        data_error: DataFileError | None = None
        try:
            data = load_data(self.project_root)
        except DataFileError as exc:
            logger.error("%s", exc)
            data_error = exc
            data = {}
        if self.root_url and isinstance(data, dict):
            data.setdefault("root_url", self.root_url)
        self.engine.update_data(data)

        pages = self.processor.load(include_drafts=ctx.include_drafts)
        self.engine.update_collections(pages, build_tags_index(pages))
        targets = pages if only is None else [p for p in pages if p.url in only]
        result = BuildResult(pages=pages, output_dir=self.output_dir, data=data)
        result.failures.extend(self.processor.errors)
        if data_error is not None:
            result.failures.append(BuildError(data_error.path, str(data_error), data_error))

        graph = self._resolve_dependencies(targets, full=only is None)
        hashes = self._dependency_hashes(graph, targets, pages)
        data_deps = self._data_dependencies() if data_error is not None else set()

        stale_pages: list[Page] = []
        for page in targets:
            if page.url in graph.failed:
                self._fail_resolution(manifest, page, result)
                continue
            if data_deps.intersection(graph.dependencies_of(page.url)):
                logger.warning("Not rendering %s: site data failed to load", page.url)
                result.reasons[page.url] = stale(StaleReason.FORCED, "site data failed to load")
                continue
            decision = self._evaluate(ctx, manifest, page, graph, hashes)
            result.reasons[page.url] = decision
            if decision.stale:
                logger.debug("%s: %s", page.url, decision)
                stale_pages.append(page)
            else:
                result.skipped.append(page.url)

        self._render_all(ctx, manifest, stale_pages, graph, hashes, result, is_current)

        result.consumed_invalidations = self.gateway.sweep(
            manifest,
            (PageRef(p.url, p.source_path, frozenset(p.tags)) for p in pages),
            ctx.now,
        )
        if only is None:
            unreadable = {
                normalize_dependency_path(error.source_path, self.project_root)
                for error in self.processor.errors
            }
            result.pruned = self._prune_orphans(manifest, pages, unreadable)

        try:
            self.store.save(manifest)
        except ManifestWriteFailed as exc:
            logger.error("%s; the next build will redo this work", exc)
            result.manifest_saved = False

        logger.info(
            "Rendered %d, reused %d, failed %d of %d pages",
            len(result.rendered),
            len(result.skipped),
            len(result.failures),
            len(targets),
        )
        return result

    def _resolve_dependencies(self, targets: list[Page], full: bool) -> DependencyGraph:
        """Dependency phase: resolve every target in parallel, then freeze."""
        if full:
            self.tracker.reset()
        else:
            for page in targets:
                self.tracker.reset_page(page.url)

        def resolve(page: Page) -> None:
            try:
                deps = self.engine.resolve_dependencies(page)
            except DependencyResolutionFailed as exc:
                self.tracker.record_failure(page.url, exc)
                return
            self.tracker.register_dependencies(page.url, deps)

        with ThreadPoolExecutor(max_workers=self.settings.workers) as executor:
            for future in [executor.submit(resolve, page) for page in targets]:
                future.result()
        return self.tracker.snapshot()

    def _dependency_hashes(
        self, graph: DependencyGraph, targets: list[Page], pages: list[Page]
    ) -> dict[str, str]:
        hashes: dict[str, str] = {}
        for page in targets:
            for dep in graph.dependencies_of(page.url):
                if dep in hashes:
                    continue
                if dep == COLLECTIONS_DEPENDENCY:
                    hashes[dep] = listing_hash(listing_rows(pages))
                else:
                    hashes[dep] = file_hash(self.project_root / dep) or MISSING_DEPENDENCY_HASH
        return hashes

    def _evaluate(
        self,
        ctx: ExecutionContext,
        manifest: Manifest,
        page: Page,
        graph: DependencyGraph,
        hashes: dict[str, str],
    ) -> Freshness:
        if not self.settings.enabled:
            return stale(StaleReason.FORCED, "incremental builds disabled")
        entry = manifest.entries.get(page.url)
        force = ctx.force
        if entry is not None and not force and not output_path_for(self.output_dir, page.url).exists():
            return stale(StaleReason.FORCED, "output file missing")
        return evaluate(
            entry,
            page.content_hash,
            {dep: hashes[dep] for dep in graph.dependencies_of(page.url)},
            self.settings.policy,
            manifest.pending_invalidations,
            ctx.now,
            force,
            url=page.url,
            source_path=page.source_path,
        )

    def _data_dependencies(self) -> set[str]:
        return {
            normalize_dependency_path(path, self.project_root)
            for path in data_files(self.project_root)
        }

    def _fail_resolution(self, manifest: Manifest, page: Page, result: BuildResult) -> None:
        entry = manifest.entries.get(page.url)
        if entry is not None:
            entry.force_rebuild = True
        result.reasons[page.url] = stale(StaleReason.FORCED, "dependency resolution failed")
        error = BuildError(page.path, "Dependency resolution failed; page not rendered")
        result.failures.append(error)

    def _render_all(
        self,
        ctx: ExecutionContext,
        manifest: Manifest,
        pages: list[Page],
        graph: DependencyGraph,
        hashes: dict[str, str],
        result: BuildResult,
        is_current: Callable[[str], bool] | None,
    ) -> None:
        """Render phase: render on worker threads, commit results on this thread.

        At most ``workers`` renders run at once. A render running longer than
        ``render_timeout_seconds`` is abandoned: the page is reported as
        failed, its slot goes to the next page and whatever its thread
        produces later is ignored.
        """
        if not pages:
            return
        timeout = self.settings.render_timeout_seconds
        every = self.settings.checkpoint_every
        waiting = deque(pages)
        running: set[_RenderJob] = set()
        results: queue.Queue[tuple[_RenderJob, str | None, BuildError | None]] = queue.Queue()
        committed = 0
        while waiting or running:
            while waiting and len(running) < self.settings.workers:
                job = _RenderJob(waiting.popleft(), time.monotonic())
                running.add(job)
                threading.Thread(
                    target=self._render_job,
                    args=(job, results),
                    name=f"stheno-render {job.page.url}",
                    daemon=True,
                ).start()
            try:
                job, html, error = results.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                pass
            else:
                if job in running:
                    running.discard(job)
                    if error is not None:
                        logger.error("Failed to render %s: %s", job.page.url, error.message)
                        result.failures.append(error)
                    elif is_current is not None and not is_current(job.page.url):
                        logger.debug("Discarding superseded render of %s", job.page.url)
                        result.superseded.append(job.page.url)
                    elif self._commit(ctx, manifest, job.page, html, graph, hashes, result):
                        committed += 1
                        if every and committed % every == 0:
                            self._checkpoint(manifest)
            now = time.monotonic()
            for job in [j for j in running if now - j.started > timeout]:
                running.discard(job)
                logger.error("Rendering %s timed out after %ss", job.page.url, timeout)
                result.failures.append(BuildError(job.page.path, f"Render timed out after {timeout:g}s"))

    def _render_job(self, job: _RenderJob, results: queue.Queue) -> None:
        try:
            results.put((job, self._render_page(job.page), None))
        except BuildError as exc:
            results.put((job, None, exc))

    def _render_page(self, page: Page) -> str:
        """Render one page to HTML, wrapping any error in BuildError."""
        try:
            self.processor.render_content(page)
            rendered = self.engine.render_page(page)
        except TemplateSyntaxError as exc:
            raise BuildError(
                page.path,
                f"Template syntax error on line {exc.lineno}: {exc.message}",
                exc,
            ) from exc
        except Exception as exc:
            raise BuildError(page.path, _format_error_message(exc), exc) from exc
        if self.root_url:
            rendered = absolutize_html_urls(rendered, self.root_url)
        return rendered

    def _commit(
        self,
        ctx: ExecutionContext,
        manifest: Manifest,
        page: Page,
        html: str,
        graph: DependencyGraph,
        hashes: dict[str, str],
        result: BuildResult,
    ) -> bool:
        try:
            atomic_write_text(output_path_for(self.output_dir, page.url), html)
        except OSError as exc:
            logger.error("Failed to write output for %s: %s", page.url, exc)
            result.failures.append(BuildError(page.path, f"Cannot write output: {exc}", exc))
            return False
        manifest.entries[page.url] = PageCacheEntry(
            content_hash=page.content_hash,
            dependency_hashes={dep: hashes[dep] for dep in graph.dependencies_of(page.url)},
            built_at=ctx.now,
            published_at=page.published_at,
            ttl_seconds_override=page.ttl_seconds,
            max_age_cap_days_override=page.max_age_cap_days,
            tags=frozenset(page.tags),
            source_path=page.source_path,
        )
        result.rendered.append(page.url)
        return True

    def _checkpoint(self, manifest: Manifest) -> None:
        try:
            self.store.save(manifest)
        except ManifestWriteFailed as exc:
            logger.warning("Checkpoint failed: %s", exc)

    def _prune_orphans(
        self, manifest: Manifest, pages: list[Page], unreadable: set[str]
    ) -> list[str]:
        """Drop entries whose source is gone. Unreadable sources still exist."""
        discovered = {page.url for page in pages}
        pruned = sorted(
            url
            for url, entry in manifest.entries.items()
            if url not in discovered and entry.source_path not in unreadable
        )
        for url in pruned:
            del manifest.entries[url]
            if remove_output_page(self.output_dir, url):
                logger.info("Removed output of deleted page %s", url)
        return pruned


def _format_error_message(exc: Exception) -> str:
    error_type = type(exc).__name__
    error_msg = str(exc)
    if error_type == "UndefinedError":
        return f"Undefined variable: {error_msg}"
    if error_type == "TypeError":
        return f"Type error: {error_msg}"
    if error_type == "AttributeError":
        return f"Attribute error: {error_msg}"
    return f"{error_type}: {error_msg}"


def build_site(
    project_root: Path,
    ctx: ExecutionContext | None = None,
    root_url: str | None = None,
    output_dir_override: Path | None = None,
) -> BuildResult:
    """Build the site once.

    Args:
        project_root: Root directory of the project.
        ctx: Execution context; a default build context when None.
        root_url: Optional base URL to absolutize links with.
        output_dir_override: Write output here instead of ``output_dir``.

    Returns:
        BuildResult of the cycle.
    """
    builder = SiteBuilder(
        project_root, root_url=root_url, output_dir_override=output_dir_override
    )
    return builder.build(ctx or ExecutionContext())
