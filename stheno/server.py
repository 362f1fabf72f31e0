"""Development server for Stheno.

Serves the built site with live reload and rebuilds selectively while you
edit:
- Injects a reload script into HTML responses.
- Rejects directory listings and missing paths with a 404 (serving 404.html when present).
- Watches ``site/``, ``data/`` and ``stheno.yaml``; coalesces bursts of
  events per path and re-evaluates only the pages a change can affect.

Key classes:
- DevServer: Runs the HTTP, WebSocket and watch loops.
- ChangeBatcher: Debounces file events per path.
- _ReloadHandler: HTTP request handler that injects the reload script.
- _ChangeHandler: watchdog handler feeding the batcher.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

import websockets
import yaml
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .build import BuildResult, SiteBuilder
from .config import CONFIG_FILENAME, cache_dir_for, load_config, load_isg_settings
from .context import BuildMode, ExecutionContext
from .dependencies import COLLECTIONS_DEPENDENCY, DependencyTracker, normalize_dependency_path
from .errors import SthenoError

logger = logging.getLogger(__name__)

WATCHED_EVENTS = frozenset({"created", "modified", "deleted", "moved"})


class _ReloadHandler(SimpleHTTPRequestHandler):
    """HTTP request handler that injects a live reload script into HTML pages."""

    reload_script_template = """
    <script>
    (() => {{
      const ws = new WebSocket('ws://' + location.hostname + ':{ws_port}');
      ws.onmessage = (event) => {{
        const data = JSON.parse(event.data || '{{}}');
        if (data.type === 'reload') location.reload();
      }};
    }})();
    </script>
    """
    reload_script = reload_script_template.format(ws_port=4001)

    def end_headers(self):
        self.send_header("Cache-Control", "no-cache, no-store, must-revalidate")
        super().end_headers()

    def log_message(self, format, *args):  # noqa: A002 - signature from base class
        logger.debug("%s - %s", self.address_string(), format % args)

    def list_directory(self, path):  # pragma: no cover - exercised via send_head
        return self._serve_404()

    def _inject(self, content: str) -> bytes:
        if "</body>" in content:
            content = content.replace("</body>", f"{self.reload_script}</body>")
        else:
            content += self.reload_script
        return content.encode("utf-8")

    def _send_html(self, status: int, encoded: bytes) -> None:
        self.send_response(status)
        self.send_header("Content-type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(encoded)))
        self.end_headers()
        self.wfile.write(encoded)

    def _serve_404(self):
        error_page = Path(self.directory) / "404.html"
        if error_page.exists():
            self._send_html(404, self._inject(error_page.read_text(encoding="utf-8")))
            return None
        self.send_error(404, "File not found")
        return None

    def send_head(self):
        path_obj = Path(self.translate_path(self.path))
        if path_obj.is_dir():
            index_path = path_obj / "index.html"
            if not index_path.exists():
                return self._serve_404()
            path_obj = index_path
        elif not path_obj.exists():
            return self._serve_404()

        if path_obj.suffix == ".html":
            self._send_html(200, self._inject(path_obj.read_text(encoding="utf-8")))
            return None
        return super().send_head()


class ChangeKind(str, Enum):
    CONTENT = "content"
    TEMPLATE = "template"
    DATA = "data"
    CONFIG = "config"
    OTHER = "other"


@dataclass(frozen=True)
class Change:
    """A debounced file change.

    Attributes:
        path: Absolute path of the changed file.
        kind: What the file is to the site.
        structural: The file was created, deleted or moved, which can change
            the set of pages.
    """

    path: Path
    kind: ChangeKind
    structural: bool


class ChangeBatcher:
    """Coalesces file events per path.

    Each ``add`` restarts that path's quiet period; ``drain`` hands out the
    paths that have been quiet for ``debounce_seconds``. Thread-safe.
    """

    def __init__(self, debounce_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.debounce_seconds = debounce_seconds
        self.clock = clock
        self._lock = threading.Lock()
        self._pending: dict[Path, tuple[float, bool]] = {}

    def add(self, path: Path, structural: bool = False) -> None:
        with self._lock:
            _, was_structural = self._pending.get(path, (0.0, False))
            self._pending[path] = (self.clock(), structural or was_structural)

    def drain(self) -> list[tuple[Path, bool]]:
        """Return (path, structural) pairs whose quiet period has elapsed."""
        now = self.clock()
        ready: list[tuple[Path, bool]] = []
        with self._lock:
            for path, (last, structural) in list(self._pending.items()):
                if now - last >= self.debounce_seconds:
                    ready.append((path, structural))
                    del self._pending[path]
        return sorted(ready)

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)


def classify_change(project_root: Path, path: Path) -> ChangeKind:
    """Tell what a changed file is to the site."""
    try:
        rel = path.resolve().relative_to(project_root.resolve())
    except ValueError:
        return ChangeKind.OTHER
    parts = rel.parts
    if not parts:
        return ChangeKind.OTHER
    if parts == (CONFIG_FILENAME,):
        return ChangeKind.CONFIG
    if parts[0] == "data" and rel.suffix == ".yaml":
        return ChangeKind.DATA
    if parts[0] == "site":
        if any(part.startswith("_") for part in parts[1:-1]):
            return ChangeKind.TEMPLATE
        return ChangeKind.CONTENT
    return ChangeKind.OTHER


def affected_pages(
    tracker: DependencyTracker,
    project_root: Path,
    change: Change,
    pages_by_source: dict[str, str],
) -> set[str] | None:
    """Pages a change can affect.

    Returns:
        ``{F's page} | dependents(F)``, plus the ``@collections`` dependents
        for content edits. None means the page set itself may have changed
        (content added or removed, configuration edited) and everything must
        be rediscovered.
    """
    if change.kind == ChangeKind.CONFIG:
        return None
    if change.kind == ChangeKind.CONTENT and change.structural:
        return None
    source = normalize_dependency_path(change.path, project_root)
    affected = set(tracker.get_dependents(change.path))
    if change.kind in (ChangeKind.TEMPLATE, ChangeKind.DATA):
        # A new or fixed template may be what a failed page was missing.
        affected |= tracker.failed_pages()
    if change.kind == ChangeKind.CONTENT:
        page = pages_by_source.get(source)
        if page is None:
            return None
        affected.add(page)
        affected |= tracker.get_dependents(COLLECTIONS_DEPENDENCY)
    return affected


class DevServer:
    """Development server with live reload and selective rebuilds.

    File events are queued by the watchdog thread and processed by a single
    event thread. Every change bumps a generation counter for each page it
    affects; a render that finishes after its page's counter moved on is
    discarded, and the page is rendered again in the next batch.

    Attributes:
        project_root: Root directory of the project.
        config: Site configuration.
        output_dir: Directory the site is served from.
        http_port: Port for the HTTP server.
        ws_port: Port for WebSocket connections.
        builder: Site builder reused across cycles.
        batcher: Debounces watch events.
    """

    def __init__(
        self,
        project_root: Path,
        http_port: int | None = None,
        ws_port: int | None = None,
        include_drafts: bool = False,
    ):
        """Initialize the development server.

        Args:
            project_root: Root directory of the project.
            http_port: Optional override for the HTTP port.
            ws_port: Optional override for the WebSocket port.
            include_drafts: Serve draft pages too.

        Raises:
            ConfigError: If stheno.yaml is invalid.
        """
        self.project_root = project_root
        self.config = load_config(project_root)
        self.http_port = int(http_port or self.config.get("port", 4000))
        if ws_port is not None:
            self.ws_port = ws_port
        elif http_port is not None:
            self.ws_port = self.http_port + 1
        else:
            self.ws_port = int(self.config.get("ws_port", self.http_port + 1))
        self._reload_script = _ReloadHandler.reload_script_template.format(ws_port=self.ws_port)
        self._root_url = f"http://localhost:{self.http_port}"
        self.include_drafts = include_drafts
        self.builder = self._make_builder(self.config)
        self.output_dir = self.builder.output_dir
        self.cache_dir = cache_dir_for(project_root, self.config)
        self.batcher = ChangeBatcher(self.builder.settings.debounce_seconds)
        self.ctx = ExecutionContext(mode=BuildMode.DEV, include_drafts=include_drafts)
        self._generations: dict[str, int] = {}
        self._generation_lock = threading.Lock()
        self._pages_by_source: dict[str, str] = {}
        self._sources_lock = threading.Lock()
        self._stop = threading.Event()
        self._observer: Observer | None = None
        self._ws_clients: set = set()
        self._loop = asyncio.new_event_loop()

    def _make_builder(self, config: dict) -> SiteBuilder:
        return SiteBuilder(
            self.project_root,
            config=config,
            settings=load_isg_settings(config),
            root_url=self._root_url,
        )

    def start(self) -> None:  # pragma: no cover - integration path
        self.rebuild(None)
        threading.Thread(target=self._start_http, daemon=True).start()
        threading.Thread(target=self._start_ws, daemon=True).start()
        threading.Thread(target=self._process_events, daemon=True).start()
        self._start_watcher()
        try:
            while not self._stop.is_set():
                time.sleep(1)
        except KeyboardInterrupt:
            self.stop()

    def stop(self) -> None:
        self._stop.set()
        if self._observer:
            self._observer.stop()
            self._observer.join()
        self._loop.call_soon_threadsafe(self._loop.stop)

    def _start_http(self) -> None:  # pragma: no cover - integration path
        handler_cls = type(
            "_ReloadHandlerWithPort",
            (_ReloadHandler,),
            {"reload_script": self._reload_script},
        )
        handler = functools.partial(handler_cls, directory=str(self.output_dir))
        httpd = ThreadingHTTPServer(("", self.http_port), handler)
        logger.info("Serving %s at http://localhost:%d", self.output_dir, self.http_port)
        httpd.serve_forever()

    def _start_ws(self) -> None:  # pragma: no cover - integration path
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_until_complete(self._run_ws_server())
        except OSError as exc:
            logger.error("WebSocket server failed to start (port %d): %s", self.ws_port, exc)

    async def _run_ws_server(self) -> None:  # pragma: no cover - integration path
        async with websockets.serve(self._ws_handler, "0.0.0.0", self.ws_port):
            await asyncio.Future()

    async def _ws_handler(self, websocket):
        self._ws_clients.add(websocket)
        try:
            await websocket.wait_closed()
        finally:
            self._ws_clients.discard(websocket)

    def _broadcast_reload(self) -> None:
        if not self._loop.is_running():
            return
        message = json.dumps({"type": "reload"})
        asyncio.run_coroutine_threadsafe(self._async_broadcast(message), self._loop)

    async def _async_broadcast(self, message: str) -> None:
        stale = set()
        for ws in list(self._ws_clients):
            try:
                await ws.send(message)
            except websockets.ConnectionClosed:
                stale.add(ws)
        self._ws_clients -= stale

    def _start_watcher(self) -> None:  # pragma: no cover - integration path
        handler = _ChangeHandler(self)
        observer = Observer()
        for folder in ("site", "data"):
            watch_path = self.project_root / folder
            if watch_path.exists():
                observer.schedule(handler, str(watch_path), recursive=True)
        observer.schedule(handler, str(self.project_root), recursive=False)
        observer.start()
        self._observer = observer

    def is_ignored(self, path: Path) -> bool:
        for ignored in (self.output_dir, self.cache_dir):
            try:
                path.resolve().relative_to(ignored.resolve())
                return True
            except ValueError:
                continue
        return path.name.startswith(".") or path.name.endswith("~")

    def note_change(self, path: Path, structural: bool = False) -> None:
        """Queue a change and supersede in-flight renders of affected pages.

        Called from the watchdog thread.
        """
        if self.is_ignored(path):
            return
        kind = classify_change(self.project_root, path)
        if kind == ChangeKind.OTHER:
            return
        self.batcher.add(path, structural)
        pages_by_source = self._sources_snapshot()
        affected = affected_pages(
            self.builder.tracker,
            self.project_root,
            Change(path, kind, structural),
            pages_by_source,
        )
        self._bump(pages_by_source.values() if affected is None else affected)

    def _bump(self, urls: Iterable[str]) -> None:
        with self._generation_lock:
            for url in urls:
                self._generations[url] = self._generations.get(url, 0) + 1

    def _record_sources(self, discovered: dict[str, str], replace: bool) -> None:
        with self._sources_lock:
            if replace:
                self._pages_by_source = discovered
            else:
                self._pages_by_source.update(discovered)

    def _sources_snapshot(self) -> dict[str, str]:
        with self._sources_lock:
            return dict(self._pages_by_source)

    def _generation_snapshot(self) -> dict[str, int]:
        with self._generation_lock:
            return dict(self._generations)

    def _process_events(self) -> None:
        interval = max(self.batcher.debounce_seconds / 2, 0.02)
        while not self._stop.is_set():
            time.sleep(interval)
            try:
                self.process_pending()
            except Exception:
                logger.exception("Error while processing file changes")

    def process_pending(self) -> BuildResult | None:
        """Rebuild for every change whose quiet period has elapsed.

        Returns:
            The cycle's BuildResult, or None when nothing was ready.
        """
        ready = self.batcher.drain()
        if not ready:
            return None
        affected: set[str] | None = set()
        pages_by_source = self._sources_snapshot()
        for path, structural in ready:
            kind = classify_change(self.project_root, path)
            if kind == ChangeKind.CONFIG:
                self._reload_config()
            pages = affected_pages(
                self.builder.tracker,
                self.project_root,
                Change(path, kind, structural),
                pages_by_source,
            )
            if pages is None:
                affected = None
                break
            affected |= pages
        if affected is not None and not affected:
            logger.debug("Change to %s affects no pages", ", ".join(str(p) for p, _ in ready))
            return None
        return self.rebuild(affected)

    def rebuild(self, only: set[str] | None) -> BuildResult | None:
        """Run one cycle over ``only`` (everything when None) and reload clients."""
        generations = self._generation_snapshot()

        def is_current(url: str) -> bool:
            with self._generation_lock:
                return self._generations.get(url, 0) == generations.get(url, 0)

        self.ctx = self.ctx.advanced()
        scope = "all pages" if only is None else f"{len(only)} page(s)"
        logger.info("Rebuilding %s", scope)
        try:
            result = self.builder.build(self.ctx, only=only, is_current=is_current)
        except (SthenoError, OSError) as exc:
            logger.error("Rebuild failed: %s", exc)
            return None
        for failure in result.failures:
            logger.error("%s: %s", failure.source_path, failure.message)
        self._record_sources({p.source_path: p.url for p in result.pages}, replace=only is None)
        if result.rendered or result.pruned:
            self._broadcast_reload()
        return result

    def _reload_config(self) -> None:
        try:
            config = load_config(self.project_root)
            builder = self._make_builder(config)
        except (SthenoError, OSError, yaml.YAMLError) as exc:
            logger.error("Keeping previous configuration: %s", exc)
            return
        self.config = config
        self.builder = builder
        self.batcher.debounce_seconds = builder.settings.debounce_seconds


class _ChangeHandler(FileSystemEventHandler):
    def __init__(self, server: DevServer):
        super().__init__()
        self.server = server

    def on_any_event(self, event):
        if event.is_directory or event.event_type not in WATCHED_EVENTS:
            return
        structural = event.event_type != "modified"
        self.server.note_change(Path(event.src_path), structural)
        dest = getattr(event, "dest_path", "")
        if dest:
            self.server.note_change(Path(dest), structural)
