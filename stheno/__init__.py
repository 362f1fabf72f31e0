"""Stheno static site generator.

Builds a site from Markdown, HTML and Jinja2 sources, re-rendering only the
pages whose sources, templates, data, TTL or manual invalidations say they
are stale. The cache lives in ``.stheno/cache/manifest.json``.

The main entry point is the CLI module, which provides the ``build``,
``invalidate``, ``serve`` and ``status`` commands.
"""

__all__ = ["__version__"]
__version__ = "0.1.0"
