"""Execution context for a build cycle.

The context is created once per cycle by the CLI or the dev server and is
passed explicitly to the orchestrator and the freshness evaluator.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum


class BuildMode(str, Enum):
    BUILD = "build"
    DEV = "dev"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ExecutionContext:
    """Immutable parameters of one build cycle.

    Attributes:
        mode: Whether this is a one-off build or a dev-server cycle.
        now: Reference time used for every freshness decision in the cycle.
        force: Re-render every page regardless of cache state.
        clean: Discard the manifest and output before building.
        include_drafts: Whether draft pages are discovered.
    """

    mode: BuildMode = BuildMode.BUILD
    now: datetime = field(default_factory=utc_now)
    force: bool = False
    clean: bool = False
    include_drafts: bool = False

    def advanced(self, now: datetime | None = None) -> ExecutionContext:
        """Return a copy for a follow-up cycle (dev mode) at a new time.

        ``clean`` never carries over; it only applies to the first cycle.
        """
        return replace(self, now=now or utc_now(), clean=False, force=False)
