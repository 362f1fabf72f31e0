"""Freshness decisions for cached pages.

``evaluate`` is a pure function: it reads a prior cache entry, the hashes
computed in this cycle, the aging policy and pending invalidations, and
returns Fresh or Stale with a reason. It never touches the filesystem or
the clock; ``now`` comes from the execution context.

Decision order (first match wins):

1. no prior entry                          -> stale (cold)
2. force flag                              -> stale (forced)
3. content hash changed                    -> stale (content-changed)
4. a dependency hash changed/appeared/left -> stale (dependency-changed)
5. matching pending invalidation           -> stale (invalidated)
6. built_at in the future beyond tolerance -> stale (forced)
7-8. TTL (with aging) expired              -> stale (ttl-expired)
9. otherwise                               -> fresh
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from .manifest import PageCacheEntry, PendingInvalidation
from .invalidation import pending_invalidation_for

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 21600
DEFAULT_CLOCK_DRIFT_TOLERANCE_SECONDS = 30
SECONDS_PER_DAY = 86400


class StaleReason(str, Enum):
    COLD = "cold"
    FORCED = "forced"
    CONTENT_CHANGED = "content-changed"
    DEPENDENCY_CHANGED = "dependency-changed"
    INVALIDATED = "invalidated"
    TTL_EXPIRED = "ttl-expired"


@dataclass(frozen=True)
class Freshness:
    """Outcome of a freshness evaluation.

    Attributes:
        reason: None when the page is fresh, otherwise why it is stale.
        detail: Optional human-readable elaboration for logs.
    """

    reason: StaleReason | None = None
    detail: str = ""

    @property
    def fresh(self) -> bool:
        return self.reason is None

    @property
    def stale(self) -> bool:
        return self.reason is not None

    def __str__(self) -> str:
        if self.reason is None:
            return "fresh"
        label = f"stale ({self.reason.value})"
        return f"{label}: {self.detail}" if self.detail else label


FRESH = Freshness()


def stale(reason: StaleReason, detail: str = "") -> Freshness:
    return Freshness(reason=reason, detail=detail)


@dataclass(frozen=True)
class AgingRule:
    """Pages up to ``until_days`` old get ``ttl_seconds`` as their TTL."""

    until_days: float
    ttl_seconds: int


@dataclass(frozen=True)
class AgingPolicy:
    """Site-wide expiry settings.

    Attributes:
        rules: Aging rules, sorted ascending by ``until_days``.
        ttl_seconds: Global TTL override from configuration, if any.
        default_ttl_seconds: TTL used when nothing else applies.
        max_age_cap_days: Global age beyond which pages never TTL-expire.
        clock_drift_tolerance_seconds: Allowed clock disagreement.
    """

    rules: tuple[AgingRule, ...] = ()
    ttl_seconds: int | None = None
    default_ttl_seconds: int = DEFAULT_TTL_SECONDS
    max_age_cap_days: float | None = None
    clock_drift_tolerance_seconds: float = DEFAULT_CLOCK_DRIFT_TOLERANCE_SECONDS

    @property
    def sorted_rules(self) -> tuple[AgingRule, ...]:
        return tuple(sorted(self.rules, key=lambda r: r.until_days))

    @property
    def tolerance(self) -> timedelta:
        return timedelta(seconds=self.clock_drift_tolerance_seconds)


def age_in_days(entry: PageCacheEntry, now: datetime) -> float | None:
    """Age of the page's content, measured from ``published_at``.

    Returns None when the page has no publication date; such pages are not
    subject to aging rules or the max-age cap.
    """
    if entry.published_at is None:
        return None
    return (now - entry.published_at).total_seconds() / SECONDS_PER_DAY


def effective_ttl(entry: PageCacheEntry, policy: AgingPolicy, now: datetime) -> int:
    """TTL in seconds for ``entry`` at ``now``.

    The first aging rule (ascending ``until_days``) covering the page's age
    wins. Otherwise the page override, then the global override, then the
    default applies.
    """
    age = age_in_days(entry, now)
    if age is not None:
        for rule in policy.sorted_rules:
            if age <= rule.until_days:
                return rule.ttl_seconds
    if entry.ttl_seconds_override is not None:
        return entry.ttl_seconds_override
    if policy.ttl_seconds is not None:
        return policy.ttl_seconds
    return policy.default_ttl_seconds


def is_capped(entry: PageCacheEntry, policy: AgingPolicy, now: datetime) -> bool:
    """Whether the page is older than its max-age cap and so never TTL-expires."""
    cap = entry.max_age_cap_days_override
    if cap is None:
        cap = policy.max_age_cap_days
    if cap is None:
        return False
    age = age_in_days(entry, now)
    return age is not None and age > cap


def _dependency_change(
    recorded: Mapping[str, str], current: Mapping[str, str]
) -> str | None:
    for path in sorted(current):
        previous = recorded.get(path)
        if previous is None:
            return f"new dependency {path}"
        if previous != current[path]:
            return f"{path} changed"
    for path in sorted(recorded):
        if path not in current:
            return f"{path} no longer used"
    return None


def evaluate(
    entry: PageCacheEntry | None,
    current_content_hash: str,
    current_dependency_hashes: Mapping[str, str],
    policy: AgingPolicy,
    pending_invalidations: Sequence[PendingInvalidation],
    now: datetime,
    force: bool = False,
    *,
    url: str = "",
    source_path: str | None = None,
) -> Freshness:
    """Decide whether a cached page can be reused.

    Args:
        entry: Prior cache entry, or None if the page was never built.
        current_content_hash: Hash of the page's current source.
        current_dependency_hashes: Current hash of every dependency the page
            uses this cycle.
        policy: Aging/TTL policy.
        pending_invalidations: Pending manual invalidations.
        now: Reference time of the cycle.
        force: Force a rebuild.
        url: Normalized page URL, for path invalidations.
        source_path: Project-relative source path, for path invalidations.

    Returns:
        Freshness describing the decision.
    """
    if entry is None:
        return stale(StaleReason.COLD)
    if force or entry.force_rebuild:
        detail = "" if force else "dependency resolution failed previously"
        return stale(StaleReason.FORCED, detail)
    if current_content_hash != entry.content_hash:
        return stale(StaleReason.CONTENT_CHANGED)

    change = _dependency_change(entry.dependency_hashes, current_dependency_hashes)
    if change is not None:
        return stale(StaleReason.DEPENDENCY_CHANGED, change)

    record = pending_invalidation_for(pending_invalidations, url, entry, source_path)
    if record is not None:
        return stale(StaleReason.INVALIDATED, f"{record.kind}={record.value}")

    tolerance = policy.tolerance
    if entry.built_at - now > tolerance:
        logger.warning(
            "Clock anomaly for %s: built at %s, which is after %s",
            url or "page",
            entry.built_at.isoformat(),
            now.isoformat(),
        )
        return stale(StaleReason.FORCED, "clock anomaly")

    if is_capped(entry, policy, now):
        return FRESH

    ttl = timedelta(seconds=effective_ttl(entry, policy, now))
    if now - entry.built_at > ttl + tolerance:
        return stale(StaleReason.TTL_EXPIRED, f"ttl {int(ttl.total_seconds())}s")
    return FRESH
