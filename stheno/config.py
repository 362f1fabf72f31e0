"""Configuration loading for Stheno.

Site configuration lives in ``stheno.yaml`` at the project root. Site data
lives in YAML files under ``data/``. The ``isg`` section of the
configuration controls the incremental build cache and is validated here,
once, before any build work starts.

Key functions:
- load_config: Loads site configuration from stheno.yaml.
- load_data: Loads site data from YAML files in the data directory.
- load_isg_settings: Validates the ``isg`` section into IsgSettings.
"""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator
from pydantic_core import PydanticCustomError

from .errors import ConfigError, ConfigErrorCode, DataFileError
from .freshness import (
    DEFAULT_CLOCK_DRIFT_TOLERANCE_SECONDS,
    DEFAULT_TTL_SECONDS,
    AgingPolicy,
    AgingRule,
)

CONFIG_FILENAME = "stheno.yaml"

DEFAULT_CONFIG: dict[str, Any] = {
    "output_dir": "output",
    "port": 4000,
    "root_url": "",
    "cache_dir": ".stheno",
    "renderers": ["markdown", "jinja", "html"],
    "log_level": "INFO",
}

_MAX_TTL_SECONDS = 365 * 24 * 3600
_MAX_RULE_TTL_SECONDS = 30 * 24 * 3600
_MAX_AGE_CAP_DAYS = 3650

_FIELD_CODES = {
    "ttl_seconds": ConfigErrorCode.INVALID_TTL,
    "max_age_cap_days": ConfigErrorCode.INVALID_MAX_AGE_CAP,
    "aging": ConfigErrorCode.INVALID_AGING_RULE,
}

_HINTS = {
    ConfigErrorCode.INVALID_TTL: (
        "ttl_seconds must be an integer number of seconds, at most one year. "
        "Example: 3600 (1 hour). Use max_age_cap_days for long-term caching."
    ),
    ConfigErrorCode.INVALID_MAX_AGE_CAP: (
        "max_age_cap_days must be a positive integer of at most 3650 days. Example: 365 (1 year)"
    ),
    ConfigErrorCode.INVALID_AGING_RULE: (
        "aging must be a list of {until_days, ttl_seconds} mappings; until_days is a "
        "positive integer and ttl_seconds at most 30 days. Example: {until_days: 7, ttl_seconds: 3600}"
    ),
}


class AgingRuleSettings(BaseModel):
    """One ``isg.aging`` entry."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    until_days: int = Field(strict=True, gt=0)
    ttl_seconds: int = Field(strict=True, ge=0, le=_MAX_RULE_TTL_SECONDS)


class IsgSettings(BaseModel):
    """Validated ``isg`` configuration.

    Attributes:
        enabled: When false every page is rendered on every build.
        ttl_seconds: Global TTL override.
        max_age_cap_days: Age beyond which pages never TTL-expire.
        aging: Aging rules, ascending by ``until_days``.
        clock_drift_tolerance_seconds: Allowed clock disagreement.
        pending_ttl_days: Max age of a pending invalidation that never matched.
        render_timeout_seconds: Per-page render timeout.
        workers: Number of concurrent dependency resolutions and renders.
        checkpoint_every: Save the manifest after this many renders (0: only
            at the end of the cycle).
        debounce_seconds: Coalescing window for watch-mode events.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = Field(True, strict=True)
    ttl_seconds: int | None = Field(None, strict=True, ge=0, le=_MAX_TTL_SECONDS)
    max_age_cap_days: int | None = Field(None, strict=True, gt=0, le=_MAX_AGE_CAP_DAYS)
    aging: tuple[AgingRuleSettings, ...] = ()
    clock_drift_tolerance_seconds: float = Field(
        DEFAULT_CLOCK_DRIFT_TOLERANCE_SECONDS, strict=True, ge=0
    )
    pending_ttl_days: float | None = Field(None, strict=True, ge=0)
    render_timeout_seconds: float = Field(30.0, strict=True, gt=0)
    workers: int = Field(4, strict=True, ge=1)
    checkpoint_every: int = Field(0, strict=True, ge=0)
    debounce_seconds: float = Field(0.2, strict=True, ge=0)

    @field_validator("aging", mode="before")
    @classmethod
    def _empty_aging(cls, value: Any) -> Any:
        return () if value is None else value

    @field_validator("aging")
    @classmethod
    def _check_aging_order(
        cls, rules: tuple[AgingRuleSettings, ...], info: ValidationInfo
    ) -> tuple[AgingRuleSettings, ...]:
        cap = info.data.get("max_age_cap_days")
        seen: set[int] = set()
        for rule in rules:
            until = rule.until_days
            if until in seen:
                raise PydanticCustomError(
                    ConfigErrorCode.DUPLICATE_AGING_RULE.value,
                    "Duplicate aging rule for {until} days. Each until_days value must be unique.",
                    {"until": until},
                )
            if cap is not None and until > cap:
                raise PydanticCustomError(
                    ConfigErrorCode.AGING_RULE_EXCEEDS_CAP.value,
                    "Aging rule for {until} days exceeds max_age_cap_days ({cap}). Rule will never be used.",
                    {"until": until, "cap": cap},
                )
            seen.add(until)
        days = [rule.until_days for rule in rules]
        if days != sorted(days):
            raise PydanticCustomError(
                ConfigErrorCode.UNSORTED_AGING_RULES.value,
                "Aging rules must be sorted by until_days in ascending order.",
            )
        return rules

    @property
    def policy(self) -> AgingPolicy:
        """TTL and aging policy for the freshness evaluator."""
        return AgingPolicy(
            rules=tuple(AgingRule(r.until_days, r.ttl_seconds) for r in self.aging),
            ttl_seconds=self.ttl_seconds,
            default_ttl_seconds=DEFAULT_TTL_SECONDS,
            max_age_cap_days=self.max_age_cap_days,
            clock_drift_tolerance_seconds=self.clock_drift_tolerance_seconds,
        )

    @property
    def pending_ttl(self) -> timedelta | None:
        if self.pending_ttl_days is None:
            return None
        return timedelta(days=self.pending_ttl_days)


def load_config(project_root: Path) -> dict[str, Any]:
    """Load site configuration from stheno.yaml.

    Args:
        project_root: Root directory of the project.

    Returns:
        Dictionary containing configuration values, with defaults applied.
    """
    config_path = project_root / CONFIG_FILENAME
    config = dict(DEFAULT_CONFIG)
    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
            if isinstance(loaded, dict):
                config.update(loaded)
    return config


def load_data(project_root: Path) -> dict[str, Any]:
    """Load site data from YAML files in the data directory.

    ``site.yaml`` is merged at the top level; every other file is exposed
    under its stem.

    Raises:
        DataFileError: If a data file cannot be read or is not valid YAML.
    """
    data: dict[str, Any] = {}
    for path in data_files(project_root):
        try:
            with open(path, encoding="utf-8") as f:
                payload = yaml.safe_load(f) or {}
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as exc:
            raise DataFileError(path, str(exc)) from exc
        if path.name == "site.yaml":
            if not isinstance(payload, dict):
                continue
            data.update(payload)
        else:
            data[path.stem] = payload
    return data


def data_files(project_root: Path) -> list[Path]:
    data_dir = project_root / "data"
    if not data_dir.exists():
        return []
    return sorted(data_dir.glob("*.yaml"))


def cache_dir_for(project_root: Path, config: dict[str, Any]) -> Path:
    return project_root / str(config.get("cache_dir") or DEFAULT_CONFIG["cache_dir"])


def output_dir_for(project_root: Path, config: dict[str, Any]) -> Path:
    return project_root / str(config.get("output_dir") or DEFAULT_CONFIG["output_dir"])


def load_isg_settings(config: dict[str, Any]) -> IsgSettings:
    """Validate the ``isg`` section of a loaded configuration.

    Raises:
        ConfigError: With an actionable message for the first invalid value.
    """
    section = config.get("isg")
    try:
        return IsgSettings.model_validate({} if section is None else section)
    except ValidationError as exc:
        raise _config_error(exc.errors()[0]) from None


def _config_error(error: dict[str, Any]) -> ConfigError:
    loc = error["loc"]
    field_name = "isg" + "".join(f"[{p}]" if isinstance(p, int) else f".{p}" for p in loc)
    try:
        code = ConfigErrorCode(error["type"])
        hint = ""
    except ValueError:
        code = ConfigErrorCode.INVALID_SETTING
        if loc:
            code = _FIELD_CODES.get(loc[0], code)
        hint = _HINTS.get(code, "")
    message = f"{field_name}: {error['msg']}"
    if hint:
        message = f"{message}. {hint}"
    return ConfigError(code, field_name, error.get("input"), message)
