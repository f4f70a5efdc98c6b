"""Engine configuration.

Settings come from three layers, lowest precedence first:
1. Model defaults below
2. An optional YAML file (``load_config(path)``)
3. Environment overrides (CONTEXT_* variables)

Example YAML:

    aggregator:
      max_related: 30
      max_age_months: 12
    resolver:
      max_related_issues: 20
    tracker_fields:
      epic_link_field: customfield_10014
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError


class ResolverConfig(BaseModel):
    """Relationship traversal limits and cache sizing."""

    max_related_issues: int = Field(20, ge=1, description="Circuit-breaker edge cap")
    default_depth: int = Field(2, ge=1)
    children_page_size: int = Field(50, ge=1)
    cache_ttl_seconds: int = Field(300, ge=1)
    cache_max_entries: int = Field(100, ge=1)


class MatcherConfig(BaseModel):
    """PR matching scan sizes, concurrency and cache sizing."""

    scan_page_size: int = Field(50, ge=1, le=100, description="PRs fetched per state")
    batch_max_results: int = Field(200, ge=1)
    max_concurrency: int = Field(5, ge=1)
    cache_ttl_seconds: int = Field(600, ge=1)
    cache_max_entries: int = Field(500, ge=1)


class AggregatorConfig(BaseModel):
    """Filtering, size limiting and adaptive cache TTL."""

    max_related: int = Field(20, ge=1)
    max_age_months: int = Field(6, ge=0)
    cache_ttl_seconds: int = Field(300, ge=1, description="Base TTL for active work")
    stable_ttl_multiplier: int = Field(6, ge=1)
    cache_max_entries: int = Field(100, ge=1)
    enable_fallback: bool = True


class TrackerFieldsConfig(BaseModel):
    """Tracker field names that vary between installations."""

    epic_link_field: str = "customfield_10014"
    issue_links_field: str = "issuelinks"


class EngineConfig(BaseModel):
    """Top-level configuration for all engine components."""

    resolver: ResolverConfig = Field(default_factory=ResolverConfig)
    matcher: MatcherConfig = Field(default_factory=MatcherConfig)
    aggregator: AggregatorConfig = Field(default_factory=AggregatorConfig)
    tracker_fields: TrackerFieldsConfig = Field(default_factory=TrackerFieldsConfig)
    request_timeout_seconds: float = Field(30.0, gt=0)


# env var -> (section, field)
_ENV_OVERRIDES: dict[str, tuple[str | None, str]] = {
    "CONTEXT_MAX_RELATED": ("aggregator", "max_related"),
    "CONTEXT_MAX_AGE_MONTHS": ("aggregator", "max_age_months"),
    "CONTEXT_CACHE_TTL": ("aggregator", "cache_ttl_seconds"),
    "CONTEXT_ENABLE_FALLBACK": ("aggregator", "enable_fallback"),
    "CONTEXT_REQUEST_TIMEOUT": (None, "request_timeout_seconds"),
}


def _apply_env_overrides(raw: dict[str, Any], environ: dict[str, str]) -> dict[str, Any]:
    for var, (section, field) in _ENV_OVERRIDES.items():
        value = environ.get(var)
        if value is None or value == "":
            continue
        if field == "enable_fallback":
            # Only an explicit "false" disables the fallback
            parsed: Any = value.strip().lower() != "false"
        else:
            parsed = value
        if section is None:
            raw[field] = parsed
        else:
            raw.setdefault(section, {})[field] = parsed
    return raw


def load_config(
    path: str | Path | None = None,
    environ: dict[str, str] | None = None,
) -> EngineConfig:
    """Load engine configuration from YAML and environment variables.

    Args:
        path: Optional YAML file. A missing file is treated as empty.
        environ: Environment mapping; defaults to ``os.environ``.

    Returns:
        A validated EngineConfig.

    Raises:
        ValueError: If the YAML is malformed or a value fails validation.
    """
    raw: dict[str, Any] = {}
    if path is not None:
        config_path = Path(path)
        if config_path.exists():
            try:
                raw = yaml.safe_load(config_path.read_text()) or {}
            except yaml.YAMLError as exc:
                raise ValueError(f"Invalid YAML in {path}: {exc}") from exc
            if not isinstance(raw, dict):
                raise ValueError(f"Invalid engine config in {path}: expected a mapping")

    raw = _apply_env_overrides(raw, dict(os.environ) if environ is None else environ)

    try:
        return EngineConfig.model_validate(raw)
    except ValidationError as exc:
        raise ValueError(f"Invalid engine config: {exc}") from exc
