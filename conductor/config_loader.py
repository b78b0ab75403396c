"""
Configuration loader for Conductor.
Merges defaults with per-project .conductor/config.yaml overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class LimitsConfig(BaseModel):
    max_retries: int = Field(default=3, ge=0)
    step_timeout_ms: int = Field(default=30_000, gt=0)
    concurrency: int = Field(default=1, ge=1)
    fail_fast: bool = True
    single_attempt_actions: list[str] = Field(default_factory=list)


class RetryConfig(BaseModel):
    backoff_base_ms: int = Field(default=1000, ge=0)
    backoff_max_ms: int = Field(default=30_000, ge=0)


class GuardConfig(BaseModel):
    max_conflict_retries: int = Field(default=3, ge=1)
    claim_lease_seconds: int = Field(default=300, gt=0)


class StorageConfig(BaseModel):
    db_path: str = ".conductor/tasks.db"
    plan_dir: str = ".conductor/plans"
    log_dir: str = ".conductor/logs"


class ConductorConfig(BaseModel):
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    guard: GuardConfig = Field(default_factory=GuardConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    def resolve_storage(self, root: Path) -> StorageConfig:
        """Storage paths made absolute against a project root."""
        def absolute(p: str) -> str:
            return str(p if Path(p).is_absolute() else root / p)

        return StorageConfig(
            db_path=absolute(self.storage.db_path),
            plan_dir=absolute(self.storage.plan_dir),
            log_dir=absolute(self.storage.log_dir),
        )


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"

_ENV_OVERRIDES = {
    "CONDUCTOR_MAX_RETRIES": ("limits", "max_retries"),
    "CONDUCTOR_STEP_TIMEOUT_MS": ("limits", "step_timeout_ms"),
    "CONDUCTOR_CONCURRENCY": ("limits", "concurrency"),
}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(root: Path | None = None) -> ConductorConfig:
    """
    Load config by merging:
      1. Built-in defaults (conductor/config.yaml)
      2. Project overrides (<root>/.conductor/config.yaml)
      3. Environment variable overrides (CONDUCTOR_*)
    """
    # 1. Built-in defaults
    with open(_DEFAULT_CONFIG_PATH, "r") as f:
        base: dict[str, Any] = yaml.safe_load(f) or {}

    # 2. Project overrides
    if root:
        project_config = root / ".conductor" / "config.yaml"
        if project_config.exists():
            with open(project_config, "r") as f:
                overrides: dict[str, Any] = yaml.safe_load(f) or {}
            base = _deep_merge(base, overrides)

    # 3. Env overrides (pydantic coerces the strings)
    for var, (section, key) in _ENV_OVERRIDES.items():
        value = os.environ.get(var)
        if value:
            base.setdefault(section, {})[key] = value

    return ConductorConfig(**base)
