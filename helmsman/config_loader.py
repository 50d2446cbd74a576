"""
Configuration loader for HELMSMAN.
Merges defaults with per-project .helmsman/config.json overrides.
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

class CompactionConfig(BaseModel):
    budget_chars: int = 2000
    max_anchors: int = 20


class SystemPromptConfig(BaseModel):
    enabled: bool = True
    max_chars: int = 800
    max_critical_anchors: int = 3


class AnchorConfig(BaseModel):
    max_content_chars: int = 2000
    stale_after_hours: float = 48


class TaskConfig(BaseModel):
    stale_after_minutes: int = 240
    require_evidence: bool = True


class DelegationConfig(BaseModel):
    max_depth: int = 3
    expiry_minutes: int = 30
    hierarchy: dict[str, int] = Field(default_factory=dict)
    category_routing: dict[str, list[str]] = Field(default_factory=dict)


class RolePermission(BaseModel):
    """Allow/deny lists consulted for execute and delegate tools."""
    allowed_tools: list[str] = Field(default_factory=list)
    denied_tools: list[str] = Field(default_factory=list)


class GateConfig(BaseModel):
    default_role: str = "meta"
    agent_roles: dict[str, str] = Field(default_factory=dict)
    roles: dict[str, RolePermission] = Field(default_factory=dict)
    tool_categories: dict[str, str] = Field(default_factory=dict)
    history_limit: int = 50


class PersistenceConfig(BaseModel):
    batch_size: int = 1
    retry_attempts: int = 3
    backup: bool = True
    force_degraded: bool = False


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: str = "logs/engine.log"
    audit_file: str = "logs/audit.jsonl"
    audit_batch_size: int = 10


class HelmsmanConfig(BaseModel):
    governance_dir: str = ".helmsman"
    compaction: CompactionConfig = Field(default_factory=CompactionConfig)
    system_prompt: SystemPromptConfig = Field(default_factory=SystemPromptConfig)
    anchors: AnchorConfig = Field(default_factory=AnchorConfig)
    tasks: TaskConfig = Field(default_factory=TaskConfig)
    delegation: DelegationConfig = Field(default_factory=DelegationConfig)
    gate: GateConfig = Field(default_factory=GateConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"
PROJECT_CONFIG_NAME = "config.json"


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if level := os.environ.get("HELMSMAN_LOG_LEVEL"):
        overrides.setdefault("logging", {})["level"] = level.upper()
    if budget := os.environ.get("HELMSMAN_COMPACTION_BUDGET"):
        overrides.setdefault("compaction", {})["budget_chars"] = int(budget)
    if os.environ.get("HELMSMAN_DEGRADED", "").lower() in ("1", "true", "yes"):
        overrides.setdefault("persistence", {})["force_degraded"] = True
    return overrides


def load_config(project_dir: Path | None = None) -> HelmsmanConfig:
    """
    Load config by merging:
      1. Built-in defaults (helmsman/config.yaml)
      2. Project overrides (<project>/.helmsman/config.json)
      3. Environment variable overrides (HELMSMAN_*)
    """
    # 1. Built-in defaults
    with open(_DEFAULT_CONFIG_PATH, "r") as f:
        base: dict[str, Any] = yaml.safe_load(f) or {}

    # 2. Project overrides. JSON is a YAML subset, so one parser covers both.
    if project_dir:
        gov_dir = base.get("governance_dir", ".helmsman")
        project_config = project_dir / gov_dir / PROJECT_CONFIG_NAME
        if project_config.exists():
            with open(project_config, "r") as f:
                overrides: dict[str, Any] = yaml.safe_load(f) or {}
            base = _deep_merge(base, overrides)

    # 3. Env overrides
    base = _deep_merge(base, _env_overrides())
    return HelmsmanConfig(**base)


def default_project_config() -> dict[str, Any]:
    """The starter config.json written by `helmsman init`."""
    return {
        "compaction": {"budget_chars": 2000},
        "tasks": {"require_evidence": True},
        "gate": {"agent_roles": {"*coordinator*": "coordinator", "*executor*": "builder"}},
    }
