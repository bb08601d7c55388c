"""
Configuration loader for DECKHAND.
Merges defaults with per-workspace .deckhand/config.yaml overrides.
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

class RoutingConfig(BaseModel):
    model: str = "anthropic/claude-sonnet-4-20250514"
    api_base: str | None = None
    temperature: float = 0.2
    max_tokens: int = 8192


class LimitsConfig(BaseModel):
    max_iterations: int = Field(default=50, ge=1)
    max_context_tokens: int = Field(default=40_000, ge=1)
    chars_per_token: float = Field(default=3.5, gt=0)
    max_payload_bytes: int = Field(default=900 * 1024, ge=1024)
    old_message_chars: int = 2000
    max_tokens_per_run: int = 400_000
    max_dollars_per_run: float = 5.0
    request_timeout_seconds: float = 180.0
    command_timeout_seconds: float = 300.0
    upstream_retries: int = Field(default=3, ge=1)
    retry_wait_min: float = 1.0
    retry_wait_max: float = 10.0
    max_output_chars: int = 8000


class BriefingConfig(BaseModel):
    enabled: bool = True
    path: str = "COMPLETE_SYSTEM_HANDOFF.md"


class SafetyConfig(BaseModel):
    auto_stash: bool = True
    stash_message: str = "deckhand-auto-stash"


class WorkspaceConfig(BaseModel):
    log_dir: str = ".deckhand/logs"
    history_dir: str = "~/.deckhand/history"


class DeckhandConfig(BaseModel):
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    briefing: BriefingConfig = Field(default_factory=BriefingConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(workspace_path: Path | None = None) -> DeckhandConfig:
    """
    Load config by merging:
      1. Built-in defaults (deckhand/config.yaml)
      2. Workspace-level overrides (<workspace>/.deckhand/config.yaml)
    """
    with open(_DEFAULT_CONFIG_PATH, "r", encoding="utf-8") as f:
        base: dict[str, Any] = yaml.safe_load(f) or {}

    if workspace_path:
        local_config = workspace_path / ".deckhand" / "config.yaml"
        if local_config.exists():
            with open(local_config, "r", encoding="utf-8") as f:
                overrides: dict[str, Any] = yaml.safe_load(f) or {}
            base = _deep_merge(base, overrides)

    return DeckhandConfig(**base)


def validate_api_keys() -> dict[str, bool]:
    """Check which API keys are available."""
    return {
        "ANTHROPIC_API_KEY": bool(os.environ.get("ANTHROPIC_API_KEY")),
        "OPENAI_API_KEY":    bool(os.environ.get("OPENAI_API_KEY")),
        "GEMINI_API_KEY":    bool(os.environ.get("GEMINI_API_KEY")),
    }
