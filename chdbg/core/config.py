"""Core configuration for the chdbg trace debugger."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

from chdbg.core.types import GroupingMode


class Settings(BaseSettings):
    """Debugger settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="CHDBG_",
        case_sensitive=False,
    )

    # ── App ──────────────────────────────────────────────────────────────
    app_name: str = "chdbg"
    app_env: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    log_level: str = "WARNING"

    # ── Decoding ─────────────────────────────────────────────────────────
    byte_order: Literal["big", "little"] = "big"
    max_opcodes: int = 0  # 0 = decode until end of trace
    intern_stacks: bool = True

    # ── Rendering ────────────────────────────────────────────────────────
    grouping: GroupingMode = GroupingMode.NONE
    render_free_list: bool = False
    block_cluster_color: str = "red"
    owner_cluster_color: str = "blue"
    graph_rankdir: Literal["TB", "BT", "LR", "RL"] = "BT"


@lru_cache
def get_settings() -> Settings:
    """Return cached settings singleton."""
    return Settings()
