"""
tabletop.config — YAML Configuration Loader
============================================

Reads ``config.yaml`` for **infrastructure-only** settings (storage location,
model identifiers, BoardGameGeek endpoint, search sizing).  Secrets such as
``JWT_SECRET``, ``DATABASE_URL`` and the provider API keys stay in the
environment (``.env``).

Usage::

    from tabletop.config import load_config

    cfg = load_config()          # reads ./config.yaml by default
    print(cfg.storage_dir)       # "storage"
    print(cfg.extraction_model)  # "openai__gpt-4o-2024-11-20"
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

import yaml

DEFAULT_CONFIG_PATH = "config.yaml"


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class TabletopConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    app_name: str = "Tabletop"

    # Blob storage
    storage_dir: str = "storage"
    max_upload_mb: int = 25

    # AI models — ``provider__model`` identifiers
    default_ai_model: str = "anthropic__claude-3-haiku-20240307"
    extraction_model: str = "openai__gpt-4o-2024-11-20"
    game_info_model: str = "openai__gpt-4o-mini"

    # BoardGameGeek
    bgg_base_url: str = "https://boardgamegeek.com/xmlapi2"
    bgg_search_limit: int = 5
    bgg_timeout_seconds: float = 10.0

    # Unified search
    search_page_size: int = 10


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path | None = None) -> TabletopConfig:
    """Read *path* and return a :class:`TabletopConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.  Defaults to the
        ``TABLETOP_CONFIG`` env var, then ``config.yaml`` in the working
        directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    """
    config_path = Path(path or os.getenv("TABLETOP_CONFIG", DEFAULT_CONFIG_PATH))
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    defaults = TabletopConfig()
    return TabletopConfig(
        app_name=raw.get("app_name", defaults.app_name),
        storage_dir=str(raw.get("storage_dir", defaults.storage_dir)),
        max_upload_mb=int(raw.get("max_upload_mb", defaults.max_upload_mb)),
        default_ai_model=raw.get("default_ai_model", defaults.default_ai_model),
        extraction_model=raw.get("extraction_model", defaults.extraction_model),
        game_info_model=raw.get("game_info_model", defaults.game_info_model),
        bgg_base_url=raw.get("bgg_base_url", defaults.bgg_base_url).rstrip("/"),
        bgg_search_limit=int(raw.get("bgg_search_limit", defaults.bgg_search_limit)),
        bgg_timeout_seconds=float(
            raw.get("bgg_timeout_seconds", defaults.bgg_timeout_seconds)
        ),
        search_page_size=int(raw.get("search_page_size", defaults.search_page_size)),
    )
