"""
Feature Flag Configuration: runtime settings and the definition catalogue.

Runtime settings (storage location, caching, paging) come from environment
variables.  Feature definitions come from feature_definitions.yaml,
validated with Pydantic v2.  A missing catalogue yields an empty one.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import List, Optional

import yaml
from pydantic import BaseModel, field_validator

from src.core.flags.models import ContextKind, FlagState

logger = logging.getLogger(__name__)


def _env_bool(key: str, default: bool = False) -> bool:
    val = os.environ.get(key, "").strip().lower()
    if not val:
        return default
    return val in ("true", "1", "yes")


def _env_str(key: str, default: str = "") -> str:
    return os.environ.get(key, default).strip()


def _env_int(key: str, default: int = 0) -> int:
    val = os.environ.get(key, "").strip()
    if not val:
        return default
    try:
        return int(val)
    except ValueError:
        return default


# ── Runtime settings ─────────────────────────────────────────────

class FlagsConfig(BaseModel):
    """Central feature flag engine settings."""

    data_dir: str = "data/flags"
    cache_enabled: bool = True
    cache_max_entries: int = 10000
    definitions_path: str = ""
    default_page_size: int = 50
    max_page_size: int = 100

    @field_validator("default_page_size", "max_page_size")
    @classmethod
    def validate_page_size(cls, v: int) -> int:
        if v < 1 or v > 1000:
            raise ValueError(f"page size must be 1-1000, got {v}")
        return v

    @field_validator("cache_max_entries")
    @classmethod
    def validate_cache_max_entries(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"cache_max_entries must be positive, got {v}")
        return v


def load_flags_config() -> FlagsConfig:
    """Load engine settings from environment variables."""
    return FlagsConfig(
        data_dir=_env_str("FLAGS_DATA_DIR", "data/flags"),
        cache_enabled=_env_bool("FLAGS_CACHE_ENABLED", default=True),
        cache_max_entries=_env_int("FLAGS_CACHE_MAX_ENTRIES", 10000),
        definitions_path=_env_str("FLAGS_DEFINITIONS_PATH"),
        default_page_size=_env_int("FLAGS_DEFAULT_PAGE_SIZE", 50),
        max_page_size=_env_int("FLAGS_MAX_PAGE_SIZE", 100),
    )


# ── Definition catalogue ─────────────────────────────────────────

class FeatureDefinitionConfig(BaseModel):
    """One feature as written in feature_definitions.yaml."""
    name: str
    display_name: str = ""
    description: str = ""
    applies_to: ContextKind
    state: FlagState = FlagState.OFF
    hidden: bool = False
    beta: bool = False
    pending_enforcement: bool = False
    autoexpand: bool = False
    root_opt_in: bool = False
    release_notes_url: Optional[str] = None
    enable_at: Optional[datetime] = None
    # "package.module:function" import paths
    on_transition: Optional[str] = None
    custom_transition: Optional[str] = None

    @field_validator("state", mode="before")
    @classmethod
    def coerce_yaml_bool(cls, v):
        # YAML 1.1 reads bare off/on as booleans
        if isinstance(v, bool):
            return FlagState.ON if v else FlagState.OFF
        return v

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.strip()
        if not v or not v.replace("_", "").isalnum():
            raise ValueError(f"feature name must be a non-empty identifier, got {v!r}")
        return v

    @field_validator("on_transition", "custom_transition")
    @classmethod
    def validate_import_path(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and ":" not in v:
            raise ValueError(f"callback must look like 'module:function', got {v!r}")
        return v


class FeatureDefinitionsConfig(BaseModel):
    """Top-level shape of feature_definitions.yaml."""
    version: str = "1.0"
    features: List[FeatureDefinitionConfig] = []


def load_feature_definitions_config(
    config_path: Optional[str] = None,
) -> FeatureDefinitionsConfig:
    """Load the feature definition catalogue from YAML.

    Args:
        config_path: Path to feature_definitions.yaml. If None, searches
            standard locations.

    Returns:
        Parsed FeatureDefinitionsConfig. Returns an empty catalogue if the
        file is missing.

    Raises:
        pydantic.ValidationError: If the file exists but is malformed.
    """
    if not config_path:
        candidates = [
            "config/feature_definitions.yaml",
            os.path.join(os.path.dirname(__file__), "../../../config/feature_definitions.yaml"),
        ]
        for candidate in candidates:
            if os.path.exists(candidate):
                config_path = candidate
                break

    if not config_path or not os.path.exists(config_path):
        logger.warning("Feature definitions not found, using an empty catalogue")
        return FeatureDefinitionsConfig()

    with open(config_path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    if raw is None:
        logger.warning("Feature definitions file %s is empty", config_path)
        return FeatureDefinitionsConfig()

    try:
        return FeatureDefinitionsConfig.model_validate(raw)
    except Exception as e:
        logger.error("Failed to load feature definitions from %s: %s", config_path, e)
        raise
