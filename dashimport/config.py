"""
Import Settings Loader

Provides cached access to the import engine settings.
Values come from DEFAULT_SETTINGS, overridden by DASHIMPORT_* environment
variables (a local .env file is loaded first).
"""

import os
import logging
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

load_dotenv()

logger = logging.getLogger(__name__)

ENV_PREFIX = "DASHIMPORT_"

# Default settings (conservative fallbacks)
DEFAULT_SETTINGS: Dict[str, Any] = {
    "dataset_id": "default",
    # A project reference starting with one of these words is a "Reason" row
    "reason_keywords": ["reason"],
    "internal_project_name": "Internal",
    "blank_tokens": ["(blank)", "n/a", "-"],
    "header_search_rows": 10,
    "min_containment_length": 3,
    "max_sheet_workers": 1,
    "log_level": "INFO",
}

_LIST_SETTINGS = {"reason_keywords", "blank_tokens"}
_INT_SETTINGS = {"header_search_rows", "min_containment_length", "max_sheet_workers"}

_settings_cache: Optional["ImportSettings"] = None


class ImportSettings(BaseModel):
    """Tunable behaviour of the import engine."""
    dataset_id: str = DEFAULT_SETTINGS["dataset_id"]
    reason_keywords: List[str] = Field(default_factory=lambda: list(DEFAULT_SETTINGS["reason_keywords"]))
    internal_project_name: str = DEFAULT_SETTINGS["internal_project_name"]
    blank_tokens: List[str] = Field(default_factory=lambda: list(DEFAULT_SETTINGS["blank_tokens"]))
    header_search_rows: int = Field(default=DEFAULT_SETTINGS["header_search_rows"], ge=1)
    min_containment_length: int = Field(default=DEFAULT_SETTINGS["min_containment_length"], ge=1)
    max_sheet_workers: int = Field(default=DEFAULT_SETTINGS["max_sheet_workers"], ge=1)
    log_level: str = DEFAULT_SETTINGS["log_level"]

    @field_validator("reason_keywords", "blank_tokens")
    @classmethod
    def _lowercase_tokens(cls, value: List[str]) -> List[str]:
        return [v.strip().lower() for v in value if v and v.strip()]

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.strip().upper() or "INFO"


def _read_env_overrides() -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for key in DEFAULT_SETTINGS:
        raw = os.environ.get(f"{ENV_PREFIX}{key.upper()}")
        if raw is None or raw.strip() == "":
            continue
        if key in _LIST_SETTINGS:
            overrides[key] = [part.strip() for part in raw.split(",") if part.strip()]
        elif key in _INT_SETTINGS:
            try:
                overrides[key] = int(raw)
            except ValueError:
                logger.warning(f"Ignoring non-integer {ENV_PREFIX}{key.upper()}={raw!r}")
        else:
            overrides[key] = raw.strip()
    return overrides


def get_import_settings(force_refresh: bool = False) -> ImportSettings:
    """
    Get import settings with caching.

    Args:
        force_refresh: If True, re-read the environment

    Returns:
        ImportSettings built from defaults plus environment overrides
    """
    global _settings_cache

    if _settings_cache is not None and not force_refresh:
        return _settings_cache

    values = dict(DEFAULT_SETTINGS)
    overrides = _read_env_overrides()
    if overrides:
        logger.info(f"Import settings overridden from environment: {sorted(overrides)}")
    values.update(overrides)

    _settings_cache = ImportSettings(**values)
    return _settings_cache
