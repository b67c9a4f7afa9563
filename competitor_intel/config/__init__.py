"""Configuration package."""

from competitor_intel.config.settings import (
    OPTIONAL_MODULES,
    REANALYSIS_TRIGGERS,
    Settings,
    get_settings,
)

__all__ = ["Settings", "get_settings", "OPTIONAL_MODULES", "REANALYSIS_TRIGGERS"]
