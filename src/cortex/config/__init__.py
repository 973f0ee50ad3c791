"""Cortex configuration system."""

from cortex.config.manager import ConfigManager
from cortex.config.schema import CortexConfig

__all__ = ["ConfigManager", "CortexConfig"]
