"""Configuration package.

Exports :class:`Settings`, the YAML :func:`load_config` loader, the
material alias accessor, and a module-level ``settings`` singleton.
"""

from src.config.loader import load_config, material_aliases
from src.config.settings import Settings

settings = Settings()

__all__ = ["Settings", "load_config", "material_aliases", "settings"]
