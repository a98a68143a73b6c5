from __future__ import annotations

from .plugin_loader import PluginLoader, PluginLoadResult

__all__ = [
    "PluginLoader",
    "PluginLoadResult",
]
