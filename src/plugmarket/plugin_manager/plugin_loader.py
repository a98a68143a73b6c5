"""
Plugin Loader
Imports an installed package's entry point and finds its hook class.
"""

from __future__ import annotations

import hashlib
import importlib.util
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, List, Optional, Type

logger = logging.getLogger(__name__)

DEFAULT_ENTRY_POINT = "main.py"


@dataclass
class PluginLoadResult:
    success: bool
    slug: str
    instance: Any = None
    error_message: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


class PluginLoader:
    """
    Loads the hook class of an installed package.

    Modules are imported under a name derived from the slug and install path
    and dropped from ``sys.modules`` on unload, so a swapped directory is
    always imported fresh.
    """

    def __init__(self, base_class: Type) -> None:
        self.base_class = base_class

    def load(self, slug: str, package_dir: Path, entry_point: Optional[str] = None) -> PluginLoadResult:
        result = PluginLoadResult(success=False, slug=slug)
        entry = entry_point or DEFAULT_ENTRY_POINT
        pure = PurePosixPath(entry)
        if pure.is_absolute() or ".." in pure.parts:
            result.error_message = f"Invalid entry point: {entry}"
            return result

        module_path = Path(package_dir) / pure.as_posix()
        if not module_path.exists():
            # Packages without an entry point have no hooks.
            result.success = True
            return result
        if module_path.is_dir():
            module_path = module_path / "__init__.py"
            if not module_path.exists():
                result.error_message = f"Package entry point missing __init__.py: {module_path.parent}"
                return result
        elif module_path.suffix != ".py":
            result.error_message = f"Entry point must be a Python file: {module_path}"
            return result

        module_name = self._module_name(slug, package_dir)
        try:
            module = self._import_module(module_name, module_path)
        except Exception as exc:
            logger.error("Failed to import %s: %s", module_path, exc)
            result.error_message = f"Failed to import {entry}: {exc}"
            return result

        plugin_class = self._find_plugin_class(module)
        if plugin_class is None:
            result.warnings.append(f"No {self.base_class.__name__} subclass in {entry}")
            result.success = True
            return result

        try:
            result.instance = plugin_class()
        except Exception as exc:
            result.error_message = f"Failed to instantiate {plugin_class.__name__}: {exc}"
            return result

        result.success = True
        return result

    def unload(self, slug: str, package_dir: Path) -> None:
        module_name = self._module_name(slug, package_dir)
        for name in [n for n in sys.modules if n == module_name or n.startswith(module_name + ".")]:
            sys.modules.pop(name, None)

    def _module_name(self, slug: str, package_dir: Path) -> str:
        digest = hashlib.sha1(str(Path(package_dir).resolve()).encode("utf-8")).hexdigest()[:10]
        return f"plugmarket_pkg_{slug.replace('-', '_')}_{digest}"

    def _import_module(self, module_name: str, module_path: Path):
        self.unload_module(module_name)
        spec = importlib.util.spec_from_file_location(module_name, module_path)
        if not spec or not spec.loader:
            raise ImportError(f"Cannot build import spec for {module_path}")
        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except Exception:
            sys.modules.pop(module_name, None)
            raise
        return module

    @staticmethod
    def unload_module(module_name: str) -> None:
        sys.modules.pop(module_name, None)

    def _find_plugin_class(self, module) -> Optional[Type]:
        candidates: List[type] = []
        for name in dir(module):
            obj = getattr(module, name)
            if not isinstance(obj, type) or obj is self.base_class:
                continue
            if obj.__module__ != module.__name__:
                continue
            if issubclass(obj, self.base_class):
                candidates.append(obj)
        if not candidates:
            return None
        candidates.sort(key=lambda cls: cls.__name__)
        return candidates[0]
