"""
Lifecycle hooks of installed packages.

A package opts into hooks by shipping an entry point module (``plugin.json``
``entry_point``, default ``main.py``) that defines one ``Installable``
subclass. The host only ever calls the methods declared here.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from plugmarket.exceptions import HookFailedError
from plugmarket.marketplace.package_files import PackageFiles
from plugmarket.plugin_manager import PluginLoader

logger = logging.getLogger(__name__)


class Installable:
    """Base class for a package's lifecycle hooks. Every hook is optional."""

    def install(self) -> None:
        pass

    def activate(self) -> None:
        pass

    def deactivate(self) -> None:
        pass

    def update(self, from_version: Optional[str], to_version: str) -> None:
        pass

    def uninstall(self) -> None:
        pass


class HookRunner:
    def __init__(self, package_files: PackageFiles, loader: Optional[PluginLoader] = None):
        self.package_files = package_files
        self.loader = loader or PluginLoader(Installable)

    def install(self, package_dir: Path, slug: str) -> None:
        self._run("install", package_dir, slug, lambda hooks: hooks.install())

    def activate(self, package_dir: Path, slug: str) -> None:
        self._run("activate", package_dir, slug, lambda hooks: hooks.activate())

    def deactivate(self, package_dir: Path, slug: str) -> None:
        self._run("deactivate", package_dir, slug, lambda hooks: hooks.deactivate())

    def update(
        self, package_dir: Path, slug: str, from_version: Optional[str], to_version: str
    ) -> None:
        self._run(
            "update", package_dir, slug, lambda hooks: hooks.update(from_version, to_version)
        )

    def uninstall(self, package_dir: Path, slug: str) -> None:
        self._run("uninstall", package_dir, slug, lambda hooks: hooks.uninstall())

    def _load(self, package_dir: Path, slug: str) -> Optional[Installable]:
        if not package_dir.exists():
            return None
        try:
            manifest = self.package_files.read_manifest(package_dir)
        except ValueError as exc:
            raise HookFailedError("load", slug, f"invalid manifest: {exc}") from exc
        result = self.loader.load(slug, package_dir, manifest.get("entry_point"))
        for warning in result.warnings:
            logger.debug("Hook loader warning for %s: %s", slug, warning)
        if not result.success:
            raise HookFailedError("load", slug, result.error_message or "load failed")
        return result.instance

    def _run(self, hook: str, package_dir: Path, slug: str, call) -> None:
        package_dir = Path(package_dir)
        hooks = self._load(package_dir, slug)
        if hooks is None:
            return
        try:
            call(hooks)
        except Exception as exc:
            logger.error("Hook %s failed for %s: %s", hook, slug, exc)
            raise HookFailedError(hook, slug, str(exc)) from exc
        finally:
            self.loader.unload(slug, package_dir)
        logger.debug("Hook %s completed for %s", hook, slug)
