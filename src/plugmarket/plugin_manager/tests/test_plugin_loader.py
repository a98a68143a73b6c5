from __future__ import annotations

import sys

from plugmarket.marketplace.hooks import Installable
from plugmarket.plugin_manager import PluginLoader

HOOKS = """
from plugmarket.marketplace.hooks import Installable


class ZetaHooks(Installable):
    pass


class AlphaHooks(Installable):
    name = "alpha"
"""


def test_loads_first_hook_class_by_name(tmp_path):
    (tmp_path / "main.py").write_text(HOOKS)
    loader = PluginLoader(Installable)

    result = loader.load("report-kit", tmp_path)

    assert result.success
    assert type(result.instance).__name__ == "AlphaHooks"
    assert result.instance.name == "alpha"


def test_missing_entry_point_means_no_hooks(tmp_path):
    result = PluginLoader(Installable).load("report-kit", tmp_path)
    assert result.success
    assert result.instance is None


def test_module_without_hook_class_warns(tmp_path):
    (tmp_path / "main.py").write_text("VALUE = 1\n")
    result = PluginLoader(Installable).load("report-kit", tmp_path)
    assert result.success
    assert result.instance is None
    assert result.warnings


def test_rejects_entry_point_outside_package(tmp_path):
    loader = PluginLoader(Installable)
    assert "Invalid entry point" in loader.load("report-kit", tmp_path, "../main.py").error_message
    assert not loader.load("report-kit", tmp_path, "/etc/main.py").success


def test_import_error_is_reported(tmp_path):
    (tmp_path / "main.py").write_text("raise RuntimeError('broken package')\n")
    result = PluginLoader(Installable).load("report-kit", tmp_path)
    assert not result.success
    assert "broken package" in result.error_message


def test_package_entry_point_and_unload(tmp_path):
    pkg = tmp_path / "hooks"
    pkg.mkdir()
    (pkg / "__init__.py").write_text(HOOKS)
    loader = PluginLoader(Installable)

    result = loader.load("report-kit", tmp_path, "hooks")
    assert result.success and result.instance is not None

    module_name = type(result.instance).__module__
    assert module_name in sys.modules
    loader.unload("report-kit", tmp_path)
    assert module_name not in sys.modules
