"""Tests for runtime wiring: restore on startup and source rebuilds."""

import pytest

from conftest import INVENTORY_ROWS
from registry_store import RegistryStore
from tool_manager_config import ToolManagerConfig
from tool_manager_runtime import LOG_FILE_NAME, ToolManagerRuntime, configure_logging


@pytest.fixture
def config(tmp_path, inventory_file, usage_dir):
    cfg = ToolManagerConfig(tmp_path / "tool_manager_config.json")
    cfg.set("paths.inventory", str(inventory_file))
    cfg.set("paths.usage", str(usage_dir))
    cfg.set("paths.definitions", str(tmp_path / "no-definitions.json"))
    return cfg


def test_restores_persisted_registry(tmp_path, config):
    store = RegistryStore(tmp_path / "tool_manager.db")
    first = ToolManagerRuntime(config, store=store)
    first.ensure_executor().process_files()

    second = ToolManagerRuntime(config, store=store)
    assert len(second.registry) == len(INVENTORY_ROWS)
    assert second.registry.get_by_id("RT-8400300").usage_minutes == 45.0


def test_rebuild_sources_updates_executor(tmp_path, config):
    runtime = ToolManagerRuntime(config)
    executor = runtime.ensure_executor()
    assert runtime.ensure_executor() is executor

    config.set("paths.usage", str(tmp_path / "elsewhere"))
    runtime.rebuild_sources()
    assert executor.usage_source.path == tmp_path / "elsewhere"


def test_retention_policy_from_config(config):
    config.set("registry.retain_missing_tools", False)
    assert ToolManagerRuntime(config).registry.retain_missing_tools is False


def test_start_and_stop_auto(config):
    config.set("watch.poll_seconds", 0.05)
    runtime = ToolManagerRuntime(config)
    runtime.start_auto()
    try:
        assert runtime.executor.watching
        assert runtime.executor.cycles_completed == 1
    finally:
        runtime.stop_auto()
    assert not runtime.executor.watching


def test_configure_logging_targets_log_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("TOOL_MANAGER_LOG_MAX_MB", "not-a-number")
    log_file = configure_logging(tmp_path / "logs")
    assert log_file == tmp_path / "logs" / LOG_FILE_NAME
    assert log_file.parent.is_dir()
