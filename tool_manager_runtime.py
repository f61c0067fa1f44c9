#!/usr/bin/env python3
"""
Tool Manager runtime

- Loads configuration (file, env overrides, unified setup-wizard config)
- Builds the matrix definitions, the tool registry and its SQLite store
- Starts the reconciliation executor in auto mode (file watching)
- Serves the dashboard API (tool_api.py) in the main thread
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import signal
import threading
from pathlib import Path
from typing import Optional

from code_normalizer import MatrixDefinitions
from feed_sources import InventorySnapshotSource, UsageFeedSource
from path_utils import ensure_directory, get_base_dir
from reconciliation_executor import Executor
from registry_store import RegistryStore
from tool_manager_config import ToolManagerConfig
from tool_registry import ToolRegistry

LOG_FILE_NAME = 'tool_manager.log'


def _env_int(name: str, default: int, minimum: int) -> int:
    try:
        value = int((os.environ.get(name) or '').strip() or default)
    except ValueError:
        return default
    return value if value >= minimum else default


def configure_logging(log_dir: Optional[Path] = None) -> Path:
    """Root logger to the console plus a size-capped rotating file under logs/."""
    log_dir = ensure_directory(log_dir or (get_base_dir() / 'logs'))
    level_name = (os.environ.get('TOOL_MANAGER_LOG_LEVEL') or 'INFO').strip().upper()
    log_file = log_dir / LOG_FILE_NAME
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=[
            logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=_env_int('TOOL_MANAGER_LOG_MAX_MB', 50, 1) * 1024 * 1024,
                backupCount=_env_int('TOOL_MANAGER_LOG_BACKUPS', 3, 0),
            ),
            logging.StreamHandler(),
        ],
    )
    return log_file


class ToolManagerRuntime:
    """Owns the single registry/executor pair for the process lifetime"""

    def __init__(self, config: ToolManagerConfig, store: Optional[RegistryStore] = None):
        self.config = config
        self.definitions = MatrixDefinitions.load(config.path('definitions'))
        self.registry = ToolRegistry(
            definitions=self.definitions,
            retain_missing_tools=bool(config.get('registry.retain_missing_tools', True)),
        )
        self.store = store
        self.executor: Optional[Executor] = None
        self._lock = threading.Lock()
        self.inventory_source = None
        self.usage_source = None
        self.rebuild_sources()

        if self.store is not None:
            try:
                self.store.load_registry(self.registry)
            except Exception as e:
                logging.warning(f"⚠️ Could not restore registry from {self.store.db_path}: {e}")

    def rebuild_sources(self) -> None:
        """Point the sources at the currently configured paths"""
        self.inventory_source = InventorySnapshotSource(self.config.path('inventory'))
        self.usage_source = UsageFeedSource(self.config.path('usage'))
        if self.executor is not None:
            self.executor.inventory_source = self.inventory_source
            self.executor.usage_source = self.usage_source
        logging.info(f"📁 Inventory: {self.inventory_source.path} | Usage: {self.usage_source.path}")

    def ensure_executor(self) -> Executor:
        with self._lock:
            if self.executor is None:
                self.executor = Executor(
                    self.registry,
                    self.inventory_source,
                    self.usage_source,
                    store=self.store,
                    poll_seconds=float(self.config.get('watch.poll_seconds', 2.0)),
                )
            return self.executor

    def start_auto(self) -> None:
        executor = self.ensure_executor()
        if not executor.watching:
            logging.info("Starting Executor in AUTO mode...")
            executor.start()

    def stop_auto(self) -> None:
        if self.executor is not None and self.executor.watching:
            logging.info("Stopping Executor (manual mode enabled)...")
            self.executor.stop()

    def shutdown(self) -> None:
        if self.executor is not None:
            self.executor.stop()


def main() -> int:
    configure_logging()
    logging.info("Starting ToolManager API Server...")

    import tool_api

    config = ToolManagerConfig(os.environ.get('TOOL_MANAGER_CONFIG_PATH', 'tool_manager_config.json'))
    config.apply_unified_config()

    store = None
    try:
        store = RegistryStore(config.path('db'))
    except Exception as e:
        logging.error(f"Failed to open registry store - running without persistence: {e}")

    runtime = ToolManagerRuntime(config, store=store)
    tool_api.app.tool_runtime = runtime

    if config.get('app.auto_mode'):
        runtime.start_auto()
        logging.info("Executor started successfully")

    def _handle_signal(_sig, _frame):
        runtime.shutdown()
        raise SystemExit(0)

    signal.signal(signal.SIGTERM, _handle_signal)

    bind_host = config.get('server.host', '0.0.0.0')
    bind_port = int(config.get('server.port', 3002))
    try:
        # Single process so the API shares the registry instance with the executor.
        tool_api.app.run(host=bind_host, port=bind_port, debug=False, threaded=True)
    except OSError as e:
        logging.error(f"❌ Server error on port {bind_port}: {e}")
        return 1
    finally:
        runtime.shutdown()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
