#!/usr/bin/env python3
"""
Tool Manager Configuration
JSON config file layered over built-in defaults, with environment overrides
and optional auto-configuration from the unified setup-wizard file.
"""

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

from path_utils import get_data_dir, resolve_path

UNIFIED_CONFIG_NAME = "BRK_SETUP_WIZARD_CONFIG.json"

_TRUE_VALUES = {"1", "true", "yes", "on", "auto"}


def _env_bool(name: str) -> Optional[bool]:
    raw = (os.environ.get(name) or "").strip().lower()
    if not raw:
        return None
    return raw in _TRUE_VALUES


def _env_int(name: str, default: int) -> int:
    try:
        return int((os.environ.get(name) or "").strip() or default)
    except Exception:
        return default


def _deep_merge(base: dict, override: dict) -> dict:
    out = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _deep_merge(out[key], value)
        else:
            out[key] = value
    return out


class ToolManagerConfig:
    """Configuration management for the tool manager"""

    def __init__(self, config_file='tool_manager_config.json'):
        self.config_file = resolve_path(config_file)
        data_dir = get_data_dir()
        self.default_config = {
            "app": {
                "auto_mode": False,
                "test_mode": False,
                "working_folder": str(data_dir),
            },
            "paths": {
                # Written by the spreadsheet processor: {"toolInventory": [{toolCode, quantity}]}
                "inventory": str(data_dir / "results" / "excel_processing_result.json"),
                # Directory of parsed job-log JSON files
                "usage": str(data_dir / "results" / "jobs"),
                # Hand-authored categories/tools table; built-in patterns used when missing
                "definitions": "config/matrix-tool-definitions.json",
                "tool_images": str(data_dir / "tool_images"),
                "family_images": str(data_dir / "tool_images" / "FRA"),
                "db": str(data_dir / "tool_manager.db"),
            },
            "watch": {
                "poll_seconds": 2.0,
            },
            "registry": {
                # Tools missing from a new inventory snapshot keep their last in_pool
                "retain_missing_tools": True,
            },
            "server": {
                "host": "0.0.0.0",
                "port": 3002,
            },
        }
        self.load_config()
        self.apply_env_overrides()

    def load_config(self):
        """Load configuration from file over the defaults"""
        if self.config_file.exists():
            try:
                with open(self.config_file, 'r') as f:
                    loaded = json.load(f)
            except Exception as e:
                logging.warning(f"⚠️  Could not read {self.config_file}, using defaults: {e}")
                loaded = {}
            self.config = _deep_merge(self.default_config, loaded if isinstance(loaded, dict) else {})
        else:
            self.config = copy.deepcopy(self.default_config)

    def save_config(self):
        """Save current configuration to file"""
        self.config_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_file, 'w') as f:
            json.dump(self.config, f, indent=2)

    def apply_env_overrides(self):
        auto_mode = _env_bool("TOOL_MANAGER_AUTO_MODE")
        if auto_mode is not None:
            self.set("app.auto_mode", auto_mode)
        host = (os.environ.get("TOOL_MANAGER_BIND_HOST") or "").strip()
        if host:
            self.set("server.host", host)
        self.set("server.port", _env_int("TOOL_MANAGER_PORT", int(self.get("server.port", 3002))))

    def apply_unified_config(self, path=None) -> bool:
        """Auto-configure from the setup wizard's unified config when present."""
        unified_path = Path(path) if path else resolve_path(UNIFIED_CONFIG_NAME)
        if not unified_path.exists():
            logging.info("⚠️ No unified config found - using defaults")
            return False
        try:
            with open(unified_path, 'r') as f:
                unified = json.load(f)
        except Exception as e:
            logging.info(f"⚠️ Could not load unified config - using defaults: {e}")
            return False

        tool_cfg = (unified.get("modules") or {}).get("matrixTools")
        if not isinstance(tool_cfg, dict):
            return False

        self.set("app.test_mode", bool(unified.get("demoMode", False)))
        self.set("app.auto_mode", tool_cfg.get("mode") == "auto")
        temp_path = (unified.get("storage") or {}).get("tempPath")
        if temp_path:
            self.set("app.working_folder", temp_path)
        logging.info(
            f"📡 Auto-configured from {unified_path.name}: testMode={self.get('app.test_mode')}, "
            f"autoMode={self.get('app.auto_mode')}, dataPath={tool_cfg.get('dataPath')}"
        )
        return True

    def get(self, key_path, default=None):
        """Get nested configuration value"""
        keys = key_path.split('.')
        value = self.config
        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        return value

    def set(self, key_path, value):
        """Set nested configuration value, creating sections as needed"""
        keys = key_path.split('.')
        node = self.config
        for key in keys[:-1]:
            if not isinstance(node.get(key), dict):
                node[key] = {}
            node = node[key]
        node[keys[-1]] = value

    def path(self, key) -> Path:
        """Resolved filesystem path for a paths.* entry"""
        return resolve_path(self.get(f"paths.{key}"))
