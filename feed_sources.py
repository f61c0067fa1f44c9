#!/usr/bin/env python3
"""
Reconciliation Input Feeds
Readers for the already-parsed inventory snapshot (spreadsheet export result)
and the usage feed (parsed job-log JSON files).
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from usage_aggregator import UsageRecord, records_from_payload

INVENTORY_RESULT_FILE = "excel_processing_result.json"


class SourceUnavailable(Exception):
    """An input feed could not be read or parsed."""

    def __init__(self, source: str, message: str):
        self.source = source
        super().__init__(f"{source}: {message}")


def _mtime_ns(path: Path) -> Optional[int]:
    try:
        return path.stat().st_mtime_ns
    except OSError:
        return None


def _load_json(path: Path, source: str) -> Any:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        raise SourceUnavailable(source, f"{path} not found")
    except json.JSONDecodeError as e:
        raise SourceUnavailable(source, f"{path} is not valid JSON ({e})")
    except UnicodeDecodeError as e:
        raise SourceUnavailable(source, f"{path} is not UTF-8 text ({e})")
    except OSError as e:
        raise SourceUnavailable(source, f"could not read {path} ({e})")


class InventorySnapshotSource:
    """Inventory rows {toolCode, quantity} from the spreadsheet processing result."""

    name = "inventory"

    def __init__(self, path: Union[str, Path]):
        path = Path(path)
        self.path = path / INVENTORY_RESULT_FILE if path.is_dir() else path

    def fingerprint(self) -> Tuple:
        return (str(self.path), _mtime_ns(self.path))

    def read(self) -> List[Dict[str, Any]]:
        data = _load_json(self.path, self.name)
        if isinstance(data, dict):
            rows = data.get("toolInventory")
        else:
            rows = data
        if not isinstance(rows, list):
            raise SourceUnavailable(self.name, f"{self.path} has no toolInventory list")
        return [row for row in rows if isinstance(row, dict)]


class UsageFeedSource:
    """Usage records from every parsed job JSON file in a directory (or one file)."""

    name = "usage"

    def __init__(self, path: Union[str, Path], pattern: str = "*.json"):
        self.path = Path(path)
        self.pattern = pattern

    def _files(self) -> List[Path]:
        if self.path.is_file():
            return [self.path]
        if not self.path.is_dir():
            raise SourceUnavailable(self.name, f"{self.path} does not exist")
        return sorted(p for p in self.path.glob(self.pattern) if p.is_file())

    def fingerprint(self) -> Tuple:
        try:
            files = self._files()
        except SourceUnavailable:
            return (str(self.path), None)
        return tuple((p.name, _mtime_ns(p)) for p in files)

    def read(self) -> List[UsageRecord]:
        records: List[UsageRecord] = []
        # A partially written job file fails the whole read; usage totals never
        # shrink because one file was caught mid-write.
        for path in self._files():
            records.extend(records_from_payload(_load_json(path, self.name), source=path.name))
        logging.debug(f"Read {len(records)} usage record(s) from {self.path}")
        return records
