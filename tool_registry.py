#!/usr/bin/env python3
"""
Tool Registry
Canonical store of CNC tool records built from the inventory snapshot and the
usage feed. Each reconciliation cycle is assembled on a working copy and then
published with a single swap, so readers only ever see whole cycles.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from code_normalizer import (
    CATEGORIES,
    CATEGORY_OTHER,
    MatrixDefinitions,
    extract_operational_family,
    image_url_for,
    normalize,
)
from usage_aggregator import AggregationResult, UsageRecord, usable_minutes

STATE_FREE = "FREE"
STATE_IN_USE = "IN_USE"
TOOL_STATES = (STATE_FREE, STATE_IN_USE)

# (current state, claimed by an active job) -> next state
STATE_TRANSITIONS: Dict[Tuple[str, bool], str] = {
    (STATE_FREE, False): STATE_FREE,
    (STATE_FREE, True): STATE_IN_USE,
    (STATE_IN_USE, False): STATE_FREE,
    (STATE_IN_USE, True): STATE_IN_USE,
}

# Dashboard query aliases
_STATUS_ALIASES = {
    "free": STATE_FREE,
    "available": STATE_FREE,
    "in_use": STATE_IN_USE,
    "in-use": STATE_IN_USE,
    "inuse": STATE_IN_USE,
}

MIN_WARNING_THRESHOLD = 3
WARNING_RATIO = 0.3


def _now() -> str:
    return datetime.now().isoformat(timespec="seconds")


def next_state(current: str, claimed: bool) -> str:
    """Tool state machine. Unknown states are treated as FREE."""
    state = current if current in TOOL_STATES else STATE_FREE
    return STATE_TRANSITIONS[(state, bool(claimed))]


def parse_status(value: Optional[str]) -> Optional[str]:
    """Map a status filter (FREE, IN_USE, available, in_use) to a tool state."""
    if value is None or str(value).strip() == "":
        return None
    text = str(value).strip()
    if text.upper() in TOOL_STATES:
        return text.upper()
    state = _STATUS_ALIASES.get(text.lower())
    if state is None:
        raise ValueError(f"Unknown tool status: {value}")
    return state


def warning_threshold_for(in_pool: float) -> int:
    return max(MIN_WARNING_THRESHOLD, math.floor((in_pool or 0) * WARNING_RATIO))


@dataclass(frozen=True)
class UsageEvent:
    record_key: str
    tool_id: str
    family_code: str
    minutes: float
    project: str = ""
    job_id: str = ""
    observed_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recordKey": self.record_key,
            "toolId": self.tool_id,
            "familyCode": self.family_code,
            "minutes": self.minutes,
            "project": self.project,
            "jobId": self.job_id,
            "observedAt": self.observed_at,
        }


@dataclass
class Tool:
    matrix_code: str
    family_code: str = ""
    category: str = CATEGORY_OTHER
    diameter: float = 0
    tool_life: float = 0
    code_prefix: str = ""
    variant: str = ""
    tool_state: str = STATE_FREE
    usage_history: List[UsageEvent] = field(default_factory=list)
    usage_minutes: float = 0.0
    project_list: Set[str] = field(default_factory=set)
    in_pool: float = 0
    warning_threshold: int = MIN_WARNING_THRESHOLD
    image_url: str = ""
    first_seen: str = ""
    last_seen: str = ""

    @property
    def is_matrix(self) -> bool:
        return self.category != CATEGORY_OTHER

    @property
    def join_key(self) -> str:
        """Family code used to match usage: explicit prefix first, derived family otherwise."""
        return self.code_prefix or self.family_code

    @property
    def is_low_stock(self) -> bool:
        return self.in_pool <= self.warning_threshold

    def set_in_pool(self, quantity: float) -> None:
        self.in_pool = quantity
        self.warning_threshold = warning_threshold_for(quantity)

    def apply_code(self, definitions: MatrixDefinitions) -> None:
        """Refresh every field derived from the matrix code."""
        norm = normalize(self.matrix_code, definitions)
        self.family_code = norm.family_code
        self.category = norm.category
        self.variant = norm.variant
        self.diameter = norm.diameter
        self.tool_life = norm.tool_life
        self.code_prefix = norm.code_prefix
        self.image_url = image_url_for(norm.family_code)

    def copy(self) -> "Tool":
        return replace(self, usage_history=list(self.usage_history), project_list=set(self.project_list))

    def to_dict(self, include_history: bool = True) -> Dict[str, Any]:
        data = {
            "toolId": self.matrix_code,
            "matrixCode": self.matrix_code,
            "familyCode": self.family_code,
            "codePrefix": self.code_prefix,
            "variant": self.variant,
            "diameter": self.diameter,
            "toolLife": self.tool_life,
            "category": self.category,
            "toolType": self.category,
            "isMatrix": self.is_matrix,
            "toolState": self.tool_state,
            "usageMinutes": self.usage_minutes,
            "projectList": sorted(self.project_list),
            "inPool": self.in_pool,
            "warningThreshold": self.warning_threshold,
            "lowStock": self.is_low_stock,
            "imageUrl": self.image_url,
            "firstSeen": self.first_seen,
            "lastSeen": self.last_seen,
        }
        if include_history:
            data["usageHistory"] = [e.to_dict() for e in self.usage_history]
        return data


@dataclass(frozen=True)
class _Snapshot:
    tools: Mapping[str, Tool]
    version: int = 0
    updated_at: Optional[str] = None


def _row_code(row: Any) -> str:
    if isinstance(row, Mapping):
        value = row.get("toolCode") or row.get("code") or ""
    else:
        value = getattr(row, "tool_code", "") or ""
    return str(value).strip()


def _row_quantity(row: Any) -> float:
    value = row.get("quantity") if isinstance(row, Mapping) else getattr(row, "quantity", 0)
    try:
        quantity = float(value or 0)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(quantity) or quantity < 0:
        return 0
    return int(quantity) if quantity.is_integer() else quantity


class ToolRegistry:
    """Authoritative, queryable set of Tool records.

    Writers are serialized by a lock and build each update on a working copy.
    Readers take the published snapshot, which is replaced in one assignment.
    """

    def __init__(self, definitions: Optional[MatrixDefinitions] = None, retain_missing_tools: bool = True):
        self.definitions = definitions or MatrixDefinitions.builtin()
        self.retain_missing_tools = retain_missing_tools
        self._write_lock = threading.Lock()
        self._publish_lock = threading.Lock()
        self._snapshot = _Snapshot(tools={})

    # ------------------------------------------------------------------
    # Snapshot plumbing
    # ------------------------------------------------------------------

    def _current(self) -> _Snapshot:
        with self._publish_lock:
            return self._snapshot

    def _working_copy(self) -> Dict[str, Tool]:
        return {code: tool.copy() for code, tool in self._current().tools.items()}

    def _publish(self, tools: Dict[str, Tool]) -> None:
        with self._publish_lock:
            self._snapshot = _Snapshot(tools=tools, version=self._snapshot.version + 1, updated_at=_now())

    @property
    def version(self) -> int:
        return self._current().version

    @property
    def last_updated(self) -> Optional[str]:
        return self._current().updated_at

    def __len__(self) -> int:
        return len(self._current().tools)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def _apply_inventory(self, tools: Dict[str, Tool], rows: Iterable[Any], stamp: str) -> Tuple[Dict[str, Tool], int]:
        created = 0
        seen: Set[str] = set()
        for row in rows:
            code = _row_code(row)
            if not code:
                logging.debug(f"Skipping inventory row without tool code: {row!r}")
                continue
            tool = tools.get(code)
            if tool is None:
                tool = Tool(matrix_code=code, first_seen=stamp)
                tools[code] = tool
                created += 1
            tool.apply_code(self.definitions)
            tool.set_in_pool(_row_quantity(row))
            tool.last_seen = stamp
            seen.add(code)

        if not self.retain_missing_tools:
            dropped = [code for code in tools if code not in seen]
            for code in dropped:
                del tools[code]
            if dropped:
                logging.info(f"🧹 Dropped {len(dropped)} tool(s) missing from the inventory snapshot")
        return tools, created

    @staticmethod
    def _apply_totals(tools: Dict[str, Tool], usage_totals: Mapping[str, float]) -> None:
        for tool in tools.values():
            tool.usage_minutes = float(usage_totals.get(tool.join_key, 0.0)) if tool.join_key else 0.0

    @staticmethod
    def _apply_usage(tools: Dict[str, Tool], aggregation: AggregationResult,
                     records: Iterable[UsageRecord], stamp: str) -> int:
        by_family: Dict[str, List[Tool]] = {}
        for tool in tools.values():
            if tool.join_key:
                by_family.setdefault(tool.join_key, []).append(tool)

        known_keys: Dict[str, Set[str]] = {}
        new_events = 0
        for record in records:
            minutes = usable_minutes(record.minutes)
            if not minutes:
                continue
            family = extract_operational_family(record.tool_id)
            matched = by_family.get(family) if family else None
            if not matched:
                continue
            key = record.record_key
            event = UsageEvent(
                record_key=key,
                tool_id=record.tool_id,
                family_code=family,
                minutes=minutes,
                project=record.project,
                job_id=record.job_id,
                observed_at=stamp,
            )
            for tool in matched:
                keys = known_keys.get(tool.matrix_code)
                if keys is None:
                    keys = {e.record_key for e in tool.usage_history}
                    known_keys[tool.matrix_code] = keys
                if key in keys:
                    continue
                keys.add(key)
                tool.usage_history.append(event)
                new_events += 1

        for family, projects in aggregation.projects.items():
            for tool in by_family.get(family, []):
                tool.project_list.update(projects)

        for tool in tools.values():
            claimed = bool(tool.join_key) and tool.join_key in aggregation.active_families
            state = next_state(tool.tool_state, claimed)
            if state != tool.tool_state:
                logging.info(f"🔧 {tool.matrix_code}: {tool.tool_state} → {state}")
                tool.tool_state = state

        ToolRegistry._apply_totals(tools, aggregation.totals)
        return new_events

    def load_inventory(self, rows: Iterable[Any]) -> int:
        """Create/refresh tools from inventory rows. Returns the number created."""
        with self._write_lock:
            tools, created = self._apply_inventory(self._working_copy(), rows, _now())
            self._publish(tools)
        return created

    def merge_usage(self, usage_totals: Mapping[str, float]) -> None:
        """Set each tool's usage minutes from a family -> minutes mapping (0 when absent)."""
        with self._write_lock:
            tools = self._working_copy()
            self._apply_totals(tools, usage_totals)
            self._publish(tools)

    def apply_usage(self, aggregation: AggregationResult, records: Iterable[UsageRecord]) -> int:
        """Append new usage events, update projects and states, merge totals."""
        with self._write_lock:
            tools = self._working_copy()
            new_events = self._apply_usage(tools, aggregation, records, _now())
            self._publish(tools)
        return new_events

    def reconcile(self, rows: Iterable[Any], aggregation: AggregationResult,
                  records: Iterable[UsageRecord]) -> Dict[str, int]:
        """One full cycle on a working copy, published once."""
        stamp = _now()
        with self._write_lock:
            tools, created = self._apply_inventory(self._working_copy(), rows, stamp)
            new_events = self._apply_usage(tools, aggregation, records, stamp)
            self._publish(tools)
        return {
            "tools": len(tools),
            "created": created,
            "new_events": new_events,
            "in_use": sum(1 for t in tools.values() if t.tool_state == STATE_IN_USE),
        }

    def restore_state(self, tools: Iterable[Tool]) -> None:
        """Publish previously persisted tools, re-deriving code fields."""
        restored: Dict[str, Tool] = {}
        for tool in tools:
            item = tool.copy()
            item.apply_code(self.definitions)
            if item.tool_state not in TOOL_STATES:
                item.tool_state = STATE_FREE
            restored[item.matrix_code] = item
        with self._write_lock:
            self._publish(restored)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def query(self, status: Optional[str] = None, is_matrix: Optional[bool] = None) -> List[Tool]:
        state = parse_status(status)
        out = []
        for tool in self._current().tools.values():
            if state is not None and tool.tool_state != state:
                continue
            if is_matrix is not None and tool.is_matrix != is_matrix:
                continue
            out.append(tool.copy())
        return out

    def get_by_id(self, matrix_code: str) -> Optional[Tool]:
        tool = self._current().tools.get(matrix_code)
        return tool.copy() if tool is not None else None

    def export_state(self) -> List[Tool]:
        return [tool.copy() for tool in self._current().tools.values()]

    def low_stock(self, is_matrix: Optional[bool] = None) -> List[Tool]:
        return [t for t in self.query(is_matrix=is_matrix) if t.is_low_stock]

    def stats(self) -> Dict[str, Any]:
        snapshot = self._current()
        tools = list(snapshot.tools.values())
        by_state = {state: 0 for state in TOOL_STATES}
        by_category = {category: 0 for category in CATEGORIES}
        family_minutes: Dict[str, float] = {}
        for tool in tools:
            by_state[tool.tool_state] = by_state.get(tool.tool_state, 0) + 1
            by_category[tool.category] = by_category.get(tool.category, 0) + 1
            if tool.join_key:
                family_minutes[tool.join_key] = tool.usage_minutes

        return {
            "total": len(tools),
            "byState": by_state,
            "byCategory": by_category,
            "matrixTools": sum(1 for t in tools if t.is_matrix),
            "lowStock": sum(1 for t in tools if t.is_low_stock),
            "totalUsageMinutes": math.fsum(family_minutes.values()),
            "version": snapshot.version,
            "lastUpdated": snapshot.updated_at,
        }

    def projects(self) -> List[Dict[str, Any]]:
        """Per-project summary built from the usage history."""
        summary: Dict[str, Dict[str, Any]] = {}
        for tool in self._current().tools.values():
            for event in tool.usage_history:
                if not event.project:
                    continue
                entry = summary.setdefault(event.project, {"tools": [], "events": {}, "last_seen": ""})
                if tool.matrix_code not in entry["tools"]:
                    entry["tools"].append(tool.matrix_code)
                entry["events"][event.record_key] = event.minutes
                entry["last_seen"] = max(entry["last_seen"], event.observed_at)

        return [
            {
                "projectName": name,
                "tools": entry["tools"],
                "toolCount": len(entry["tools"]),
                "usageMinutes": math.fsum(entry["events"].values()),
                "lastSeen": entry["last_seen"],
            }
            for name, entry in sorted(summary.items())
        ]

    def upcoming(self) -> Dict[str, Any]:
        """Matrix tools claimed by running jobs, with their stock position."""
        claimed = self.query(status=STATE_IN_USE, is_matrix=True)
        requirements = [
            {
                "toolId": tool.matrix_code,
                "familyCode": tool.family_code,
                "category": tool.category,
                "projectList": sorted(tool.project_list),
                "usageMinutes": tool.usage_minutes,
                "inPool": tool.in_pool,
                "warningThreshold": tool.warning_threshold,
                "lowStock": tool.is_low_stock,
            }
            for tool in claimed
        ]
        return {
            "tools": requirements,
            "total": len(requirements),
            "lowStock": sum(1 for r in requirements if r["lowStock"]),
        }
