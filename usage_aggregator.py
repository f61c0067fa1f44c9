#!/usr/bin/env python3
"""
Usage Aggregation
Folds per-job usage records from the machine-control logs into accumulated
minutes per tool family.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

from code_normalizer import OPERATIONAL_MARKER, extract_operational_family

ACTIVE_JOB_STATUSES = {"in_progress", "running", "active", "started"}

# Accepted keys for elapsed minutes, in preference order.
MINUTE_KEYS = ("minutes", "usageMinutes", "runningTime")


@dataclass(frozen=True)
class UsageRecord:
    tool_id: str
    minutes: float
    project: str = ""
    job_id: str = ""
    active: bool = False
    record_id: str = ""
    # Where the record sits in its feed ("job_12.json#3"); keeps repeated
    # identical uses within one job apart.
    position: str = ""

    @property
    def record_key(self) -> str:
        """Identity used to recognise a re-delivered record."""
        if self.record_id:
            return self.record_id
        key = f"{self.job_id}|{self.project}|{self.tool_id}|{self.minutes:g}"
        return f"{self.position}|{key}" if self.position else key


@dataclass
class AggregationResult:
    totals: Dict[str, float] = field(default_factory=dict)
    projects: Dict[str, Set[str]] = field(default_factory=dict)
    active_families: Set[str] = field(default_factory=set)
    attributed: int = 0
    dropped_unattributed: int = 0
    dropped_non_positive: int = 0

    @property
    def dropped(self) -> int:
        return self.dropped_unattributed + self.dropped_non_positive

    def diagnostics(self) -> Dict[str, int]:
        return {
            "attributed": self.attributed,
            "dropped_unattributed": self.dropped_unattributed,
            "dropped_non_positive": self.dropped_non_positive,
            "families": len(self.totals),
        }


def _to_minutes(value: Any) -> float:
    """Elapsed minutes as a float; unreadable or non-finite values become 0."""
    try:
        minutes = float(value)
    except (TypeError, ValueError):
        return 0.0
    return minutes if math.isfinite(minutes) else 0.0


def usable_minutes(value: Any) -> float:
    """Minutes that may be counted: finite and positive, otherwise 0."""
    minutes = _to_minutes(value)
    return minutes if minutes > 0 else 0.0


def aggregate(records: Iterable[UsageRecord], marker: str = OPERATIONAL_MARKER) -> AggregationResult:
    """Sum usage minutes per family code.

    Records with no extractable family, or with minutes that are not a finite
    positive number, are skipped and counted. Active claims are collected even
    when minutes are still zero.
    """
    result = AggregationResult()
    minutes_by_family: Dict[str, List[float]] = {}
    for record in records:
        family = extract_operational_family(record.tool_id, marker)
        if not family:
            result.dropped_unattributed += 1
            logging.debug(f"Usage record not attributable to a family: {record.tool_id}")
            continue

        if record.active:
            result.active_families.add(family)

        minutes = usable_minutes(record.minutes)
        if not minutes:
            result.dropped_non_positive += 1
            continue

        minutes_by_family.setdefault(family, []).append(minutes)
        if record.project:
            result.projects.setdefault(family, set()).add(record.project)
        result.attributed += 1

    # fsum is exactly rounded, so totals do not depend on record order.
    result.totals = {family: math.fsum(values) for family, values in minutes_by_family.items()}
    return result


def _record_from_dict(raw: Dict[str, Any], job: Dict[str, Any], position: str = "") -> Optional[UsageRecord]:
    tool_id = raw.get("id") or raw.get("toolId") or raw.get("tool") or ""
    if not tool_id:
        return None

    minutes = 0.0
    for key in MINUTE_KEYS:
        if raw.get(key) is not None:
            minutes = _to_minutes(raw.get(key))
            break

    status = str(raw.get("status") or job.get("status") or "").strip().lower()
    active = bool(raw.get("active")) or status in ACTIVE_JOB_STATUSES

    return UsageRecord(
        tool_id=str(tool_id),
        minutes=minutes,
        project=str(raw.get("project") or raw.get("projectName") or job.get("projectName") or job.get("project") or ""),
        job_id=str(raw.get("jobId") or job.get("jobId") or job.get("id") or ""),
        active=active,
        record_id=str(raw.get("recordId") or ""),
        position=position,
    )


def records_from_payload(payload: Any, source: str = "") -> List[UsageRecord]:
    """Turn one parsed job-log JSON document into usage records.

    Accepts a bare list of records, a job object with a 'tools' list, or an
    object with a 'jobs' list of such job objects. Each record remembers its
    position in the document ("<source>#<n>") for re-delivery detection.
    """
    if isinstance(payload, list):
        jobs = [{"tools": payload}]
    elif isinstance(payload, dict) and isinstance(payload.get("jobs"), list):
        jobs = [j for j in payload["jobs"] if isinstance(j, dict)]
    elif isinstance(payload, dict):
        jobs = [payload]
    else:
        return []

    records: List[UsageRecord] = []
    index = 0
    for job in jobs:
        for raw in job.get("tools") or job.get("records") or []:
            if not isinstance(raw, dict):
                continue
            record = _record_from_dict(raw, job, position=f"{source}#{index}")
            index += 1
            if record is not None:
                records.append(record)
    return records
