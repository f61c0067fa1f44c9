"""
Pytest configuration and fixtures for the tool manager tests
"""
import json
import threading

import pytest

from code_normalizer import MatrixDefinitions
from feed_sources import InventorySnapshotSource, UsageFeedSource
from tool_registry import ToolRegistry

INVENTORY_ROWS = [
    {"toolCode": "RT-8400300", "quantity": 10},
    {"toolCode": "RT-8201300", "quantity": 4},
    {"toolCode": "RT-X7620300", "quantity": 20},
    {"toolCode": "RT-15250391", "quantity": 2},
    {"toolCode": "RT-9999123", "quantity": 5},
]

JOB_COMPLETED = {
    "projectName": "P-100",
    "jobId": "J1",
    "status": "completed",
    "tools": [
        {"id": "FRA-P8201-S15.2R0_H100W16L100X", "usageMinutes": 45},
        {"id": "FRA-P8400-S3R0_H80", "usageMinutes": 30},
        {"id": "NOFAMILY-TOOL", "usageMinutes": 10},
    ],
}

JOB_RUNNING = {
    "projectName": "P-200",
    "jobId": "J2",
    "status": "in_progress",
    "tools": [
        {"id": "FRA-P8400-S3R0_H80", "usageMinutes": 15},
        {"id": "FRA-P7620-X3R0", "usageMinutes": 0},
    ],
}


def write_json(path, payload):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


@pytest.fixture
def definitions():
    return MatrixDefinitions.builtin()


@pytest.fixture
def registry(definitions):
    return ToolRegistry(definitions=definitions)


@pytest.fixture
def inventory_file(tmp_path):
    return write_json(tmp_path / "results" / "excel_processing_result.json", {"toolInventory": INVENTORY_ROWS})


@pytest.fixture
def usage_dir(tmp_path):
    jobs = tmp_path / "results" / "jobs"
    write_json(jobs / "job_1.json", JOB_COMPLETED)
    write_json(jobs / "job_2.json", JOB_RUNNING)
    return jobs


@pytest.fixture
def inventory_source(inventory_file):
    return InventorySnapshotSource(inventory_file)


@pytest.fixture
def usage_source(usage_dir):
    return UsageFeedSource(usage_dir)


class GatedInventorySource:
    """Inventory source whose first read blocks until released"""

    name = "inventory"

    def __init__(self, rows):
        self.rows = list(rows)
        self.entered = threading.Event()
        self.release = threading.Event()
        self.reads = 0

    def read(self):
        self.reads += 1
        if self.reads == 1:
            self.entered.set()
            self.release.wait(5)
        return list(self.rows)

    def fingerprint(self):
        return ("gated",)


@pytest.fixture
def gated_inventory():
    return GatedInventorySource(INVENTORY_ROWS)
