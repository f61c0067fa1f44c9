"""Tests for the reconciliation executor: cycles, coalescing and watching."""

import os
import threading
import time

from conftest import INVENTORY_ROWS, write_json
from reconciliation_executor import Executor
from registry_store import RegistryStore
from tool_registry import STATE_IN_USE, ToolRegistry


def _wait_for(predicate, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestCycles:

    def test_process_files_populates_registry(self, registry, inventory_source, usage_source):
        executor = Executor(registry, inventory_source, usage_source)
        report = executor.process_files()

        assert report.ok
        assert report.cycle == 1
        assert report.tools == len(INVENTORY_ROWS)
        assert report.usage_records == 5
        assert report.diagnostics["dropped_unattributed"] == 1
        assert report.diagnostics["dropped_non_positive"] == 1
        assert registry.get_by_id("RT-8400300").tool_state == STATE_IN_USE
        assert registry.get_by_id("RT-8400300").usage_minutes == 45.0

    def test_repeated_cycles_are_idempotent(self, registry, inventory_source, usage_source):
        executor = Executor(registry, inventory_source, usage_source)
        executor.process_files()
        before = registry.get_by_id("RT-8400300").to_dict()
        report = executor.process_files()
        after = registry.get_by_id("RT-8400300").to_dict()

        assert report.cycle == 2
        assert report.new_events == 0
        assert after["usageMinutes"] == before["usageMinutes"]
        assert after["usageHistory"] == before["usageHistory"]

    def test_missing_inventory_keeps_previous_snapshot(self, registry, inventory_file, inventory_source, usage_source):
        executor = Executor(registry, inventory_source, usage_source)
        executor.process_files()
        version = registry.version

        inventory_file.unlink()
        report = executor.process_files()

        assert not report.ok
        assert "inventory" in report.error
        assert registry.version == version
        assert len(registry) == len(INVENTORY_ROWS)

    def test_corrupt_usage_file_keeps_previous_snapshot(self, registry, usage_dir, inventory_source, usage_source):
        executor = Executor(registry, inventory_source, usage_source)
        executor.process_files()
        minutes = registry.get_by_id("RT-8201300").usage_minutes

        (usage_dir / "job_3.json").write_text('{"jobId": "J3", "tools": [', encoding="utf-8")
        report = executor.process_files()

        assert not report.ok
        assert registry.get_by_id("RT-8201300").usage_minutes == minutes

    def test_unexpected_error_is_reported(self, registry, usage_source):
        class Exploding:
            def read(self):
                raise RuntimeError("boom")

            def fingerprint(self):
                return ()

        report = Executor(registry, Exploding(), usage_source).process_files()
        assert not report.ok
        assert report.error == "boom"
        assert len(registry) == 0

    def test_callback_errors_do_not_fail_the_cycle(self, registry, inventory_source, usage_source):
        seen = []

        def on_cycle(report):
            seen.append(report.cycle)
            raise RuntimeError("callback broke")

        executor = Executor(registry, inventory_source, usage_source, on_cycle=on_cycle)
        assert executor.process_files().ok
        assert seen == [1]


class TestCoalescing:

    def test_triggers_during_a_cycle_fold_into_one(self, registry, gated_inventory, usage_source):
        executor = Executor(registry, gated_inventory, usage_source)
        first = threading.Thread(target=executor.trigger)
        first.start()
        assert gated_inventory.entered.wait(5)

        assert executor.trigger() is False
        assert executor.trigger() is False
        assert executor.status()["pending"] is True

        gated_inventory.release.set()
        first.join(5)

        assert executor.cycles_completed == 2
        assert gated_inventory.reads == 2
        assert not executor.cycle_running

    def test_process_files_waits_for_follow_up_cycle(self, registry, gated_inventory, usage_source):
        executor = Executor(registry, gated_inventory, usage_source)
        first = threading.Thread(target=executor.trigger)
        first.start()
        assert gated_inventory.entered.wait(5)

        result = {}
        waiter = threading.Thread(target=lambda: result.setdefault("report", executor.process_files()))
        waiter.start()
        assert _wait_for(lambda: executor.status()["pending"])

        gated_inventory.release.set()
        waiter.join(5)
        first.join(5)

        assert result["report"].cycle == 2
        assert result["report"].ok
        assert len(registry) == len(INVENTORY_ROWS)


class TestWatching:

    def test_source_change_triggers_cycle(self, registry, inventory_file, inventory_source, usage_source):
        executor = Executor(registry, inventory_source, usage_source, poll_seconds=0.05)
        report = executor.start()
        try:
            assert report.ok
            assert executor.watching

            write_json(inventory_file, {"toolInventory": [{"toolCode": "RT-8400300", "quantity": 30}]})
            future = time.time() + 10
            os.utime(inventory_file, (future, future))

            assert _wait_for(lambda: registry.get_by_id("RT-8400300").in_pool == 30)
            assert executor.cycles_completed >= 2
        finally:
            executor.stop()

        assert not executor.watching
        assert executor.status()["cycleRunning"] is False

    def test_start_twice_does_not_spawn_second_watcher(self, registry, inventory_source, usage_source):
        executor = Executor(registry, inventory_source, usage_source, poll_seconds=0.05)
        executor.start()
        try:
            thread = executor._watch_thread
            executor.start()
            assert executor._watch_thread is thread
            assert executor.cycles_completed == 1
        finally:
            executor.stop()


class TestPersistence:

    def test_cycle_persists_registry(self, tmp_path, definitions, registry, inventory_source, usage_source):
        store = RegistryStore(tmp_path / "tool_manager.db")
        Executor(registry, inventory_source, usage_source, store=store).process_files()

        restored = ToolRegistry(definitions=definitions)
        assert store.load_registry(restored) == len(INVENTORY_ROWS)
        tool = restored.get_by_id("RT-8400300")
        assert tool.usage_minutes == 45.0
        assert len(tool.usage_history) == 2
        assert tool.tool_state == STATE_IN_USE

    def test_persist_failure_keeps_cycle_ok(self, registry, inventory_source, usage_source):
        class BrokenStore:
            def save_registry(self, registry):
                raise OSError("disk full")

        report = Executor(registry, inventory_source, usage_source, store=BrokenStore()).process_files()
        assert report.ok
        assert report.persist_error == "disk full"
