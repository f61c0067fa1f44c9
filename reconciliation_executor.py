#!/usr/bin/env python3
"""
Reconciliation Executor
Runs reconciliation cycles (inventory snapshot + usage feed -> registry) on
explicit requests and on source file changes.

At most one cycle runs at a time. Requests that arrive while a cycle is
running set a single pending flag, and the run loop performs exactly one
follow-up cycle for all of them.
"""

import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from feed_sources import SourceUnavailable
from usage_aggregator import aggregate


@dataclass
class CycleReport:
    cycle: int
    ok: bool = False
    started_at: str = ""
    finished_at: str = ""
    duration_seconds: float = 0.0
    inventory_rows: int = 0
    usage_records: int = 0
    tools: int = 0
    created: int = 0
    new_events: int = 0
    in_use: int = 0
    diagnostics: Dict[str, int] = field(default_factory=dict)
    error: str = ""
    persist_error: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class Executor:
    """Owns the reconciliation run loop and the source watcher"""

    def __init__(self, registry, inventory_source, usage_source, store=None,
                 poll_seconds: float = 2.0,
                 on_cycle: Optional[Callable[[CycleReport], None]] = None):
        self.registry = registry
        self.inventory_source = inventory_source
        self.usage_source = usage_source
        self.store = store
        self.poll_seconds = max(0.05, float(poll_seconds))
        self.on_cycle = on_cycle

        self._cond = threading.Condition()
        self._loop_active = False
        self._pending = False
        self._cycles_started = 0
        self._cycles_completed = 0
        self.last_report: Optional[CycleReport] = None

        self._watch_stop = threading.Event()
        self._watch_thread: Optional[threading.Thread] = None
        self._fingerprints = None

    # ------------------------------------------------------------------
    # Cycle scheduling
    # ------------------------------------------------------------------

    @property
    def cycle_running(self) -> bool:
        with self._cond:
            return self._loop_active

    @property
    def cycles_completed(self) -> int:
        with self._cond:
            return self._cycles_completed

    @property
    def watching(self) -> bool:
        return bool(self._watch_thread and self._watch_thread.is_alive())

    def trigger(self) -> bool:
        """Request a cycle.

        Returns False when a cycle is already running (the request is folded
        into the single pending follow-up). Otherwise runs the loop in the
        calling thread and returns True.
        """
        with self._cond:
            self._pending = True
            if self._loop_active:
                logging.debug("Reconciliation already running - trigger coalesced")
                return False
            self._loop_active = True
        self._run_loop()
        return True

    def process_files(self) -> CycleReport:
        """Run a cycle and return once the registry reflects it."""
        with self._cond:
            self._pending = True
            wanted = self._cycles_started + 1
            if self._loop_active:
                while self._cycles_completed < wanted:
                    self._cond.wait()
                return self.last_report
            self._loop_active = True
        self._run_loop()
        return self.last_report

    def _run_loop(self) -> None:
        finished = False
        try:
            while True:
                with self._cond:
                    if not self._pending:
                        self._loop_active = False
                        self._cond.notify_all()
                        finished = True
                        return
                    self._pending = False
                    self._cycles_started += 1
                    cycle = self._cycles_started

                report = self._run_cycle(cycle)

                with self._cond:
                    self._cycles_completed = cycle
                    self.last_report = report
                    self._cond.notify_all()
                self._notify(report)
        finally:
            if not finished:
                with self._cond:
                    self._loop_active = False
                    self._cycles_completed = self._cycles_started
                    self._cond.notify_all()

    def _run_cycle(self, cycle: int) -> CycleReport:
        t0 = time.time()
        report = CycleReport(cycle=cycle, started_at=datetime.now().isoformat(timespec="seconds"))
        logging.info(f"🔄 Reconciliation cycle {cycle} started")
        try:
            rows = self.inventory_source.read()
            records = self.usage_source.read()
            report.inventory_rows = len(rows)
            report.usage_records = len(records)

            aggregation = aggregate(records)
            report.diagnostics = aggregation.diagnostics()

            summary = self.registry.reconcile(rows, aggregation, records)
            report.tools = summary["tools"]
            report.created = summary["created"]
            report.new_events = summary["new_events"]
            report.in_use = summary["in_use"]
            report.ok = True

            if aggregation.dropped:
                logging.info(
                    f"🧾 Cycle {cycle}: skipped {aggregation.dropped_unattributed} unattributable and "
                    f"{aggregation.dropped_non_positive} non-positive usage record(s)"
                )

            if self.store is not None:
                try:
                    self.store.save_registry(self.registry)
                except Exception as e:
                    report.persist_error = str(e)
                    logging.error(f"❌ Failed to persist registry after cycle {cycle}: {e}")

            logging.info(
                f"✅ Cycle {cycle} complete: {report.tools} tools, {report.created} new, "
                f"{report.new_events} usage event(s), {report.in_use} in use"
            )
        except SourceUnavailable as e:
            report.error = str(e)
            logging.warning(f"⚠️ Cycle {cycle} aborted, previous registry snapshot kept: {e}")
        except Exception as e:
            report.error = str(e)
            logging.error(f"❌ Cycle {cycle} failed, previous registry snapshot kept: {e}", exc_info=True)
        finally:
            report.duration_seconds = round(time.time() - t0, 3)
            report.finished_at = datetime.now().isoformat(timespec="seconds")
        return report

    def _notify(self, report: CycleReport) -> None:
        if not self.on_cycle:
            return
        try:
            self.on_cycle(report)
        except Exception as e:
            logging.warning(f"Cycle completion callback failed: {e}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _read_fingerprints(self):
        return (self.inventory_source.fingerprint(), self.usage_source.fingerprint())

    def _watch_loop(self):
        """Poll source fingerprints and trigger a cycle on change."""
        while not self._watch_stop.wait(self.poll_seconds):
            try:
                fingerprints = self._read_fingerprints()
                if fingerprints != self._fingerprints:
                    self._fingerprints = fingerprints
                    logging.info("📂 Source change detected - triggering reconciliation")
                    self.trigger()
            except Exception as e:
                logging.debug(f"Source watch loop error: {e}")

    def start(self) -> CycleReport:
        """Run one cycle now, then watch the sources for changes."""
        if self.watching:
            logging.info("Executor already watching sources")
            return self.last_report

        logging.info("🚀 Starting reconciliation executor...")
        # Fingerprint before the first cycle so edits made during it still trigger.
        try:
            self._fingerprints = self._read_fingerprints()
        except Exception as e:
            logging.debug(f"Initial fingerprint failed: {e}")
            self._fingerprints = None

        report = self.process_files()

        self._watch_stop.clear()
        t = threading.Thread(target=self._watch_loop, name="tool-source-watch", daemon=True)
        t.start()
        self._watch_thread = t
        logging.info(f"👀 Watching sources every {self.poll_seconds:g}s")
        return report

    def stop(self) -> None:
        """Stop watching; any in-flight cycle is allowed to finish."""
        logging.info("🛑 Stopping reconciliation executor...")
        self._watch_stop.set()
        t = self._watch_thread
        if t and t.is_alive() and t is not threading.current_thread():
            t.join()
        self._watch_thread = None

        if threading.current_thread() is not t:
            with self._cond:
                while self._loop_active:
                    self._cond.wait()
        logging.info("✅ Reconciliation executor stopped")

    def status(self) -> Dict[str, Any]:
        with self._cond:
            return {
                "watching": self.watching,
                "cycleRunning": self._loop_active,
                "pending": self._pending,
                "cyclesStarted": self._cycles_started,
                "cyclesCompleted": self._cycles_completed,
                "lastCycle": self.last_report.to_dict() if self.last_report else None,
            }
