"""
BSC Payments - Scan Scheduler
Runs reconciliation cycles on a fixed interval in a background thread.

A random start-up delay (bounded by `jitter`) keeps several instances from
hitting the RPC endpoint in lockstep. trigger() runs a cycle synchronously
for on-demand scans. stop() lets the running cycle finish its current order.
"""

import random
import signal
import logging
import threading

from . import config

logger = logging.getLogger(__name__)


class ScanScheduler:

    def __init__(self, scanner, interval=None, jitter=None):
        self.scanner = scanner
        self.interval = config.SCAN_INTERVAL_SECONDS if interval is None else interval
        self.jitter = config.SCAN_JITTER_SECONDS if jitter is None else jitter
        self._stop = threading.Event()
        self._thread = None
        self.cycles_run = 0
        self.consecutive_failures = 0
        self.last_report = None

    @property
    def running(self):
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        """Start the background loop (no-op if already running)."""
        if self.running:
            return self._thread
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="payments-scan", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout=None):
        """Ask the loop to stop and wait for it."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        return not self.running

    def trigger(self):
        """
        Run one cycle now, in the caller's thread. No RPC readiness wait here:
        an unreachable node makes run_cycle abort after one timed-out call.
        """
        return self._run_once(wait_for_rpc=False)

    def run_forever(self):
        """Foreground loop. Ctrl-C / SIGTERM to stop."""
        def handle_signal(sig, frame):
            logger.info("Stopping scan scheduler...")
            self._stop.set()

        signal.signal(signal.SIGINT, handle_signal)
        signal.signal(signal.SIGTERM, handle_signal)
        logger.info("Scan scheduler: every %.0fs (start-up jitter <= %.0fs) - Ctrl-C to stop",
                    self.interval, self.jitter)
        self._loop()
        logger.info("Scan scheduler stopped.")

    def _loop(self):
        delay = random.uniform(0, self.jitter) if self.jitter > 0 else 0
        if delay and self._stop.wait(delay):
            return
        while not self._stop.is_set():
            self._run_once()
            if self._stop.wait(self.interval):
                break

    def _run_once(self, wait_for_rpc=True):
        client = self.scanner.client
        if wait_for_rpc and not client.healthy and not client.wait_until_ready():
            self.consecutive_failures += 1
            self.last_report = {"ok": False, "error": "RPC endpoint unreachable", "skipped": True}
            logger.error("Skipping scan cycle: RPC endpoint unreachable (%d failed cycles in a row)",
                         self.consecutive_failures)
            return self.last_report

        try:
            report = self.scanner.run_cycle(should_stop=self._stop.is_set)
        except Exception as e:
            # the loop must survive store or programming errors; next tick retries
            logger.exception("Scan cycle crashed")
            report = {"ok": False, "error": str(e)}

        self.cycles_run += 1
        self.consecutive_failures = 0 if report.get("ok") else self.consecutive_failures + 1
        self.last_report = report
        return report

    def health(self):
        summary = None
        if self.last_report is not None:
            summary = {k: v for k, v in self.last_report.items() if k != "orders"}
        return {
            "running": self.running,
            "interval_seconds": self.interval,
            "cycles_run": self.cycles_run,
            "consecutive_failures": self.consecutive_failures,
            "last_report": summary,
        }
