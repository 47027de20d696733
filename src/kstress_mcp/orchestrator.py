"""
Stress run orchestration.

    SETUP -> RUNNING -> FINALIZING -> DONE

FINALIZING is entered exactly once per run, from any state, whether the run
timed out, was interrupted or failed. Signal handlers only raise a flag; all
teardown happens on the coordinating thread.
"""

import json
import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from .churn import remove_churn_files
from .classifier import DEFAULT_RULES, EventRule
from .config import RunConfig, check_test_dir_safety
from .errors import ConfigError, FaultInjectionError, WorkerSpawnError
from .fault_device import FaultDevice, VirtualBlockDeviceBuilder
from .loadgen import WorkerSpec, launch, plan_workers
from .monitor import KernelLogMonitor, LogSource, default_log_source
from .workers import ShutdownReport, WorkerCategory, WorkerRegistry

logger = logging.getLogger(__name__)

# Longest the coordinator sleeps before re-checking the interrupt flag
WAIT_SLICE = 0.2


class RunState(Enum):
    SETUP = "setup"
    RUNNING = "running"
    FINALIZING = "finalizing"
    DONE = "done"


@dataclass
class RunResult:
    """Final state of a run, handed to whatever renders the report."""

    state: RunState
    started_at: float
    finished_at: float
    elapsed: float
    interrupted: bool = False
    degraded_reasons: List[str] = field(default_factory=list)
    fault_injection_active: bool = False
    fault_injection_error: Optional[str] = None
    fault_device: Optional[Dict[str, Any]] = None
    event_counts: Dict[str, int] = field(default_factory=dict)
    events: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    monitor_stats: Dict[str, int] = field(default_factory=dict)
    workers: List[Dict[str, Any]] = field(default_factory=list)
    shutdown: Optional[Dict[str, Any]] = None
    teardown_warnings: List[str] = field(default_factory=list)
    artifacts: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None
    result_path: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return bool(self.degraded_reasons)

    def summary(self) -> str:
        """One-line status."""
        if self.error:
            status = f"✗ Run aborted: {self.error}"
        elif self.interrupted:
            status = f"⚠ Run interrupted after {self.elapsed:.1f}s"
        else:
            status = f"✓ Run completed in {self.elapsed:.1f}s"

        parts = [status]
        if self.degraded:
            parts.append(f"degraded ({'; '.join(self.degraded_reasons)})")
        parts.append(f"fault injection {'active' if self.fault_injection_active else 'off'}")

        hits = {category: count for category, count in self.event_counts.items() if count}
        if hits:
            parts.append("events: " + ", ".join(f"{k}={v}" for k, v in sorted(hits.items())))
        else:
            parts.append("no kernel events")
        return " | ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "state": self.state.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "elapsed": round(self.elapsed, 3),
            "interrupted": self.interrupted,
            "degraded": self.degraded,
            "degraded_reasons": self.degraded_reasons,
            "fault_injection_active": self.fault_injection_active,
            "fault_injection_error": self.fault_injection_error,
            "fault_device": self.fault_device,
            "event_counts": self.event_counts,
            "events": self.events,
            "monitor_stats": self.monitor_stats,
            "workers": self.workers,
            "shutdown": self.shutdown,
            "teardown_warnings": self.teardown_warnings,
            "artifacts": self.artifacts,
            "error": self.error,
            "summary": self.summary(),
        }


Planner = Callable[[RunConfig, Optional[str]], List[WorkerSpec]]
Launcher = Callable[[WorkerRegistry, WorkerSpec], int]


def has_root_privilege() -> bool:
    """True if running as root or passwordless sudo works."""
    if os.geteuid() == 0:
        return True
    try:
        result = subprocess.run(["sudo", "-n", "true"], capture_output=True, timeout=10)
        return result.returncode == 0
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return False


class StressOrchestrator:
    """Runs one stress test from setup to teardown."""

    def __init__(
        self,
        config: RunConfig,
        planner: Planner = plan_workers,
        launcher: Launcher = launch,
        log_source: Optional[LogSource] = None,
        builder_factory: Callable[..., VirtualBlockDeviceBuilder] = VirtualBlockDeviceBuilder,
        privilege_check: Callable[[], bool] = has_root_privilege,
        rules: Sequence[EventRule] = DEFAULT_RULES,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        """Initialize orchestrator.

        Args:
            config: Run configuration (validated during setup)
            planner: Builds the worker specs for a config and I/O target
            launcher: Starts one spec through the registry
            log_source: Kernel log source (default: file if configured, else dmesg)
            builder_factory: Creates the fault device builder from the fault config
            privilege_check: Returns True if fault injection may be attempted
            rules: Event rules for the kernel log monitor
            monotonic: Clock used for the run deadline
        """
        self.config = config
        self.planner = planner
        self.launcher = launcher
        self.log_source = log_source
        self.builder_factory = builder_factory
        self.privilege_check = privilege_check
        self.rules = tuple(rules)
        self.monotonic = monotonic

        self.state = RunState.SETUP
        self.registry = WorkerRegistry(tracking_file=config.log_dir / "workers.json")
        self.monitor: Optional[KernelLogMonitor] = None
        self.builder: Optional[VirtualBlockDeviceBuilder] = None
        self.fault_device: Optional[FaultDevice] = None
        self.fault_injection_error: Optional[str] = None
        self.degraded_reasons: List[str] = []
        self.failed_categories: Set[str] = set()
        self.result: Optional[RunResult] = None

        self._interrupted = False
        self._wake = threading.Event()
        self._finalize_lock = threading.Lock()
        self._finalized = False
        self._done = threading.Event()
        self._run_thread: Optional[threading.Thread] = None
        self._started_at = 0.0
        self._start_mono = 0.0
        self._running_since = 0.0
        self._error: Optional[str] = None
        self._previous_handlers: Dict[int, Any] = {}

    @property
    def interrupted(self) -> bool:
        return self._interrupted

    @property
    def capture_path(self) -> Path:
        return self.config.log_dir / "kernel" / "dmesg_live.log"

    def interrupt(self) -> None:
        """Request an early stop. Safe to call repeatedly and from any thread."""
        self._interrupted = True
        self._wake.set()

    def _on_signal(self, signum: int, _frame: object) -> None:
        # Only set the flag: the coordinator polls it between WAIT_SLICE sleeps
        self._interrupted = True

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for signum in (signal.SIGINT, signal.SIGTERM):
            self._previous_handlers[signum] = signal.signal(signum, self._on_signal)

    def _restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

    def run(self, install_signal_handlers: bool = True) -> RunResult:
        """Execute the whole run.

        Returns:
            RunResult (also available as self.result)

        Raises:
            ConfigError: If the configuration is invalid or directories cannot
                be prepared; finalization has already run when this propagates
        """
        with self._finalize_lock:
            if self._finalized:
                logger.warning("⚠ Run already finalized, not starting")
                return self.result
            self._run_thread = threading.current_thread()

        self._started_at = time.time()
        self._start_mono = self.monotonic()
        if install_signal_handlers:
            self._install_signal_handlers()

        try:
            self._setup()
            if not self._interrupted:
                self._start()
                self._wait()
        except ConfigError as e:
            self._error = str(e)
            logger.error(f"✗ Configuration error: {e}")
            raise
        except Exception as e:
            self._error = f"{type(e).__name__}: {e}"
            logger.error(f"✗ Run failed: {e}", exc_info=True)
            raise
        finally:
            self.finalize()
            self._restore_signal_handlers()

        return self.result

    # SETUP

    def _setup(self) -> None:
        config = self.config
        config.validate()

        for warning in check_test_dir_safety(config.test_dir):
            logger.warning(f"⚠ {warning}")

        try:
            (config.log_dir / "kernel").mkdir(parents=True, exist_ok=True)
            config.test_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigError(f"Cannot prepare run directories: {e}") from e

        self._clean_churn_files()
        self._clean_io_files()

        if config.fault.enabled:
            self._setup_fault_device()

        logger.info(f"✓ Setup complete (log directory: {config.log_dir})")

    def _setup_fault_device(self) -> None:
        if not self.privilege_check():
            self.fault_injection_error = "root or passwordless sudo required"
            logger.warning("⚠ Fault injection requested but not permitted, continuing without it")
            return

        self.builder = self.builder_factory(self.config.fault)
        try:
            self.fault_device = self.builder.build()
        except FaultInjectionError as e:
            self.fault_injection_error = str(e)
            self.fault_device = None
            logger.warning(f"⚠ Fault injection disabled: {e}")
            return

        logger.info(
            f"✓ Fault device ready: {self.fault_device.mapped_device} "
            f"(EIO at sectors {self.fault_device.error_start}-"
            f"{self.fault_device.error_start + self.fault_device.error_length})"
        )

    # RUNNING

    def _start(self) -> None:
        self.state = RunState.RUNNING
        # Fault device setup does not eat into the stress window
        self._running_since = self.monotonic()

        self.registry.add_cleanup(self._clean_churn_files, WorkerCategory.FILE_CHURN, "churn file removal")
        self.registry.add_cleanup(self._clean_io_files, WorkerCategory.IO, "fio file removal")

        io_target = self.fault_device.io_target() if self.fault_device else None
        for spec in self.planner(self.config, io_target):
            if self._interrupted:
                break
            if spec.category.value in self.failed_categories:
                continue
            try:
                self.launcher(self.registry, spec)
            except WorkerSpawnError as e:
                logger.error(f"✗ {spec.category.value} worker {spec.name} failed to start: {e}")
                self.failed_categories.add(spec.category.value)
                self.degraded_reasons.append(f"{spec.category.value}: {e}")

        source = self.log_source or default_log_source(self.config.kernel_log_path)
        self.monitor = KernelLogMonitor(
            source,
            rules=self.rules,
            interval=self.config.sample_interval,
            progress_every=self.config.progress_every,
            progress_sink=self._on_progress,
            detail_limit=self.config.detail_limit,
            capture_path=self.capture_path,
        )
        self.monitor.start()

        logger.info(
            f"Running for {self.config.duration}s with {len(self.registry.workers())} worker(s)"
        )

    def _wait(self) -> None:
        deadline = self._running_since + self.config.duration
        while not self._interrupted:
            remaining = deadline - self.monotonic()
            if remaining <= 0:
                return
            self._wake.wait(min(remaining, WAIT_SLICE))

        logger.info("Interrupt received, finalizing")

    def _on_progress(self, snapshot: Dict[str, int]) -> None:
        elapsed = self.monotonic() - self._start_mono
        hits = ", ".join(f"{k}={v}" for k, v in snapshot.items() if v) or "no events"
        logger.info(f"Progress {elapsed:.0f}s/{self.config.duration}s: {hits}")

        memory_workers = self.registry.workers(WorkerCategory.MEMORY)
        if memory_workers and not self.registry.alive(WorkerCategory.MEMORY):
            logger.warning("⚠ Memory pressure workers have exited, memory pressure may have ended early")

    # Cleanups

    def _clean_churn_files(self) -> None:
        removed = remove_churn_files(self.config.test_dir)
        if removed:
            logger.info(f"Removed {removed} churn file(s) from {self.config.test_dir}")

    def _clean_io_files(self) -> None:
        for path in Path(self.config.test_dir).glob("kstress_*"):
            try:
                path.unlink()
            except OSError as e:
                logger.debug(f"Cannot remove {path}: {e}")

    # FINALIZING

    def finalize(self) -> RunResult:
        """Stop workers, then the monitor, then release the fault device.

        Runs once; later or concurrent calls wait for and return the same result.
        A call from another thread while run() is still active only interrupts
        the run, so workers or a monitor started after this call are not leaked.
        """
        with self._finalize_lock:
            owner = self._run_thread
            delegate = (
                not self._finalized
                and owner is not None
                and owner is not threading.current_thread()
            )

        if delegate:
            logger.info("Run still active on another thread, interrupting and waiting for it")
            self.interrupt()
            self._done.wait()
            return self.result

        with self._finalize_lock:
            if self._finalized:
                return self.result
            self._finalized = True
            try:
                return self._finalize_locked()
            finally:
                self._done.set()

    def _finalize_locked(self) -> RunResult:
        self.state = RunState.FINALIZING
        self._wake.set()
        warnings: List[str] = []

        shutdown_report: Optional[ShutdownReport] = None
        try:
            shutdown_report = self.registry.shutdown(self.config.grace_period)
        except Exception as e:
            warnings.append(f"Worker shutdown failed: {e}")

        if self.monitor is not None:
            try:
                self.monitor.stop()
            except Exception as e:
                warnings.append(f"Monitor stop failed: {e}")

        if self.builder is not None:
            try:
                warnings.extend(self.builder.teardown())
            except Exception as e:
                warnings.append(f"Fault device teardown failed: {e}")

        self.state = RunState.DONE
        self.result = self._build_result(shutdown_report, warnings)
        self._save_result(self.result)

        logger.info(self.result.summary())
        return self.result

    def _build_result(self, shutdown_report: Optional[ShutdownReport], warnings: List[str]) -> RunResult:
        artifacts: Dict[str, str] = {}
        for worker in self.registry.workers():
            if worker.artifact_path:
                artifacts[worker.name or f"worker-{worker.worker_id}"] = str(worker.artifact_path)
        if self.monitor is not None and self.capture_path.exists():
            artifacts["kernel_log"] = str(self.capture_path)

        counters = self.monitor.counters if self.monitor else None
        device_info = None
        if self.builder is not None:
            device_info = self.builder.device.to_dict()

        return RunResult(
            state=self.state,
            started_at=self._started_at,
            finished_at=time.time(),
            elapsed=self.monotonic() - self._start_mono,
            interrupted=self._interrupted,
            degraded_reasons=list(self.degraded_reasons),
            fault_injection_active=self.fault_device is not None,
            fault_injection_error=self.fault_injection_error,
            fault_device=device_info,
            event_counts=counters.snapshot() if counters else {},
            events=counters.to_dict() if counters else {},
            monitor_stats=self.monitor.stats() if self.monitor else {},
            workers=[w.to_dict() for w in self.registry.workers()],
            shutdown=shutdown_report.to_dict() if shutdown_report else None,
            teardown_warnings=warnings,
            artifacts=artifacts,
            error=self._error,
        )

    def _save_result(self, result: RunResult) -> None:
        timestamp = time.strftime("%Y%m%d-%H%M%S", time.localtime(result.started_at or time.time()))
        path = self.config.log_dir / f"run-result-{timestamp}.json"
        try:
            self.config.log_dir.mkdir(parents=True, exist_ok=True)
            result.result_path = str(path)
            result.artifacts["run_result"] = str(path)
            with open(path, "w") as f:
                json.dump(result.to_dict(), f, indent=2)
        except OSError as e:
            result.result_path = None
            result.artifacts.pop("run_result", None)
            logger.warning(f"Failed to save run result to {path}: {e}")
