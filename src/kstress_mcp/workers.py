"""
Background worker tracking and the terminate-then-kill shutdown protocol.

Every load generator runs in its own session (process group) so a signal
reaches the tool and anything it forked. Spawning and registering happen
under the registry lock, so a worker is either visible to shutdown or never
started.
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
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from .errors import ShutdownTimeoutError, WorkerSpawnError

logger = logging.getLogger(__name__)

# Time allowed for the kernel to reap processes after SIGKILL
KILL_WAIT = 5.0


class WorkerCategory(str, Enum):
    MEMORY = "memory"
    FILE_CHURN = "file-churn"
    IO = "io"
    MONITOR = "monitor"
    CUSTOM = "custom"


@dataclass
class Worker:
    """A registered background process."""

    worker_id: int
    category: WorkerCategory
    process: Optional[Any]  # Popen-like: pid, poll(), send_signal(); None once released
    pid: int
    pgid: Optional[int]
    started_at: float
    name: str = ""
    artifact_path: Optional[Path] = None
    returncode: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "category": self.category.value,
            "name": self.name,
            "pid": self.pid,
            "pgid": self.pgid,
            "started_at": self.started_at,
            "artifact_path": str(self.artifact_path) if self.artifact_path else None,
            "returncode": self.returncode,
        }


@dataclass
class ShutdownReport:
    """Outcome of WorkerRegistry.shutdown()."""

    terminated: List[int] = field(default_factory=list)  # exited within the grace period
    killed: List[int] = field(default_factory=list)  # needed SIGKILL
    survivors: List[int] = field(default_factory=list)  # alive even after SIGKILL
    warnings: List[str] = field(default_factory=list)
    duration: float = 0.0

    @property
    def clean(self) -> bool:
        return not self.survivors and not self.warnings

    def to_dict(self) -> Dict[str, Any]:
        return {
            "terminated": self.terminated,
            "killed": self.killed,
            "survivors": self.survivors,
            "warnings": self.warnings,
            "duration": round(self.duration, 3),
        }


class WorkerRegistry:
    """Single source of truth for running workers."""

    def __init__(self, tracking_file: Optional[Path] = None, poll_interval: float = 0.05):
        """Initialize registry.

        Args:
            tracking_file: Optional JSON file recording live pids/pgids so a
                crashed run's workers can be reaped later
            poll_interval: Sleep between liveness polls in await_all()
        """
        self.tracking_file = Path(tracking_file) if tracking_file else None
        self.poll_interval = poll_interval
        self._lock = threading.RLock()
        self._workers: Dict[int, Worker] = {}
        self._next_id = 1
        self._closed = False
        self._cleanups: List[Tuple[Optional[WorkerCategory], Callable[[], None], str]] = []
        self._report: Optional[ShutdownReport] = None

    @property
    def closed(self) -> bool:
        return self._closed

    def spawn(
        self,
        category: WorkerCategory,
        cmd: List[str],
        artifact_path: Optional[Path] = None,
        name: str = "",
        output_path: Optional[Path] = None,
        cwd: Optional[Path] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> int:
        """Start a process in its own session and register it atomically.

        Args:
            category: Worker category
            cmd: Command line
            artifact_path: Where the tool writes its result artifact
            name: Human-readable worker name
            output_path: File receiving stdout and stderr (default: discarded)
            cwd: Working directory
            env: Environment (default: inherited)

        Returns:
            worker_id

        Raises:
            WorkerSpawnError: If the registry is shut down or the process cannot start
        """
        with self._lock:
            if self._closed:
                raise WorkerSpawnError("Worker registry is shutting down", category.value)

            output = None
            try:
                if output_path:
                    Path(output_path).parent.mkdir(parents=True, exist_ok=True)
                    output = open(output_path, "w")
                process = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=output or subprocess.DEVNULL,
                    stderr=subprocess.STDOUT,
                    cwd=str(cwd) if cwd else None,
                    env=env,
                    start_new_session=True,
                )
            except OSError as e:
                raise WorkerSpawnError(
                    f"Cannot start {name or cmd[0]}: {e}", category.value
                ) from e
            finally:
                # The child holds its own descriptor
                if output:
                    output.close()

            return self._register_locked(category, process, artifact_path, name or Path(cmd[0]).name)

    def register(
        self,
        category: WorkerCategory,
        handle: Any,
        artifact_path: Optional[Path] = None,
        name: str = "",
    ) -> int:
        """Record an already spawned process.

        Call immediately after spawning. If shutdown has begun the process is
        killed on the spot, since nothing else would ever stop it.

        Raises:
            WorkerSpawnError: If the registry is shut down
        """
        with self._lock:
            if self._closed:
                try:
                    handle.kill()
                except (OSError, AttributeError):
                    pass
                raise WorkerSpawnError("Worker registry is shutting down", category.value)
            return self._register_locked(category, handle, artifact_path, name)

    def _register_locked(
        self, category: WorkerCategory, handle: Any, artifact_path: Optional[Path], name: str
    ) -> int:
        try:
            pgid = os.getpgid(handle.pid)
        except (ProcessLookupError, OSError):
            pgid = None

        worker = Worker(
            worker_id=self._next_id,
            category=WorkerCategory(category),
            process=handle,
            pid=handle.pid,
            pgid=pgid,
            started_at=time.time(),
            name=name,
            artifact_path=Path(artifact_path) if artifact_path else None,
        )
        self._workers[worker.worker_id] = worker
        self._next_id += 1
        self._write_tracking()

        logger.info(f"✓ Started {worker.category.value} worker {name or worker.pid} (pid {worker.pid})")
        return worker.worker_id

    def get(self, worker_id: int) -> Optional[Worker]:
        return self._workers.get(worker_id)

    def workers(self, category: Optional[WorkerCategory] = None) -> List[Worker]:
        with self._lock:
            return [w for w in self._workers.values() if category is None or w.category == category]

    def is_alive(self, worker_id: int) -> bool:
        """Non-blocking liveness check; unknown or released workers are not alive."""
        worker = self._workers.get(worker_id)
        if worker is None or worker.process is None:
            return False
        returncode = worker.process.poll()
        if returncode is None:
            return True
        worker.returncode = returncode
        return False

    def alive(self, category: Optional[WorkerCategory] = None) -> Set[int]:
        return {w.worker_id for w in self.workers(category) if self.is_alive(w.worker_id)}

    def _signal(self, worker: Worker, sig: int) -> bool:
        try:
            if worker.pgid and worker.pgid != os.getpgrp():
                os.killpg(worker.pgid, sig)
            else:
                worker.process.send_signal(sig)
            return True
        except ProcessLookupError:
            return False
        except PermissionError as e:
            logger.warning(f"⚠ Cannot signal worker {worker.name or worker.pid}: {e}")
            return False

    def signal_all(
        self,
        sig: int,
        category: Optional[WorkerCategory] = None,
        worker_ids: Optional[Iterable[int]] = None,
    ) -> List[int]:
        """Send a signal to every matching live worker.

        Args:
            sig: Signal number
            category: Only workers of this category
            worker_ids: Only these workers

        Returns:
            ids of workers that were signalled
        """
        wanted = set(worker_ids) if worker_ids is not None else None
        signalled = []
        for worker in self.workers(category):
            if wanted is not None and worker.worker_id not in wanted:
                continue
            if not self.is_alive(worker.worker_id):
                continue
            if self._signal(worker, sig):
                signalled.append(worker.worker_id)
        return signalled

    def await_all(self, timeout: float, worker_ids: Optional[Iterable[int]] = None) -> Set[int]:
        """Wait until the workers exit or the timeout elapses.

        Returns:
            ids still alive when the timeout elapsed (empty if all exited)
        """
        ids = set(worker_ids) if worker_ids is not None else {w.worker_id for w in self.workers()}
        deadline = time.monotonic() + max(0.0, timeout)

        while True:
            alive = {worker_id for worker_id in ids if self.is_alive(worker_id)}
            remaining = deadline - time.monotonic()
            if not alive or remaining <= 0:
                return alive
            time.sleep(min(self.poll_interval, remaining))

    def add_cleanup(
        self,
        callback: Callable[[], None],
        category: Optional[WorkerCategory] = None,
        description: str = "",
    ) -> None:
        """Register a resource release to run after all workers are gone.

        A category-bound cleanup only runs if at least one worker of that
        category was registered.
        """
        with self._lock:
            self._cleanups.append((category, callback, description or getattr(callback, "__name__", "")))

    def shutdown(self, grace_period: float = 5.0) -> ShutdownReport:
        """SIGTERM everyone, wait grace_period, SIGKILL survivors, then run cleanups.

        Idempotent: later calls return the first report. Never raises.
        """
        with self._lock:
            if self._report is not None:
                return self._report
            self._closed = True
            targets = list(self._workers.values())
            cleanups = list(self._cleanups)

        start = time.monotonic()
        report = ShutdownReport()
        target_ids = {w.worker_id for w in targets}
        alive = {wid for wid in target_ids if self.is_alive(wid)}

        if alive:
            logger.info(f"Stopping {len(alive)} worker(s) with SIGTERM (grace period {grace_period}s)")
            self.signal_all(signal.SIGTERM, worker_ids=alive)
            survivors = self.await_all(grace_period, alive)
            report.terminated = sorted(alive - survivors)

            if survivors:
                timeout_error = ShutdownTimeoutError(survivors)
                logger.warning(f"⚠ {timeout_error}, escalating to SIGKILL")
                self.signal_all(signal.SIGKILL, worker_ids=survivors)
                remaining = self.await_all(KILL_WAIT, survivors)
                report.killed = sorted(survivors - remaining)
                report.survivors = sorted(remaining)
                for worker_id in report.survivors:
                    worker = self._workers[worker_id]
                    report.warnings.append(f"Worker {worker.name or worker.pid} (pid {worker.pid}) survived SIGKILL")

        used_categories = {w.category for w in targets}
        for category, callback, description in cleanups:
            if category is not None and category not in used_categories:
                continue
            try:
                callback()
            except Exception as e:
                report.warnings.append(f"Cleanup {description} failed: {e}")

        for worker in targets:
            if worker.worker_id in report.survivors or worker.process is None:
                continue
            worker.returncode = worker.process.poll()
            worker.process = None
        self._write_tracking()

        report.duration = time.monotonic() - start
        for warning in report.warnings:
            logger.warning(f"⚠ {warning}")
        if report.survivors:
            logger.error(f"✗ {len(report.survivors)} worker(s) could not be stopped")
        else:
            logger.info(
                f"✓ All workers stopped ({len(report.terminated)} terminated, "
                f"{len(report.killed)} killed) in {report.duration:.1f}s"
            )

        with self._lock:
            self._report = report
        return report

    def _write_tracking(self) -> None:
        if not self.tracking_file:
            return

        tracking_data = {
            str(w.pid): {
                "pid": w.pid,
                "pgid": w.pgid,
                "category": w.category.value,
                "name": w.name,
                "owner_pid": os.getpid(),
                "started_at": w.started_at,
                "artifact_path": str(w.artifact_path) if w.artifact_path else None,
            }
            for w in self._workers.values()
            if w.process is not None
        }

        try:
            if tracking_data:
                self.tracking_file.parent.mkdir(parents=True, exist_ok=True)
                with open(self.tracking_file, "w") as f:
                    json.dump(tracking_data, f, indent=2)
            elif self.tracking_file.exists():
                self.tracking_file.unlink()
        except OSError as e:
            logger.warning(f"Failed to update worker tracking file {self.tracking_file}: {e}")


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)  # Signal 0 checks if process exists
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True


def reap_orphaned_workers(
    tracking_file: Path, grace_period: float = 5.0, force: bool = False
) -> Dict[str, List[int]]:
    """Stop workers left behind by a run that died without shutting down.

    Entries whose owning process is still alive are skipped unless force is set,
    so an active run in another process is left alone.

    Args:
        tracking_file: workers.json written by a WorkerRegistry
        grace_period: Seconds between SIGTERM and SIGKILL
        force: Also stop workers whose owner is still running

    Returns:
        {"terminated": [...], "killed": [...], "already_dead": [...], "skipped": [...]}
    """
    result: Dict[str, List[int]] = {"terminated": [], "killed": [], "already_dead": [], "skipped": []}
    tracking_file = Path(tracking_file)

    if not tracking_file.exists():
        return result

    try:
        with open(tracking_file, "r") as f:
            tracking_data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Cannot read worker tracking file {tracking_file}: {e}")
        return result

    targets: Dict[int, int] = {}
    kept = {}
    for pid_str, info in tracking_data.items():
        try:
            pid = int(pid_str)
        except ValueError:
            continue
        owner = info.get("owner_pid")
        if not force and owner and owner != os.getpid() and _pid_alive(owner):
            result["skipped"].append(pid)
            kept[pid_str] = info
            continue
        if not _pid_alive(pid):
            result["already_dead"].append(pid)
            continue
        pgid = info.get("pgid")
        try:
            current_pgid = os.getpgid(pid)
        except ProcessLookupError:
            result["already_dead"].append(pid)
            continue
        if pgid and current_pgid != pgid:
            # pid was reused by an unrelated process
            result["already_dead"].append(pid)
            continue
        targets[pid] = current_pgid

    def _send(pid: int, pgid: int, sig: int) -> None:
        try:
            if pgid == pid:
                os.killpg(pgid, sig)
            else:
                os.kill(pid, sig)
        except ProcessLookupError:
            pass

    for pid, pgid in targets.items():
        _send(pid, pgid, signal.SIGTERM)

    deadline = time.monotonic() + grace_period
    pending = set(targets)
    while pending and time.monotonic() < deadline:
        pending = {pid for pid in pending if _pid_alive(pid)}
        if pending:
            time.sleep(0.1)

    for pid in targets:
        if pid in pending:
            _send(pid, targets[pid], signal.SIGKILL)
            result["killed"].append(pid)
            logger.info(f"Killed orphaned worker {pid}")
        else:
            result["terminated"].append(pid)
            logger.info(f"Terminated orphaned worker {pid}")

    try:
        if kept:
            with open(tracking_file, "w") as f:
                json.dump(kept, f, indent=2)
        else:
            tracking_file.unlink()
    except OSError as e:
        logger.warning(f"Failed to update worker tracking file {tracking_file}: {e}")

    return result
