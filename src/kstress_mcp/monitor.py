"""
Kernel log monitoring - log sources, periodic ticker, event counters.

The monitor samples a growing kernel log on a fixed cadence and only counts
lines appended after it started. Counters are written by the sampling thread
alone and are frozen once the monitor stops.
"""

import logging
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Deque, Dict, Iterable, List, Optional, Sequence, Tuple

from .classifier import DEFAULT_RULES, EventRule, classify_with_details, rule_categories
from .errors import MonitorReadError

logger = logging.getLogger(__name__)

ProgressSink = Callable[[Dict[str, int]], None]


@dataclass
class ReadResult:
    """New lines since the previous read."""

    lines: List[str] = field(default_factory=list)
    truncated: bool = False  # Log shrank; cursor was reset to the new end


class LogSource:
    """Append-only, possibly rotating text stream."""

    name = "log"

    def baseline(self) -> None:
        """Move the cursor to the current end of the log."""
        raise NotImplementedError

    def read_new(self) -> ReadResult:
        """Return lines appended since the cursor and advance it.

        Raises:
            MonitorReadError: If the log cannot be read right now
        """
        raise NotImplementedError


class FileLogSource(LogSource):
    """Kernel log exposed as a regular file (e.g. /var/log/kern.log).

    The cursor is a byte offset. A trailing line without a newline is held
    back until it is completed.
    """

    def __init__(self, path: Path, encoding: str = "utf-8"):
        self.path = Path(path)
        self.name = str(self.path)
        self.encoding = encoding
        self.offset = 0
        self._partial = b""

    def _size(self) -> int:
        try:
            return self.path.stat().st_size
        except FileNotFoundError:
            return 0
        except OSError as e:
            raise MonitorReadError(f"Cannot stat {self.path}: {e}") from e

    def baseline(self) -> None:
        self.offset = self._size()
        self._partial = b""

    def read_new(self) -> ReadResult:
        size = self._size()

        if size < self.offset:
            logger.info(f"{self.path} shrank from {self.offset} to {size} bytes, resetting cursor")
            self.offset = size
            self._partial = b""
            return ReadResult(truncated=True)

        if size == self.offset:
            return ReadResult()

        try:
            with open(self.path, "rb") as f:
                f.seek(self.offset)
                data = f.read(size - self.offset)
        except OSError as e:
            raise MonitorReadError(f"Cannot read {self.path}: {e}") from e

        self.offset += len(data)
        data = self._partial + data
        chunks = data.split(b"\n")
        self._partial = chunks.pop()

        lines = [chunk.decode(self.encoding, errors="replace").rstrip("\r") for chunk in chunks]
        return ReadResult(lines=lines)


class DmesgLogSource(LogSource):
    """Kernel ring buffer read through the dmesg command.

    The cursor is (line count, last line seen). If the ring buffer wraps, the
    last seen line is searched for so only the lines after it are returned.
    A cleared or shrunk buffer resets the cursor without counting anything.
    """

    name = "dmesg"

    def __init__(self, use_sudo: Optional[bool] = None, timeout: int = 10):
        self.use_sudo = use_sudo
        self.timeout = timeout
        self.count = 0
        self.last_line: Optional[str] = None

    def _run_dmesg(self, cmd: List[str]) -> List[str]:
        result = subprocess.run(
            cmd, capture_output=True, text=True, timeout=self.timeout, errors="replace"
        )
        if result.returncode != 0:
            raise PermissionError(result.stderr.strip() or f"dmesg exited with {result.returncode}")
        return result.stdout.splitlines()

    def _read_all(self) -> List[str]:
        try:
            if self.use_sudo:
                return self._run_dmesg(["sudo", "-n", "dmesg"])
            try:
                return self._run_dmesg(["dmesg"])
            except PermissionError:
                if self.use_sudo is False:
                    raise
                # dmesg_restrict=1, try again with sudo
                lines = self._run_dmesg(["sudo", "-n", "dmesg"])
                self.use_sudo = True
                return lines
        except (PermissionError, OSError, subprocess.TimeoutExpired) as e:
            raise MonitorReadError(f"Cannot read kernel log via dmesg: {e}") from e

    def _set_cursor(self, lines: List[str]) -> None:
        self.count = len(lines)
        self.last_line = lines[-1] if lines else None

    def baseline(self) -> None:
        self._set_cursor(self._read_all())

    def read_new(self) -> ReadResult:
        lines = self._read_all()

        if self.count == 0:
            new_lines = lines
        elif len(lines) >= self.count and lines[self.count - 1] == self.last_line:
            new_lines = lines[self.count:]
        else:
            # A full ring buffer evicts old lines, so the count can drop while
            # new lines arrive; find where we left off
            try:
                index = len(lines) - 1 - lines[::-1].index(self.last_line)
            except ValueError:
                logger.info(
                    f"Lost position in kernel ring buffer ({self.count} -> {len(lines)} lines), "
                    "resetting cursor"
                )
                self._set_cursor(lines)
                return ReadResult(truncated=True)
            new_lines = lines[index + 1:]

        self._set_cursor(lines)
        return ReadResult(lines=new_lines)


class Ticker:
    """Fixed-interval timer with an injectable clock.

    Missed deadlines are skipped rather than replayed in a burst.
    """

    def __init__(self, interval: float, clock: Callable[[], float] = time.monotonic):
        if interval <= 0:
            raise ValueError("Ticker interval must be positive")
        self.interval = interval
        self.clock = clock
        self.next_deadline: Optional[float] = None

    def start(self) -> None:
        self.next_deadline = self.clock() + self.interval

    def remaining(self) -> float:
        if self.next_deadline is None:
            self.start()
        return max(0.0, self.next_deadline - self.clock())

    def due(self) -> bool:
        return self.remaining() == 0.0

    def advance(self) -> None:
        now = self.clock()
        self.next_deadline += self.interval
        if self.next_deadline <= now:
            self.next_deadline = now + self.interval

    def wait(self, stop_event: threading.Event) -> bool:
        """Sleep until the next deadline.

        Returns:
            False if stop_event was set while waiting, True on a normal tick
        """
        if stop_event.wait(self.remaining()):
            return False
        self.advance()
        return True


class EventCounters:
    """Per-category counts, last-seen times and bounded detail buffers."""

    def __init__(self, categories: Iterable[str] = (), detail_limit: Optional[int] = 1000):
        self.detail_limit = detail_limit
        self._counts: Dict[str, int] = {}
        self._last_seen: Dict[str, float] = {}
        self._details: Dict[str, Deque[str]] = {}
        self._frozen = False
        for category in categories:
            self._ensure(category)

    def _ensure(self, category: str) -> None:
        if category not in self._counts:
            self._counts[category] = 0
            self._details[category] = deque(maxlen=self.detail_limit)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def record(self, category: str, detail: str, timestamp: float) -> None:
        if self._frozen:
            raise RuntimeError("EventCounters are frozen")
        self._ensure(category)
        self._counts[category] += 1
        self._last_seen[category] = timestamp
        self._details[category].append(detail)

    def freeze(self) -> None:
        self._frozen = True

    def count(self, category: str) -> int:
        return self._counts.get(category, 0)

    def last_seen(self, category: str) -> Optional[float]:
        return self._last_seen.get(category)

    def details(self, category: str) -> List[str]:
        return list(self._details.get(category, ()))

    def snapshot(self) -> Dict[str, int]:
        return dict(self._counts)

    def total(self) -> int:
        return sum(self._counts.values())

    def to_dict(self) -> Dict[str, Dict]:
        """Convert to dictionary for JSON serialization."""
        return {
            category: {
                "count": count,
                "last_seen": self._last_seen.get(category),
                "details": list(self._details[category]),
            }
            for category, count in self._counts.items()
        }


class MonitorState(Enum):
    IDLE = "idle"
    SAMPLING = "sampling"
    STOPPED = "stopped"


class KernelLogMonitor:
    """Samples a kernel log source and classifies every new line.

    tick() performs one sample synchronously, so tests can drive the monitor
    without a thread or real time. start() runs ticks on a background thread.
    """

    def __init__(
        self,
        source: LogSource,
        rules: Sequence[EventRule] = DEFAULT_RULES,
        interval: float = 1.0,
        progress_every: int = 30,
        progress_sink: Optional[ProgressSink] = None,
        detail_limit: Optional[int] = 1000,
        clock: Callable[[], float] = time.time,
        capture_path: Optional[Path] = None,
        ticker: Optional[Ticker] = None,
    ):
        self.source = source
        self.rules = tuple(rules)
        self.progress_every = progress_every
        self.progress_sink = progress_sink
        self.detail_limit = detail_limit
        self.clock = clock
        self.capture_path = Path(capture_path) if capture_path else None
        self.ticker = ticker or Ticker(interval)

        self.counters = EventCounters(rule_categories(self.rules), detail_limit)
        self.ticks = 0
        self.lines_seen = 0
        self.read_failures = 0
        self.truncations = 0

        self._state = MonitorState.IDLE
        self._needs_baseline = False
        self._capture = None
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def state(self) -> MonitorState:
        return self._state

    def start(self, background: bool = True) -> None:
        """Record the baseline cursor and enter SAMPLING.

        Args:
            background: Run ticks on a daemon thread; False leaves tick() to the caller
        """
        with self._lock:
            if self._state != MonitorState.IDLE:
                raise RuntimeError(f"Monitor cannot start from state {self._state.value}")

            self.counters = EventCounters(rule_categories(self.rules), self.detail_limit)
            try:
                self.source.baseline()
            except MonitorReadError as e:
                logger.warning(f"⚠ Could not baseline {self.source.name}, retrying on next tick: {e}")
                self._needs_baseline = True

            self._open_capture()
            self._state = MonitorState.SAMPLING

        logger.info(f"✓ Kernel log monitor started on {self.source.name}")

        if background:
            self._thread = threading.Thread(target=self._run, name="kstress-monitor", daemon=True)
            self._thread.start()

    def _open_capture(self) -> None:
        if not self.capture_path:
            return
        try:
            self.capture_path.parent.mkdir(parents=True, exist_ok=True)
            self._capture = open(self.capture_path, "a")
        except OSError as e:
            logger.warning(f"⚠ Cannot open kernel log capture {self.capture_path}: {e}")
            self._capture = None

    def _run(self) -> None:
        self.ticker.start()
        while self.ticker.wait(self._stop_event):
            try:
                self.tick()
            except Exception as e:
                # A bad tick must not end sampling for the rest of the run
                self.read_failures += 1
                logger.error(f"✗ Kernel log tick failed: {e}", exc_info=True)

    def tick(self) -> int:
        """Read and classify new lines once.

        Returns:
            Number of new lines processed (0 if the read failed or the monitor is not sampling)
        """
        with self._lock:
            if self._state != MonitorState.SAMPLING:
                return 0

            try:
                if self._needs_baseline:
                    self.source.baseline()
                    self._needs_baseline = False
                    result = ReadResult()
                else:
                    result = self.source.read_new()
            except MonitorReadError as e:
                self.read_failures += 1
                logger.debug(f"Skipping tick, kernel log unreadable: {e}")
                result = None

            if result is not None:
                if result.truncated:
                    self.truncations += 1
                self._process(result.lines)

            self.ticks += 1
            if self.ticks % self.progress_every == 0:
                self._emit_progress()

            return len(result.lines) if result else 0

    def _process(self, lines: List[str]) -> None:
        now = self.clock()
        for line in lines:
            if self._capture:
                self._write_capture(line + "\n")
            if not line.strip():
                continue
            self.lines_seen += 1
            for category, detail in classify_with_details(line, self.rules).items():
                self.counters.record(category, detail, now)

        if self._capture and lines:
            self._write_capture(None)

    def _write_capture(self, text: Optional[str]) -> None:
        """Append to the raw capture (None flushes); on failure capture stops, counting goes on."""
        try:
            if text is None:
                self._capture.flush()
            else:
                self._capture.write(text)
        except OSError as e:
            logger.warning(f"⚠ Kernel log capture {self.capture_path} disabled: {e}")
            self._close_capture()

    def _close_capture(self) -> None:
        capture, self._capture = self._capture, None
        if capture:
            try:
                capture.close()
            except OSError as e:
                logger.debug(f"Closing kernel log capture failed: {e}")

    def _emit_progress(self) -> None:
        if not self.progress_sink:
            return
        try:
            self.progress_sink(self.counters.snapshot())
        except Exception as e:
            logger.warning(f"⚠ Progress sink failed: {e}", exc_info=True)

    def stop(self, timeout: Optional[float] = 30.0) -> EventCounters:
        """Finish any in-flight tick, then freeze the counters.

        Safe to call more than once and from any state.

        Returns:
            The frozen EventCounters
        """
        self._stop_event.set()
        thread = self._thread
        if thread and thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("⚠ Monitor thread did not exit in time")

        with self._lock:
            if self._state != MonitorState.STOPPED:
                self._state = MonitorState.STOPPED
                self.counters.freeze()
                self._close_capture()
                logger.info(
                    f"✓ Kernel log monitor stopped after {self.ticks} ticks, "
                    f"{self.lines_seen} lines, {self.counters.total()} events"
                )

        return self.counters

    def stats(self) -> Dict[str, int]:
        return {
            "ticks": self.ticks,
            "lines_seen": self.lines_seen,
            "read_failures": self.read_failures,
            "truncations": self.truncations,
        }


def default_log_source(kernel_log_path: Optional[Path] = None) -> LogSource:
    """File source when a path is configured, dmesg otherwise."""
    if kernel_log_path:
        return FileLogSource(kernel_log_path)
    return DmesgLogSource()


def tail_lines(text: str) -> Tuple[str, ...]:
    """Split pasted log text into lines (used for offline classification)."""
    return tuple(line for line in text.splitlines() if line.strip())
