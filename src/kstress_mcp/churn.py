"""
File churn worker: mass create/unlink to grow the dentry and inode caches.

Run as `python -m kstress_mcp.churn TEST_DIR FILE_COUNT --log-file LOG`.
Each cycle writes FILE_COUNT small files, deleting one older file every 100
creations, then removes whatever is left. SIGTERM stops it between files.
"""

import argparse
import logging
import signal
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger("kstress_mcp.churn")

DELETE_EVERY = 100


@dataclass
class CycleStats:
    created: int = 0
    deleted: int = 0
    errors: int = 0
    interrupted: bool = False


def _file_path(test_dir: Path, index: int) -> Path:
    return test_dir / f"file_{index}.tmp"


def remove_churn_files(test_dir: Path) -> int:
    """Delete every churn file in test_dir; returns the number removed."""
    removed = 0
    for path in Path(test_dir).glob("file_*.tmp"):
        try:
            path.unlink()
            removed += 1
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.debug(f"Cannot remove {path}: {e}")
    return removed


def churn_cycle(
    test_dir: Path, file_count: int, stop_event: Optional[threading.Event] = None
) -> CycleStats:
    """Run one create/delete cycle.

    Write errors (ENOSPC, EIO from a faulty device) are counted, not raised:
    provoking them is the point of the run.
    """
    test_dir = Path(test_dir)
    stats = CycleStats()

    for i in range(1, file_count + 1):
        try:
            _file_path(test_dir, i).write_text(f"test data {i}\n")
            stats.created += 1
        except OSError:
            stats.errors += 1

        if i % DELETE_EVERY == 0:
            try:
                _file_path(test_dir, i - DELETE_EVERY + 1).unlink()
                stats.deleted += 1
            except FileNotFoundError:
                pass
            except OSError:
                stats.errors += 1

            if stop_event is not None and stop_event.is_set():
                stats.interrupted = True
                break

    stats.deleted += remove_churn_files(test_dir)
    return stats


def run(
    test_dir: Path,
    file_count: int,
    max_cycles: int = 0,
    stop_event: Optional[threading.Event] = None,
) -> int:
    """Repeat churn cycles until stopped or max_cycles (0 = forever) is reached.

    Returns:
        Number of completed cycles
    """
    stop_event = stop_event or threading.Event()
    test_dir = Path(test_dir)
    test_dir.mkdir(parents=True, exist_ok=True)

    logger.info(f"Starting file create/delete loop in {test_dir} ({file_count} files per cycle)")

    cycles = 0
    while not stop_event.is_set():
        if max_cycles and cycles >= max_cycles:
            break
        stats = churn_cycle(test_dir, file_count, stop_event)
        if stats.interrupted:
            break
        cycles += 1
        logger.info(
            f"Completed file create/delete cycle {cycles}: "
            f"{stats.created} created, {stats.deleted} deleted, {stats.errors} errors"
        )

    logger.info(f"File churn stopped after {cycles} cycle(s)")
    return cycles


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="kstress_mcp.churn")
    p.add_argument("test_dir", type=Path)
    p.add_argument("file_count", type=int)
    p.add_argument("--log-file", type=Path, default=None)
    p.add_argument("--max-cycles", type=int, default=0)
    return p


def main(argv: List[str]) -> int:
    args = build_arg_parser().parse_args(argv)

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if args.log_file:
        args.log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers = [logging.FileHandler(args.log_file, mode="a")]
    logging.basicConfig(
        level=logging.INFO,
        format="[%(asctime)s] %(message)s",
        handlers=handlers,
    )

    stop_event = threading.Event()

    def _on_signal(_sig: int, _frame: object) -> None:
        stop_event.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    try:
        run(args.test_dir, args.file_count, args.max_cycles, stop_event)
    except OSError as e:
        logger.error(f"File churn failed: {e}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
