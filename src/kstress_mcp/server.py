"""
MCP server for Linux storage/memory stress runs.
"""
import asyncio
import atexit
import json
import logging
import signal
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict

from mcp.server import Server
from mcp.types import Tool, TextContent

from .classifier import DEFAULT_RULES, classify_with_details, rule_categories
from .config import DEFAULT_LOG_DIR, FaultInjectionConfig, load_run_config, parse_size_to_bytes, SECTOR_SIZE
from .fault_device import build_error_table
from .loadgen import check_dependencies
from .monitor import tail_lines
from .orchestrator import StressOrchestrator
from .workers import reap_orphaned_workers

# Configure logging - log to both file and stderr
# File logging allows following a long run: tail -f /tmp/kstress-mcp.log
log_file = Path("/tmp/kstress-mcp.log")
logging.basicConfig(
    level=logging.INFO,
    format='[%(asctime)s] %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(log_file, mode='a'),  # Append mode
        logging.StreamHandler()  # stderr - may show in MCP client
    ]
)
logger = logging.getLogger(__name__)
logger.info("=" * 80)
logger.info("kstress-mcp server starting")
logger.info(f"Log file: {log_file}")
logger.info(f"Tip: Monitor progress with: tail -f {log_file}")
logger.info("=" * 80)

# Initialize server
app = Server("kstress-mcp")

# Runs in progress, so a cancelled call or a dying server can still tear them down
_active_runs = set()


def _interrupt_active_runs() -> None:
    """Ask every in-progress run to stop; each tears itself down on its own thread."""
    for orchestrator in list(_active_runs):
        logger.warning("⚠ Interrupting active stress run")
        orchestrator.interrupt()


def _cleanup_on_exit():
    """Stop workers and release fault devices of runs still active when the server exits."""
    for orchestrator in list(_active_runs):
        try:
            orchestrator.interrupt()
            orchestrator.finalize()
        except Exception as e:
            logger.error(f"✗ Cleanup of active stress run failed: {e}", exc_info=True)
    _active_runs.clear()

atexit.register(_cleanup_on_exit)

# stress_run argument -> RunConfig field
RUN_ARGUMENTS = {
    "duration": "duration",
    "memory_size": "memory_size",
    "memory_workers": "memory_workers",
    "io_threads": "io_threads",
    "file_count": "file_count",
    "test_dir": "test_dir",
    "log_dir": "log_dir",
    "grace_period": "grace_period",
    "kernel_log_path": "kernel_log_path",
    "enable_memory": "enable_memory",
    "enable_file_churn": "enable_file_churn",
    "enable_io": "enable_io",
    "enable_system_monitors": "enable_system_monitors",
}

# stress_run argument -> FaultInjectionConfig field
FAULT_ARGUMENTS = {
    "fault_injection": "enabled",
    "fault_size": "size",
    "error_start_sector": "error_start_sector",
    "error_sectors": "error_sectors",
    "fault_mount_point": "mount_point",
    "fault_filesystem": "filesystem",
}


@app.list_tools()
async def list_tools() -> list[Tool]:
    """List available MCP tools."""
    return [
        Tool(
            name="stress_run",
            description=(
                "Run a concurrent stress test: memory pressure (stress-ng), file create/delete "
                "churn and block I/O (fio), optionally against a device-mapper device with a "
                "failing sector range, while counting kernel log events (jbd2 lock waits, "
                "blocked tasks, I/O errors, OOM kills). Blocks for the run duration."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "config_file": {
                        "type": "string",
                        "description": "Optional JSON config file ({\"version\": \"1.0\", \"run\": {...}, \"fault\": {...}})"
                    },
                    "duration": {
                        "type": "integer",
                        "description": "Run duration in seconds (default: 600)"
                    },
                    "memory_size": {
                        "type": "string",
                        "description": "Memory per stress-ng VM worker (e.g., '4G')"
                    },
                    "memory_workers": {
                        "type": "integer",
                        "description": "Number of stress-ng VM workers (default: 4)"
                    },
                    "io_threads": {
                        "type": "integer",
                        "description": "fio jobs per I/O worker (default: 8)"
                    },
                    "file_count": {
                        "type": "integer",
                        "description": "Files created per churn cycle (default: 100000)"
                    },
                    "test_dir": {
                        "type": "string",
                        "description": "Directory for churn and fio files (default: ./kstress_test_files)"
                    },
                    "log_dir": {
                        "type": "string",
                        "description": "Directory for logs and artifacts (default: ./kstress_logs)"
                    },
                    "grace_period": {
                        "type": "number",
                        "description": "Seconds between SIGTERM and SIGKILL at shutdown (default: 5)"
                    },
                    "kernel_log_path": {
                        "type": "string",
                        "description": "Read the kernel log from this file instead of dmesg"
                    },
                    "enable_memory": {"type": "boolean", "default": True},
                    "enable_file_churn": {"type": "boolean", "default": True},
                    "enable_io": {"type": "boolean", "default": True},
                    "enable_system_monitors": {
                        "type": "boolean",
                        "description": "Also record sar/iostat output",
                        "default": False
                    },
                    "fault_injection": {
                        "type": "boolean",
                        "description": "Build a loop + device-mapper device with a failing range (needs root or sudo)",
                        "default": False
                    },
                    "fault_size": {
                        "type": "string",
                        "description": "Fault device size (default: 1G)"
                    },
                    "error_start_sector": {
                        "type": "integer",
                        "description": "First failing sector (default: middle of the device)"
                    },
                    "error_sectors": {
                        "type": "integer",
                        "description": "Number of failing sectors (default: 2048)"
                    },
                    "fault_mount_point": {
                        "type": "string",
                        "description": "Where to mount the fault device (default: /mnt/kstress_faulty)"
                    },
                    "fault_filesystem": {
                        "type": "string",
                        "description": "Filesystem for the fault device (default: ext4)"
                    }
                }
            }
        ),
        Tool(
            name="stress_check_dependencies",
            description="Check which load generator, monitoring and fault-injection tools are installed",
            inputSchema={
                "type": "object",
                "properties": {}
            }
        ),
        Tool(
            name="kernel_log_classify",
            description="Classify kernel log text into event categories (jbd2_lock_wait, blocked_task, io_error, ...)",
            inputSchema={
                "type": "object",
                "properties": {
                    "text": {
                        "type": "string",
                        "description": "Kernel log text (e.g., dmesg output)"
                    },
                    "include_lines": {
                        "type": "boolean",
                        "description": "Include matching lines per category",
                        "default": True
                    }
                },
                "required": ["text"]
            }
        ),
        Tool(
            name="fault_table_preview",
            description="Show the device-mapper table (linear / error / linear) for a device geometry",
            inputSchema={
                "type": "object",
                "properties": {
                    "size": {
                        "type": "string",
                        "description": "Device size (e.g., '1G'); ignored if total_sectors is given",
                        "default": "1G"
                    },
                    "total_sectors": {
                        "type": "integer",
                        "description": "Device size in 512-byte sectors"
                    },
                    "error_start_sector": {
                        "type": "integer",
                        "description": "First failing sector (default: middle of the device)"
                    },
                    "error_sectors": {
                        "type": "integer",
                        "description": "Number of failing sectors",
                        "default": 2048
                    },
                    "device": {
                        "type": "string",
                        "description": "Underlying device for the linear segments",
                        "default": "/dev/loop0"
                    }
                }
            }
        ),
        Tool(
            name="stress_kill_orphans",
            description="Stop load generators left behind by a stress run that died without cleaning up",
            inputSchema={
                "type": "object",
                "properties": {
                    "tracking_file": {
                        "type": "string",
                        "description": "workers.json from the run's log directory (default: ./kstress_logs/workers.json)"
                    },
                    "grace_period": {
                        "type": "number",
                        "description": "Seconds between SIGTERM and SIGKILL",
                        "default": 5
                    },
                    "force": {
                        "type": "boolean",
                        "description": "Also stop workers whose owning process is still running",
                        "default": False
                    }
                }
            }
        ),
    ]


def _run_overrides(arguments: Dict[str, Any]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for arg, name in RUN_ARGUMENTS.items():
        if arguments.get(arg) is not None:
            overrides[name] = arguments[arg]

    fault: Dict[str, Any] = {}
    for arg, name in FAULT_ARGUMENTS.items():
        if arguments.get(arg) is not None:
            fault[name] = arguments[arg]
    if fault:
        overrides["fault"] = fault
    return overrides


def _format_run_result(result) -> str:
    output = result.summary() + "\n\n"
    output += "Event counts:\n"
    for category, count in result.event_counts.items():
        output += f"  {category}: {count}\n"

    if result.fault_injection_error:
        output += f"\n⚠ Fault injection unavailable: {result.fault_injection_error}\n"

    if result.teardown_warnings:
        output += "\nTeardown warnings:\n"
        for warning in result.teardown_warnings:
            output += f"  ⚠ {warning}\n"

    if result.artifacts:
        output += "\nArtifacts:\n"
        for name, path in result.artifacts.items():
            output += f"  {name}: {path}\n"
    return output


@app.call_tool()
async def call_tool(name: str, arguments: Any) -> list[TextContent]:
    """Handle tool calls."""
    logger.info(f"TOOL CALL: {name}")
    logger.info(f"Arguments: {arguments}")
    arguments = arguments or {}

    try:
        if name == "stress_run":
            config_file = arguments.get("config_file")
            config = load_run_config(
                Path(config_file) if config_file else None,
                _run_overrides(arguments),
            )

            orchestrator = StressOrchestrator(config)
            _active_runs.add(orchestrator)
            # Signal handlers can only be installed from the main thread
            future = asyncio.ensure_future(asyncio.to_thread(orchestrator.run, False))
            try:
                result = await asyncio.shield(future)
            except asyncio.CancelledError:
                # The worker thread cannot be cancelled; interrupt it and
                # let it finish teardown before giving up the call
                logger.warning("⚠ stress_run cancelled, interrupting run")
                orchestrator.interrupt()
                try:
                    await asyncio.wait({future})
                except asyncio.CancelledError:
                    orchestrator.finalize()
                raise
            finally:
                _active_runs.discard(orchestrator)

            return [TextContent(type="text", text=_format_run_result(result))]

        elif name == "stress_check_dependencies":
            report = check_dependencies()
            lines = []
            for tool, info in report.items():
                required = " [required]" if info["required"] else ""
                if info["path"]:
                    lines.append(f"✓ {tool}: {info['path']} ({info['purpose']})")
                else:
                    lines.append(f"✗ {tool}: not found ({info['purpose']}){required}")

            missing = [tool for tool, info in report.items() if info["required"] and not info["path"]]
            if missing:
                lines.append("")
                lines.append("Install missing tools:")
                lines.append("  Ubuntu/Debian: sudo apt-get install stress-ng fio sysstat")
                lines.append("  RHEL/CentOS: sudo yum install stress-ng fio sysstat")

            return [TextContent(type="text", text="\n".join(lines))]

        elif name == "kernel_log_classify":
            include_lines = arguments.get("include_lines", True)
            counts: Dict[str, int] = OrderedDict((c, 0) for c in rule_categories(DEFAULT_RULES))
            matches: Dict[str, list] = {c: [] for c in counts}

            for line in tail_lines(arguments["text"]):
                for category, detail in classify_with_details(line).items():
                    counts[category] += 1
                    matches[category].append(detail)

            result: Dict[str, Any] = {"counts": counts}
            if include_lines:
                result["lines"] = {c: lines for c, lines in matches.items() if lines}
            return [TextContent(type="text", text=json.dumps(result, indent=2))]

        elif name == "fault_table_preview":
            total = arguments.get("total_sectors")
            if total is None:
                total = parse_size_to_bytes(arguments.get("size", "1G")) // SECTOR_SIZE

            fault = FaultInjectionConfig(
                error_start_sector=arguments.get("error_start_sector"),
                error_sectors=arguments.get("error_sectors", 2048),
            )
            start, length = fault.resolve_error_range(total)
            table = build_error_table(total, start, length, arguments.get("device", "/dev/loop0"))

            output = f"Device: {total} sectors, EIO at [{start}, {start + length})\n\n"
            output += table.to_dmsetup()
            return [TextContent(type="text", text=output)]

        elif name == "stress_kill_orphans":
            tracking_file = Path(arguments.get("tracking_file") or DEFAULT_LOG_DIR / "workers.json")
            if not tracking_file.exists():
                return [TextContent(type="text", text=f"No tracking file at {tracking_file}, nothing to do")]

            result = await asyncio.to_thread(
                reap_orphaned_workers,
                tracking_file,
                float(arguments.get("grace_period", 5)),
                bool(arguments.get("force", False)),
            )

            output = (
                f"✓ Terminated: {len(result['terminated'])}, killed: {len(result['killed'])}, "
                f"already gone: {len(result['already_dead'])}"
            )
            if result["skipped"]:
                output += (
                    f"\n⚠ Skipped {len(result['skipped'])} worker(s) whose run is still active "
                    "(use force to stop them anyway)"
                )
            return [TextContent(type="text", text=output)]

        else:
            raise ValueError(f"Unknown tool: {name}")

    except Exception as e:
        logger.error(f"Error in tool {name}: {e}", exc_info=True)
        return [TextContent(type="text", text=f"Error: {str(e)}")]


def main():
    """Main entry point for the MCP server."""
    import mcp.server.stdio

    async def run():
        loop = asyncio.get_running_loop()
        main_task = asyncio.current_task()

        def on_signal(signum):
            logger.warning(f"⚠ Received {signal.Signals(signum).name}, stopping active runs")
            _interrupt_active_runs()
            main_task.cancel()

        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, on_signal, signum)

        async with mcp.server.stdio.stdio_server() as (read_stream, write_stream):
            await app.run(
                read_stream,
                write_stream,
                app.create_initialization_options()
            )

    try:
        asyncio.run(run())
    except asyncio.CancelledError:
        logger.info("Server stopped")


if __name__ == "__main__":
    main()
