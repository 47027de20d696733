"""
Tests for StressOrchestrator.

Workers are real `sleep`/`sh` processes supplied through a fake planner,
the kernel log is a temp file, and the fault device builder is mocked.
"""

import json
import logging
import os
import signal
import threading
import time
from unittest.mock import MagicMock

import pytest

from kstress_mcp.config import RunConfig
from kstress_mcp.errors import AllocationError, ConfigError, MappingError
from kstress_mcp.fault_device import FaultDevice
from kstress_mcp.loadgen import WorkerSpec
from kstress_mcp.monitor import FileLogSource, MonitorState
from kstress_mcp.orchestrator import RunResult, RunState, StressOrchestrator
from kstress_mcp.workers import WorkerCategory

JBD2_WAIT = "INFO: task jbd2/dm-0-8:412 blocked for more than 120 seconds. jbd2_log_wait_commit"


def sleepers(count=2, category=WorkerCategory.MEMORY):
    def planner(config, io_target):
        return [WorkerSpec(category, f"sleeper-{i}", ["sleep", "60"]) for i in range(count)]
    return planner


@pytest.fixture
def kern_log(tmp_path):
    log = tmp_path / "kern.log"
    log.write_text("old: task x blocked for more than 120 seconds. jbd2_log_wait_commit\n")
    return log


@pytest.fixture
def config(tmp_path):
    return RunConfig(
        duration=1,
        grace_period=1.0,
        sample_interval=0.05,
        log_dir=tmp_path / "logs",
        test_dir=tmp_path / "files",
    )


def make(config, kern_log, **kwargs):
    kwargs.setdefault("planner", sleepers())
    kwargs.setdefault("log_source", FileLogSource(kern_log))
    kwargs.setdefault("privilege_check", lambda: True)
    return StressOrchestrator(config, **kwargs)


class TestRunLifecycle:
    """Test normal completion and the state machine."""

    def test_five_second_run_with_two_memory_workers(self, config, kern_log):
        config = config.with_overrides(duration=5)
        orchestrator = make(config, kern_log)

        start = time.monotonic()
        result = orchestrator.run(install_signal_handlers=False)
        elapsed = time.monotonic() - start

        assert result.state == RunState.DONE
        assert orchestrator.state == RunState.DONE
        assert 5 <= elapsed < 5 + config.grace_period + 2
        assert not result.interrupted
        assert result.fault_injection_error is None
        assert len(result.workers) == 2
        assert orchestrator.registry.alive() == set()
        assert all(w.process is None for w in orchestrator.registry.workers())
        assert sorted(result.shutdown["terminated"]) == [1, 2]

    def test_duration_counts_from_running(self, config, kern_log):
        device = FaultDevice(mapped_device="/dev/mapper/kstress_faulty", loop_device="/dev/loop5")
        builder = MagicMock()
        builder.build.side_effect = lambda: time.sleep(0.8) or device
        builder.device = device
        builder.teardown.return_value = []

        orchestrator = make(
            config.with_overrides(fault={"enabled": True}),
            kern_log,
            builder_factory=lambda fault: builder,
        )
        result = orchestrator.run(install_signal_handlers=False)

        assert result.fault_injection_active
        assert not result.interrupted
        # 0.8s of device setup plus the full 1s stress window
        assert result.elapsed >= 1.8

    def test_result_saved_as_json(self, config, kern_log):
        result = make(config, kern_log).run(install_signal_handlers=False)

        saved = list((config.log_dir).glob("run-result-*.json"))
        assert len(saved) == 1
        assert result.result_path == str(saved[0])

        data = json.loads(saved[0].read_text())
        assert data["state"] == "done"
        assert data["summary"] == result.summary()
        assert "event_counts" in data

    def test_kernel_events_counted(self, config, kern_log):
        config = config.with_overrides(duration=2)

        def planner(cfg, io_target):
            return [
                WorkerSpec(
                    WorkerCategory.CUSTOM,
                    "log-writer",
                    ["sh", "-c", f"sleep 0.5; echo '{JBD2_WAIT}' >> {kern_log}"],
                )
            ]

        result = make(config, kern_log, planner=planner).run(install_signal_handlers=False)

        assert result.event_counts["jbd2_lock_wait"] == 1
        assert result.event_counts["blocked_task"] == 1
        assert result.events["jbd2_lock_wait"]["details"] == [JBD2_WAIT]
        assert "kernel_log" in result.artifacts
        assert JBD2_WAIT in (config.log_dir / "kernel" / "dmesg_live.log").read_text()

    def test_monitor_stopped_and_counters_frozen(self, config, kern_log):
        orchestrator = make(config, kern_log)
        orchestrator.run(install_signal_handlers=False)

        assert orchestrator.monitor.state == MonitorState.STOPPED
        assert orchestrator.monitor.counters.frozen

    def test_stale_churn_files_removed_before_run(self, config, kern_log):
        config.test_dir.mkdir(parents=True)
        (config.test_dir / "file_7.tmp").write_text("test data 7\n")
        (config.test_dir / "notes.txt").write_text("keep me")

        make(config, kern_log).run(install_signal_handlers=False)

        assert not (config.test_dir / "file_7.tmp").exists()
        assert (config.test_dir / "notes.txt").exists()


class TestInterrupts:
    """Test early termination."""

    def test_interrupt_from_another_thread(self, config, kern_log):
        config = config.with_overrides(duration=60)
        orchestrator = make(config, kern_log)
        threading.Timer(0.5, orchestrator.interrupt).start()

        start = time.monotonic()
        result = orchestrator.run(install_signal_handlers=False)

        assert result.interrupted
        assert time.monotonic() - start < 0.5 + config.grace_period + 2
        assert orchestrator.registry.alive() == set()

    def test_sigint_triggers_finalize(self, config, kern_log):
        config = config.with_overrides(duration=60)
        orchestrator = make(config, kern_log)
        previous = signal.getsignal(signal.SIGINT)
        threading.Timer(0.5, os.kill, args=(os.getpid(), signal.SIGINT)).start()

        result = orchestrator.run()

        assert result.interrupted
        assert result.state == RunState.DONE
        assert signal.getsignal(signal.SIGINT) == previous

    def test_repeated_interrupts(self, config, kern_log):
        config = config.with_overrides(duration=60)
        orchestrator = make(config, kern_log)

        def hammer():
            for _ in range(20):
                orchestrator.interrupt()
                time.sleep(0.01)

        threading.Timer(0.3, hammer).start()
        result = orchestrator.run(install_signal_handlers=False)

        assert result.interrupted
        assert len(list(config.log_dir.glob("run-result-*.json"))) == 1

    def test_interrupt_before_run_skips_workers(self, config, kern_log):
        planner = MagicMock(return_value=[])
        orchestrator = make(config, kern_log, planner=planner)
        orchestrator.interrupt()

        result = orchestrator.run(install_signal_handlers=False)

        assert result.interrupted
        planner.assert_not_called()
        assert result.state == RunState.DONE


class TestFinalize:
    """Test the exactly-once finalization guarantee."""

    def test_finalize_runs_once(self, config, kern_log):
        orchestrator = make(config, kern_log)
        result = orchestrator.run(install_signal_handlers=False)

        assert orchestrator.finalize() is result
        assert orchestrator.finalize() is result
        assert len(list(config.log_dir.glob("run-result-*.json"))) == 1

    def test_concurrent_finalize_calls(self, config, kern_log):
        orchestrator = make(config, kern_log)
        shutdown = MagicMock(wraps=orchestrator.registry.shutdown)
        orchestrator.registry.shutdown = shutdown

        results = []
        threads = [threading.Thread(target=lambda: results.append(orchestrator.finalize())) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert shutdown.call_count == 1
        assert all(r is results[0] for r in results)

    def test_finalize_from_other_thread_during_start(self, config, kern_log):
        planning = threading.Event()
        release = threading.Event()

        def slow_planner(config, io_target):
            planning.set()
            release.wait(10)
            return [WorkerSpec(WorkerCategory.MEMORY, "sleeper", ["sleep", "60"])]

        orchestrator = make(config.with_overrides(duration=30), kern_log, planner=slow_planner)
        outcome = {}
        runner = threading.Thread(
            target=lambda: outcome.setdefault("run", orchestrator.run(install_signal_handlers=False))
        )
        runner.start()
        assert planning.wait(10)

        finalizer = threading.Thread(target=lambda: outcome.setdefault("finalize", orchestrator.finalize()))
        finalizer.start()
        time.sleep(0.2)
        assert finalizer.is_alive()  # waits for the run thread to tear down
        assert orchestrator.interrupted

        release.set()
        runner.join(15)
        finalizer.join(15)

        assert outcome["finalize"] is outcome["run"]
        assert orchestrator.state == RunState.DONE
        assert orchestrator.registry.alive() == set()
        assert orchestrator.monitor is None or orchestrator.monitor.state == MonitorState.STOPPED

    def test_run_after_finalize_starts_nothing(self, config, kern_log):
        planner = MagicMock(side_effect=sleepers())
        orchestrator = make(config, kern_log, planner=planner)
        result = orchestrator.finalize()

        assert orchestrator.run(install_signal_handlers=False) is result
        planner.assert_not_called()
        assert orchestrator.registry.workers() == []

    def test_finalize_from_setup_state(self, config, kern_log):
        orchestrator = make(config, kern_log)
        result = orchestrator.finalize()
        assert result.state == RunState.DONE
        assert result.event_counts == {}

    def test_teardown_order(self, config, kern_log):
        observed = {}
        device = FaultDevice(mapped_device="/dev/mapper/kstress_faulty", loop_device="/dev/loop5")
        builder = MagicMock()
        builder.build.return_value = device
        builder.device = device

        orchestrator = make(
            config.with_overrides(fault={"enabled": True}),
            kern_log,
            builder_factory=lambda fault: builder,
        )

        def teardown():
            observed["workers_alive"] = orchestrator.registry.alive()
            observed["monitor_state"] = orchestrator.monitor.state
            return []

        builder.teardown.side_effect = teardown

        orchestrator.run(install_signal_handlers=False)

        builder.teardown.assert_called_once()
        assert observed["workers_alive"] == set()
        assert observed["monitor_state"] == MonitorState.STOPPED

    def test_teardown_warnings_reported(self, config, kern_log):
        device = FaultDevice(mapped_device="/dev/mapper/kstress_faulty")
        builder = MagicMock()
        builder.build.return_value = device
        builder.device = device
        builder.teardown.return_value = ["Failed to remove /dev/mapper/kstress_faulty: busy"]

        result = make(
            config.with_overrides(fault={"enabled": True}),
            kern_log,
            builder_factory=lambda fault: builder,
        ).run(install_signal_handlers=False)

        assert result.teardown_warnings == ["Failed to remove /dev/mapper/kstress_faulty: busy"]
        assert result.state == RunState.DONE


class TestConfigErrors:
    """Test that only configuration problems abort a run."""

    def test_invalid_config_aborts_before_acquiring(self, config, kern_log):
        planner = MagicMock()
        builder_factory = MagicMock()
        orchestrator = make(
            config.with_overrides(duration=0, fault={"enabled": True}),
            kern_log,
            planner=planner,
            builder_factory=builder_factory,
        )

        with pytest.raises(ConfigError):
            orchestrator.run(install_signal_handlers=False)

        planner.assert_not_called()
        builder_factory.assert_not_called()
        assert orchestrator.state == RunState.DONE
        assert orchestrator.result.error is not None
        assert "aborted" in orchestrator.result.summary()

    def test_unpreparable_log_dir(self, config, kern_log, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        orchestrator = make(config.with_overrides(log_dir=blocker / "logs"), kern_log)

        with pytest.raises(ConfigError, match="Cannot prepare"):
            orchestrator.run(install_signal_handlers=False)
        assert orchestrator.state == RunState.DONE


class TestDegradation:
    """Test graceful fallbacks."""

    def test_no_privilege_disables_fault_injection(self, config, kern_log):
        builder_factory = MagicMock()
        result = make(
            config.with_overrides(fault={"enabled": True}),
            kern_log,
            privilege_check=lambda: False,
            builder_factory=builder_factory,
        ).run(install_signal_handlers=False)

        builder_factory.assert_not_called()
        assert result.fault_injection_active is False
        assert "sudo" in result.fault_injection_error
        assert result.state == RunState.DONE

    @pytest.mark.parametrize(
        "error",
        [AllocationError("Not enough space in /var/tmp: need 1073741824 bytes, 524288000 available"),
         MappingError("dmsetup create kstress_faulty failed")],
    )
    def test_fault_failure_falls_back(self, config, kern_log, error):
        builder = MagicMock()
        builder.build.side_effect = error
        builder.teardown.return_value = []
        builder.device = FaultDevice()
        planner = MagicMock(side_effect=sleepers())

        result = make(
            config.with_overrides(fault={"enabled": True}),
            kern_log,
            builder_factory=lambda fault: builder,
            planner=planner,
        ).run(install_signal_handlers=False)

        assert result.fault_injection_active is False
        assert result.fault_injection_error == str(error)
        assert planner.call_args[0][1] is None  # no fault target
        assert len(result.workers) == 2
        assert result.error is None

    def test_fault_device_target_passed_to_planner(self, config, kern_log):
        device = FaultDevice(mapped_device="/dev/mapper/kstress_faulty")
        builder = MagicMock()
        builder.build.return_value = device
        builder.device = device
        builder.teardown.return_value = []
        planner = MagicMock(return_value=[])

        result = make(
            config.with_overrides(fault={"enabled": True}),
            kern_log,
            builder_factory=lambda fault: builder,
            planner=planner,
        ).run(install_signal_handlers=False)

        assert planner.call_args[0][1] == "/dev/mapper/kstress_faulty"
        assert result.fault_injection_active is True

    def test_spawn_failure_marks_run_degraded(self, config, kern_log):
        def planner(cfg, io_target):
            return [
                WorkerSpec(WorkerCategory.IO, "fio-a", ["definitely-not-a-real-tool-kstress"]),
                WorkerSpec(WorkerCategory.IO, "fio-b", ["definitely-not-a-real-tool-kstress"]),
                WorkerSpec(WorkerCategory.MEMORY, "sleeper", ["sleep", "60"]),
            ]

        result = make(config, kern_log, planner=planner).run(install_signal_handlers=False)

        assert result.degraded
        assert len(result.degraded_reasons) == 1  # second io spec skipped once category failed
        assert result.degraded_reasons[0].startswith("io:")
        assert [w["category"] for w in result.workers] == ["memory"]
        assert "degraded" in result.summary()

    def test_memory_workers_exited_warning(self, config, kern_log, caplog):
        orchestrator = make(config, kern_log)
        worker_id = orchestrator.registry.spawn(WorkerCategory.MEMORY, ["true"])
        orchestrator.registry.await_all(5, [worker_id])

        with caplog.at_level(logging.WARNING, logger="kstress_mcp.orchestrator"):
            orchestrator._on_progress({"jbd2_lock_wait": 0})

        assert "memory pressure may have ended early" in caplog.text
        orchestrator.finalize()


class TestRunResult:
    def test_summary_lists_nonzero_events(self):
        result = RunResult(
            state=RunState.DONE,
            started_at=0.0,
            finished_at=10.0,
            elapsed=10.0,
            event_counts={"io_error": 3, "blocked_task": 0, "jbd2_lock_wait": 1},
            fault_injection_active=True,
        )
        summary = result.summary()

        assert summary.startswith("✓ Run completed in 10.0s")
        assert "fault injection active" in summary
        assert "events: io_error=3, jbd2_lock_wait=1" in summary
        assert "blocked_task" not in summary

    def test_summary_interrupted_without_events(self):
        result = RunResult(state=RunState.DONE, started_at=0.0, finished_at=2.0, elapsed=2.0, interrupted=True)
        assert result.summary().startswith("⚠ Run interrupted after 2.0s")
        assert "no kernel events" in result.summary()
