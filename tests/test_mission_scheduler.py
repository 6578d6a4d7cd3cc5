import asyncio
import json
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

from research_missions.domain.errors import MissionNotFoundError, SchedulerDestroyedError
from research_missions.domain.missions import format_timestamp
from research_missions.domain.scheduler import ExecutorResult, RunFailed, RunSkipped, RunSucceeded, SchedulerStateSnapshot
from research_missions.events.event_bus import EventBus
from research_missions.persistence.mission_store import JsonMissionStore
from research_missions.persistence.scheduler_state_store import SchedulerStateStore
from research_missions.services.mission_scheduler import MissionScheduler, coerce_executor_result, noop_executor
from research_missions.services.mission_service import INTERRUPTED_RUN_ERROR, MissionService
from research_missions.services.mission_telemetry import MissionTelemetry


class _FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class _RecordingExecutor:
    def __init__(self):
        self.calls = []
        self.failures = {}

    async def __call__(self, mission, ctx):
        self.calls.append(mission.mission_id)
        if mission.mission_id in self.failures:
            raise RuntimeError(self.failures[mission.mission_id])
        return {"success": True, "result": {"ran": mission.mission_id}}


class _SchedulerTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        data_dir = Path(self.tmp.name)
        self.clock = _FakeClock(datetime(2025, 1, 1, tzinfo=timezone.utc))
        self.store = JsonMissionStore(data_dir)
        self.state_store = SchedulerStateStore(data_dir)
        self.bus = EventBus()
        self.events = []
        self.bus.subscribe(lambda event: self.events.append(event.payload))
        self.telemetry = MissionTelemetry(self.bus, clock=self.clock)
        self.service = MissionService(self.store, clock=self.clock)
        self.executor = _RecordingExecutor()
        self.scheduler = MissionScheduler(
            self.service,
            executor=self.executor,
            telemetry=self.telemetry,
            state_store=self.state_store,
            interval_ms=20,
            clock=self.clock,
        )

    async def asyncTearDown(self):
        await self.scheduler.destroy()
        await self.store.close()
        self.tmp.cleanup()

    async def _create(self, name, **overrides):
        draft = {"name": name, "schedule": {"intervalMinutes": 60}}
        draft.update(overrides)
        return await self.service.create_mission(draft, mission_id=name)

    def _event_names(self, mission_id=None):
        names = []
        for message in self.events:
            mission = message["data"].get("mission") or {}
            if mission_id is None or mission.get("id") == mission_id:
                names.append(message["event"])
        return names


class TestTick(_SchedulerTestCase):
    async def test_dispatches_due_missions_by_priority(self):
        await self._create("low", priority=1)
        await self._create("high", priority=9)
        await self._create("mid", priority=5)
        await self._create("later", schedule={"intervalMinutes": 600})
        self.clock.advance(hours=2)

        report = await self.scheduler.trigger()

        self.assertEqual(self.executor.calls, ["high", "mid", "low"])
        self.assertEqual((report.evaluated, report.launched, report.failed, report.skipped), (4, 3, 0, 0))
        self.assertIsNone(report.error)
        mission = await self.service.get_mission("high")
        self.assertEqual(format_timestamp(mission.next_run_at), "2025-01-01T03:00:00.000Z")

    async def test_ties_break_on_next_run_then_id(self):
        await self._create("b")
        await self._create("a")
        await self._create("early", schedule={"intervalMinutes": 30})
        self.clock.advance(hours=2)
        await self.scheduler.trigger()
        self.assertEqual(self.executor.calls, ["early", "a", "b"])

    async def test_nothing_due(self):
        await self._create("m")
        report = await self.scheduler.trigger()
        self.assertEqual(report.launched, 0)
        self.assertEqual(self.executor.calls, [])

    async def test_failed_run_is_counted_and_parked(self):
        await self._create("m")
        self.executor.failures["m"] = "boom"
        self.clock.advance(hours=1)
        report = await self.scheduler.trigger()
        self.assertEqual((report.launched, report.failed), (1, 1))
        mission = await self.service.get_mission("m")
        self.assertEqual(mission.status, "failed")
        self.assertIsNone(mission.next_run_at)
        self.assertEqual(mission.last_run_error, "boom")
        # Parked until someone intervenes.
        self.clock.advance(hours=5)
        await self.scheduler.trigger()
        self.assertEqual(self.executor.calls, ["m"])

    async def test_tick_persists_state_and_emits_events(self):
        await self._create("m")
        self.clock.advance(hours=1)
        await self.scheduler.trigger()
        state = json.loads(self.state_store.path.read_text(encoding="utf-8"))
        self.assertEqual(state["lastPersistReason"], "tick_complete")
        self.assertEqual(state["lastTickLaunched"], 1)
        names = self._event_names()
        self.assertLess(names.index("scheduler_tick"), names.index("mission_due"))
        self.assertLess(names.index("mission_started"), names.index("mission_completed"))
        self.assertLess(names.index("mission_completed"), names.index("scheduler_tick_complete"))

    async def test_overlapping_tick_is_skipped(self):
        await self._create("m")
        self.clock.advance(hours=1)
        release = asyncio.Event()
        entered = asyncio.Event()

        async def slow(mission, ctx):
            entered.set()
            await release.wait()

        self.scheduler.set_executor(slow)
        first = asyncio.create_task(self.scheduler.trigger())
        await asyncio.wait_for(entered.wait(), timeout=5)
        second = await self.scheduler.trigger()
        self.assertTrue(second.overlapped)
        release.set()
        report = await first
        self.assertEqual(report.launched, 1)

    async def test_record_failure_is_reported_on_the_tick(self):
        await self._create("m")
        self.clock.advance(hours=1)
        with mock.patch.object(self.service, "record_run_result", side_effect=OSError("disk gone")):
            report = await self.scheduler.trigger()
        self.assertEqual(report.failed, 1)
        self.assertIn("disk gone", report.error)
        self.assertIn("mission_error", self._event_names("m"))
        self.assertEqual(self.scheduler.active_runs(), [])


class TestRunMission(_SchedulerTestCase):
    async def test_forced_run_ignores_due_time(self):
        await self._create("m")
        outcome = await self.scheduler.run_mission("m", forced=True)
        self.assertIsInstance(outcome, RunSucceeded)
        self.assertEqual(outcome.result, {"ran": "m"})
        self.assertEqual(outcome.mission.status, "idle")

    async def test_unforced_not_due(self):
        await self._create("m")
        outcome = await self.scheduler.run_mission("m")
        self.assertIsInstance(outcome, RunSkipped)
        self.assertEqual(outcome.reason, "not due")

    async def test_disabled_mission(self):
        await self._create("m", enable=False)
        skipped = await self.scheduler.run_mission("m")
        self.assertEqual(skipped.reason, "disabled")
        forced = await self.scheduler.run_mission("m", forced=True)
        self.assertIsInstance(forced, RunSucceeded)
        self.assertEqual(forced.mission.status, "disabled")
        self.assertIsNone(forced.mission.next_run_at)

    async def test_unknown_mission(self):
        with self.assertRaises(MissionNotFoundError):
            await self.scheduler.run_mission("ghost", forced=True)

    async def test_concurrent_run_is_skipped(self):
        mission = await self._create("m")
        release = asyncio.Event()
        entered = asyncio.Event()

        async def slow(mission, ctx):
            entered.set()
            await release.wait()
            return ExecutorResult(success=True, result="done")

        self.scheduler.set_executor(slow)
        first = asyncio.create_task(self.scheduler.run_mission(mission, forced=True))
        await asyncio.wait_for(entered.wait(), timeout=5)
        self.assertEqual(self.scheduler.active_runs(), ["m"])
        second = await self.scheduler.run_mission("m", forced=True)
        self.assertIsInstance(second, RunSkipped)
        self.assertEqual(second.reason, "already running")
        release.set()
        self.assertIsInstance(await first, RunSucceeded)
        self.assertEqual(self.scheduler.active_runs(), [])

    async def test_executor_failure_result(self):
        await self._create("m")
        self.scheduler.set_executor(lambda mission, ctx: {"success": False, "error": "quota exceeded"})
        outcome = await self.scheduler.run_mission("m", forced=True)
        self.assertIsInstance(outcome, RunFailed)
        self.assertEqual(outcome.error, "quota exceeded")
        self.assertEqual(self._event_names("m")[-2:], ["mission_started", "mission_failed"])

    async def test_executor_context(self):
        await self._create("m")
        seen = {}

        def capture(mission, ctx):
            seen["forced"] = ctx.forced
            seen["controller"] = ctx.controller
            seen["now"] = ctx.clock()

        self.scheduler.set_executor(capture)
        await self.scheduler.run_mission("m", forced=True)
        self.assertTrue(seen["forced"])
        self.assertIs(seen["controller"], self.service)
        self.assertEqual(seen["now"], self.clock.now)


class TestLifecycle(_SchedulerTestCase):
    async def test_start_runs_loop_and_stop_persists(self):
        await self._create("m")
        self.clock.advance(hours=1)
        ran = asyncio.Event()

        async def executor(mission, ctx):
            ran.set()

        self.scheduler.set_executor(executor)
        self.assertTrue(await self.scheduler.start())
        self.assertFalse(await self.scheduler.start())
        await asyncio.wait_for(ran.wait(), timeout=5)
        self.assertTrue(await self.scheduler.stop())
        self.assertFalse(self.scheduler.is_running())
        self.assertFalse(await self.scheduler.stop())
        state = json.loads(self.state_store.path.read_text(encoding="utf-8"))
        self.assertEqual(state["lastPersistReason"], "stopped")
        self.assertFalse(state["running"])
        self.assertIn("scheduler_started", self._event_names())
        self.assertIn("scheduler_stopped", self._event_names())

    async def test_start_recovers_interrupted_runs(self):
        await self._create("m")
        await self.service.record_run_start("m")
        recovered = []
        original = self.service.recover_interrupted_runs

        async def recover(active_ids=()):
            missions = await original(active_ids)
            recovered.extend(m.last_run_error for m in missions)
            return missions

        self.service.recover_interrupted_runs = recover
        await self.scheduler.start()
        await self.scheduler.stop()
        self.assertEqual(recovered, [INTERRUPTED_RUN_ERROR])
        mission = await self.service.get_mission("m")
        self.assertNotEqual(mission.status, "running")

    async def test_destroy_is_terminal(self):
        await self.scheduler.destroy()
        self.assertTrue(self.scheduler.is_destroyed())
        with self.assertRaises(SchedulerDestroyedError):
            await self.scheduler.trigger()
        with self.assertRaises(SchedulerDestroyedError):
            await self.scheduler.start()
        with self.assertRaises(SchedulerDestroyedError):
            await self.scheduler.run_mission("m", forced=True)

    async def test_restore_state_keeps_loop_stopped(self):
        snapshot = SchedulerStateSnapshot(running=True, interval_ms=20, last_tick_evaluated=4, last_tick_launched=2)
        await self.state_store.save_state(snapshot, "tick_complete")
        restored = MissionScheduler(self.service, state_store=self.state_store, clock=self.clock)
        await restored.restore_state()
        state = restored.get_state()
        self.assertFalse(state.running)
        self.assertEqual(state.last_tick_evaluated, 4)
        self.assertEqual(state.last_persist_reason, "tick_complete")
        await restored.destroy()


class TestRestartFromDisk(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.data_dir = Path(self.tmp.name)
        self.clock = _FakeClock(datetime(2025, 1, 1, 12, tzinfo=timezone.utc))
        self.executor = _RecordingExecutor()
        self.store = JsonMissionStore(self.data_dir)
        self.service = MissionService(self.store, clock=self.clock)
        self.scheduler = MissionScheduler(
            self.service,
            executor=self.executor,
            state_store=SchedulerStateStore(self.data_dir),
            interval_ms=60_000,
            clock=self.clock,
        )

    async def asyncTearDown(self):
        await self.scheduler.destroy()
        await self.store.close()
        self.tmp.cleanup()

    def _write_missions(self, *entries):
        (self.data_dir / "missions.json").write_text(json.dumps(list(entries)), encoding="utf-8")

    def _entry(self, mission_id, next_run_at):
        return {
            "id": mission_id,
            "name": mission_id,
            "schedule": {"kind": "interval", "intervalMinutes": 60, "timezone": "UTC"},
            "enable": True,
            "status": "idle",
            "createdAt": "2024-12-31T00:00:00.000Z",
            "updatedAt": "2024-12-31T00:00:00.000Z",
            "nextRunAt": next_run_at,
        }

    async def test_overdue_mission_runs_after_restart(self):
        self._write_missions(
            self._entry("overdue", "2025-01-01T11:00:00.000Z"),
            self._entry("later", "2025-01-01T13:00:00.000Z"),
        )
        self.assertTrue(await self.scheduler.start())
        await self.scheduler.trigger()
        await self.scheduler.stop()
        self.assertEqual(self.executor.calls, ["overdue"])
        mission = await self.service.get_mission("overdue")
        self.assertEqual(mission.status, "idle")
        self.assertEqual(mission.next_run_at, datetime(2025, 1, 1, 13, tzinfo=timezone.utc))

    async def test_unreadable_state_file_does_not_block_ticks(self):
        self._write_missions(self._entry("overdue", "2025-01-01T11:00:00.000Z"))
        (self.data_dir / "scheduler-state.json").write_bytes(b"\xff\xfe{garbage")
        with self.assertLogs("research_missions.persistence.scheduler_state_store", level="WARNING"):
            report = await self.scheduler.trigger()
        self.assertEqual(report.launched, 1)
        self.assertEqual(self.executor.calls, ["overdue"])

    async def test_out_of_range_state_timestamp_is_ignored(self):
        (self.data_dir / "scheduler-state.json").write_text(json.dumps({"lastTickStartedAt": 1e30}), encoding="utf-8")
        with self.assertLogs("research_missions.persistence.scheduler_state_store", level="WARNING"):
            self.assertTrue(await self.scheduler.start())
        await self.scheduler.stop()
        report = await self.scheduler.trigger()
        self.assertEqual(report.evaluated, 0)
        self.assertEqual(self.scheduler.get_state().last_tick_started_at, self.clock.now)


class TestExecutorResults(unittest.TestCase):
    def test_coercion(self):
        self.assertEqual(coerce_executor_result(None), ExecutorResult(success=True))
        self.assertEqual(coerce_executor_result(False), ExecutorResult(success=False))
        self.assertEqual(coerce_executor_result({"error": "x", "success": False}), ExecutorResult(False, None, "x"))
        self.assertEqual(coerce_executor_result("plain"), ExecutorResult(success=True, result="plain"))

    def test_noop_executor(self):
        ctx = mock.Mock()
        result = asyncio.run(noop_executor(mock.Mock(mission_id="m"), ctx))
        self.assertTrue(result.success)
        self.assertEqual(result.result, {"note": "no-op executor"})


if __name__ == "__main__":
    unittest.main()
