import asyncio
import json
import tempfile
import unittest
from dataclasses import MISSING, fields, replace
from datetime import datetime, timezone
from pathlib import Path
from unittest import mock

from research_missions.domain.errors import StoreCorruptError, StoreIOError
from research_missions.domain.missions import MissionRecord, MissionSchedule
from research_missions.domain.scheduler import SchedulerStateSnapshot
from research_missions.persistence.mission_store import JsonMissionStore
from research_missions.persistence.scheduler_state_store import SchedulerStateStore

_T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _record(mission_id: str, **overrides) -> MissionRecord:
    values = dict(
        mission_id=mission_id,
        name=f"Mission {mission_id}",
        schedule=MissionSchedule.interval(60),
        created_at=_T0,
        updated_at=_T0,
        next_run_at=_T0,
    )
    values.update(overrides)
    return MissionRecord(**values)


class TestJsonMissionStore(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.data_dir = Path(self.tmp.name)
        self.store = JsonMissionStore(self.data_dir)

    async def asyncTearDown(self):
        await self.store.close()
        self.tmp.cleanup()

    async def test_missing_file_is_empty_store(self):
        self.assertEqual(await self.store.list_missions(), [])
        self.assertIsNone(await self.store.get_mission("nope"))

    async def test_empty_file_is_empty_store(self):
        (self.data_dir / "missions.json").write_text("", encoding="utf-8")
        self.assertEqual(await self.store.list_missions(), [])

    async def test_upsert_persists_pretty_json_array(self):
        mission = _record("m1", tags=("ai",), payload={"topic": "llm"})
        await self.store.upsert_mission(mission)
        text = (self.data_dir / "missions.json").read_text(encoding="utf-8")
        self.assertTrue(text.endswith("\n"))
        self.assertIn('\n  {\n    "id": "m1"', text)
        data = json.loads(text)
        self.assertEqual(data[0]["nextRunAt"], "2025-01-01T00:00:00.000Z")

        reopened = JsonMissionStore(self.data_dir)
        loaded = await reopened.get_mission("m1")
        self.assertEqual(loaded.to_dict(), mission.to_dict())
        await reopened.close()

    async def test_corrupt_file_raises(self):
        (self.data_dir / "missions.json").write_text("{not json", encoding="utf-8")
        with self.assertRaises(StoreCorruptError):
            await self.store.list_missions()

    async def test_non_array_file_raises(self):
        (self.data_dir / "missions.json").write_text('{"id": "m1"}', encoding="utf-8")
        with self.assertRaises(StoreCorruptError):
            await self.store.list_missions()

    async def test_undecodable_file_raises_corrupt(self):
        (self.data_dir / "missions.json").write_bytes(b"[\xff]")
        with self.assertRaises(StoreCorruptError):
            await self.store.list_missions()

    async def test_out_of_range_timestamp_raises_corrupt(self):
        entry = _record("m1").to_dict()
        entry["nextRunAt"] = 1e30
        (self.data_dir / "missions.json").write_text(json.dumps([entry]), encoding="utf-8")
        with self.assertRaises(StoreCorruptError):
            await self.store.list_missions()

    async def test_entries_without_id_are_skipped(self):
        good = _record("m1").to_dict()
        (self.data_dir / "missions.json").write_text(json.dumps([{"name": "orphan"}, good]), encoding="utf-8")
        with self.assertLogs("research_missions.persistence.mission_store", level="WARNING"):
            missions = await self.store.list_missions()
        self.assertEqual([m.mission_id for m in missions], ["m1"])

    async def test_remove_missing_returns_none(self):
        self.assertIsNone(await self.store.remove_mission("ghost"))
        await self.store.upsert_mission(_record("m1"))
        removed = await self.store.remove_mission("m1")
        self.assertEqual(removed.mission_id, "m1")
        self.assertEqual(json.loads((self.data_dir / "missions.json").read_text()), [])

    async def test_concurrent_mutations_are_serialized(self):
        await self.store.upsert_mission(_record("m1", description="0"))

        def bump(existing):
            return replace(existing, description=str(int(existing.description) + 1))

        await asyncio.gather(*(self.store.mutate("m1", bump) for _ in range(25)))
        self.assertEqual((await self.store.get_mission("m1")).description, "25")
        reopened = JsonMissionStore(self.data_dir)
        self.assertEqual((await reopened.get_mission("m1")).description, "25")
        await reopened.close()

    async def test_mutator_error_aborts_without_writing(self):
        await self.store.upsert_mission(_record("m1"))
        before = (self.data_dir / "missions.json").read_text()

        def explode(existing):
            raise ValueError("nope")

        with self.assertRaises(ValueError):
            await self.store.mutate("m1", explode)
        self.assertEqual((self.data_dir / "missions.json").read_text(), before)

    async def test_unchanged_mutation_skips_write(self):
        await self.store.upsert_mission(_record("m1"))
        with mock.patch("research_missions.persistence.mission_store.atomic_write_text") as write:
            result = await self.store.mutate("m1", lambda existing: existing)
        write.assert_not_called()
        self.assertEqual(result.mission_id, "m1")

    async def test_write_failure_keeps_memory_unchanged(self):
        await self.store.upsert_mission(_record("m1"))
        with mock.patch(
            "research_missions.persistence.mission_store.atomic_write_text",
            side_effect=OSError("disk full"),
        ):
            with self.assertRaises(StoreIOError):
                await self.store.upsert_mission(_record("m2"))
        self.assertEqual([m.mission_id for m in await self.store.list_missions()], ["m1"])

    async def test_replace_all(self):
        await self.store.upsert_mission(_record("m1"))
        await self.store.replace_all([_record("m2"), _record("m3")])
        self.assertEqual(sorted(m.mission_id for m in await self.store.list_missions()), ["m2", "m3"])


class TestMissionRecordDefaults(unittest.TestCase):
    def test_payload_default_is_a_factory(self):
        payload_field = next(f for f in fields(MissionRecord) if f.name == "payload")
        self.assertIs(payload_field.default, MISSING)
        self.assertEqual(dict(_record("m1").payload), {})


class TestSchedulerStateStore(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = SchedulerStateStore(Path(self.tmp.name))

    async def asyncTearDown(self):
        self.tmp.cleanup()

    async def test_missing_file_reads_none(self):
        self.assertIsNone(await self.store.load_state())

    async def test_round_trip(self):
        snapshot = SchedulerStateSnapshot(
            running=True,
            interval_ms=30000,
            last_tick_started_at=_T0,
            last_tick_evaluated=4,
            last_tick_launched=2,
        )
        self.assertTrue(await self.store.save_state(snapshot, "tick_complete"))
        loaded = await self.store.load_state()
        self.assertEqual(loaded.last_tick_evaluated, 4)
        self.assertEqual(loaded.last_tick_started_at, _T0)
        self.assertEqual(loaded.last_persist_reason, "tick_complete")
        text = self.store.path.read_text(encoding="utf-8")
        self.assertTrue(text.endswith("\n"))

    async def test_malformed_file_reads_none(self):
        self.store.path.write_text("[1, 2]", encoding="utf-8")
        with self.assertLogs("research_missions.persistence.scheduler_state_store", level="WARNING"):
            self.assertIsNone(await self.store.load_state())

    async def test_undecodable_file_reads_none(self):
        self.store.path.write_bytes(b"\xff\xfe{garbage")
        with self.assertLogs("research_missions.persistence.scheduler_state_store", level="WARNING"):
            self.assertIsNone(await self.store.load_state())

    async def test_out_of_range_timestamp_reads_none(self):
        self.store.path.write_text(json.dumps({"lastTickStartedAt": 1e30}), encoding="utf-8")
        with self.assertLogs("research_missions.persistence.scheduler_state_store", level="WARNING"):
            self.assertIsNone(await self.store.load_state())

    async def test_write_failure_returns_false(self):
        with mock.patch(
            "research_missions.persistence.scheduler_state_store.atomic_write_text",
            side_effect=OSError("read-only"),
        ):
            with self.assertLogs("research_missions.persistence.scheduler_state_store", level="WARNING"):
                self.assertFalse(await self.store.save_state(SchedulerStateSnapshot(), "started"))

    async def test_legacy_keys(self):
        self.store.path.write_text(json.dumps({"activeRuns": 2, "reason": "stopped"}), encoding="utf-8")
        loaded = await self.store.load_state()
        self.assertEqual(loaded.active_run_count, 2)
        self.assertEqual(loaded.last_persist_reason, "stopped")


if __name__ == "__main__":
    unittest.main()
