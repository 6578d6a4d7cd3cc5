import tempfile
import unittest
from pathlib import Path

import yaml

from research_missions.domain.errors import InvalidMissionError, TemplateNotFoundError
from research_missions.services.mission_templates import (
    MissionTemplatesRepository,
    apply_draft_overrides,
    normalize_slug,
)

_SWEEP = """\
name: Nightly literature sweep
description: Pull new papers
schedule:
  cron: "0 2 * * *"
  timezone: Europe/Amsterdam
priority: 6
tags: research, nightly
payload:
  topics: [llm, agents]
"""


class TestMissionTemplates(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self.tmp.name)
        (self.dir / "nightly-sweep.mission.yaml").write_text(_SWEEP, encoding="utf-8")
        self.repo = MissionTemplatesRepository(self.dir)

    def tearDown(self):
        self.tmp.cleanup()

    def test_list_and_get(self):
        templates = self.repo.list_templates()
        self.assertEqual([t.slug for t in templates], ["nightly-sweep"])
        template = self.repo.get_template("Nightly-Sweep.mission.yaml")
        self.assertEqual(template.draft.tags, ("research", "nightly"))
        self.assertEqual(template.draft.schedule.timezone, "Europe/Amsterdam")
        self.assertEqual(template.to_dict()["sourcePath"], str(self.dir / "nightly-sweep.mission.yaml"))

    def test_invalid_files_are_skipped(self):
        (self.dir / "broken.yaml").write_text("name: [unclosed", encoding="utf-8")
        (self.dir / "no-schedule.yaml").write_text("name: Orphan\n", encoding="utf-8")
        (self.dir / "notes.txt").write_text("ignored", encoding="utf-8")
        with self.assertLogs("research_missions.services.mission_templates", level="WARNING"):
            slugs = [t.slug for t in self.repo.list_templates()]
        self.assertEqual(slugs, ["nightly-sweep"])

    def test_missing_directory(self):
        repo = MissionTemplatesRepository(self.dir / "absent")
        with self.assertLogs("research_missions.services.mission_templates", level="WARNING"):
            self.assertEqual(repo.list_templates(), [])

    def test_draft_with_overrides(self):
        draft = self.repo.create_draft_from_template("nightly-sweep", {"intervalMinutes": 30, "priority": 2})
        self.assertEqual(draft["schedule"], {"kind": "interval", "intervalMinutes": 30, "timezone": "Europe/Amsterdam"})
        self.assertEqual(draft["priority"], 2)
        self.assertEqual(draft["payload"], {"topics": ["llm", "agents"]})
        self.assertNotIn("slug", draft)

    def test_timezone_override_keeps_cron(self):
        draft = self.repo.create_draft_from_template("nightly-sweep", {"timezone": "UTC", "name": None})
        self.assertEqual(draft["schedule"], {"kind": "cron", "cron": "0 2 * * *", "timezone": "UTC"})
        self.assertEqual(draft["name"], "Nightly literature sweep")

    def test_conflicting_schedule_overrides(self):
        with self.assertRaises(InvalidMissionError):
            apply_draft_overrides(
                {"name": "x", "schedule": {"intervalMinutes": 5}},
                {"intervalMinutes": 10, "cron": "* * * * *"},
            )

    def test_unknown_template(self):
        with self.assertRaises(TemplateNotFoundError):
            self.repo.create_draft_from_template("ghost")
        self.assertIsNone(self.repo.get_template("ghost"))

    def test_save_and_delete(self):
        saved = self.repo.save_template(
            {"name": "Weekly Review", "schedule": {"intervalMinutes": 10080}, "tags": ["Review"], "sourcePath": "/x"}
        )
        self.assertEqual(saved.slug, "weekly-review")
        self.assertEqual(saved.source_path.name, "weekly-review.mission.yaml")
        document = yaml.safe_load(saved.source_path.read_text(encoding="utf-8"))
        self.assertEqual(document["slug"], "weekly-review")
        self.assertEqual(document["schedule"], {"intervalMinutes": 10080, "timezone": "UTC"})
        self.assertEqual(document["tags"], ["review"])
        self.assertEqual(self.repo.get_template("weekly-review").draft.name, "Weekly Review")

        self.assertTrue(self.repo.delete_template("weekly-review"))
        self.assertFalse(self.repo.delete_template("weekly-review"))

    def test_save_overwrites_existing_file(self):
        self.repo.save_template({"slug": "nightly-sweep", "name": "Renamed", "schedule": {"intervalMinutes": 60}})
        self.assertEqual(sorted(p.name for p in self.dir.iterdir()), ["nightly-sweep.mission.yaml"])
        self.assertEqual(self.repo.get_template("nightly-sweep").draft.name, "Renamed")

    def test_save_rejects_invalid_definition(self):
        with self.assertRaises(InvalidMissionError):
            self.repo.save_template({"name": "Bad", "schedule": {"cron": "nope"}})
        with self.assertRaises(InvalidMissionError):
            self.repo.save_template(["not", "a", "mapping"])


class TestNormalizeSlug(unittest.TestCase):
    def test_variants(self):
        self.assertEqual(normalize_slug("Daily Digest"), "daily-digest")
        self.assertEqual(normalize_slug("daily.mission.yml"), "daily")
        self.assertEqual(normalize_slug("weekly.template.yaml"), "weekly")

    def test_empty(self):
        for value in (None, "", "---"):
            with self.assertRaises(InvalidMissionError):
                normalize_slug(value)


if __name__ == "__main__":
    unittest.main()
