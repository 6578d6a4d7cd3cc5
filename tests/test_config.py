import contextlib
import io
import tempfile
import unittest
from pathlib import Path

from research_missions.config import (
    DEFAULT_POLL_INTERVAL_MS,
    MIN_POLL_INTERVAL_MS,
    apply_env_defaults,
    load_env_with_fallback,
    load_missions_config,
)


class TestMissionsConfig(unittest.TestCase):
    def test_defaults(self):
        cfg = load_missions_config({})
        self.assertTrue(cfg.enabled)
        self.assertTrue(cfg.scheduler_enabled)
        self.assertTrue(cfg.http_enabled)
        self.assertFalse(cfg.scheduler_autostart)
        self.assertEqual(cfg.polling_interval_ms, DEFAULT_POLL_INTERVAL_MS)
        self.assertEqual(cfg.executor, "noop")
        self.assertEqual(cfg.data_dir, Path.cwd() / ".data" / "missions")

    def test_master_flag_cascades(self):
        cfg = load_missions_config({"MISSIONS_ENABLED": "false"})
        self.assertFalse(cfg.enabled)
        self.assertFalse(cfg.scheduler_enabled)
        self.assertFalse(cfg.http_enabled)
        self.assertFalse(cfg.telemetry_enabled)

    def test_sub_flags_override(self):
        cfg = load_missions_config({"MISSIONS_SCHEDULER_ENABLED": "off", "MISSIONS_TELEMETRY_ENABLED": "maybe"})
        self.assertTrue(cfg.enabled)
        self.assertFalse(cfg.scheduler_enabled)
        self.assertTrue(cfg.telemetry_enabled)

    def test_poll_interval(self):
        self.assertEqual(load_missions_config({"MISSIONS_POLL_INTERVAL_MS": "50"}).polling_interval_ms, MIN_POLL_INTERVAL_MS)
        self.assertEqual(load_missions_config({"MISSIONS_POLL_INTERVAL_MS": "5000"}).polling_interval_ms, 5000)
        self.assertEqual(
            load_missions_config({"MISSIONS_POLL_INTERVAL_MS": "soon"}).polling_interval_ms,
            DEFAULT_POLL_INTERVAL_MS,
        )

    def test_unknown_executor_falls_back(self):
        err = io.StringIO()
        with contextlib.redirect_stderr(err):
            cfg = load_missions_config({"MISSIONS_EXECUTOR": "Docker"})
        self.assertEqual(cfg.executor, "noop")
        self.assertIn("MISSIONS_EXECUTOR", err.getvalue())
        self.assertEqual(load_missions_config({"MISSIONS_EXECUTOR": "COMMAND"}).executor, "command")

    def test_paths_are_resolved(self):
        with tempfile.TemporaryDirectory() as tmp:
            cfg = load_missions_config({"MISSIONS_DATA_DIR": tmp, "MISSIONS_TEMPLATES_DIR": tmp})
            self.assertEqual(cfg.data_dir, Path(tmp).resolve())
            self.assertEqual(cfg.templates_dir, Path(tmp).resolve())


class TestEnvFiles(unittest.TestCase):
    def test_env_defaults_never_override(self):
        target = {"MISSIONS_ENABLED": "false", "EMPTY": " "}
        applied = apply_env_defaults({"MISSIONS_ENABLED": "true", "EMPTY": "x", "NEW": "1", "": "skip"}, target)
        self.assertEqual(applied, 2)
        self.assertEqual(target, {"MISSIONS_ENABLED": "false", "EMPTY": "x", "NEW": "1"})

    def test_env_file_parsing(self):
        with tempfile.TemporaryDirectory() as tmp:
            (Path(tmp) / ".env").write_text(
                "# comment\nMISSIONS_EXECUTOR='command'\nMISSIONS_POLL_INTERVAL_MS = \"2000\"\nbroken line\n",
                encoding="utf-8",
            )
            data = load_env_with_fallback(Path(tmp))
        self.assertEqual(data, {"MISSIONS_EXECUTOR": "command", "MISSIONS_POLL_INTERVAL_MS": "2000"})


if __name__ == "__main__":
    unittest.main()
