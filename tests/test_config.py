"""
Assist Core — Environment Config Loader Tests

Tests three-tier config loading: base file → overlay files → env vars,
and the typed OrchestratorSettings view over the merged config.
"""

import os
import shutil
import sys
import tempfile
import unittest

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from engine.config import (
    OrchestratorSettings,
    _load_env_overrides,
    _load_overlay_file,
    _set_nested,
    deep_merge,
    get_config_value,
    load_config,
    load_settings,
)

_PRESERVED = ("ASSIST_ENV", "ASSIST_CONFIG_DIR", "ASSIST_VERSION")


def _clear_assist_env():
    saved = {}
    for k in list(os.environ.keys()):
        if k.startswith("ASSIST_") and k not in _PRESERVED:
            saved[k] = os.environ.pop(k)
    return saved


class TestDeepMerge(unittest.TestCase):
    def test_nested_merge(self):
        base = {"orchestrator": {"approval_timeout_seconds": 30, "default_domain": "general"}}
        overlay = {"orchestrator": {"approval_timeout_seconds": 60}}
        self.assertEqual(
            deep_merge(base, overlay),
            {"orchestrator": {"approval_timeout_seconds": 60, "default_domain": "general"}},
        )

    def test_overlay_replaces_list(self):
        result = deep_merge({"orchestrator": {"known_domains": ["a", "b"]}},
                           {"orchestrator": {"known_domains": ["c"]}})
        self.assertEqual(result["orchestrator"]["known_domains"], ["c"])

    def test_base_unmodified(self):
        base = {"a": {"b": 1}}
        deep_merge(base, {"a": {"b": 2}})
        self.assertEqual(base, {"a": {"b": 1}})


class TestSetNested(unittest.TestCase):
    def test_nested_keys(self):
        d = {}
        _set_nested(d, ["checkpoint", "path"], "/tmp/x.db")
        self.assertEqual(d, {"checkpoint": {"path": "/tmp/x.db"}})


class TestOverlayFiles(unittest.TestCase):
    """Per-environment overlay file loading."""

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.config_dir = os.path.join(self.tmpdir, "config")
        os.makedirs(self.config_dir)

        self.base_path = os.path.join(self.tmpdir, "assist_config.yaml")
        with open(self.base_path, "w") as f:
            f.write("orchestrator:\n  approval_timeout_seconds: 30\n  entity_history_cap: 10\n"
                    "checkpoint:\n  path: assist.db\n")

        with open(os.path.join(self.config_dir, "prod.yaml"), "w") as f:
            f.write("orchestrator:\n  approval_timeout_seconds: 120\n"
                    "checkpoint:\n  path: /var/lib/assist/checkpoints.db\n")

        self._saved = _clear_assist_env()

    def tearDown(self):
        shutil.rmtree(self.tmpdir)
        _clear_assist_env()
        os.environ.update(self._saved)

    def test_load_prod_overlay(self):
        overlay = _load_overlay_file(self.base_path, env="prod", config_dir=self.config_dir)
        self.assertEqual(overlay["orchestrator"]["approval_timeout_seconds"], 120)

    def test_nonexistent_env_returns_empty(self):
        self.assertEqual(_load_overlay_file(self.base_path, env="qa", config_dir=self.config_dir), {})

    def test_merged_config_prod(self):
        cfg = load_config(self.base_path, env="prod", config_dir=self.config_dir)
        self.assertEqual(cfg["orchestrator"]["approval_timeout_seconds"], 120)
        self.assertEqual(cfg["orchestrator"]["entity_history_cap"], 10)
        self.assertEqual(cfg["checkpoint"]["path"], "/var/lib/assist/checkpoints.db")

    def test_env_var_wins_over_overlay(self):
        os.environ["ASSIST_APPROVAL_TIMEOUT"] = "5"
        settings = load_settings(self.base_path, env="prod", config_dir=self.config_dir)
        self.assertEqual(settings.approval_timeout_seconds, 5)
        self.assertEqual(settings.checkpoint_path, "/var/lib/assist/checkpoints.db")

    def test_missing_base_file(self):
        cfg = load_config(os.path.join(self.tmpdir, "missing.yaml"), include_env_vars=False)
        self.assertEqual(cfg, {})


class TestEnvVarOverrides(unittest.TestCase):
    """ASSIST_* environment variable overrides."""

    def setUp(self):
        self._saved = _clear_assist_env()

    def tearDown(self):
        _clear_assist_env()
        os.environ.update(self._saved)

    def test_mapped_override(self):
        os.environ["ASSIST_ENTITY_HISTORY_CAP"] = "25"
        self.assertEqual(_load_env_overrides(), {"orchestrator": {"entity_history_cap": 25}})

    def test_boolean_parsed(self):
        os.environ["ASSIST_CHECKPOINT_ON_FINALIZE"] = "false"
        self.assertIs(_load_env_overrides()["checkpoint"]["on_finalize"], False)

    def test_arbitrary_path_override(self):
        os.environ["ASSIST_CONFIG__ORCHESTRATOR__DEFAULT_DOMAIN"] = "task"
        self.assertEqual(_load_env_overrides()["orchestrator"]["default_domain"], "task")

    def test_no_vars_returns_empty(self):
        self.assertEqual(_load_env_overrides(), {})


class TestGetConfigValue(unittest.TestCase):
    def test_paths(self):
        cfg = {"memory": {"recall_limit": 3}}
        self.assertEqual(get_config_value("memory.recall_limit", cfg), 3)
        self.assertIsNone(get_config_value("memory.missing", cfg))
        self.assertEqual(get_config_value("memory.recall_limit.deeper", cfg, "d"), "d")


class TestOrchestratorSettings(unittest.TestCase):
    def test_defaults(self):
        s = OrchestratorSettings()
        self.assertEqual(s.approval_timeout_seconds, 30.0)
        self.assertEqual(s.entity_history_cap, 10)
        self.assertEqual(s.default_domain, "general")
        self.assertIn("contact", s.known_domains)
        self.assertTrue(s.checkpoint_on_finalize)

    def test_from_config_sections(self):
        s = OrchestratorSettings.from_config({
            "orchestrator": {"approval_timeout_seconds": 45, "known_domains": ["calendar", "general"]},
            "memory": {"recall_limit": 2, "recall_threshold": "0.5", "max_retries": 0},
            "checkpoint": {"path": "x.db", "on_finalize": False},
            "logging": {"level": "DEBUG"},
        })
        self.assertEqual(s.approval_timeout_seconds, 45)
        self.assertEqual(s.known_domains, ("calendar", "general"))
        self.assertEqual(s.memory_recall_limit, 2)
        self.assertEqual(s.memory_recall_threshold, 0.5)
        self.assertEqual(s.memory_max_retries, 0)
        self.assertEqual(s.checkpoint_path, "x.db")
        self.assertFalse(s.checkpoint_on_finalize)
        self.assertEqual(s.log_level, "DEBUG")

    def test_empty_config(self):
        self.assertEqual(OrchestratorSettings.from_config({}), OrchestratorSettings())


if __name__ == "__main__":
    unittest.main()
