import json
import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from oka.config import (
    AppConfig,
    AutonomousRuntimeConfig,
    LLMSettings,
    Paths,
    build_workspace_path_env,
    load_config,
    load_paths,
    load_runtime_config,
    save_config,
)


class RuntimeConfigTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.path = Path(self.temp_dir.name) / "autonomous.config.json"

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_missing_file_uses_defaults(self) -> None:
        config = load_runtime_config(self.path)
        self.assertEqual(config, AutonomousRuntimeConfig())
        self.assertEqual(config.max_tasks_per_plan, 5)
        self.assertEqual(config.retry_budget_per_node, 1)
        self.assertEqual(config.replan_budget_per_run, 1)
        self.assertFalse(config.policy.allow_external_mutation)
        self.assertFalse(config.policy.preserve_unaffected_pending)

    def test_partial_overrides(self) -> None:
        self.path.write_text(
            json.dumps(
                {
                    "max_tasks_per_plan": 3,
                    "context_pack": {"max_procedures": 5},
                    "policy": {"preserve_unaffected_pending": True},
                }
            ),
            encoding="utf-8",
        )
        config = load_runtime_config(self.path)
        self.assertEqual(config.max_tasks_per_plan, 3)
        self.assertEqual(config.retry_budget_per_node, 1)
        self.assertEqual(config.context_pack.max_procedures, 5)
        self.assertEqual(config.context_pack.max_relevant_facts, 6)
        self.assertTrue(config.policy.preserve_unaffected_pending)

    def test_unreadable_or_invalid_values_fall_back(self) -> None:
        self.path.write_text("{broken", encoding="utf-8")
        self.assertEqual(load_runtime_config(self.path), AutonomousRuntimeConfig())
        self.path.write_text(json.dumps({"max_tasks_per_plan": "many"}), encoding="utf-8")
        self.assertEqual(load_runtime_config(self.path), AutonomousRuntimeConfig())
        self.path.write_text(json.dumps({"max_tasks_per_plan": 0, "retry_budget_per_node": -2}), encoding="utf-8")
        config = load_runtime_config(self.path)
        self.assertEqual(config.max_tasks_per_plan, 5)
        self.assertEqual(config.retry_budget_per_node, 1)

    def test_policy_flags_accept_only_booleans(self) -> None:
        self.path.write_text(
            json.dumps(
                {"policy": {"allow_external_mutation": "false", "preserve_unaffected_pending": 1}}
            ),
            encoding="utf-8",
        )
        config = load_runtime_config(self.path)
        self.assertFalse(config.policy.allow_external_mutation)
        self.assertFalse(config.policy.preserve_unaffected_pending)
        self.path.write_text(
            json.dumps({"policy": {"allow_external_mutation": True}}), encoding="utf-8"
        )
        self.assertTrue(load_runtime_config(self.path).policy.allow_external_mutation)


class AppConfigTests(unittest.TestCase):
    def test_save_and_load(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "config.json"
            config = AppConfig(
                llm=LLMSettings(provider="ollama", model="llama3", base_url="http://localhost:11434")
            )
            save_config(path, config)
            self.assertEqual(load_config(path), config)

    def test_paths_follow_env(self) -> None:
        with patch.dict(os.environ, {"OKA_WORKSPACE_DIR": "/tmp/oka-ws"}):
            self.assertEqual(load_paths().base_dir, Path("/tmp/oka-ws"))
        self.assertEqual(load_paths(Path("/x")).brain_dir, Path("/x/brain"))

    def test_workspace_path_env_prefixes_tool_dirs(self) -> None:
        paths = Paths(base_dir=Path("/ws"))
        value = build_workspace_path_env(paths, base_path="/usr/bin")
        self.assertEqual(
            value.split(os.pathsep),
            ["/ws/tools/bin", "/ws/tools/python/bin", "/ws/tools/node/bin", "/usr/bin"],
        )


if __name__ == "__main__":
    unittest.main()
