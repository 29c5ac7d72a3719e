"""
Unit tests for project_memory.config
"""
import os
import tempfile
import unittest
from unittest.mock import patch

import yaml

from project_memory.config import Config
from project_memory.errors import ValidationError


class TestConfigDefaults(unittest.TestCase):

    def test_defaults(self):
        cfg = Config({})
        self.assertEqual(cfg.DATA_DIR, ".project_memory")
        self.assertEqual(cfg.DEFAULT_PROJECT, "default")
        self.assertEqual(cfg.EMBEDDING_MODEL, "nomic-embed-text")
        self.assertEqual(cfg.DISTANCE_METRIC, "cosine")
        self.assertEqual(cfg.KEYWORD_WEIGHT, 0.5)
        self.assertEqual(cfg.DUAL_MATCH_BOOST, 1.2)
        self.assertEqual(cfg.KEYWORD_BOOST_TOP_K, 5)
        self.assertEqual((cfg.DEFAULT_LIMIT, cfg.MAX_LIMIT), (10, 50))
        self.assertFalse(cfg.QUERY_EXPANSION)
        self.assertEqual(cfg.LOG_DIR, os.path.join(".project_memory", "logs"))

    def test_table_thresholds(self):
        cfg = Config({})
        self.assertEqual(cfg.threshold_for("decisions"), 0.3)
        self.assertEqual(cfg.threshold_for("code_patterns"), 0.7)
        self.assertEqual(cfg.threshold_for("unknown"), 0.3)

    def test_store_paths(self):
        cfg = Config({"data_dir": "/tmp/pm"})
        self.assertEqual(cfg.relational_db_path, os.path.join("/tmp/pm", "memory.db"))
        self.assertEqual(cfg.vector_db_path, os.path.join("/tmp/pm", "vectors.db"))


class TestConfigPrecedence(unittest.TestCase):

    def test_yaml_overrides_defaults(self):
        cfg = Config({
            "embedding_model": "hash-256",
            "keyword_weight": 0.7,
            "similarity_thresholds": {"code_patterns": 0.6},
            "openai": {"api_key": "sk-yaml"},
        })
        self.assertEqual(cfg.EMBEDDING_MODEL, "hash-256")
        self.assertEqual(cfg.KEYWORD_WEIGHT, 0.7)
        self.assertEqual(cfg.threshold_for("code_patterns"), 0.6)
        # Partial override keeps the other tables
        self.assertEqual(cfg.threshold_for("progress"), 0.3)
        self.assertEqual(cfg.OPENAI_API_KEY, "sk-yaml")

    @patch.dict(os.environ, {"MEMORY_EMBEDDING_MODEL": "hash-384",
                             "MEMORY_KEYWORD_WEIGHT": "0.3",
                             "MEMORY_QUERY_EXPANSION": "true",
                             "MEMORY_LOG_LEVEL": "debug"})
    def test_env_overrides_yaml(self):
        cfg = Config({"embedding_model": "hash-256", "keyword_weight": 0.7})
        self.assertEqual(cfg.EMBEDDING_MODEL, "hash-384")
        self.assertEqual(cfg.KEYWORD_WEIGHT, 0.3)
        self.assertTrue(cfg.QUERY_EXPANSION)
        self.assertEqual(cfg.LOG_LEVEL, "DEBUG")

    def test_custom_models(self):
        cfg = Config({"embedding_models": {
            "bge-small": {"dimension": 384, "backend": "ollama", "name": "bge-small:latest"},
            "broken": "not a mapping",
        }})
        self.assertEqual(list(cfg.EMBEDDING_MODELS), ["bge-small"])
        self.assertEqual(cfg.EMBEDDING_MODELS["bge-small"]["dimension"], 384)


class TestConfigValidation(unittest.TestCase):

    def test_weight_out_of_range(self):
        with self.assertRaises(ValidationError):
            Config({"vector_weight": 1.5})

    def test_boost_below_one(self):
        with self.assertRaises(ValidationError):
            Config({"dual_match_boost": 0.9})

    def test_unknown_metric(self):
        with self.assertRaises(ValidationError):
            Config({"distance_metric": "manhattan"})

    def test_threshold_out_of_range(self):
        with self.assertRaises(ValidationError):
            Config({"similarity_thresholds": {"decisions": 2}})

    def test_limits(self):
        with self.assertRaises(ValidationError):
            Config({"default_limit": 80, "max_limit": 50})

    def test_metric_case_insensitive(self):
        self.assertEqual(Config({"distance_metric": "L2"}).DISTANCE_METRIC, "l2")


class TestConfigLoad(unittest.TestCase):

    def setUp(self):
        self._tmpdir = tempfile.mkdtemp()

    def test_load_explicit_file(self):
        path = os.path.join(self._tmpdir, "memory.yaml")
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump({"default_project": "billing", "max_limit": 20}, f)
        cfg = Config.load(path)
        self.assertEqual(cfg.DEFAULT_PROJECT, "billing")
        self.assertEqual(cfg.MAX_LIMIT, 20)

    def test_missing_explicit_file_uses_defaults(self):
        cfg = Config.load(os.path.join(self._tmpdir, "nope.yaml"))
        self.assertEqual(cfg.DEFAULT_PROJECT, "default")

    def test_invalid_yaml_uses_defaults(self):
        path = os.path.join(self._tmpdir, "broken.yaml")
        with open(path, "w", encoding="utf-8") as f:
            f.write("default_project: [unclosed\n")
        self.assertEqual(Config.load(path).DEFAULT_PROJECT, "default")

    def test_finds_file_in_cwd(self):
        with open(os.path.join(self._tmpdir, ".project_memory.yaml"), "w",
                  encoding="utf-8") as f:
            yaml.safe_dump({"default_project": "from-cwd"}, f)
        cwd = os.getcwd()
        os.chdir(self._tmpdir)
        try:
            self.assertEqual(Config.load().DEFAULT_PROJECT, "from-cwd")
        finally:
            os.chdir(cwd)


if __name__ == "__main__":
    unittest.main()
