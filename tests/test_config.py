"""
Foresight — Configuration Tests

Tests:
  - Defaults match the documented values
  - Flat option names bind onto the nested tree
  - validate() rejects out-of-range values
  - Deep merge semantics
  - Three-tier loading: base file, env overlay file, FS_ env vars
"""

import os
import shutil
import sys
import tempfile
import unittest
from unittest.mock import patch

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from engine.config import (
    ConfigError, EngineConfig, deep_merge, get_config_value, load_config, load_engine_config,
)


class TestDefaults(unittest.TestCase):

    def test_defaults(self):
        cfg = EngineConfig()
        self.assertEqual((cfg.embedding.p, cfg.embedding.q), (2.0, 0.5))
        self.assertEqual(cfg.embedding.walk_length, 15)
        self.assertEqual(cfg.embedding.walks_per_node, 30)
        self.assertEqual(cfg.embedding.window_size, 5)
        self.assertEqual(cfg.embedding.embedding_dim, 32)
        self.assertEqual((cfg.threshold.min, cfg.threshold.max), (0.70, 0.95))
        self.assertEqual(cfg.threshold.initial, 0.92)
        self.assertEqual(cfg.threshold.step, 0.02)
        self.assertEqual(cfg.threshold.window_size, 50)
        self.assertEqual(cfg.learning.learning_rate, 0.1)
        self.assertEqual(cfg.predictor.top_k, 5)
        self.assertEqual(cfg.speculation.allow, [])
        self.assertIs(cfg.validate(), cfg)


class TestFromDict(unittest.TestCase):

    def test_flat_aliases(self):
        cfg = EngineConfig.from_dict({
            "p": 1.0, "q": 4.0, "walkLength": 8, "topK": 3,
            "thresholdMin": 0.6, "adaptiveWindowSize": 20, "learningRate": 0.2,
        })
        self.assertEqual((cfg.embedding.p, cfg.embedding.q), (1.0, 4.0))
        self.assertEqual(cfg.embedding.walk_length, 8)
        self.assertEqual(cfg.predictor.top_k, 3)
        self.assertEqual(cfg.threshold.min, 0.6)
        self.assertEqual(cfg.threshold.window_size, 20)
        self.assertEqual(cfg.learning.learning_rate, 0.2)

    def test_nested_and_flat_flat_wins(self):
        cfg = EngineConfig.from_dict({"embedding": {"p": 3.0, "seed": 7}, "p": 1.5})
        self.assertEqual(cfg.embedding.p, 1.5)
        self.assertEqual(cfg.embedding.seed, 7)

    def test_unknown_keys_ignored(self):
        cfg = EngineConfig.from_dict({"bogus": 1, "embedding": {"nope": 2},
                                      "_active_env": "dev"})
        self.assertEqual(cfg.embedding.p, 2.0)

    def test_empty(self):
        self.assertEqual(EngineConfig.from_dict(None), EngineConfig())


class TestValidate(unittest.TestCase):

    def _invalid(self, data):
        with self.assertRaises(ConfigError):
            EngineConfig.from_dict(data).validate()

    def test_p_q_positive(self):
        self._invalid({"p": 0})
        self._invalid({"q": -1})

    def test_threshold_band(self):
        self._invalid({"thresholdMin": 0.96})
        self._invalid({"threshold": {"initial": 0.5}})
        self._invalid({"thresholdMax": 1.2})
        self._invalid({"threshold": {"lower_bound": 0.9, "upper_bound": 0.8}})
        self._invalid({"threshold": {"scope": "tenant"}})

    def test_learning_rate(self):
        self._invalid({"learningRate": 0})
        self._invalid({"learningRate": 1.5})

    def test_walk_params(self):
        self._invalid({"walkLength": 0})
        self._invalid({"embeddingDim": 0})

    def test_predictor_weights(self):
        self._invalid({"predictor": {"semantic_weight": 0, "importance_weight": 0,
                                     "path_weight": 0}})
        self._invalid({"topK": 0})

    def test_config_error_is_value_error(self):
        self.assertTrue(issubclass(ConfigError, ValueError))


class TestDeepMerge(unittest.TestCase):

    def test_nested_override(self):
        base = {"embedding": {"p": 2.0, "q": 0.5}, "tags": [1, 2]}
        merged = deep_merge(base, {"embedding": {"p": 1.0}, "tags": [3]})
        self.assertEqual(merged, {"embedding": {"p": 1.0, "q": 0.5}, "tags": [3]})
        self.assertEqual(base["embedding"]["p"], 2.0)

    def test_get_config_value(self):
        cfg = {"threshold": {"window_size": 20}}
        self.assertEqual(get_config_value("threshold.window_size", cfg), 20)
        self.assertEqual(get_config_value("threshold.missing", cfg, 9), 9)


class TestLoading(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.base = os.path.join(self.tmpdir, "foresight.yaml")
        with open(self.base, "w") as f:
            f.write("embedding:\n  p: 1.0\n  walk_length: 10\n"
                    "speculation:\n  allow: ['fs:read*']\n")
        os.makedirs(os.path.join(self.tmpdir, "config"))
        with open(os.path.join(self.tmpdir, "config", "prod.yaml"), "w") as f:
            f.write("embedding:\n  walk_length: 20\n")

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_base_file(self):
        cfg = load_engine_config(self.base, include_env_vars=False)
        self.assertEqual(cfg.embedding.p, 1.0)
        self.assertEqual(cfg.embedding.walk_length, 10)
        self.assertEqual(cfg.speculation.allow, ["fs:read*"])

    def test_overlay_file(self):
        cfg = load_engine_config(self.base, env="prod",
                                 config_dir=os.path.join(self.tmpdir, "config"),
                                 include_env_vars=False)
        self.assertEqual(cfg.embedding.walk_length, 20)
        self.assertEqual(cfg.embedding.p, 1.0)

    def test_env_overrides_win(self):
        with patch.dict(os.environ, {"FS_EMBEDDING__WALK_LENGTH": "42",
                                     "FS_THRESHOLD__SCOPE": "namespace"}):
            cfg = load_engine_config(self.base)
        self.assertEqual(cfg.embedding.walk_length, 42)
        self.assertEqual(cfg.threshold.scope, "namespace")

    def test_missing_base_file(self):
        raw = load_config(os.path.join(self.tmpdir, "absent.yaml"), include_env_vars=False)
        self.assertEqual(raw["_config_source"], os.path.join(self.tmpdir, "absent.yaml"))
        self.assertEqual(EngineConfig.from_dict(raw), EngineConfig())

    def test_invalid_file_value_is_fatal(self):
        with open(self.base, "w") as f:
            f.write("threshold:\n  min: 0.99\n")
        with self.assertRaises(ConfigError):
            load_engine_config(self.base, include_env_vars=False)


if __name__ == "__main__":
    unittest.main()
