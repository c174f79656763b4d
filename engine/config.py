"""
Foresight — Engine Configuration

Three-tier configuration loading:
  1. Base YAML file (foresight.yaml, or FS_CONFIG_PATH)
  2. Per-environment overlay files (config/{FS_ENV}.yaml merged over base)
  3. Environment variable overrides (FS_ prefixed, "__" separates levels)

The merged dict is then bound to the typed EngineConfig tree, which is
what every component receives.

Usage:
    from engine.config import load_engine_config

    cfg = load_engine_config()               # file + overlay + env
    cfg = EngineConfig.from_dict({"p": 1.0, "topK": 3})   # flat option names

Environment variables:
    FS_ENV              — active profile (dev, staging, prod)
    FS_CONFIG_DIR       — directory for overlay files (default: config/)
    FS_CONFIG_PATH      — base config file (default: foresight.yaml)
    FS_<SECTION>__<KEY> — overrides (e.g., FS_EMBEDDING__WALK_LENGTH=20)
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("foresight.config")


class ConfigError(ValueError):
    """Raised when configuration values are invalid. Fatal at startup."""


# ═══════════════════════════════════════════════════════════════════
# Typed Configuration
# ═══════════════════════════════════════════════════════════════════

@dataclass
class EmbeddingConfig:
    """Biased random walks + skip-gram training."""
    p: float = 2.0                  # return parameter
    q: float = 0.5                  # in-out parameter
    gamma: float = 1.0              # edge-weight normalization scale
    epsilon: float = 1e-9           # floor for the normalization denominator
    walk_length: int = 15
    walks_per_node: int = 30
    window_size: int = 5
    embedding_dim: int = 32
    epochs: int = 1
    negative_samples: int = 5
    sgd_learning_rate: float = 0.025
    sgd_min_learning_rate: float = 0.0001
    seed: int = 42


@dataclass
class PredictorConfig:
    top_k: int = 5
    semantic_weight: float = 0.7
    importance_weight: float = 0.1
    path_weight: float = 0.2
    context_window: int = 3
    path_prior: float = 1.0
    pagerank_damping: float = 0.85


@dataclass
class ThresholdConfig:
    initial: float = 0.92
    min: float = 0.70
    max: float = 0.95
    step: float = 0.02
    window_size: int = 50
    upper_bound: float = 0.90
    lower_bound: float = 0.80
    scope: str = "global"           # global | namespace
    namespace_separator: str = ":"


@dataclass
class LearningConfig:
    learning_rate: float = 0.1      # TD alpha
    initial_value: float = 0.5      # TD value of a fresh edge
    trace_buffer_size: int = 1000
    per_alpha: float = 0.6
    replay_sample_size: int = 100
    retrain_every: int = 10         # completed workflows between retrains


@dataclass
class SpeculationConfig:
    enabled: bool = True
    allow: list[str] = field(default_factory=list)
    side_effecting: list[str] = field(default_factory=list)
    deny_keywords: list[str] | None = None   # None → built-in dangerous list
    max_workers: int = 4
    timeout_seconds: float = 30.0
    commit_wait_seconds: float = 0.0


@dataclass
class CheckpointConfig:
    path: str = "foresight.db"
    keep: int = 5
    auto_prune: bool = True


# Flat option names recognized on the driver-facing surface
_FLAT_ALIASES: dict[str, tuple[str, str]] = {
    "p": ("embedding", "p"),
    "q": ("embedding", "q"),
    "gamma": ("embedding", "gamma"),
    "walkLength": ("embedding", "walk_length"),
    "walksPerNode": ("embedding", "walks_per_node"),
    "windowSize": ("embedding", "window_size"),
    "embeddingDim": ("embedding", "embedding_dim"),
    "thresholdMin": ("threshold", "min"),
    "thresholdMax": ("threshold", "max"),
    "thresholdStep": ("threshold", "step"),
    "adaptiveWindowSize": ("threshold", "window_size"),
    "learningRate": ("learning", "learning_rate"),
    "topK": ("predictor", "top_k"),
}

_SECTIONS = {
    "embedding": EmbeddingConfig,
    "predictor": PredictorConfig,
    "threshold": ThresholdConfig,
    "learning": LearningConfig,
    "speculation": SpeculationConfig,
    "checkpoint": CheckpointConfig,
}


@dataclass
class EngineConfig:
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    predictor: PredictorConfig = field(default_factory=PredictorConfig)
    threshold: ThresholdConfig = field(default_factory=ThresholdConfig)
    learning: LearningConfig = field(default_factory=LearningConfig)
    speculation: SpeculationConfig = field(default_factory=SpeculationConfig)
    checkpoint: CheckpointConfig = field(default_factory=CheckpointConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> EngineConfig:
        """
        Bind a (possibly partial) config dict.

        Accepts the nested YAML shape ({"embedding": {"p": 1.0}}) and the
        flat option names ({"p": 1.0, "topK": 3}). Flat names win over
        nested ones when both are given.
        """
        data = dict(data or {})
        nested: dict[str, dict[str, Any]] = {name: {} for name in _SECTIONS}

        for key, value in data.items():
            if key in _SECTIONS and isinstance(value, dict):
                nested[key].update(value)
            elif key.startswith("_") or key in _FLAT_ALIASES:
                continue
            else:
                logger.debug("Ignoring unknown config key: %s", key)

        for key, (section, attr) in _FLAT_ALIASES.items():
            if key in data:
                nested[section][attr] = data[key]

        kwargs = {}
        for name, section_cls in _SECTIONS.items():
            known = {f.name for f in fields(section_cls)}
            values = {}
            for k, v in nested[name].items():
                if k in known:
                    values[k] = v
                else:
                    logger.debug("Ignoring unknown config key: %s.%s", name, k)
            kwargs[name] = section_cls(**values)
        return cls(**kwargs)

    def validate(self) -> EngineConfig:
        """Raise ConfigError on any out-of-range value. Returns self."""
        e, pr, t, l = self.embedding, self.predictor, self.threshold, self.learning

        if e.p <= 0 or e.q <= 0:
            raise ConfigError(f"p and q must be > 0 (p={e.p}, q={e.q})")
        if e.gamma < 0:
            raise ConfigError(f"gamma must be >= 0 (gamma={e.gamma})")
        if e.epsilon <= 0:
            raise ConfigError("epsilon must be > 0")
        for name in ("walk_length", "walks_per_node", "window_size",
                     "embedding_dim", "epochs"):
            if getattr(e, name) < 1:
                raise ConfigError(f"embedding.{name} must be >= 1")
        if e.negative_samples < 0:
            raise ConfigError("embedding.negative_samples must be >= 0")

        if not (0.0 <= t.min <= t.initial <= t.max <= 1.0):
            raise ConfigError(
                f"threshold band must satisfy 0 <= min <= initial <= max <= 1 "
                f"(min={t.min}, initial={t.initial}, max={t.max})"
            )
        if t.lower_bound >= t.upper_bound:
            raise ConfigError(
                f"threshold.lower_bound ({t.lower_bound}) must be below "
                f"upper_bound ({t.upper_bound})"
            )
        if t.step <= 0:
            raise ConfigError("threshold.step must be > 0")
        if t.window_size < 1:
            raise ConfigError("threshold.window_size must be >= 1")
        if t.scope not in ("global", "namespace"):
            raise ConfigError(f"threshold.scope must be global|namespace, got {t.scope!r}")

        if not (0.0 < l.learning_rate <= 1.0):
            raise ConfigError(f"learning.learning_rate must be in (0, 1], got {l.learning_rate}")
        if not (0.0 <= l.initial_value <= 1.0):
            raise ConfigError("learning.initial_value must be in [0, 1]")
        if l.trace_buffer_size < 1:
            raise ConfigError("learning.trace_buffer_size must be >= 1")

        if pr.top_k < 1:
            raise ConfigError("predictor.top_k must be >= 1")
        weights = (pr.semantic_weight, pr.importance_weight, pr.path_weight)
        if any(w < 0 for w in weights) or sum(weights) <= 0:
            raise ConfigError(f"predictor weights must be >= 0 with a positive sum: {weights}")

        if self.speculation.max_workers < 1:
            raise ConfigError("speculation.max_workers must be >= 1")
        if self.speculation.timeout_seconds <= 0:
            raise ConfigError("speculation.timeout_seconds must be > 0")
        return self


# ═══════════════════════════════════════════════════════════════════
# Deep Merge
# ═══════════════════════════════════════════════════════════════════

def deep_merge(base: dict, overlay: dict) -> dict:
    """
    Deep-merge overlay into base. Overlay values win.
    Lists are replaced (not appended). Dicts are recursed.
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _set_nested(d: dict, keys: list[str], value: Any):
    """Set a nested dict value from a list of keys."""
    for key in keys[:-1]:
        d = d.setdefault(key, {})
    d[keys[-1]] = value


# ═══════════════════════════════════════════════════════════════════
# Tier 2: Overlay Files
# ═══════════════════════════════════════════════════════════════════

def _load_overlay_file(
    base_path: str,
    env: str = "",
    config_dir: str = "",
) -> dict[str, Any]:
    """
    Load per-environment overlay file.
    Looks for {config_dir}/{env}.yaml next to the working dir or base file.
    Returns empty dict if not found.
    """
    env = env or os.environ.get("FS_ENV", "")
    if not env:
        return {}

    config_dir = config_dir or os.environ.get("FS_CONFIG_DIR", "config")

    candidates = [
        Path(config_dir) / f"{env}.yaml",
        Path(config_dir) / f"{env}.yml",
        Path(os.path.dirname(base_path)) / "config" / f"{env}.yaml",
    ]

    for path in candidates:
        if path.exists():
            with open(path) as f:
                overlay = yaml.safe_load(f) or {}
            logger.info("Loaded config overlay: %s (%d keys)", path, len(overlay))
            return overlay

    logger.debug("No config overlay found for env=%s", env)
    return {}


# ═══════════════════════════════════════════════════════════════════
# Tier 3: Environment Variable Overrides
# ═══════════════════════════════════════════════════════════════════

def _load_env_overrides(prefix: str = "FS_") -> dict[str, Any]:
    """
    Load FS_ prefixed environment variables as config overrides.

    Naming convention:
      FS_SECTION__KEY=value → {"section": {"key": value}}
      FS_KEY=value          → {"key": value}

    Values are YAML-parsed (numbers, booleans, lists). Meta variables
    (FS_ENV, FS_CONFIG_DIR, FS_CONFIG_PATH, FS_VERSION) are excluded.
    """
    excluded = {"FS_ENV", "FS_CONFIG_DIR", "FS_CONFIG_PATH", "FS_VERSION"}
    overrides: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix) or key in excluded:
            continue

        path = [p for p in key[len(prefix):].lower().split("__") if p]
        if not path:
            continue

        try:
            parsed = yaml.safe_load(value)
        except yaml.YAMLError:
            parsed = value

        _set_nested(overrides, path, parsed)

    if overrides:
        logger.debug("Loaded %d env var overrides", len(overrides))
    return overrides


# ═══════════════════════════════════════════════════════════════════
# Main Loader
# ═══════════════════════════════════════════════════════════════════

def load_config(
    base_path: str = "",
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
) -> dict[str, Any]:
    """
    Load configuration with three-tier merging.

    Priority (highest wins):
      1. Environment variable overrides (FS_*)
      2. Per-environment overlay file (config/{env}.yaml)
      3. Base config file (foresight.yaml)

    Returns:
        Merged configuration dict
    """
    base_path = base_path or os.environ.get("FS_CONFIG_PATH", "foresight.yaml")

    config: dict[str, Any] = {}
    if os.path.exists(base_path):
        with open(base_path) as f:
            config = yaml.safe_load(f) or {}
        logger.debug("Loaded base config: %s", base_path)

    overlay = _load_overlay_file(base_path, env=env, config_dir=config_dir)
    if overlay:
        config = deep_merge(config, overlay)

    if include_env_vars:
        env_overrides = _load_env_overrides()
        if env_overrides:
            config = deep_merge(config, env_overrides)

    config["_active_env"] = env or os.environ.get("FS_ENV", "default")
    config["_config_source"] = base_path

    return config


def load_engine_config(
    base_path: str = "",
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
) -> EngineConfig:
    """Load, bind and validate. Raises ConfigError on bad values."""
    raw = load_config(base_path, env=env, config_dir=config_dir,
                      include_env_vars=include_env_vars)
    return EngineConfig.from_dict(raw).validate()


def get_config_value(
    path: str,
    config: dict[str, Any] | None = None,
    default: Any = None,
) -> Any:
    """
    Get a nested config value by dotted path.

    Example:
        get_config_value("threshold.window_size", cfg, 50)
    """
    if config is None:
        config = load_config()

    current = config
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return default
    return current
