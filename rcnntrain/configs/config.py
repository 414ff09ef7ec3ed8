"""YAML-based configuration system for rcnntrain.

This module provides:
    - Loading experiment settings from YAML files
    - Dot notation access to nested values (``train.optimizer.lr``)
    - ``_base_`` inheritance and recursive merging
    - The default configuration of a detector training run

Example:
    >>> config = Config.from_file("experiment.yaml")
    >>> lr = config.get("train.optimizer.lr", default=1e-3)
    >>> config.train.mode = "onlyCnet"
"""

import copy
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml


class ConfigDict(dict):
    """Dictionary with attribute-style access.

    Nested dictionaries (including those inside lists, as in a custom
    ``train.schedule``) are converted to ConfigDict on construction.

    Example:
        >>> cfg = ConfigDict({"train": {"mode": "both"}})
        >>> cfg.train.mode
        'both'
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        for key, value in self.items():
            self[key] = _wrap(value)

    def __getattr__(self, name: str) -> Any:
        try:
            return self[name]
        except KeyError:
            raise AttributeError(f"Config has no attribute '{name}'")

    def __setattr__(self, name: str, value: Any) -> None:
        self[name] = _wrap(value)

    def __delattr__(self, name: str) -> None:
        try:
            del self[name]
        except KeyError:
            raise AttributeError(f"Config has no attribute '{name}'")

    def get_nested(self, key: str, default: Any = None) -> Any:
        """Get a nested value using dot notation.

        Args:
            key: Dot-separated key path (e.g., "eval.num_samples").
            default: Default value if any part of the path is missing.

        Returns:
            The value at the key path, or default if not found.
        """
        value = self
        for part in key.split("."):
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return default
        return value

    def set_nested(self, key: str, value: Any) -> None:
        """Set a nested value using dot notation, creating sections as needed."""
        parts = key.split(".")
        target = self
        for part in parts[:-1]:
            if not isinstance(target.get(part), dict):
                target[part] = ConfigDict()
            target = target[part]
        target[parts[-1]] = _wrap(value)

    def to_dict(self) -> Dict:
        """Convert to a plain nested dictionary."""
        return {key: _unwrap(value) for key, value in self.items()}


def _wrap(value: Any) -> Any:
    if isinstance(value, dict) and not isinstance(value, ConfigDict):
        return ConfigDict(value)
    if isinstance(value, list):
        return [_wrap(item) for item in value]
    return value


def _unwrap(value: Any) -> Any:
    if isinstance(value, ConfigDict):
        return value.to_dict()
    if isinstance(value, list):
        return [_unwrap(item) for item in value]
    return value


class Config:
    """Configuration manager for rcnntrain.

    Loads, merges and saves experiment configuration. The Trainer and the
    evaluation runner read it through ``get(key, default)``.

    Attributes:
        _cfg: Internal ConfigDict storing configuration values.

    Example:
        >>> config = Config.from_file("experiment.yaml")
        >>> config.get("train.iterations")
        50000
        >>> config.save("logs/config.yaml")
    """

    def __init__(self, cfg_dict: Optional[Dict] = None):
        """Initialize Config from dictionary.

        Args:
            cfg_dict: Initial configuration dictionary.
        """
        self._cfg = ConfigDict(cfg_dict or {})

    @classmethod
    def from_file(cls, filepath: Union[str, Path]) -> "Config":
        """Load configuration from YAML file.

        A ``_base_`` entry (string or list, relative to the file) names
        configs that are loaded first and overridden by this one.

        Args:
            filepath: Path to YAML configuration file.

        Returns:
            Config object with loaded values.

        Raises:
            FileNotFoundError: If config file doesn't exist.
            yaml.YAMLError: If YAML parsing fails.
        """
        filepath = Path(filepath)
        if not filepath.exists():
            raise FileNotFoundError(f"Config file not found: {filepath}")

        with open(filepath, "r", encoding="utf-8") as f:
            cfg_dict = yaml.safe_load(f) or {}

        bases = cfg_dict.pop("_base_", [])
        if isinstance(bases, str):
            bases = [bases]

        config = cls(cfg_dict)
        for base in bases:
            config = cls.from_file(filepath.parent / base).merge(config)
        return config

    @classmethod
    def from_dict(cls, cfg_dict: Dict) -> "Config":
        """Create Config from dictionary."""
        return cls(cfg_dict)

    def merge(self, other: "Config") -> "Config":
        """Merge another config into this one.

        Values from ``other`` win; nested sections are merged recursively.

        Returns:
            New merged Config.
        """
        return Config(_deep_merge(self.to_dict(), other.to_dict()))

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value with dot notation.

        Example:
            >>> config.get("train.optimizer.type", "adam")
        """
        return self._cfg.get_nested(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set configuration value with dot notation.

        Example:
            >>> config.set("train.mode", "onlyPnet")
        """
        self._cfg.set_nested(key, value)

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            return object.__getattribute__(self, name)
        try:
            return self._cfg[name]
        except KeyError:
            raise AttributeError(f"Config has no attribute '{name}'")

    def __setattr__(self, name: str, value: Any) -> None:
        if name.startswith("_"):
            object.__setattr__(self, name, value)
        else:
            self._cfg[name] = _wrap(value)

    def to_dict(self) -> Dict:
        """Convert configuration to a plain dictionary."""
        return self._cfg.to_dict()

    def save(self, filepath: Union[str, Path]) -> None:
        """Save configuration to YAML file."""
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)

        with open(filepath, "w", encoding="utf-8") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)

    def __repr__(self) -> str:
        return f"Config({self._cfg})"

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None


def _deep_merge(base: Dict, update: Dict) -> Dict:
    result = copy.deepcopy(base)
    for key, value in update.items():
        if isinstance(result.get(key), dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def load_config(filepath: Union[str, Path]) -> Config:
    """Convenience function to load configuration from file.

    Example:
        >>> config = load_config("configs/imagenet.yaml")
    """
    return Config.from_file(filepath)


def get_default_config() -> Config:
    """Get the default training configuration.

    ``train.schedule`` is None for the built-in SGD step schedule; a list of
    ``[start, end, lr, weight_decay]`` rows (``end`` may be null for an open
    row) replaces it.

    Returns:
        Config with default values for a two-stage detector run.
    """
    default_cfg = {
        "model": {
            "class_count": 20,
        },
        "train": {
            "mode": "both",
            "iterations": 50000,
            "plot_interval": 100,
            "snapshot_interval": 1000,
            "log_interval": 1,
            "one_batch_training": False,
            "restore_pnet": "",
            "restore_cnet": "",
            "optimizer": {
                "type": "adam",
                "lr": 1e-3,
                "rms_decay": 0.9,
            },
            "schedule": None,
        },
        "eval": {
            "num_samples": 20,
            "iou_threshold": 0.5,
            "save_images": True,
            "background_class": None,
        },
        "output": {
            "result_dir": "logs",
            "name": "imgnet",
        },
        "system": {
            "device": None,
            "seed": 0,
            "threads": 8,
        },
    }
    return Config(default_cfg)
