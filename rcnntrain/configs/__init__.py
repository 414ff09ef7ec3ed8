"""Configuration management for rcnntrain.

YAML-based configuration with dot notation access and inheritance support.

Example:
    >>> from rcnntrain.configs import load_config
    >>> config = load_config("experiment.yaml")
    >>> print(config.train.mode)
"""

from .config import Config, ConfigDict, get_default_config, load_config

__all__ = [
    "Config",
    "ConfigDict",
    "load_config",
    "get_default_config",
]
