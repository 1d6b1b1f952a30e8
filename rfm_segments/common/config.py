"""
Pipeline Configuration Module
=============================

Typed settings for the segmentation pipeline, loaded from a YAML file with
defaults for everything that is omitted.

Usage:
    from rfm_segments.common import load_settings

    settings = load_settings("config/settings.yaml")
    print(settings.max_iterations)
"""

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional, List, Dict, Any, Union

import yaml
from loguru import logger

from .errors import ConfigurationError


DEFAULT_FEATURE_COLUMNS = ['recency', 'frequency', 'monetary_value']


@dataclass
class PipelineSettings:
    """
    Settings for a segmentation run.

    Run parameters passed to SegmentationPipeline.run() take precedence
    over n_clusters, random_seed and max_iterations here.
    """

    # segmentation
    n_clusters: int = 4
    random_seed: int = 42
    max_iterations: int = 300
    n_init: int = 10
    init: str = 'k-means++'
    feature_columns: List[str] = field(default_factory=lambda: list(DEFAULT_FEATURE_COLUMNS))
    zero_order_recency_days: int = 3650

    # storage
    output_dir: str = 'outputs/segments'
    format: str = 'csv'
    retry_attempts: int = 3
    retry_backoff: float = 0.5

    def __post_init__(self):
        if self.init not in ('k-means++', 'random'):
            raise ConfigurationError('INVALID_SETTINGS', f"Unknown init method: {self.init}")
        if self.format not in ('csv', 'parquet'):
            raise ConfigurationError('INVALID_SETTINGS', f"Unknown storage format: {self.format}")
        if self.n_init < 1:
            raise ConfigurationError('INVALID_SETTINGS', f"n_init must be >= 1, got {self.n_init}")
        if self.retry_attempts < 1:
            raise ConfigurationError(
                'INVALID_SETTINGS', f"retry_attempts must be >= 1, got {self.retry_attempts}"
            )
        if self.zero_order_recency_days < 0:
            raise ConfigurationError(
                'INVALID_SETTINGS',
                f"zero_order_recency_days must be >= 0, got {self.zero_order_recency_days}"
            )
        if not self.feature_columns:
            raise ConfigurationError('INVALID_SETTINGS', "feature_columns must not be empty")

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> 'PipelineSettings':
        """Build settings from a parsed YAML mapping with 'segmentation'/'storage' sections."""
        known = {f.name for f in fields(cls)}
        values = {}
        for section in ('segmentation', 'storage'):
            section_values = (config or {}).get(section) or {}
            if not isinstance(section_values, dict):
                raise ConfigurationError(
                    'INVALID_SETTINGS', f"Section '{section}' must be a mapping"
                )
            for key, value in section_values.items():
                if key in known:
                    values[key] = value
                else:
                    logger.debug(f"Ignoring unknown setting {section}.{key}")
        try:
            return cls(**values)
        except TypeError as exc:
            raise ConfigurationError('INVALID_SETTINGS', str(exc)) from exc


def load_config(config_path: Optional[Union[str, Path]]) -> dict:
    """Load configuration from YAML file."""
    if config_path and Path(config_path).exists():
        with open(config_path, 'r') as f:
            return yaml.safe_load(f) or {}
    return {}


def load_settings(config_path: Optional[Union[str, Path]] = None) -> PipelineSettings:
    """
    Load PipelineSettings from a YAML file.

    Args:
        config_path: Path to YAML configuration (defaults used if missing)

    Returns:
        PipelineSettings instance
    """
    config = load_config(config_path)
    if not config:
        logger.info("No configuration file found, using default settings")
    settings = PipelineSettings.from_dict(config)
    logger.info(f"Loaded settings: k={settings.n_clusters}, seed={settings.random_seed}")
    return settings
