from pathlib import Path

import pytest

from rfm_segments.common import ConfigurationError, PipelineSettings, load_settings


def test_defaults_when_file_missing(tmp_path):
    settings = load_settings(tmp_path / "missing.yaml")
    assert settings == PipelineSettings()
    assert settings.feature_columns == ["recency", "frequency", "monetary_value"]
    assert settings.zero_order_recency_days == 3650


def test_bundled_settings_file():
    settings = load_settings(Path(__file__).resolve().parent.parent / "config" / "settings.yaml")
    assert settings.n_clusters == 4
    assert settings.init == "k-means++"
    assert settings.format == "csv"


def test_sections_are_merged(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text(
        "segmentation:\n"
        "  n_clusters: 6\n"
        "  init: random\n"
        "  unknown_option: 1\n"
        "storage:\n"
        "  format: parquet\n"
        "  retry_attempts: 5\n"
    )
    settings = load_settings(path)

    assert settings.n_clusters == 6
    assert settings.init == "random"
    assert settings.format == "parquet"
    assert settings.retry_attempts == 5
    assert settings.random_seed == 42


@pytest.mark.parametrize("text", [
    "segmentation:\n  init: spectral\n",
    "storage:\n  format: xlsx\n",
    "segmentation:\n  n_init: 0\n",
    "segmentation:\n  zero_order_recency_days: -1\n",
    "segmentation:\n  feature_columns: []\n",
    "segmentation: [1, 2]\n",
])
def test_invalid_settings(tmp_path, text):
    path = tmp_path / "settings.yaml"
    path.write_text(text)
    with pytest.raises(ConfigurationError) as excinfo:
        load_settings(path)
    assert excinfo.value.code == "INVALID_SETTINGS"
    assert excinfo.value.stage == "configuration"
