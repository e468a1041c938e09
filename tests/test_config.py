"""Test configuration for EHRFin."""

import tempfile
from pathlib import Path

import pytest

from ehrfin.core.config import Config, load_config
from ehrfin.core.pipeline import EHRFinPipeline


class TestConfig:
    """Test configuration class."""

    def test_default_config_creation(self):
        """Test creating default configuration."""
        config = Config()

        assert config.database.url == "memory://"
        assert config.database.is_memory
        assert config.normalization.age_policy == "year_difference"
        assert config.aggregation.outlier_factor == 2.0
        assert config.windows.default_window == 5
        assert config.views.refresh_after_deltas is None

    def test_config_from_yaml(self):
        """Test loading configuration from YAML."""
        yaml_content = """
        database:
          url: sqlite:///ehrfin.db
        traversal:
          max_nodes: 50
        aggregation:
          rollups:
            - name: revenue_by_type
              group_by: [transaction_type]
              value: amount
              functions: [sum, count]
        """

        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            f.write(yaml_content)
            config_path = f.name

        try:
            config = Config.from_yaml(config_path)
            assert config.database.url == "sqlite:///ehrfin.db"
            assert not config.database.is_memory
            assert config.traversal.max_nodes == 50
            assert config.aggregation.rollups[0].name == "revenue_by_type"
            assert config.aggregation.rollups[0].source == "transactions"
        finally:
            Path(config_path).unlink()

    def test_config_to_yaml(self):
        """Test saving configuration to YAML."""
        config = Config()
        config.windows.default_window = 7

        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            output_path = f.name

        try:
            config.to_yaml(output_path)

            # Load back and verify
            loaded_config = Config.from_yaml(output_path)
            assert loaded_config.windows.default_window == 7
        finally:
            Path(output_path).unlink()

    def test_missing_yaml_falls_back_to_defaults(self):
        config = Config.from_yaml("/nonexistent/ehrfin.yaml")
        assert config.database.url == "memory://"

    def test_config_from_env(self, monkeypatch):
        monkeypatch.setenv("EHRFIN_DATABASE_URL", "sqlite://")
        monkeypatch.setenv("EHRFIN_TRAVERSAL_MAX_NODES", "12")
        monkeypatch.setenv("EHRFIN_OUTLIER_FACTOR", "3.5")

        config = Config.from_env()

        assert config.database.url == "sqlite://"
        assert config.traversal.max_nodes == 12
        assert config.aggregation.outlier_factor == 3.5

    def test_load_config_prefers_explicit_path(self, temp_dir):
        path = temp_dir / "custom.yaml"
        path.write_text("windows:\n  default_window: 3\n")

        assert load_config(str(path)).windows.default_window == 3

    def test_configured_rollup_is_defined(self):
        config = Config(aggregation={"rollups": [
            {"name": "revenue_by_type", "group_by": ["transaction_type"], "functions": ["sum"]},
        ]})

        pipeline = EHRFinPipeline(config)

        assert "revenue_by_type" in pipeline.aggregation.rollup_names()
        assert pipeline.aggregation.definition("revenue_by_type").functions == ("sum",)
