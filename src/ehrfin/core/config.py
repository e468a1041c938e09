"""Configuration management for the EHRFin engine."""

import os
import yaml
from pathlib import Path
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
import structlog

logger = structlog.get_logger()


class DatabaseConfig(BaseModel):
    """Record store configuration."""
    url: str = Field(default="memory://")
    echo: bool = Field(default=False)

    @property
    def is_memory(self) -> bool:
        return self.url.startswith("memory://")


class NormalizationConfig(BaseModel):
    """Normalizer configuration."""
    age_policy: str = Field(default="year_difference")
    require_known_patient: bool = Field(default=True)


class RollupSpec(BaseModel):
    """A rollup declared in configuration rather than code."""
    name: str
    source: str = Field(default="transactions")
    group_by: List[str]
    value: str = Field(default="amount")
    functions: List[str] = Field(default_factory=lambda: ["sum", "count"])
    order_by: Optional[str] = None


class AggregationConfig(BaseModel):
    """Aggregation engine configuration."""
    outlier_factor: float = Field(default=2.0)
    rollups: List[RollupSpec] = Field(default_factory=list)


class WindowConfig(BaseModel):
    """Windowed statistics configuration."""
    default_window: int = Field(default=5)
    tracked_windows: List[int] = Field(default_factory=lambda: [5])


class TraversalConfig(BaseModel):
    """Hierarchical traversal limits."""
    max_nodes: int = Field(default=10000)
    max_depth: int = Field(default=64)
    timeout_seconds: Optional[float] = Field(default=30.0)
    checkpoint_every: int = Field(default=256)


class ViewConfig(BaseModel):
    """View materializer configuration."""
    refresh_after_deltas: Optional[int] = None  # None keeps refresh manual
    persist: bool = Field(default=True)
    refresh_timeout_seconds: Optional[float] = Field(default=60.0)
    export_formats: List[str] = Field(default_factory=lambda: ["csv", "json"])


class PipelineConfig(BaseModel):
    """Main pipeline configuration."""
    name: str = Field(default="ehrfin-pipeline")
    version: str = Field(default="1.0")
    max_concurrent_batches: int = Field(default=4)
    chunk_size: int = Field(default=1000)


class Config(BaseModel):
    """Main configuration class for EHRFin."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    normalization: NormalizationConfig = Field(default_factory=NormalizationConfig)
    aggregation: AggregationConfig = Field(default_factory=AggregationConfig)
    windows: WindowConfig = Field(default_factory=WindowConfig)
    traversal: TraversalConfig = Field(default_factory=TraversalConfig)
    views: ViewConfig = Field(default_factory=ViewConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)

    @classmethod
    def from_yaml(cls, config_path: str) -> "Config":
        """Load configuration from YAML file."""
        config_file = Path(config_path)
        if not config_file.exists():
            logger.warning(f"Config file not found: {config_path}, using defaults")
            return cls()

        with open(config_file, 'r') as f:
            config_data = yaml.safe_load(f) or {}
        return cls(**config_data)

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        config_data: Dict[str, Dict[str, Any]] = {}

        env_mappings = {
            "EHRFIN_DATABASE_URL": ("database", "url"),
            "EHRFIN_AGE_POLICY": ("normalization", "age_policy"),
            "EHRFIN_OUTLIER_FACTOR": ("aggregation", "outlier_factor"),
            "EHRFIN_DEFAULT_WINDOW": ("windows", "default_window"),
            "EHRFIN_TRAVERSAL_MAX_NODES": ("traversal", "max_nodes"),
            "EHRFIN_TRAVERSAL_MAX_DEPTH": ("traversal", "max_depth"),
            "EHRFIN_REFRESH_AFTER_DELTAS": ("views", "refresh_after_deltas"),
            "EHRFIN_MAX_CONCURRENT_BATCHES": ("pipeline", "max_concurrent_batches"),
        }

        for env_var, (section, key) in env_mappings.items():
            value = os.getenv(env_var)
            if value:
                if section not in config_data:
                    config_data[section] = {}
                # Convert to appropriate type
                if key in ["default_window", "max_nodes", "max_depth",
                           "refresh_after_deltas", "max_concurrent_batches"]:
                    value = int(value)
                elif key in ["outlier_factor"]:
                    value = float(value)
                config_data[section][key] = value

        return cls(**config_data)

    def to_yaml(self, output_path: str) -> None:
        """Save configuration to YAML file."""
        config_dict = self.model_dump()
        with open(output_path, 'w') as f:
            yaml.dump(config_dict, f, default_flow_style=False, sort_keys=False)
        logger.info(f"Configuration saved to {output_path}")


def load_config(config_path: Optional[str] = None) -> Config:
    """Load configuration with fallback strategy."""
    if config_path and Path(config_path).exists():
        return Config.from_yaml(config_path)

    # Try default config locations
    default_paths = [
        "config/ehrfin.yaml",
        "ehrfin.yaml",
        "/etc/ehrfin/config.yaml"
    ]

    for path in default_paths:
        if Path(path).exists():
            return Config.from_yaml(path)

    # Fall back to environment variables
    logger.info("No config file found, loading from environment variables")
    return Config.from_env()
