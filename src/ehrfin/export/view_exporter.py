"""Materialized view export for EHRFin."""

from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd
import structlog

from ..core.errors import ConfigurationError

logger = structlog.get_logger()

SUPPORTED_FORMATS = ("csv", "parquet", "json")


class ViewExporter:
    """Writes view snapshots to disk for analytics consumers."""

    def __init__(self, config, materializer):
        """Initialize view exporter."""
        self.config = config
        self.materializer = materializer
        self.export_formats = list(config.views.export_formats)
        unknown = [f for f in self.export_formats if f not in SUPPORTED_FORMATS]
        if unknown:
            raise ConfigurationError(f"Unsupported export formats: {unknown}")

    def export_views(self, output_dir: str = "output", view_names: Optional[List[str]] = None) -> Dict[str, Any]:
        """Export the current snapshot of each view."""
        logger.info(f"Starting view export to {output_dir}")

        result = {
            "output_directory": output_dir,
            "views_exported": 0,
            "total_rows": 0,
            "export_files": [],
            "views": {}
        }

        output_path = Path(output_dir)
        output_path.mkdir(parents=True, exist_ok=True)

        for view_name in view_names or self.materializer.view_names():
            view_result = self._export_view(view_name, output_path)
            result["views"][view_name] = view_result
            result["views_exported"] += 1
            result["total_rows"] += view_result["row_count"]
            result["export_files"].extend(view_result["files"])

        logger.info(f"View export completed: {result['views_exported']} views with {result['total_rows']} total rows")
        return result

    def _export_view(self, view_name: str, output_path: Path) -> Dict[str, Any]:
        frame = self.materializer.to_frame(view_name)

        files = []
        for format_type in self.export_formats:
            file_path = output_path / f"{view_name}.{format_type}"

            if format_type == "csv":
                frame.to_csv(file_path, index=False)
            elif format_type == "parquet":
                frame.to_parquet(file_path, index=False)
            elif format_type == "json":
                frame.to_json(file_path, orient="records", indent=2, date_format="iso")

            files.append(str(file_path))

        return {
            "row_count": len(frame),
            "column_count": len(frame.columns),
            "files": files,
            "columns": list(frame.columns),
            "version": self.materializer.version(view_name),
        }
