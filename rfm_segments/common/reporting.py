"""
Reporting Module
================

Writes run reports: the JSON run summary and a per-segment profile CSV.

Usage:
    from rfm_segments.common import Reporter

    reporter = Reporter(output_dir="outputs/reports")
    reporter.generate_segmentation_report(summary, result_table, "run-2024-06-01")
"""

import json
from pathlib import Path
from typing import List, Dict, Any

import numpy as np
import pandas as pd
from loguru import logger

from ..customer_segmentation.segment_analysis import SegmentAnalyzer


class Reporter:
    """
    Report generation for segmentation runs.

    Example:
        >>> reporter = Reporter(output_dir="outputs/reports")
        >>> paths = reporter.generate_segmentation_report(summary, table, "run-1")
    """

    def __init__(self, output_dir: str = "outputs/reports"):
        """
        Initialize Reporter.

        Args:
            output_dir: Directory for saving reports
        """
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Reporter initialized. Output: {self.output_dir}")

    def generate_segmentation_report(
        self,
        summary: Dict[str, Any],
        results: pd.DataFrame,
        report_name: str,
        formats: List[str] = ['json', 'csv', 'txt']
    ) -> Dict[str, Path]:
        """
        Generate segmentation report files.

        Args:
            summary: Run summary dictionary (RunSummary.to_dict())
            results: Persisted result table for the run
            report_name: Base name for report files
            formats: Output formats to generate

        Returns:
            Dictionary of format -> file path
        """
        output_paths = {}
        analyzer = SegmentAnalyzer()

        if 'json' in formats:
            json_path = self.output_dir / f"{report_name}_summary.json"
            with open(json_path, 'w') as f:
                json.dump(self._convert_to_serializable(summary), f, indent=2)
            output_paths['json'] = json_path
            logger.info(f"Saved JSON report: {json_path}")

        if 'csv' in formats and not results.empty:
            csv_path = self.output_dir / f"{report_name}_profiles.csv"
            analyzer.profile_segments(results).to_csv(csv_path)
            output_paths['csv'] = csv_path
            logger.info(f"Saved CSV report: {csv_path}")

        if 'txt' in formats and not results.empty:
            txt_path = self.output_dir / f"{report_name}_summary.txt"
            with open(txt_path, 'w') as f:
                f.write(analyzer.generate_summary(results))
            output_paths['txt'] = txt_path
            logger.info(f"Saved text report: {txt_path}")

        return output_paths

    def _convert_to_serializable(self, obj: Any) -> Any:
        """Convert numpy/pandas types for JSON serialization."""
        if isinstance(obj, dict):
            return {str(k): self._convert_to_serializable(v) for k, v in obj.items()}
        if isinstance(obj, (list, tuple)):
            return [self._convert_to_serializable(v) for v in obj]
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, np.floating):
            return float(obj)
        if isinstance(obj, np.bool_):
            return bool(obj)
        if isinstance(obj, pd.Timestamp):
            return obj.isoformat()
        return obj
