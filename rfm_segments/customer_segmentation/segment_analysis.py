"""
Segment Analysis Module
=======================

Profiles the segments of a persisted run and compares two runs.

Usage:
    from rfm_segments.customer_segmentation import SegmentAnalyzer

    analyzer = SegmentAnalyzer()
    profiles = analyzer.profile_segments(result_table)
    migration = analyzer.analyze_segment_migration(previous_table, result_table)
"""

from typing import Optional, List, Dict, Any

import pandas as pd
from loguru import logger


PROFILE_COLUMNS = ['recency', 'frequency', 'monetary_value', 'distance_to_centroid']


class SegmentAnalyzer:
    """
    Analysis toolkit for segmentation result tables.

    Example:
        >>> analyzer = SegmentAnalyzer()
        >>> profiles = analyzer.profile_segments(results)
        >>> print(analyzer.generate_summary(results))
    """

    def __init__(self, segment_column: str = 'segment_label'):
        """Initialize SegmentAnalyzer."""
        self.segment_column = segment_column
        logger.info("SegmentAnalyzer initialized")

    def profile_segments(
        self,
        df: pd.DataFrame,
        value_columns: Optional[List[str]] = None
    ) -> pd.DataFrame:
        """
        Size and mean/median feature values per segment.

        Args:
            df: Result table with segment labels
            value_columns: Columns to profile (defaults to RFM + distance)

        Returns:
            DataFrame indexed by segment label
        """
        value_columns = [c for c in (value_columns or PROFILE_COLUMNS) if c in df.columns]
        grouped = df.groupby(self.segment_column)

        profile = grouped[value_columns].agg(['mean', 'median'])
        profile.columns = ['_'.join(col).strip() for col in profile.columns.values]
        profile.insert(0, 'customer_count', grouped.size())
        profile.insert(1, 'customer_percentage', profile['customer_count'] / len(df) * 100)

        return profile.sort_index()

    def analyze_segment_migration(
        self,
        df_before: pd.DataFrame,
        df_after: pd.DataFrame,
        id_column: str = 'customer_id'
    ) -> Dict[str, Any]:
        """
        Compare segment membership between two runs.

        Segment labels are only meaningful within a run, so the migration
        matrix shows how customers were regrouped rather than a label diff.

        Args:
            df_before: Result table of the earlier run
            df_after: Result table of the later run
            id_column: Customer identifier column

        Returns:
            Dictionary with the migration matrix and customer churn counts
        """
        merged = df_before[[id_column, self.segment_column]].merge(
            df_after[[id_column, self.segment_column]],
            on=id_column,
            how='outer',
            suffixes=('_before', '_after'),
            indicator=True
        )

        common = merged[merged['_merge'] == 'both']
        matrix = pd.crosstab(
            common[f'{self.segment_column}_before'],
            common[f'{self.segment_column}_after']
        )

        result = {
            'migration_matrix': matrix,
            'customers_in_both': int(len(common)),
            'new_customers': int((merged['_merge'] == 'right_only').sum()),
            'dropped_customers': int((merged['_merge'] == 'left_only').sum())
        }

        logger.info(
            f"Segment migration: {result['customers_in_both']} common, "
            f"{result['new_customers']} new, {result['dropped_customers']} dropped"
        )
        return result

    def generate_summary(self, df: pd.DataFrame) -> str:
        """Generate text summary of a result table."""
        n_segments = df[self.segment_column].nunique()
        n_customers = len(df)

        summary_parts = [
            "Segment Analysis Summary",
            "=" * 40,
            f"Total customers: {n_customers:,}",
            f"Number of segments: {n_segments}",
            ""
        ]

        summary_parts.append("Segment Distribution:")
        sizes = df[self.segment_column].value_counts().sort_index()
        for seg, count in sizes.items():
            pct = count / n_customers * 100 if n_customers else 0.0
            summary_parts.append(f"  Segment {seg}: {count:,} ({pct:.1f}%)")

        summary_parts.append("")
        summary_parts.append("Key Segment Differentiators:")
        for col in ['recency', 'frequency', 'monetary_value']:
            if col in df.columns and n_customers:
                segment_means = df.groupby(self.segment_column)[col].mean()
                summary_parts.append(
                    f"  {col}: Highest in Segment {segment_means.idxmax()}, "
                    f"Lowest in Segment {segment_means.idxmin()}"
                )

        return "\n".join(summary_parts)

    def get_farthest_customers(self, df: pd.DataFrame, n: int = 10) -> pd.DataFrame:
        """Customers least well represented by their segment centroid."""
        return df.nlargest(n, 'distance_to_centroid')
