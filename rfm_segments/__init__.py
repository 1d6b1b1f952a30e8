"""
RFM Customer Segmentation
=========================

Turns raw order and customer records into stable customer segments:
- Ingestion & validation of raw rows
- Recency / Frequency / Monetary feature engineering
- Seeded K-Means clustering over standardized features
- Run-scoped, overwrite-only result persistence

Version: 1.0.0
"""

__version__ = "1.0.0"
__author__ = "Retail Analytics Team"

from .common import (
    PipelineSettings, load_settings, DataLoader, InMemoryRecordSource, FileRecordSource,
    InMemoryResultSink, LocalTableSink, Reporter
)
from .customer_segmentation import RFMFeatureEngineer, KMeansSegmenter, SegmentAnalyzer
from .pipeline import SegmentationPipeline, RunSummary

__all__ = [
    "PipelineSettings",
    "load_settings",
    "DataLoader",
    "InMemoryRecordSource",
    "FileRecordSource",
    "InMemoryResultSink",
    "LocalTableSink",
    "Reporter",
    "RFMFeatureEngineer",
    "KMeansSegmenter",
    "SegmentAnalyzer",
    "SegmentationPipeline",
    "RunSummary",
]
