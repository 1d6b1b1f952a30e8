"""
Common utilities for the RFM segmentation pipeline.
"""

from .config import PipelineSettings, load_settings
from .data_loader import DataLoader, RecordSource, InMemoryRecordSource, FileRecordSource
from .errors import (
    SegmentationError, ConfigurationError, ConcurrencyError,
    IngestionError, PersistenceError, ValidationError, ConvergenceWarning
)
from .validation import OrderValidator
from .storage import (
    ResultSink, InMemoryResultSink, LocalTableSink,
    RejectSink, InMemoryRejectSink, CsvRejectSink
)
from .reporting import Reporter

__all__ = [
    "PipelineSettings",
    "load_settings",
    "DataLoader",
    "RecordSource",
    "InMemoryRecordSource",
    "FileRecordSource",
    "SegmentationError",
    "ConfigurationError",
    "ConcurrencyError",
    "IngestionError",
    "PersistenceError",
    "ValidationError",
    "ConvergenceWarning",
    "OrderValidator",
    "ResultSink",
    "InMemoryResultSink",
    "LocalTableSink",
    "RejectSink",
    "InMemoryRejectSink",
    "CsvRejectSink",
    "Reporter",
]
