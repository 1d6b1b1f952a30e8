"""
Error Taxonomy Module
=====================

Structured errors raised by the segmentation pipeline. Every fatal error
carries a machine-readable code and the stage that failed so callers (CLI,
API) can render a consistent error payload.

Usage:
    from rfm_segments.common.errors import ConfigurationError

    raise ConfigurationError("INVALID_K", "k=5 exceeds 3 customers")
"""

from typing import Optional, Dict, Any


class SegmentationError(Exception):
    """
    Base class for fatal pipeline errors.

    Attributes:
        code: Machine-readable error code (e.g. 'INVALID_K')
        message: Human-readable description
        stage: Pipeline stage that failed
    """

    default_stage = "pipeline"

    def __init__(self, code: str, message: str, stage: Optional[str] = None):
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message
        self.stage = stage or self.default_stage

    def to_dict(self) -> Dict[str, Any]:
        """Structured representation for CLI/API responses."""
        return {
            'error': type(self).__name__,
            'code': self.code,
            'stage': self.stage,
            'message': self.message
        }


class ConfigurationError(SegmentationError):
    """Invalid run parameters or settings. Raised before any output is written."""

    default_stage = "configuration"


class ConcurrencyError(SegmentationError):
    """Another run holds the claim for the same run_id."""

    default_stage = "concurrency"


class IngestionError(SegmentationError):
    """The record source could not be read."""

    default_stage = "ingestion"


class PersistenceError(SegmentationError):
    """The result sink rejected or failed the write."""

    default_stage = "persistence"


class ValidationError(SegmentationError):
    """
    Row-level validation failure.

    Never propagated out of a run; rejected rows are collected as
    RejectedRow entries instead.
    """

    default_stage = "validation"


class ConvergenceWarning(UserWarning):
    """Clustering hit the iteration cap before assignments stabilised."""
