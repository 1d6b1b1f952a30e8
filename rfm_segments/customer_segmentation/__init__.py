"""
Customer Segmentation Module
============================

RFM feature engineering, K-Means clustering and result assembly.
"""

from .rfm_features import RFMFeatureEngineer
from .kmeans_clustering import KMeansSegmenter, ClusterModel, ScalingParameter
from .result_assembly import ResultAssembler
from .segment_analysis import SegmentAnalyzer

__all__ = [
    "RFMFeatureEngineer",
    "KMeansSegmenter",
    "ClusterModel",
    "ScalingParameter",
    "ResultAssembler",
    "SegmentAnalyzer",
]
