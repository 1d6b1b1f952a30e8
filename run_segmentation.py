#!/usr/bin/env python3
"""
RFM Segmentation - Main Runner
==============================

Command-line interface for running one segmentation run.

Usage:
    python run_segmentation.py --orders data/sample_orders.csv --customers data/sample_customers.csv \
        --run-id 2024-12-31 --as-of 2024-12-31

Examples:
    # Segment into 5 clusters with a fixed seed
    python run_segmentation.py --orders data/sample_orders.csv --run-id daily-1 \
        --as-of 2024-12-31T00:00:00Z --n-clusters 5 --seed 7

    # Use a custom configuration file and write Parquet output
    python run_segmentation.py --orders orders.parquet --customers customers.parquet \
        --run-id daily-1 --as-of 2024-12-31 --config config/settings.yaml
"""

import argparse
import json
import sys
from dataclasses import replace
from pathlib import Path
from typing import Optional, List

from loguru import logger

from rfm_segments.common import (
    FileRecordSource, LocalTableSink, CsvRejectSink, Reporter, SegmentationError, load_settings
)
from rfm_segments.pipeline import SegmentationPipeline


def setup_logging(log_level: str = "INFO"):
    """Configure logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=log_level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{message}</cyan>"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='RFM Customer Segmentation',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    parser.add_argument('--orders', type=str, required=True, help='Path to order records file')
    parser.add_argument(
        '--customers',
        type=str,
        default=None,
        help='Path to customer records file (customers derived from orders if omitted)'
    )
    parser.add_argument('--run-id', type=str, required=True, help='Run identifier')
    parser.add_argument('--as-of', type=str, required=True, help='As-of timestamp for recency')
    parser.add_argument(
        '--config',
        type=str,
        default='config/settings.yaml',
        help='Path to configuration file'
    )
    parser.add_argument(
        '--output',
        type=str,
        default=None,
        help='Output directory for result partitions (overrides storage.output_dir)'
    )
    parser.add_argument('--n-clusters', type=int, default=None, help='Number of clusters')
    parser.add_argument('--seed', type=int, default=None, help='Random seed for initialization')
    parser.add_argument('--max-iter', type=int, default=None, help='Maximum Lloyd iterations')
    parser.add_argument(
        '--format',
        type=str,
        choices=['csv', 'parquet'],
        default=None,
        help='Result file format'
    )
    parser.add_argument(
        '--report',
        action='store_true',
        help='Also write summary and segment profile reports'
    )
    parser.add_argument(
        '--log-level',
        type=str,
        default='INFO',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Logging level'
    )
    return parser


def run_segmentation(args) -> dict:
    """Run the segmentation pipeline from parsed arguments."""
    logger.info("Starting Customer Segmentation Pipeline")

    settings = load_settings(args.config)
    overrides = {}
    if args.output:
        overrides['output_dir'] = args.output
    if args.format:
        overrides['format'] = args.format
    if overrides:
        settings = replace(settings, **overrides)

    output_dir = Path(settings.output_dir)
    source = FileRecordSource(args.orders, args.customers)
    sink = LocalTableSink(output_dir, file_format=settings.format)
    reject_sink = CsvRejectSink(output_dir / '_rejected')

    pipeline = SegmentationPipeline(source, sink, settings, reject_sink=reject_sink)
    summary = pipeline.run(
        run_id=args.run_id,
        as_of_timestamp=args.as_of,
        k=args.n_clusters,
        random_seed=args.seed,
        max_iterations=args.max_iter
    )

    if args.report:
        reporter = Reporter(output_dir=str(output_dir / '_reports'))
        reporter.generate_segmentation_report(
            summary.to_dict(), sink.read_partition(args.run_id), f"run_{args.run_id}"
        )

    logger.info(f"Segmentation complete. Results saved to {sink.partition_path(args.run_id)}")
    return summary.to_dict()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.log_level)

    try:
        result = run_segmentation(args)
    except SegmentationError as exc:
        logger.error(f"Run aborted in stage '{exc.stage}': {exc}")
        print(json.dumps(exc.to_dict(), indent=2))
        return 1

    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == '__main__':
    sys.exit(main())
