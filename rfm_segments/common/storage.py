"""
Result Storage Module
=====================

Sinks for segmentation results and rejected rows. Result tables are
partitioned by run_id and every write replaces the whole partition, so
re-running a run_id never accumulates rows from earlier attempts.

Usage:
    from rfm_segments.common import LocalTableSink

    sink = LocalTableSink("outputs/segments", file_format="csv")
    with sink.claim("2024-06-01"):
        sink.overwrite_partition("2024-06-01", table)
    df = sink.read_partition("2024-06-01")
"""

import json
import os
import re
import shutil
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Optional, List, Dict, Iterator, Iterable, Union

import pandas as pd
from loguru import logger

from .errors import ConcurrencyError, ConfigurationError
from .records import RejectedRow, OUTPUT_COLUMNS


RUN_ID_PATTERN = re.compile(r'^[A-Za-z0-9_][A-Za-z0-9_.\-]*$')


def _process_alive(pid: int) -> bool:
    """True if a process with this PID exists on this host."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def validate_run_id(run_id: str) -> str:
    """
    Check that a run_id is usable as a partition key.

    Raises:
        ConfigurationError: INVALID_RUN_ID
    """
    if not isinstance(run_id, str) or not RUN_ID_PATTERN.match(run_id):
        raise ConfigurationError(
            'INVALID_RUN_ID',
            f"run_id must match {RUN_ID_PATTERN.pattern}, got {run_id!r}"
        )
    return run_id


class ResultSink:
    """
    Table of labeled results keyed by (run_id, customer_id).

    Implementations must make overwrite_partition all-or-nothing: either
    the partition is fully replaced or the previous contents remain.
    """

    def overwrite_partition(self, run_id: str, table: pd.DataFrame) -> None:
        raise NotImplementedError

    def read_partition(self, run_id: str) -> pd.DataFrame:
        raise NotImplementedError

    def list_runs(self) -> List[str]:
        raise NotImplementedError

    def claim(self, run_id: str):
        """Context manager holding an exclusive claim on run_id for the block."""
        raise NotImplementedError


class InMemoryResultSink(ResultSink):
    """
    Result sink holding partitions in a dictionary.

    Example:
        >>> sink = InMemoryResultSink()
        >>> sink.overwrite_partition("run-1", table)
        >>> sink.list_runs()
        ['run-1']
    """

    def __init__(self):
        self._partitions: Dict[str, pd.DataFrame] = {}
        self._claims = set()
        self._lock = threading.Lock()
        logger.info("InMemoryResultSink initialized")

    def overwrite_partition(self, run_id: str, table: pd.DataFrame) -> None:
        validate_run_id(run_id)
        with self._lock:
            self._partitions[run_id] = table.copy()
        logger.info(f"Wrote {len(table)} rows to partition run_id={run_id}")

    def read_partition(self, run_id: str) -> pd.DataFrame:
        validate_run_id(run_id)
        with self._lock:
            if run_id not in self._partitions:
                return pd.DataFrame(columns=OUTPUT_COLUMNS)
            return self._partitions[run_id].copy()

    def list_runs(self) -> List[str]:
        with self._lock:
            return sorted(self._partitions)

    @contextmanager
    def claim(self, run_id: str) -> Iterator[None]:
        with self._lock:
            if run_id in self._claims:
                raise ConcurrencyError(
                    'RUN_ALREADY_IN_PROGRESS', f"run_id={run_id} is already being processed"
                )
            self._claims.add(run_id)
        logger.debug(f"Claimed run_id={run_id}")
        try:
            yield
        finally:
            with self._lock:
                self._claims.discard(run_id)
            logger.debug(f"Released run_id={run_id}")


class LocalTableSink(ResultSink):
    """
    Result sink storing one directory per run_id under a root directory.

    Layout:
        <root>/run_id=<id>/segments.csv   (or segments.parquet)
        <root>/.lock-<id>                 (present while a run holds the claim)

    A new partition is written to a temporary directory first and then
    swapped in with directory renames.
    """

    def __init__(self, root: Union[str, Path], file_format: str = 'csv'):
        """
        Initialize LocalTableSink.

        Args:
            root: Root directory for partitions
            file_format: 'csv' or 'parquet'
        """
        if file_format not in ('csv', 'parquet'):
            raise ConfigurationError('INVALID_SETTINGS', f"Unknown storage format: {file_format}")
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.file_format = file_format
        logger.info(f"LocalTableSink initialized. Output: {self.root}")

    def partition_path(self, run_id: str) -> Path:
        return self.root / f"run_id={validate_run_id(run_id)}"

    def _data_file(self, directory: Path) -> Path:
        return directory / f"segments.{self.file_format}"

    def overwrite_partition(self, run_id: str, table: pd.DataFrame) -> None:
        target = self.partition_path(run_id)
        staging = self.root / f".staging-{run_id}-{uuid.uuid4().hex}"
        backup = self.root / f".backup-{run_id}-{uuid.uuid4().hex}"

        staging.mkdir(parents=True)
        try:
            data_file = self._data_file(staging)
            if self.file_format == 'csv':
                table.to_csv(data_file, index=False)
            else:
                table.to_parquet(data_file, index=False)

            if target.exists():
                os.replace(target, backup)
            try:
                os.replace(staging, target)
            except OSError:
                if backup.exists():
                    os.replace(backup, target)
                raise
        finally:
            shutil.rmtree(staging, ignore_errors=True)
            shutil.rmtree(backup, ignore_errors=True)

        logger.info(f"Wrote {len(table)} rows to {target}")

    def read_partition(self, run_id: str) -> pd.DataFrame:
        data_file = self._data_file(self.partition_path(run_id))
        if not data_file.exists():
            return pd.DataFrame(columns=OUTPUT_COLUMNS)

        if self.file_format == 'csv':
            df = pd.read_csv(data_file, dtype={'customer_id': str, 'run_id': str})
            df['run_timestamp'] = pd.to_datetime(df['run_timestamp'], utc=True)
            return df
        return pd.read_parquet(data_file)

    def list_runs(self) -> List[str]:
        return sorted(
            p.name.split('=', 1)[1]
            for p in self.root.glob('run_id=*')
            if p.is_dir()
        )

    @contextmanager
    def claim(self, run_id: str) -> Iterator[None]:
        """
        Hold the lock file for run_id while the block runs.

        A lock file left behind by a process that no longer exists is
        taken over; a lock held by a live process raises
        RUN_ALREADY_IN_PROGRESS.
        """
        lock_path = self.root / f".lock-{validate_run_id(run_id)}"
        try:
            fd = self._create_lock(lock_path)
        except FileExistsError as exc:
            owner = self._lock_owner(lock_path)
            if owner is None or _process_alive(owner):
                raise ConcurrencyError(
                    'RUN_ALREADY_IN_PROGRESS',
                    f"run_id={run_id} is locked by {lock_path} (pid={owner})"
                ) from exc
            logger.warning(f"Removing stale lock {lock_path} left by pid {owner}")
            lock_path.unlink(missing_ok=True)
            try:
                fd = self._create_lock(lock_path)
            except FileExistsError as retry_exc:
                raise ConcurrencyError(
                    'RUN_ALREADY_IN_PROGRESS', f"run_id={run_id} is locked by {lock_path}"
                ) from retry_exc

        with os.fdopen(fd, 'w') as f:
            f.write(str(os.getpid()))
        logger.debug(f"Claimed run_id={run_id} via {lock_path}")

        try:
            yield
        finally:
            lock_path.unlink(missing_ok=True)
            logger.debug(f"Released run_id={run_id}")

    @staticmethod
    def _create_lock(lock_path: Path) -> int:
        return os.open(str(lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)

    @staticmethod
    def _lock_owner(lock_path: Path) -> Optional[int]:
        """PID recorded in a lock file, or None if it cannot be read yet."""
        try:
            return int(lock_path.read_text().strip())
        except (OSError, ValueError):
            return None


class RejectSink:
    """Optional audit output for rows rejected during validation."""

    def write_rejects(self, run_id: str, rejects: Iterable[RejectedRow]) -> None:
        raise NotImplementedError

    @staticmethod
    def to_frame(rejects: Iterable[RejectedRow]) -> pd.DataFrame:
        return pd.DataFrame(
            [
                {
                    'reason_code': r.reason_code,
                    'detail': r.detail,
                    'raw_row': json.dumps(dict(r.raw_row), default=str, sort_keys=True)
                }
                for r in rejects
            ],
            columns=['reason_code', 'detail', 'raw_row']
        )


class InMemoryRejectSink(RejectSink):
    def __init__(self):
        self.rejects: Dict[str, List[RejectedRow]] = {}

    def write_rejects(self, run_id: str, rejects: Iterable[RejectedRow]) -> None:
        self.rejects[run_id] = list(rejects)


class CsvRejectSink(RejectSink):
    """
    Writes <root>/run_id=<id>/rejected.csv, replacing earlier contents.

    Example:
        >>> sink = CsvRejectSink("outputs/rejects")
        >>> sink.write_rejects("run-1", rejected_rows)
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, run_id: str) -> Path:
        return self.root / f"run_id={validate_run_id(run_id)}" / "rejected.csv"

    def write_rejects(self, run_id: str, rejects: Iterable[RejectedRow]) -> None:
        path = self.path_for(run_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        df = self.to_frame(rejects)
        tmp_path = path.with_suffix('.csv.tmp')
        df.to_csv(tmp_path, index=False)
        os.replace(tmp_path, path)
        logger.info(f"Saved {len(df)} rejected rows: {path}")

