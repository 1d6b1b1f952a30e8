"""
Data Loading Module
===================

Loads raw order and customer records from files or in-memory rows and
exposes them to the pipeline with plain row-iteration semantics.

Usage:
    from rfm_segments.common import DataLoader, FileRecordSource

    loader = DataLoader()
    df = loader.load_file("data/sample_orders.csv")

    source = FileRecordSource("data/sample_orders.csv", "data/sample_customers.csv")
    for row in source.read_orders():
        ...
"""

from pathlib import Path
from typing import Optional, Union, List, Dict, Any, Iterator, Iterable, Mapping

import pandas as pd
from loguru import logger


ID_COLUMNS = {'customer_id': str, 'order_id': str}


class DataLoader:
    """
    File loader for raw pipeline inputs.

    Identifier columns are always read as strings so that the same
    customer_id matches across the order and customer files.

    Attributes:
        supported_formats (list): List of supported file formats

    Example:
        >>> loader = DataLoader()
        >>> df = loader.load_file("orders.csv")
        >>> print(f"Loaded {len(df)} records")
    """

    def __init__(self):
        """Initialize DataLoader."""
        self.supported_formats = ['.csv', '.parquet', '.json']
        logger.info("DataLoader initialized")

    def load_file(self, filepath: Union[str, Path], **kwargs) -> pd.DataFrame:
        """
        Load a CSV, Parquet or JSON file into a DataFrame.

        Args:
            filepath: Path to the input file
            **kwargs: Additional arguments passed to the pandas reader

        Returns:
            DataFrame with loaded data

        Raises:
            FileNotFoundError: If file doesn't exist
            ValueError: If file format is unsupported
        """
        filepath = Path(filepath)

        if not filepath.exists():
            raise FileNotFoundError(f"File not found: {filepath}")

        suffix = filepath.suffix.lower()
        if suffix not in self.supported_formats:
            raise ValueError(f"Unsupported format: {filepath.suffix}")

        if suffix == '.csv':
            return self.load_csv(filepath, **kwargs)
        if suffix == '.parquet':
            return self.load_parquet(filepath, **kwargs)
        return self.load_json(filepath, **kwargs)

    def load_csv(self, filepath: Union[str, Path], **kwargs) -> pd.DataFrame:
        """
        Load CSV file keeping identifier columns as text.

        Timestamps are left unparsed; validation decides what is parseable.
        """
        filepath = Path(filepath)
        logger.info(f"Loading data from {filepath}")

        read_kwargs = {
            'dtype': dict(ID_COLUMNS),
            'keep_default_na': True,
            **kwargs
        }
        df = pd.read_csv(filepath, **read_kwargs)

        logger.info(f"Loaded {len(df)} records with {len(df.columns)} columns")
        return df

    def load_parquet(self, filepath: Union[str, Path], **kwargs) -> pd.DataFrame:
        """Load Parquet file."""
        filepath = Path(filepath)
        logger.info(f"Loading parquet from {filepath}")
        df = pd.read_parquet(filepath, **kwargs)
        df = self._ids_as_text(df)
        logger.info(f"Loaded {len(df)} records")
        return df

    def load_json(self, filepath: Union[str, Path], **kwargs) -> pd.DataFrame:
        """Load JSON file (records orientation)."""
        filepath = Path(filepath)
        logger.info(f"Loading JSON from {filepath}")
        read_kwargs = {'orient': 'records', 'dtype': dict(ID_COLUMNS), **kwargs}
        df = pd.read_json(filepath, **read_kwargs)
        logger.info(f"Loaded {len(df)} records")
        return df

    @staticmethod
    def _ids_as_text(df: pd.DataFrame) -> pd.DataFrame:
        for col in ID_COLUMNS:
            if col in df.columns:
                df[col] = df[col].where(df[col].isna(), df[col].astype(str))
        return df

    @staticmethod
    def iter_rows(df: pd.DataFrame) -> Iterator[Dict[str, Any]]:
        """
        Iterate DataFrame rows as plain dictionaries.

        Args:
            df: Input DataFrame

        Yields:
            One dict per row, column name -> value
        """
        for row in df.to_dict('records'):
            yield row


class RecordSource:
    """
    Bounded batch of raw order and customer rows.

    Subclasses only need to provide row iteration; the pipeline does not
    depend on the underlying storage format.
    """

    # True when customer rows are built from the orders rather than read
    customers_derived = False

    def read_orders(self) -> Iterable[Mapping[str, Any]]:
        raise NotImplementedError

    def read_customers(self) -> Iterable[Mapping[str, Any]]:
        raise NotImplementedError


class InMemoryRecordSource(RecordSource):
    """Record source backed by lists of dictionaries or DataFrames."""

    def __init__(
        self,
        orders: Union[pd.DataFrame, Iterable[Mapping[str, Any]]],
        customers: Union[pd.DataFrame, Iterable[Mapping[str, Any]]]
    ):
        self.orders = self._as_rows(orders)
        self.customers = self._as_rows(customers)

    @staticmethod
    def _as_rows(data) -> List[Mapping[str, Any]]:
        if isinstance(data, pd.DataFrame):
            return list(DataLoader.iter_rows(data))
        return [dict(row) for row in data]

    def read_orders(self) -> List[Mapping[str, Any]]:
        return list(self.orders)

    def read_customers(self) -> List[Mapping[str, Any]]:
        return list(self.customers)


class FileRecordSource(RecordSource):
    """
    Record source reading an orders file and an optional customers file.

    Without a customers file, the distinct customer_ids of the orders file
    are used as the customer rows.

    Example:
        >>> source = FileRecordSource("orders.csv", "customers.csv")
        >>> orders = list(source.read_orders())
    """

    def __init__(
        self,
        orders_path: Union[str, Path],
        customers_path: Optional[Union[str, Path]] = None,
        loader: Optional[DataLoader] = None
    ):
        self.orders_path = Path(orders_path)
        self.customers_path = Path(customers_path) if customers_path else None
        self.loader = loader or DataLoader()
        self.customers_derived = self.customers_path is None

    def read_orders(self) -> List[Dict[str, Any]]:
        return list(self.loader.iter_rows(self.loader.load_file(self.orders_path)))

    def read_customers(self) -> List[Dict[str, Any]]:
        if self.customers_path is None:
            orders = self.loader.load_file(self.orders_path)
            if 'customer_id' not in orders.columns:
                return []
            ids = orders['customer_id'].dropna().drop_duplicates()
            return [{'customer_id': customer_id} for customer_id in ids]
        return list(self.loader.iter_rows(self.loader.load_file(self.customers_path)))
