"""
RFM Feature Engineering Module
==============================

Calculates Recency, Frequency, and Monetary value features per customer
relative to a run's as-of timestamp.

Usage:
    from rfm_segments.customer_segmentation import RFMFeatureEngineer

    engineer = RFMFeatureEngineer(zero_order_recency_days=3650)
    features = engineer.calculate_features(orders, customers, as_of)
"""

from typing import Iterable, List, Union

import numpy as np
import pandas as pd
from loguru import logger

from ..common.records import OrderRecord, CustomerRecord, FeatureVector
from ..common.validation import to_utc_timestamp


FEATURE_COLUMNS = ['customer_id', 'recency', 'frequency', 'monetary_value', 'average_order_value']


class RFMFeatureEngineer:
    """
    RFM feature engineering for customer segmentation.

    Produces exactly one feature row per customer. Customers without
    orders are kept with frequency 0, monetary value 0 and a configured
    sentinel recency so they remain clusterable.

    Example:
        >>> engineer = RFMFeatureEngineer()
        >>> features = engineer.calculate_features(orders, customers, as_of)
        >>> vectors = engineer.to_feature_vectors(features)
    """

    def __init__(self, zero_order_recency_days: int = 3650):
        """
        Initialize RFM Feature Engineer.

        Args:
            zero_order_recency_days: Recency assigned to customers with no orders
        """
        if zero_order_recency_days < 0:
            raise ValueError("zero_order_recency_days must be non-negative")
        self.zero_order_recency_days = int(zero_order_recency_days)

        logger.info("RFMFeatureEngineer initialized")

    def calculate_features(
        self,
        orders: Iterable[OrderRecord],
        customers: Iterable[Union[CustomerRecord, str]],
        as_of: pd.Timestamp
    ) -> pd.DataFrame:
        """
        Calculate RFM features for each customer.

        Args:
            orders: Valid order records for the run
            customers: Customer records (or bare customer ids)
            as_of: Reference timestamp for recency

        Returns:
            DataFrame with one row per customer, sorted by customer_id

        Example:
            >>> features = engineer.calculate_features(orders, customers, as_of)
        """
        as_of = to_utc_timestamp(as_of)
        customer_ids = sorted({
            c.customer_id if isinstance(c, CustomerRecord) else str(c)
            for c in customers
        })
        base = pd.DataFrame({'customer_id': pd.Series(customer_ids, dtype=object)})

        order_df = self._orders_frame(orders)
        unknown = ~order_df['customer_id'].isin(customer_ids)
        if unknown.any():
            logger.warning(f"Ignoring {int(unknown.sum())} orders for customers outside the run")
            order_df = order_df[~unknown]

        # Duplicate order ids count once
        order_df = (
            order_df
            .drop_duplicates(subset='order_id', keep='first')
            .sort_values(['customer_id', 'order_id'], kind='mergesort')
        )

        if order_df.empty:
            rfm = pd.DataFrame(columns=['customer_id', 'recency', 'frequency', 'monetary_value'])
        else:
            rfm = order_df.groupby('customer_id').agg(
                last_order=('order_timestamp', 'max'),
                frequency=('order_id', 'nunique'),
                monetary_value=('order_total', 'sum')
            ).reset_index()
            rfm['recency'] = (as_of - rfm['last_order']).dt.days

        features = base.merge(
            rfm[['customer_id', 'recency', 'frequency', 'monetary_value']],
            on='customer_id',
            how='left'
        )

        # Zero-order customers
        no_orders = features['frequency'].isna()
        features['recency'] = features['recency'].fillna(self.zero_order_recency_days).astype('int64')
        features['frequency'] = features['frequency'].fillna(0).astype('int64')
        features['monetary_value'] = features['monetary_value'].fillna(0.0).astype('float64')

        features['average_order_value'] = np.where(
            features['frequency'] > 0,
            features['monetary_value'] / features['frequency'].clip(lower=1),
            0.0
        ).astype('float64')

        features = features[FEATURE_COLUMNS].reset_index(drop=True)

        logger.info(
            f"Calculated RFM for {len(features)} customers "
            f"({int(no_orders.sum())} without orders)"
        )
        return features

    @staticmethod
    def _orders_frame(orders: Iterable[OrderRecord]) -> pd.DataFrame:
        records = [
            (o.customer_id, o.order_id, o.order_timestamp, o.order_total)
            for o in orders
        ]
        df = pd.DataFrame(
            records,
            columns=['customer_id', 'order_id', 'order_timestamp', 'order_total']
        )
        df['order_timestamp'] = pd.to_datetime(df['order_timestamp'], utc=True)
        df['order_total'] = df['order_total'].astype('float64')
        return df

    @staticmethod
    def to_feature_vectors(features: pd.DataFrame) -> List[FeatureVector]:
        """Record view of a feature table."""
        return [
            FeatureVector(
                customer_id=row.customer_id,
                recency=int(row.recency),
                frequency=int(row.frequency),
                monetary_value=float(row.monetary_value),
                average_order_value=float(row.average_order_value)
            )
            for row in features.itertuples(index=False)
        ]

    def get_feature_summary(self, features: pd.DataFrame) -> pd.DataFrame:
        """
        Get summary statistics for engineered features.

        Args:
            features: DataFrame with engineered features

        Returns:
            Summary statistics DataFrame
        """
        summary = features.select_dtypes(include=[np.number]).describe()
        return summary.T
