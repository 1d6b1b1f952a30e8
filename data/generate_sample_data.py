#!/usr/bin/env python3
"""
Sample Data Generator
=====================

Generates synthetic order and customer files for trying the segmentation
pipeline.

Usage:
    python data/generate_sample_data.py

This will create:
    - sample_orders.csv: Order rows (including a few malformed ones)
    - sample_customers.csv: Customer rows, some without any orders
"""

import json
import os
from datetime import timedelta

import numpy as np
import pandas as pd


def generate_customers(n_customers: int = 1000, seed: int = 42) -> pd.DataFrame:
    """
    Generate customer rows with simple attributes.

    Args:
        n_customers: Number of unique customers
        seed: Random seed

    Returns:
        DataFrame with customer_id, region, signup_channel
    """
    rng = np.random.RandomState(seed)
    return pd.DataFrame({
        'customer_id': [f'C{i:05d}' for i in range(1, n_customers + 1)],
        'region': rng.choice(['North', 'South', 'East', 'West'], size=n_customers),
        'signup_channel': rng.choice(['Online', 'Store', 'Mobile'], size=n_customers, p=[0.5, 0.3, 0.2])
    })


def generate_orders(
    customers: pd.DataFrame,
    n_orders: int = 10000,
    end_date: str = '2024-12-31',
    inactive_share: float = 0.05,
    malformed_share: float = 0.01,
    seed: int = 42
) -> pd.DataFrame:
    """
    Generate order rows for RFM analysis.

    Creates customers with varying:
    - Purchase frequency
    - Average order value
    - Recency patterns

    A share of customers never orders and a share of rows is malformed
    (negative totals, bad timestamps, missing ids) to exercise validation.

    Args:
        customers: Customer rows from generate_customers()
        n_orders: Total number of order rows
        end_date: Latest order date
        inactive_share: Share of customers without orders
        malformed_share: Share of malformed rows
        seed: Random seed

    Returns:
        DataFrame with order rows
    """
    rng = np.random.RandomState(seed)
    end = pd.Timestamp(end_date)

    customer_ids = customers['customer_id'].to_numpy()
    n_active = max(1, int(len(customer_ids) * (1 - inactive_share)))
    active = customer_ids[:n_active]

    # Customer profiles
    profiles = {
        customer_id: {
            'avg_amount': rng.lognormal(4, 0.8),
            'frequency': rng.choice(['high', 'medium', 'low'], p=[0.2, 0.5, 0.3])
        }
        for customer_id in active
    }
    weights = np.array([
        {'high': 5.0, 'medium': 2.0, 'low': 1.0}[profiles[c]['frequency']] for c in active
    ])
    weights = weights / weights.sum()

    records = []
    for order_number in range(1, n_orders + 1):
        customer_id = rng.choice(active, p=weights)
        profile = profiles[customer_id]

        scale = {'high': 30, 'medium': 90, 'low': 180}[profile['frequency']]
        days_ago = min(int(rng.exponential(scale)), 730)
        order_ts = end - timedelta(days=days_ago, minutes=int(rng.randint(0, 24 * 60)))

        amount = max(1.0, rng.normal(profile['avg_amount'], profile['avg_amount'] * 0.3))
        n_items = int(rng.randint(1, 5))

        records.append({
            'order_id': f'O{order_number:07d}',
            'customer_id': customer_id,
            'order_timestamp': order_ts.isoformat(),
            'order_total': round(amount, 2),
            'line_items': json.dumps([f'SKU_{rng.randint(1, 200):03d}' for _ in range(n_items)])
        })

    df = pd.DataFrame(records)

    # Inject malformed rows
    n_bad = int(len(df) * malformed_share)
    bad_idx = rng.choice(len(df), size=n_bad, replace=False)
    for i, idx in enumerate(bad_idx):
        kind = i % 3
        if kind == 0:
            df.loc[idx, 'order_total'] = -abs(df.loc[idx, 'order_total'])
        elif kind == 1:
            df.loc[idx, 'order_timestamp'] = 'not-a-date'
        else:
            df.loc[idx, 'customer_id'] = None

    return df.sort_values('order_timestamp').reset_index(drop=True)


def main():
    """Generate all sample datasets."""
    script_dir = os.path.dirname(os.path.abspath(__file__))

    print("Generating sample datasets...")

    customers_df = generate_customers()
    customers_path = os.path.join(script_dir, 'sample_customers.csv')
    customers_df.to_csv(customers_path, index=False)
    print(f"    Saved {len(customers_df)} records to {customers_path}")

    orders_df = generate_orders(customers_df)
    orders_path = os.path.join(script_dir, 'sample_orders.csv')
    orders_df.to_csv(orders_path, index=False)
    print(f"    Saved {len(orders_df)} records to {orders_path}")

    print("\nSample data generation complete!")
    print(f"  Orders: {len(orders_df)} rows, {orders_df['customer_id'].nunique()} customers")


if __name__ == '__main__':
    main()
