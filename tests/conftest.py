import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Ensure project root is on sys.path to allow `import rfm_segments`, `import api`, etc.
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from rfm_segments.common import PipelineSettings, InMemoryRecordSource, InMemoryResultSink


AS_OF = pd.Timestamp("2024-06-30T00:00:00Z")


@pytest.fixture
def as_of():
    return AS_OF


@pytest.fixture
def abc_orders():
    """A: 2 orders (50, 30), latest 5 days ago. B: 1 order (200), 40 days ago. C: none."""
    return [
        {"customer_id": "A", "order_id": "A1", "order_timestamp": "2024-06-25T00:00:00Z", "order_total": 50.0},
        {"customer_id": "A", "order_id": "A2", "order_timestamp": "2024-06-01T12:00:00Z", "order_total": 30.0},
        {"customer_id": "B", "order_id": "B1", "order_timestamp": "2024-05-21T00:00:00Z", "order_total": 200.0},
    ]


@pytest.fixture
def abc_customers():
    return [{"customer_id": "A"}, {"customer_id": "B"}, {"customer_id": "C"}]


@pytest.fixture
def settings():
    return PipelineSettings(retry_attempts=3, retry_backoff=0.0)


@pytest.fixture
def sink():
    return InMemoryResultSink()


def make_orders(n_customers=40, seed=0):
    """Deterministic synthetic orders/customers with a few order-less customers."""
    rng = np.random.RandomState(seed)
    customers = [{"customer_id": f"C{i:03d}", "region": rng.choice(["N", "S"])} for i in range(n_customers)]
    orders = []
    order_number = 0
    for i in range(n_customers - 4):
        n = int(rng.randint(1, 8))
        scale = rng.choice([20.0, 80.0, 300.0])
        for _ in range(n):
            order_number += 1
            days_ago = int(rng.randint(0, 400))
            orders.append({
                "customer_id": f"C{i:03d}",
                "order_id": f"O{order_number:05d}",
                "order_timestamp": (AS_OF - pd.Timedelta(days=days_ago, hours=3)).isoformat(),
                "order_total": round(float(rng.gamma(2.0, scale)), 2),
            })
    return orders, customers


@pytest.fixture
def synthetic_source():
    orders, customers = make_orders()
    return InMemoryRecordSource(orders, customers)
