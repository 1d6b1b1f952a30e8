"""
Row Validation Module
=====================

Validates raw order and customer rows, turning good rows into typed records
and routing bad rows to a rejects list with a reason code. A failed check
raises ValidationError internally; it never escapes the validator, and the
run continues with whatever is valid.

Usage:
    from rfm_segments.common import OrderValidator

    validator = OrderValidator()
    customers = validator.validate_customers(customer_rows)
    orders = validator.validate_orders(order_rows, as_of, customers.customer_ids)
"""

import json
import math
import numbers
from collections import Counter
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any, Iterable, Mapping, Set, Tuple

import pandas as pd
from loguru import logger

from .errors import ValidationError
from .records import (
    OrderRecord, CustomerRecord, RejectedRow,
    ORDER_REQUIRED_FIELDS, CUSTOMER_REQUIRED_FIELDS,
    MISSING_FIELD, NEGATIVE_AMOUNT, INVALID_AMOUNT,
    UNPARSEABLE_TIMESTAMP, FUTURE_TIMESTAMP,
    DUPLICATE_ORDER_ID, DUPLICATE_CUSTOMER_ID, UNKNOWN_CUSTOMER,
)


def to_utc_timestamp(value: Any) -> pd.Timestamp:
    """
    Parse a timestamp-like value into a UTC-aware pandas Timestamp.

    Naive values are taken to be UTC. Bare numbers are rejected rather than
    guessed as epoch seconds, milliseconds or nanoseconds.

    Raises:
        ValueError: If the value cannot be parsed
    """
    if isinstance(value, (bool, numbers.Number)) or value is None:
        raise ValueError(f"Not a timestamp: {value!r}")
    try:
        ts = pd.Timestamp(value)
    except (TypeError, ValueError, OverflowError) as exc:
        raise ValueError(f"Not a timestamp: {value!r}") from exc
    if pd.isna(ts):
        raise ValueError(f"Not a timestamp: {value!r}")
    if ts.tzinfo is None:
        return ts.tz_localize('UTC')
    return ts.tz_convert('UTC')


def is_missing(value: Any) -> bool:
    """True for None, NaN/NaT and blank strings."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ''
    if isinstance(value, (list, tuple, dict, set)):
        return False
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def _normalize_id(value: Any) -> str:
    return str(value).strip()


def _parse_line_items(value: Any) -> Tuple[Any, ...]:
    if is_missing(value):
        return ()
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            return (value,)
        return tuple(parsed) if isinstance(parsed, list) else (parsed,)
    if isinstance(value, (list, tuple)):
        return tuple(value)
    return (value,)


@dataclass
class OrderValidationResult:
    orders: List[OrderRecord] = field(default_factory=list)
    rejected: List[RejectedRow] = field(default_factory=list)
    rows_seen: int = 0


@dataclass
class CustomerValidationResult:
    customers: List[CustomerRecord] = field(default_factory=list)
    rejected: List[RejectedRow] = field(default_factory=list)
    rows_seen: int = 0

    @property
    def customer_ids(self) -> Set[str]:
        return {c.customer_id for c in self.customers}


class OrderValidator:
    """
    Schema and value validation for raw order and customer rows.

    Example:
        >>> validator = OrderValidator()
        >>> result = validator.validate_orders(rows, pd.Timestamp('2024-06-01', tz='UTC'))
        >>> print(len(result.orders), len(result.rejected))
    """

    def __init__(self):
        """Initialize OrderValidator."""
        logger.info("OrderValidator initialized")

    def validate_customers(
        self,
        rows: Iterable[Mapping[str, Any]]
    ) -> CustomerValidationResult:
        """
        Validate customer rows.

        Args:
            rows: Iterable of mapping-like customer rows

        Returns:
            CustomerValidationResult with unique customers and rejects
        """
        result = CustomerValidationResult()
        seen: Set[str] = set()

        for raw in rows:
            result.rows_seen += 1
            try:
                missing = [f for f in CUSTOMER_REQUIRED_FIELDS if is_missing(raw.get(f))]
                if missing:
                    raise ValidationError(MISSING_FIELD, f"missing {missing}")
                customer_id = _normalize_id(raw['customer_id'])
                if customer_id in seen:
                    raise ValidationError(DUPLICATE_CUSTOMER_ID, customer_id)
            except ValidationError as exc:
                self._reject(result.rejected, raw, exc)
                continue
            seen.add(customer_id)

            attributes = {k: v for k, v in raw.items() if k != 'customer_id'}
            result.customers.append(CustomerRecord(customer_id, attributes))

        self._log_result('customer', result.rows_seen, len(result.customers), result.rejected)
        return result

    def validate_orders(
        self,
        rows: Iterable[Mapping[str, Any]],
        as_of: pd.Timestamp,
        known_customers: Optional[Set[str]] = None
    ) -> OrderValidationResult:
        """
        Validate order rows against the run's as-of time.

        Args:
            rows: Iterable of mapping-like order rows
            as_of: Run as-of timestamp (UTC-aware)
            known_customers: If given, orders for other customer_ids are
                rejected with UNKNOWN_CUSTOMER

        Returns:
            OrderValidationResult with valid OrderRecords and rejects
        """
        result = OrderValidationResult()
        seen_orders: Set[str] = set()

        for raw in rows:
            result.rows_seen += 1
            try:
                record = self._check_order(raw, as_of)
                if record.order_id in seen_orders:
                    raise ValidationError(DUPLICATE_ORDER_ID, record.order_id)
                if known_customers is not None and record.customer_id not in known_customers:
                    raise ValidationError(UNKNOWN_CUSTOMER, record.customer_id)
            except ValidationError as exc:
                self._reject(result.rejected, raw, exc)
                continue

            seen_orders.add(record.order_id)
            result.orders.append(record)

        self._log_result('order', result.rows_seen, len(result.orders), result.rejected)
        return result

    def _check_order(
        self,
        raw: Mapping[str, Any],
        as_of: pd.Timestamp
    ) -> OrderRecord:
        """Build an OrderRecord or raise ValidationError with the first failed check."""
        missing = [f for f in ORDER_REQUIRED_FIELDS if is_missing(raw.get(f))]
        if missing:
            raise ValidationError(MISSING_FIELD, f"missing {missing}")

        try:
            total = float(raw['order_total'])
        except (TypeError, ValueError) as exc:
            raise ValidationError(INVALID_AMOUNT, f"order_total={raw['order_total']!r}") from exc
        if not math.isfinite(total):
            raise ValidationError(INVALID_AMOUNT, f"order_total={total}")
        if total < 0:
            raise ValidationError(NEGATIVE_AMOUNT, f"order_total={total}")

        try:
            ts = to_utc_timestamp(raw['order_timestamp'])
        except ValueError as exc:
            raise ValidationError(UNPARSEABLE_TIMESTAMP, str(exc)) from exc
        if ts > as_of:
            raise ValidationError(FUTURE_TIMESTAMP, f"{ts.isoformat()} > {as_of.isoformat()}")

        record = OrderRecord(
            customer_id=_normalize_id(raw['customer_id']),
            order_id=_normalize_id(raw['order_id']),
            order_timestamp=ts,
            order_total=total,
            line_items=_parse_line_items(raw.get('line_items'))
        )
        return record

    @staticmethod
    def _reject(rejected: List[RejectedRow], raw: Mapping[str, Any], exc: ValidationError):
        logger.debug(f"Rejected row ({exc.code}): {exc.message}")
        rejected.append(RejectedRow(dict(raw), exc.code, exc.message))

    @staticmethod
    def _log_result(kind: str, seen: int, valid: int, rejected: List[RejectedRow]):
        logger.info(f"Validated {seen} {kind} rows: {valid} valid, {len(rejected)} rejected")
        if rejected:
            counts = Counter(r.reason_code for r in rejected)
            logger.warning(f"Rejected {kind} rows by reason: {dict(counts)}")


def summarize_rejects(rejected: Iterable[RejectedRow]) -> Dict[str, int]:
    """Count rejected rows per reason code."""
    return dict(sorted(Counter(r.reason_code for r in rejected).items()))
