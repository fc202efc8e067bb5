"""
Order number generation backed by the atomic daily Counter.

Format: PREFIX-YYYYMMDD-SEQUENCE, e.g. ORD-20240115-00001.

Each generation performs one increment-and-fetch on today's counter row.
Creating the row is race-safe (get_or_create retries the lookup after a
unique-key collision) and the increment is a single UPDATE, so concurrent
callers get distinct, strictly increasing sequences. Going over the daily
maximum is a hard failure; transient database errors are retried with
exponential backoff.
"""
import logging
import re
import time
from typing import NamedTuple, Optional

from django.conf import settings
from django.db import DatabaseError, transaction
from django.db.models import F
from django.utils import timezone

from core.exceptions import OrderNumberGenerationError, SequenceOverflowError
from .models import Counter

logger = logging.getLogger(__name__)


class ParsedOrderNumber(NamedTuple):
    prefix: str
    date: str
    sequence: int
    year: int
    month: int
    day: int


def _prefix() -> str:
    return getattr(settings, 'ORDER_NUMBER_PREFIX', 'ORD')


def _sequence_length() -> int:
    return getattr(settings, 'ORDER_SEQUENCE_LENGTH', 5)


def _max_daily_orders() -> int:
    return getattr(settings, 'ORDER_MAX_DAILY_ORDERS', 99999)


def counter_key(date_string: str) -> str:
    return f"order_sequence_{date_string}"


def today_string() -> str:
    return timezone.localdate().strftime('%Y%m%d')


def _next_sequence(date_string: str) -> int:
    """
    Increment today's counter and return the new value. Runs in its own
    savepoint, so an overflow or a failed attempt leaves no trace.
    """
    key = counter_key(date_string)
    with transaction.atomic():
        Counter.objects.get_or_create(key=key, defaults={'date': date_string})
        Counter.objects.filter(key=key).update(value=F('value') + 1, updated_at=timezone.now())
        sequence = Counter.objects.values_list('value', flat=True).get(key=key)

        if sequence > _max_daily_orders():
            logger.error(
                f"Order sequence overflow for {date_string}: "
                f"{sequence} exceeds {_max_daily_orders()}"
            )
            raise SequenceOverflowError(
                f"Daily order limit exceeded ({_max_daily_orders()} orders per day)",
                date=date_string,
                max_daily_orders=_max_daily_orders()
            )

    return sequence


def generate_order_number() -> str:
    """
    Mint the next order number for today.

    Raises:
        SequenceOverflowError: Today's sequence is exhausted (not retried)
        OrderNumberGenerationError: Store errors persisted through every retry
    """
    max_retries = getattr(settings, 'ORDER_GENERATION_MAX_RETRIES', 3)
    backoff_ms = getattr(settings, 'ORDER_GENERATION_BACKOFF_MS', 100)
    last_error = None

    for attempt in range(max_retries):
        try:
            date_string = today_string()
            sequence = _next_sequence(date_string)
        except SequenceOverflowError:
            raise
        except DatabaseError as e:
            last_error = e
            logger.warning(
                f"Order number generation attempt {attempt + 1}/{max_retries} failed: {e}"
            )
            if attempt < max_retries - 1:
                time.sleep(backoff_ms * (2 ** attempt) / 1000)
            continue

        order_number = f"{_prefix()}-{date_string}-{sequence:0{_sequence_length()}d}"
        logger.info(f"Generated order number {order_number} (attempt {attempt + 1})")
        return order_number

    logger.error(f"Order number generation failed after {max_retries} attempts: {last_error}")
    raise OrderNumberGenerationError(
        f"Failed to generate order number after {max_retries} attempts: {last_error}",
        attempts=max_retries
    )


def _order_number_pattern():
    return re.compile(
        rf"^{re.escape(_prefix())}-(\d{{8}})-(\d{{{_sequence_length()}}})$"
    )


def parse_order_number(value) -> Optional[ParsedOrderNumber]:
    """
    Split an order number into its parts, or return None if malformed.

    The date is only range checked (year 2000-2100, month 1-12, day 1-31);
    impossible dates such as 20240230 are accepted.
    """
    if not value or not isinstance(value, str):
        return None

    match = _order_number_pattern().match(value)
    if not match:
        return None

    date_string, sequence_string = match.groups()
    year = int(date_string[:4])
    month = int(date_string[4:6])
    day = int(date_string[6:8])
    sequence = int(sequence_string)

    if not 2000 <= year <= 2100:
        return None
    if not 1 <= month <= 12:
        return None
    if not 1 <= day <= 31:
        return None
    if not 1 <= sequence <= _max_daily_orders():
        return None

    return ParsedOrderNumber(_prefix(), date_string, sequence, year, month, day)


def is_valid_order_number(value) -> bool:
    return parse_order_number(value) is not None


def get_current_sequence(date_string: Optional[str] = None) -> int:
    date_string = date_string or today_string()
    value = Counter.objects.filter(key=counter_key(date_string)).values_list('value', flat=True).first()
    return value or 0


def reset_daily_sequence(date_string: Optional[str] = None) -> None:
    """
    Maintenance only: numbers already issued for that day will be issued
    again.
    """
    date_string = date_string or today_string()
    Counter.objects.update_or_create(
        key=counter_key(date_string),
        defaults={'date': date_string, 'value': 0}
    )
    logger.warning(f"Daily order sequence reset for {date_string}")


def get_order_number_stats() -> dict:
    date_string = today_string()
    current = get_current_sequence(date_string)
    max_daily = _max_daily_orders()
    return {
        'date': date_string,
        'current_sequence': current,
        'max_daily_orders': max_daily,
        'remaining_capacity': max(max_daily - current, 0),
        'utilization_percentage': round(current / max_daily * 100, 2),
        'prefix': _prefix(),
        'sequence_length': _sequence_length(),
    }
