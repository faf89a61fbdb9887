#!/usr/bin/env python3
"""
Time range handling for CI metrics

Maps the coarse time-range token sent by the UI (day, week, month, year) to a
concrete calendar date window used for the pipeline updated_after and
updated_before filters.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime

from dateutil.relativedelta import relativedelta

logger = logging.getLogger(__name__)

DEFAULT_TIME_RANGE = 'month'

# Span subtracted from "now" for each supported token
TIME_RANGE_SPANS = {
    'day': relativedelta(days=1),
    'week': relativedelta(weeks=1),
    'month': relativedelta(months=1),
    'year': relativedelta(years=1),
}

DATE_FORMAT = '%Y-%m-%d'


@dataclass(frozen=True)
class DateRange:
    start_date: date
    end_date: date

    def to_dict(self):
        return {
            'startDate': self.start_date.strftime(DATE_FORMAT),
            'endDate': self.end_date.strftime(DATE_FORMAT),
        }


def normalize_time_range(value):
    """Return a supported time-range token, falling back to 'month'"""
    if isinstance(value, str) and value in TIME_RANGE_SPANS:
        return value
    if value is not None:
        logger.info(f"Invalid timeRange {value!r}, defaulting to '{DEFAULT_TIME_RANGE}'")
    return DEFAULT_TIME_RANGE


def calculate_date_range(time_range, now=None):
    """Compute the [now - span, now] calendar window for a time-range token

    Args:
        time_range: One of 'day', 'week', 'month', 'year'. Anything else is
            treated as 'month'.
        now: Optional datetime or date used as "today" (defaults to the
            current local time)

    Returns:
        DateRange: start_date <= end_date, both without time of day
    """
    token = normalize_time_range(time_range)
    if now is None:
        now = datetime.now()
    today = now.date() if isinstance(now, datetime) else now
    return DateRange(start_date=today - TIME_RANGE_SPANS[token], end_date=today)
