#!/usr/bin/env python3
"""piwo.dates

Date-window generator.

Builds the ordered list of periods a time series is composited over. Each
period is a half-open window [start, start + interval). Period starts are
computed as whole multiples of the interval from the series start, so month
arithmetic never drifts (2010-01-31 + 1 month is 2010-02-28, + 2 months is
2010-03-31).

Example:
  >>> [p.date for p in date_windows("2010-01-01", "2012-01-01", 12, "months")]
  ['2010-01-01', '2011-01-01', '2012-01-01']
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List

import pandas as pd

from piwo.errors import ConfigError


UNITS = ("days", "weeks", "months", "years")


@dataclass(frozen=True)
class Interval:
    count: int
    unit: str = "months"

    def __post_init__(self) -> None:
        if self.unit not in UNITS:
            raise ConfigError(f"Unknown interval unit {self.unit!r}; expected one of {UNITS}")
        if int(self.count) <= 0:
            raise ConfigError(f"Interval length must be positive (got {self.count} {self.unit})")

    def offset(self, times: int = 1) -> pd.DateOffset:
        """DateOffset spanning `times` intervals."""
        return pd.DateOffset(**{self.unit: int(self.count) * times})

    def __str__(self) -> str:
        return f"{self.count} {self.unit}"


@dataclass(frozen=True)
class Period:
    start: pd.Timestamp
    interval: Interval

    @property
    def end(self) -> pd.Timestamp:
        """Exclusive end of the window."""
        return self.start + self.interval.offset()

    def window(self, length: Interval | None = None) -> tuple[pd.Timestamp, pd.Timestamp]:
        """(start, end) for a compositing window that may be shorter than the period."""
        length = length or self.interval
        return self.start, self.start + length.offset()

    @property
    def year(self) -> int:
        return int(self.start.year)

    @property
    def month(self) -> int:
        return int(self.start.month)

    @property
    def date(self) -> str:
        return self.start.strftime("%Y-%m-%d")

    @property
    def millis(self) -> int:
        """Start as epoch milliseconds (Earth Engine's system:time_start)."""
        return int(self.start.value // 1_000_000)

    def properties(self) -> dict:
        """Period tags copied onto composites and sample rows."""
        return {
            "date": self.date,
            "year": self.year,
            "month": self.month,
            "system:time_start": self.millis,
        }


def to_timestamp(x: Any) -> pd.Timestamp:
    try:
        ts = pd.Timestamp(x)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid date: {x!r}") from e
    if pd.isna(ts):
        raise ConfigError(f"Invalid date: {x!r}")
    return ts.normalize()


def date_windows(start: Any, end: Any, count: int = 1, unit: str = "months") -> List[Period]:
    """Generate the periods of a time series.

    Starts at `start` and advances by `count` `unit`s while the period start
    is not after `end`. The last period is kept even when `end` falls inside
    it.

    Raises ConfigError if end precedes start or the interval is not positive.
    """
    t0 = to_timestamp(start)
    t1 = to_timestamp(end)
    if t1 < t0:
        raise ConfigError(f"End date {t1.date()} precedes start date {t0.date()}")
    interval = Interval(int(count), unit)

    periods: List[Period] = []
    k = 0
    while True:
        s = t0 + interval.offset(k)
        if s > t1:
            break
        periods.append(Period(start=s, interval=interval))
        k += 1
    return periods


# Properties every composite carries and every sample row copies.
PERIOD_PROPERTIES = ("date", "year", "month", "system:time_start", "source")
