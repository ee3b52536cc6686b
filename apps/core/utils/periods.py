"""Billing periods and the clock that tells the engine which one is current.

Services never read the wall clock directly: they receive a clock (or fall
back to :class:`SystemPeriodClock`), so scheduled jobs and tests can pin the
date they run on.
"""
from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date

from django.utils import timezone


@dataclass(frozen=True, order=True)
class BillingPeriod:
    year: int
    month: int

    def __post_init__(self):
        if not 1 <= self.month <= 12:
            raise ValueError(f'Invalid month: {self.month}')

    @classmethod
    def from_date(cls, value: date) -> 'BillingPeriod':
        return cls(year=value.year, month=value.month)

    @property
    def first_day(self) -> date:
        return date(self.year, self.month, 1)

    @property
    def last_day(self) -> date:
        return date(self.year, self.month, calendar.monthrange(self.year, self.month)[1])

    @property
    def label(self) -> str:
        return f"{calendar.month_name[self.month].upper()} {self.year}"

    def next(self) -> 'BillingPeriod':
        if self.month == 12:
            return BillingPeriod(self.year + 1, 1)
        return BillingPeriod(self.year, self.month + 1)

    def __str__(self):
        return f"{self.year:04d}-{self.month:02d}"


class SystemPeriodClock:
    def today(self) -> date:
        return timezone.localdate()

    def current_period(self) -> BillingPeriod:
        return BillingPeriod.from_date(self.today())


class FixedPeriodClock(SystemPeriodClock):
    def __init__(self, value: date):
        self._value = value

    def today(self) -> date:
        return self._value


def resolve_clock(clock=None):
    return clock or SystemPeriodClock()
