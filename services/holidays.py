"""
US federal holidays that get a client greeting.

Fixed-date holidays match on month/day. Floating ones are the nth weekday
of their month, with week -1 meaning the last one.
"""

import calendar
from dataclasses import dataclass
from datetime import date
from typing import Optional, Tuple


@dataclass(frozen=True)
class Holiday:
    name: str
    greeting: str
    month: int
    day: Optional[int] = None
    week: Optional[int] = None
    weekday: Optional[int] = None

    def date_in(self, year: int) -> Optional[date]:
        if self.day is not None:
            return date(year, self.month, self.day)
        return nth_weekday(year, self.month, self.week, self.weekday)


HOLIDAYS: Tuple[Holiday, ...] = (
    Holiday("New Year's Day", "Happy New Year", 1, day=1),
    Holiday("Martin Luther King Jr. Day", "Happy Martin Luther King Jr. Day", 1, week=3, weekday=calendar.MONDAY),
    Holiday("Presidents' Day", "Happy Presidents' Day", 2, week=3, weekday=calendar.MONDAY),
    Holiday("Memorial Day", "Happy Memorial Day", 5, week=-1, weekday=calendar.MONDAY),
    Holiday("Juneteenth", "Happy Juneteenth", 6, day=19),
    Holiday("Independence Day", "Happy 4th of July", 7, day=4),
    Holiday("Labor Day", "Happy Labor Day", 9, week=1, weekday=calendar.MONDAY),
    Holiday("Columbus Day / Indigenous Peoples' Day", "Happy Columbus Day", 10, week=2, weekday=calendar.MONDAY),
    Holiday("Veterans Day", "Happy Veterans Day", 11, day=11),
    Holiday("Thanksgiving Day", "Happy Thanksgiving", 11, week=4, weekday=calendar.THURSDAY),
    Holiday("Christmas Day", "Merry Christmas", 12, day=25),
)


def nth_weekday(year: int, month: int, nth: int, weekday: int) -> Optional[date]:
    days = [
        d for d in calendar.Calendar().itermonthdates(year, month)
        if d.month == month and d.weekday() == weekday
    ]
    if nth == -1:
        return days[-1]
    if 1 <= nth <= len(days):
        return days[nth - 1]
    return None


def holiday_on(day: date) -> Optional[Holiday]:
    for holiday in HOLIDAYS:
        if holiday.month == day.month and holiday.date_in(day.year) == day:
            return holiday
    return None
