from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, timedelta
from typing import List, Tuple

_QUARTER_RE = re.compile(r"^\s*(\d{4})\s*-?\s*Q([1-4])\s*$", re.IGNORECASE)


@dataclass(frozen=True, order=True)
class Quarter:
    year: int
    quarter: int

    def __str__(self) -> str:
        return f"{self.year}-Q{self.quarter}"

    def next(self) -> "Quarter":
        if self.quarter == 4:
            return Quarter(self.year + 1, 1)
        return Quarter(self.year, self.quarter + 1)

    def previous(self) -> "Quarter":
        if self.quarter == 1:
            return Quarter(self.year - 1, 4)
        return Quarter(self.year, self.quarter - 1)

    def bounds(self) -> Tuple[date, date]:
        """First and last calendar day of the quarter."""
        first_month = 3 * (self.quarter - 1) + 1
        start = date(self.year, first_month, 1)
        nxt = self.next()
        last = date(nxt.year, 3 * (nxt.quarter - 1) + 1, 1) - timedelta(days=1)
        return start, last


def quarter_of(d: date) -> Quarter:
    return Quarter(d.year, (d.month + 2) // 3)


def parse_quarter(s: str) -> Quarter:
    """Parse "2024-Q1" / "2024Q1" (case-insensitive); ValueError otherwise."""
    m = _QUARTER_RE.match(s or "")
    if not m:
        raise ValueError(f"invalid quarter {s!r}; expected YYYY-QN")
    return Quarter(int(m.group(1)), int(m.group(2)))


def plan_quarters(start_year: int, start_quarter: int, *, today: date | None = None) -> List[Quarter]:
    """Quarters from (start_year, start_quarter) through the current quarter, ascending.

    A start in the future yields an empty plan rather than an error.
    """
    if not 1 <= int(start_quarter) <= 4:
        raise ValueError(f"quarter must be 1-4, got {start_quarter}")
    current = quarter_of(today or date.today())
    out: List[Quarter] = []
    q = Quarter(int(start_year), int(start_quarter))
    while q <= current:
        out.append(q)
        q = q.next()
    return out


def plan_since(d: date, *, today: date | None = None) -> List[Quarter]:
    """Quarters from the one containing `d` through the current quarter."""
    q = quarter_of(d)
    return plan_quarters(q.year, q.quarter, today=today)
