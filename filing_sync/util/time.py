from __future__ import annotations

from datetime import date, datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def utcnow_iso() -> str:
    """Current UTC time as ISO-8601 string with Z."""
    return utcnow().replace(microsecond=0).isoformat().replace("+00:00", "Z")


def parse_iso_date(s: str | None) -> date | None:
    """Parse YYYY-MM-DD (or a full ISO timestamp); None for blank/invalid input."""
    raw = (s or "").strip()
    if not raw:
        return None
    try:
        return date.fromisoformat(raw[:10])
    except ValueError:
        return None


def years_before(d: date, years: int) -> date:
    try:
        return d.replace(year=d.year - years)
    except ValueError:
        # Feb 29 -> Feb 28
        return d.replace(year=d.year - years, day=28)
