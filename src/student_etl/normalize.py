"""Normalization functions for student-record CSV ingestion.

All functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import re
from datetime import date, datetime

# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: header_key  (case-insensitive header matching)
# ---------------------------------------------------------------------------

def header_key(value: str | None) -> str:
    """Return the comparison key for a CSV header: trimmed, lowercased."""
    return (normalize_space(value) or "").lower()


# ---------------------------------------------------------------------------
# Rule 4: normalize_gender
# ---------------------------------------------------------------------------

_GENDERS = {
    "m": "Male",
    "male": "Male",
    "f": "Female",
    "female": "Female",
}


def normalize_gender(value: str | None) -> str | None:
    """'m'/'male' -> 'Male', 'f'/'female' -> 'Female', anything else -> None."""
    v = trim(value)
    if v is None:
        return None
    return _GENDERS.get(v.lower())


# ---------------------------------------------------------------------------
# Rule 5: parse_birth_date
# ---------------------------------------------------------------------------

_ISO_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_DMY_DASH_RE = re.compile(r"^(\d{2})-(\d{2})-(\d{4})$")
_DMY_SLASH_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")

# Named-month spellings tried after the numeric layouts.
_FALLBACK_FORMATS = (
    "%b %d, %Y",
    "%B %d, %Y",
    "%d %b %Y",
    "%d %B %Y",
    "%b %d %Y",
    "%B %d %Y",
    "%Y/%m/%d",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
)


def _safe_date(year: str, month: str, day: str) -> date | None:
    try:
        return date(int(year), int(month), int(day))
    except ValueError:
        return None


def parse_birth_date(value: str | None) -> str | None:
    """Parse a date of birth and return it as 'YYYY-MM-DD', or None.

    Layouts, first match wins:
      YYYY-MM-DD, DD-MM-YYYY, D/M/YYYY (1-2 digit day and month),
      then the named-month spellings in _FALLBACK_FORMATS.
    """
    v = trim(value)
    if v is None:
        return None

    m = _ISO_RE.match(v)
    if m:
        parsed = _safe_date(m.group(1), m.group(2), m.group(3))
        if parsed is not None:
            return parsed.isoformat()

    for pattern in (_DMY_DASH_RE, _DMY_SLASH_RE):
        m = pattern.match(v)
        if m:
            parsed = _safe_date(m.group(3), m.group(2), m.group(1))
            if parsed is not None:
                return parsed.isoformat()

    for fmt in _FALLBACK_FORMATS:
        try:
            return datetime.strptime(v, fmt).date().isoformat()
        except ValueError:
            continue
    return None


# ---------------------------------------------------------------------------
# Rule 6: contact validation
# ---------------------------------------------------------------------------

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_RE = re.compile(r"^[\d\s\-()+]+$")


def is_valid_email(value: str | None) -> bool:
    v = trim(value)
    return bool(v and _EMAIL_RE.match(v))


def is_valid_phone(value: str | None) -> bool:
    v = trim(value)
    return bool(v and _PHONE_RE.match(v))


# ---------------------------------------------------------------------------
# Rule 7: map_study_mode
# ---------------------------------------------------------------------------

STUDY_MODE_FULL = "FULL_PROGRAMME"
STUDY_MODE_DIRECT = "DIRECT_ENTRY"
STUDY_MODE_FAST = "FAST_TRACK"


def map_study_mode(duration: str | None) -> str:
    """Map a free-text programme duration to a study mode.

    Substring match in order: '5' -> FULL_PROGRAMME, '4' -> DIRECT_ENTRY,
    '3' -> FAST_TRACK.  Blank or unmatched -> FULL_PROGRAMME.
    """
    v = trim(duration)
    if v is None:
        return STUDY_MODE_FULL
    if "5" in v:
        return STUDY_MODE_FULL
    if "4" in v:
        return STUDY_MODE_DIRECT
    if "3" in v:
        return STUDY_MODE_FAST
    return STUDY_MODE_FULL
