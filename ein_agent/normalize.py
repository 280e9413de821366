from __future__ import annotations

"""
Value normalization applied to CaseRecord fields before any fill.

The target site rejects punctuation it does not recognize, so every free-text
value goes through clean_text() with an allow-list for its field family.
"""

import re
from datetime import datetime
from typing import List, Optional, Sequence, Tuple


# -----------------------------------------------------------------------------
# States
# -----------------------------------------------------------------------------
STATE_NAME_TO_CODE = {
    "ALABAMA": "AL", "ALASKA": "AK", "ARIZONA": "AZ", "ARKANSAS": "AR",
    "CALIFORNIA": "CA", "COLORADO": "CO", "CONNECTICUT": "CT", "DELAWARE": "DE",
    "DISTRICT OF COLUMBIA": "DC", "FLORIDA": "FL", "GEORGIA": "GA", "HAWAII": "HI",
    "IDAHO": "ID", "ILLINOIS": "IL", "INDIANA": "IN", "IOWA": "IA",
    "KANSAS": "KS", "KENTUCKY": "KY", "LOUISIANA": "LA", "MAINE": "ME",
    "MARYLAND": "MD", "MASSACHUSETTS": "MA", "MICHIGAN": "MI", "MINNESOTA": "MN",
    "MISSISSIPPI": "MS", "MISSOURI": "MO", "MONTANA": "MT", "NEBRASKA": "NE",
    "NEVADA": "NV", "NEW HAMPSHIRE": "NH", "NEW JERSEY": "NJ", "NEW MEXICO": "NM",
    "NEW YORK": "NY", "NORTH CAROLINA": "NC", "NORTH DAKOTA": "ND", "OHIO": "OH",
    "OKLAHOMA": "OK", "OREGON": "OR", "PENNSYLVANIA": "PA", "RHODE ISLAND": "RI",
    "SOUTH CAROLINA": "SC", "SOUTH DAKOTA": "SD", "TENNESSEE": "TN", "TEXAS": "TX",
    "UTAH": "UT", "VERMONT": "VT", "VIRGINIA": "VA", "WASHINGTON": "WA",
    "WEST VIRGINIA": "WV", "WISCONSIN": "WI", "WYOMING": "WY", "PUERTO RICO": "PR",
}
STATE_CODE_TO_NAME = {code: name for name, code in STATE_NAME_TO_CODE.items()}


def normalize_state(value: Optional[str]) -> str:
    """Full name or abbreviation -> two-letter code. Unknown input comes back cleaned."""
    s = re.sub(r"\s+", " ", (value or "").strip().upper().replace(".", ""))
    if not s:
        return ""
    if s in STATE_CODE_TO_NAME:
        return s
    return STATE_NAME_TO_CODE.get(s, s)


def state_name(value: Optional[str]) -> str:
    """Two-letter code or full name -> title-cased full name."""
    code = normalize_state(value)
    name = STATE_CODE_TO_NAME.get(code)
    if not name:
        return (value or "").strip()
    return name.title().replace(" Of ", " of ")


# -----------------------------------------------------------------------------
# Postal codes / numbers
# -----------------------------------------------------------------------------
def normalize_zip(value: Optional[str]) -> str:
    return re.sub(r"\D", "", str(value or ""))[:5]


def digits_only(value: Optional[str]) -> str:
    return re.sub(r"\D", "", str(value or ""))


def split_ssn(value: Optional[str]) -> Optional[Tuple[str, str, str]]:
    d = digits_only(value)
    if len(d) != 9:
        return None
    return d[:3], d[3:5], d[5:]


def split_phone(value: Optional[str]) -> Optional[Tuple[str, str, str]]:
    d = digits_only(value)
    if len(d) == 11 and d.startswith("1"):
        d = d[1:]
    if len(d) != 10:
        return None
    return d[:3], d[3:6], d[6:]


# -----------------------------------------------------------------------------
# Free text
# -----------------------------------------------------------------------------
NAME_EXTRA_CHARS = "-&"
ADDRESS_EXTRA_CHARS = "-&/"
DESCRIPTION_EXTRA_CHARS = "-&/"


def clean_text(value: Optional[str], extra_chars: str = NAME_EXTRA_CHARS) -> str:
    """Keep letters, digits, single spaces and `extra_chars`. Idempotent."""
    allowed = re.escape(extra_chars) if extra_chars else ""
    s = re.sub(rf"[^A-Za-z0-9 {allowed}]", "", str(value or "").replace("\t", " ").replace("\n", " "))
    return re.sub(r" {2,}", " ", s).strip()


def clean_file_token(value: Optional[str]) -> str:
    """Entity name as used inside artifact names."""
    return re.sub(r"[^\w\-]", "", str(value or ""))


def strip_entity_suffix(name: str, suffixes: Sequence[str]) -> str:
    """Drop trailing designators like 'LLC' / 'Inc.' (repeatedly, case-insensitive)."""
    s = (name or "").strip()
    if not s or not suffixes:
        return s
    pattern = re.compile(
        r"[\s,]+(?:" + "|".join(re.escape(x) for x in suffixes) + r")\.?\s*$",
        re.IGNORECASE,
    )
    while True:
        stripped = pattern.sub("", s).strip()
        if stripped == s or not stripped:
            return s
        s = stripped


# -----------------------------------------------------------------------------
# Months / dates
# -----------------------------------------------------------------------------
MONTH_NAMES = [
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
]

_DATE_FORMATS = ("%Y-%m-%dT%H:%M:%S", "%Y-%m-%d", "%m/%d/%Y", "%Y/%m/%d")


def parse_month_number(value: Optional[str]) -> Optional[int]:
    """'8' / '08' -> 8. Anything outside 1..12 (or non-numeric) -> None."""
    s = str(value if value is not None else "").strip()
    if not s.isdigit():
        return None
    n = int(s)
    return n if 1 <= n <= 12 else None


def month_from_name(value: Optional[str]) -> Optional[int]:
    s = str(value or "").strip().lower().rstrip(".")
    if len(s) < 3:
        return None
    for i, name in enumerate(MONTH_NAMES, start=1):
        if name.lower().startswith(s):
            return i
    return None


def month_candidates(value: Optional[str]) -> List[str]:
    """Expanded option texts/values to try for a numeric month input."""
    n = parse_month_number(value)
    if n is None:
        return []
    full = MONTH_NAMES[n - 1]
    out: List[str] = []
    for c in (full, full.upper(), full[:3], full[:3].upper(), f"{n:02d}", str(n)):
        if c not in out:
            out.append(c)
    return out


def parse_formation_date(value: Optional[str]) -> Tuple[Optional[int], Optional[int]]:
    s = (value or "").strip()
    if not s:
        return None, None
    # tolerate fractional seconds / timezone suffixes on ISO timestamps
    iso = re.match(r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})", s)
    if iso:
        s = iso.group(1)
    for fmt in _DATE_FORMATS:
        try:
            parsed = datetime.strptime(s, fmt)
            return parsed.month, parsed.year
        except ValueError:
            continue
    return None, None
