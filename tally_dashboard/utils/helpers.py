"""
Helper Functions Module
Conversions between Tally's textual formats and Python values
"""

import re
from datetime import date, datetime, timedelta
from typing import Any, List, Optional, Tuple


MONTHS = {
    'jan': '01', 'feb': '02', 'mar': '03', 'apr': '04',
    'may': '05', 'jun': '06', 'jul': '07', 'aug': '08',
    'sep': '09', 'oct': '10', 'nov': '11', 'dec': '12'
}

_NUMBER_RE = re.compile(r'[^\d.-]')
_QUANTITY_RE = re.compile(r'(-?[\d,]*\.?\d+)\s*(.*)')


def parse_tally_date(date_str: str) -> str:
    """Parse a Tally date (YYYYMMDD or d-MMM-yy) to ISO format (YYYY-MM-DD)

    Returns an empty string for blank input, and the stripped input
    unchanged when no known format matches.
    """
    if not date_str:
        return ""
    date_str = date_str.strip()

    if len(date_str) == 8 and date_str.isdigit():
        return f"{date_str[:4]}-{date_str[4:6]}-{date_str[6:8]}"

    # Tally sometimes splits the month name: 1-Ap-r--21
    cleaned = date_str.replace('--', '-').replace('- ', '-').replace(' -', '-')
    parts = cleaned.split('-')
    if len(parts) >= 3:
        day = parts[0].zfill(2)
        month = MONTHS.get(''.join(parts[1:-1]).lower()[:3])
        year = parts[-1]
        if month and day.isdigit() and year.isdigit():
            if len(year) == 2:
                year = '20' + year if int(year) < 50 else '19' + year
            return f"{year}-{month}-{day}"

    return date_str


def to_tally_date(value: Any) -> str:
    """Format a date, datetime or ISO string as YYYYMMDD for SVFROMDATE/SVTODATE"""
    if isinstance(value, (date, datetime)):
        return value.strftime("%Y%m%d")
    return str(value).strip().replace("-", "")


def parse_tally_amount(amount_str: Any) -> float:
    """Parse Tally amount string to float, 0.0 when nothing numeric remains"""
    if amount_str is None:
        return 0.0
    if isinstance(amount_str, (int, float)):
        return float(amount_str)
    cleaned = _NUMBER_RE.sub('', str(amount_str))
    try:
        return float(cleaned) if cleaned else 0.0
    except ValueError:
        return 0.0


def parse_tally_int(value: Any) -> int:
    """Parse an integer field such as ALTERID or MASTERID, 0 when unusable"""
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except ValueError:
        return int(parse_tally_amount(value))


def parse_quantity(qty_str: str) -> Tuple[float, str]:
    """Split " 5 Nos" or "2.5 Kg" into (quantity, unit)"""
    if not qty_str:
        return 0.0, ""
    match = _QUANTITY_RE.search(qty_str.strip())
    if not match:
        return 0.0, ""
    return parse_tally_amount(match.group(1)), match.group(2).strip()


def parse_rate(rate_str: str) -> float:
    """Parse "100.00/Nos" into 100.0"""
    if not rate_str:
        return 0.0
    return parse_tally_amount(rate_str.split('/')[0])


def format_amount(value: float) -> str:
    """Render an amount for an import envelope without a trailing .0"""
    value = round(float(value), 2)
    if value == int(value):
        return str(int(value))
    return f"{value:.2f}"


def generate_date_batches(start: date, end: date, batch_days: int) -> List[Tuple[date, date]]:
    """Split [start, end] into consecutive inclusive windows of batch_days days"""
    if batch_days < 1:
        raise ValueError("batch_days must be at least 1")
    batches = []
    current = start
    while current <= end:
        batch_end = min(current + timedelta(days=batch_days - 1), end)
        batches.append((current, batch_end))
        current = batch_end + timedelta(days=1)
    return batches


def parse_iso_date(value: Optional[str]) -> Optional[date]:
    """Parse YYYY-MM-DD (or YYYYMMDD) into a date, None for blank input"""
    if not value:
        return None
    value = value.strip()
    if len(value) == 8 and value.isdigit():
        return datetime.strptime(value, "%Y%m%d").date()
    return datetime.strptime(value[:10], "%Y-%m-%d").date()


def get_current_timestamp() -> str:
    """Get current timestamp in ISO format"""
    return datetime.now().isoformat()
