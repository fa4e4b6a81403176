"""
Date parsing utilities for feed entries, listing pages and article URLs.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Optional
import logging

from dateutil import parser as date_parser

logger = logging.getLogger(__name__)


PORTUGUESE_MONTHS = {
    'jan': 1, 'fev': 2, 'mar': 3, 'abr': 4, 'mai': 5, 'jun': 6,
    'jul': 7, 'ago': 8, 'set': 9, 'out': 10, 'nov': 11, 'dez': 12,
    'janeiro': 1, 'fevereiro': 2, 'março': 3, 'marco': 3, 'abril': 4,
    'maio': 5, 'junho': 6, 'julho': 7, 'agosto': 8, 'setembro': 9,
    'outubro': 10, 'novembro': 11, 'dezembro': 12,
}

ENGLISH_MONTHS = {
    'jan': 1, 'feb': 2, 'mar': 3, 'apr': 4, 'may': 5, 'jun': 6,
    'jul': 7, 'aug': 8, 'sep': 9, 'oct': 10, 'nov': 11, 'dec': 12,
    'january': 1, 'february': 2, 'march': 3, 'april': 4, 'june': 6,
    'july': 7, 'august': 8, 'september': 9, 'october': 10,
    'november': 11, 'december': 12,
}

RELATIVE_PT_RE = re.compile(r'(\d+)\s+(hora|horas|dia|dias|minuto|minutos)\s+atr[aá]s', re.I)
DAY_MONTH_YEAR_RE = re.compile(r'(\d{1,2})\s+(?:de\s+)?(\w+)\s+(?:de\s+)?(\d{4})', re.I | re.U)


def ensure_aware(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC"""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_feed_date(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an RSS pubDate / Atom published or updated value.

    Accepts RFC 822 and ISO 8601 forms; returns an aware datetime or None.
    """
    if not value:
        return None
    try:
        return ensure_aware(date_parser.parse(value.strip()))
    except (ValueError, OverflowError, TypeError) as e:
        logger.debug(f"Unparseable feed date '{value}': {e}")
        return None


def parse_relative_date(text: str, now: Optional[datetime] = None) -> Optional[datetime]:
    """'3 horas atrás' -> now - 3h, '2 dias atrás' -> now - 2d"""
    match = RELATIVE_PT_RE.search(text or '')
    if not match:
        return None

    now = now or datetime.now(timezone.utc)
    amount = int(match.group(1))
    unit = match.group(2).lower()
    if unit.startswith('hora'):
        return now - timedelta(hours=amount)
    if unit.startswith('dia'):
        return now - timedelta(days=amount)
    return now - timedelta(minutes=amount)


def parse_listing_date(text: str, now: Optional[datetime] = None) -> Optional[datetime]:
    """
    Parse a date string found on a scraped listing page.

    Order: relative Portuguese phrase, "DD Month YYYY" with Portuguese or
    English month names, then whatever dateutil understands (ISO, RFC).
    """
    text = (text or '').strip()
    if not text:
        return None

    relative = parse_relative_date(text, now)
    if relative:
        return relative

    match = DAY_MONTH_YEAR_RE.search(text)
    if match:
        day, month_name, year = match.groups()
        key = month_name.lower()
        month = PORTUGUESE_MONTHS.get(key) or ENGLISH_MONTHS.get(key)
        if month:
            try:
                return datetime(int(year), month, int(day), tzinfo=timezone.utc)
            except ValueError:
                pass

    try:
        return ensure_aware(date_parser.parse(text))
    except (ValueError, OverflowError, TypeError):
        logger.debug(f"Could not parse listing date: {text[:60]}")
        return None


def extract_date_from_url(url: str) -> Optional[datetime]:
    """
    Extract publication date from URL patterns commonly used by news sites.

    Supports patterns like:
    - /2025/10/28/article-title
    - /2025-10-28/article-title
    - /article-title-2025-10-28
    """
    if not url:
        return None

    patterns = (
        r'/(\d{4})/(\d{1,2})/(\d{1,2})/',
        r'/(\d{4})-(\d{1,2})-(\d{1,2})[-/]',
        r'-(\d{4})-(\d{1,2})-(\d{1,2})',
    )
    for pattern in patterns:
        match = re.search(pattern, url)
        if not match:
            continue
        year, month, day = match.groups()
        try:
            dt = datetime(int(year), int(month), int(day), tzinfo=timezone.utc)
            logger.debug(f"Extracted date from URL: {dt.date()}")
            return dt
        except ValueError:
            continue  # Invalid date, try next pattern

    return None
