"""Serialize apartment busy ranges into an iCalendar document."""
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from processor.models import Apartment, BusyRange

logger = logging.getLogger(__name__)

PRODID = '-//Apartment Calendar Sync//Availability Export//EN'
DEFAULT_SUMMARY = 'Unavailable'
UID_STRIP_PATTERN = re.compile(r'[^A-Za-z0-9\-]')
MAX_LINE_OCTETS = 75


def escape_text(value: str) -> str:
    """Escape a TEXT property value."""
    return (
        value.replace('\\', '\\\\')
        .replace(';', '\\;')
        .replace(',', '\\,')
        .replace('\r\n', '\\n')
        .replace('\n', '\\n')
    )


def fold_line(line: str) -> str:
    """
    Fold a content line so no physical line exceeds 75 octets.

    Continuation lines start with a single space. Multi-byte characters
    are never split.

    Args:
        line: Unfolded content line

    Returns:
        Line with CRLF + space inserted where needed
    """
    if len(line.encode('utf-8')) <= MAX_LINE_OCTETS:
        return line

    parts = []
    current = ''
    current_octets = 0
    for char in line:
        char_octets = len(char.encode('utf-8'))
        if current_octets + char_octets > MAX_LINE_OCTETS:
            parts.append(current)
            current, current_octets = ' ', 1
        current += char
        current_octets += char_octets
    parts.append(current)
    return '\r\n'.join(parts)


def _compact_date(iso_date: str) -> str:
    return iso_date.replace('-', '')


class ICSExporter:
    """Builds the merged availability feed for one apartment."""

    def __init__(self, uid_domain: Optional[str] = None):
        """
        Initialize the exporter.

        Args:
            uid_domain: Optional domain appended to every UID as @domain
        """
        self.uid_domain = uid_domain or None

    def build_ics(self, apartment: Apartment, generated_at: Optional[datetime] = None) -> str:
        """
        Build a complete calendar document for an apartment.

        Manual blocks come first, then imported ranges. Conflicts are a
        derived report and are not exported.

        Args:
            apartment: Apartment whose calendar is exported
            generated_at: DTSTAMP value, defaults to now (UTC)

        Returns:
            iCalendar text with CRLF line endings
        """
        stamp = (generated_at or datetime.now(timezone.utc)).strftime('%Y%m%dT%H%M%SZ')
        calendar = apartment.calendar
        ranges = list(calendar.manual_blocks) + list(calendar.imported_busy_ranges)

        lines = [
            'BEGIN:VCALENDAR',
            'VERSION:2.0',
            f'PRODID:{PRODID}',
            'CALSCALE:GREGORIAN',
        ]
        for busy_range in ranges:
            lines.extend(self._event_lines(apartment.slug, busy_range, stamp))
        lines.append('END:VCALENDAR')

        logger.info(
            f"Built calendar export with {len(ranges)} events",
            extra={'apartment_slug': apartment.slug, 'event_count': len(ranges)}
        )
        return '\r\n'.join(fold_line(line) for line in lines) + '\r\n'

    def build_uid(self, apartment_slug: str, busy_range: BusyRange) -> str:
        """
        Build the deterministic UID of an exported range.

        Args:
            apartment_slug: Apartment identifier
            busy_range: Range being exported

        Returns:
            UID containing only letters, digits and dashes (plus @domain
            when configured)
        """
        raw = (
            f"{apartment_slug}-{busy_range.source}-{busy_range.source_id}-"
            f"{busy_range.start_date}-{busy_range.end_date}"
        )
        uid = UID_STRIP_PATTERN.sub('', raw)
        if self.uid_domain:
            return f"{uid}@{self.uid_domain}"
        return uid

    def _event_lines(self, apartment_slug: str, busy_range: BusyRange, stamp: str) -> List[str]:
        # Stored ranges are inclusive; all-day DTEND is exclusive.
        end_exclusive = (
            datetime.strptime(busy_range.end_date, '%Y-%m-%d').date() + timedelta(days=1)
        ).isoformat()

        return [
            'BEGIN:VEVENT',
            f'UID:{self.build_uid(apartment_slug, busy_range)}',
            f'DTSTAMP:{stamp}',
            f'DTSTART;VALUE=DATE:{_compact_date(busy_range.start_date)}',
            f'DTEND;VALUE=DATE:{_compact_date(end_exclusive)}',
            f'SUMMARY:{escape_text(busy_range.note or DEFAULT_SUMMARY)}',
            'END:VEVENT',
        ]


def build_ics(apartment: Apartment) -> str:
    """Build a calendar document with a default ICSExporter."""
    return ICSExporter().build_ics(apartment)
