"""Lenient iCalendar parser producing busy date ranges."""
import logging
import re
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterator, List, NamedTuple, Optional

from processor.models import BusyRange, SOURCE_IMPORT

logger = logging.getLogger(__name__)

DATE_TOKEN_PATTERN = re.compile(r'^(\d{8})(T.*)?$')
CONTENT_LINE_PATTERN = re.compile(r'^[A-Za-z][A-Za-z0-9-]*[;:]')


class LineKind(Enum):
    """Kinds of content lines the parser distinguishes."""
    BEGIN_EVENT = 'begin_event'
    END_EVENT = 'end_event'
    PROPERTY = 'property'
    OTHER = 'other'


class ContentLine(NamedTuple):
    """Single tokenized line of a calendar feed."""
    kind: LineKind
    name: str = ''
    value: str = ''


class DateToken(NamedTuple):
    """Normalized DTSTART/DTEND value."""
    date: str
    is_date_only: bool


def unfold_lines(ics_text: str) -> Iterator[str]:
    """
    Join folded continuation lines back onto the line they continue.

    A line starting with a space or tab continues the previous line,
    unless after trimming it reads as a content line of its own; some
    feeds indent ordinary lines and those are kept separate.

    Args:
        ics_text: Raw iCalendar text

    Yields:
        Logical lines
    """
    logical = None
    for raw_line in (ics_text or '').splitlines():
        is_continuation = (
            logical is not None
            and raw_line[:1] in (' ', '\t')
            and not CONTENT_LINE_PATTERN.match(raw_line.strip())
        )
        if is_continuation:
            logical += raw_line[1:]
            continue
        if logical is not None:
            yield logical
        logical = raw_line
    if logical is not None:
        yield logical


def tokenize(ics_text: str) -> Iterator[ContentLine]:
    """
    Split calendar text into classified content lines.

    Args:
        ics_text: Raw iCalendar text (CRLF or LF line endings, folded
            lines allowed)

    Yields:
        ContentLine for every logical line of the input
    """
    for raw_line in unfold_lines(ics_text):
        line = raw_line.strip()
        if ':' not in line:
            yield ContentLine(LineKind.OTHER)
            continue

        # Only the part before the first colon names the property;
        # parameters such as ;VALUE=DATE are not part of the name.
        head, value = line.split(':', 1)
        name = head.split(';', 1)[0].strip().upper()
        value = value.strip()

        if name == 'BEGIN' and value.upper() == 'VEVENT':
            yield ContentLine(LineKind.BEGIN_EVENT)
        elif name == 'END' and value.upper() == 'VEVENT':
            yield ContentLine(LineKind.END_EVENT)
        elif name:
            yield ContentLine(LineKind.PROPERTY, name, value)
        else:
            yield ContentLine(LineKind.OTHER)


def parse_date_token(token: str) -> Optional[DateToken]:
    """
    Normalize a YYYYMMDD or YYYYMMDDTHHMMSS token to a YYYY-MM-DD date.

    Args:
        token: DTSTART/DTEND property value

    Returns:
        DateToken, or None when the token has any other shape or is not
        a real calendar day
    """
    match = DATE_TOKEN_PATTERN.match((token or '').strip())
    if not match:
        return None

    try:
        day = datetime.strptime(match.group(1), '%Y%m%d').date()
    except ValueError:
        return None

    return DateToken(date=day.isoformat(), is_date_only=match.group(2) is None)


class _EventState:
    """Properties captured between BEGIN:VEVENT and END:VEVENT."""

    def __init__(self):
        self.uid = ''
        self.status = ''
        self.dtstart = ''
        self.dtend = ''

    def capture(self, name: str, value: str) -> None:
        if name == 'UID':
            self.uid = value
        elif name == 'STATUS':
            self.status = value.upper()
        elif name == 'DTSTART':
            self.dtstart = value
        elif name == 'DTEND':
            self.dtend = value


class ICSParser:
    """
    Turns third-party iCal feeds into busy ranges.

    Feeds are not under the host's control, so malformed events are
    skipped instead of failing the whole feed.
    """

    def parse(self, ics_text: str, source_id: str) -> List[BusyRange]:
        """
        Parse calendar text into busy ranges tagged with their source.

        Args:
            ics_text: Raw iCalendar text
            source_id: Identifier of the import source the text came from

        Returns:
            List of BusyRange objects in source-text order
        """
        ranges = []
        current: Optional[_EventState] = None
        skipped = 0

        for line in tokenize(ics_text):
            if line.kind is LineKind.BEGIN_EVENT:
                current = _EventState()
            elif line.kind is LineKind.END_EVENT:
                if current is not None:
                    busy_range = self._finish_event(current, source_id)
                    if busy_range:
                        ranges.append(busy_range)
                    else:
                        skipped += 1
                current = None
            elif line.kind is LineKind.PROPERTY and current is not None:
                current.capture(line.name, line.value)

        logger.debug(
            f"Parsed {len(ranges)} busy ranges from source {source_id} "
            f"({skipped} events skipped)"
        )
        return ranges

    def _finish_event(self, event: _EventState, source_id: str) -> Optional[BusyRange]:
        """
        Convert a completed event into a busy range.

        A date-only DTEND is end-exclusive, so the stored inclusive end is
        the previous day. A date-time DTEND keeps its own day.

        Args:
            event: Captured event properties
            source_id: Identifier of the import source

        Returns:
            BusyRange, or None if the event is cancelled or has no valid start
        """
        if event.status == 'CANCELLED':
            return None

        start = parse_date_token(event.dtstart)
        if not start:
            return None

        end_date = start.date
        end = parse_date_token(event.dtend)
        if end:
            end_date = end.date
            if end.is_date_only:
                end_date = (
                    datetime.strptime(end.date, '%Y-%m-%d').date() - timedelta(days=1)
                ).isoformat()

        if end_date < start.date:
            end_date = start.date

        return BusyRange(
            source=SOURCE_IMPORT,
            source_id=source_id,
            start_date=start.date,
            end_date=end_date,
            note=event.uid or None,
        )


def parse_ics(ics_text: str, source_id: str) -> List[BusyRange]:
    """Parse calendar text with a default ICSParser."""
    return ICSParser().parse(ics_text, source_id)
