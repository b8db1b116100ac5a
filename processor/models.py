"""Data models for apartment calendar synchronization."""
from dataclasses import dataclass, field
from typing import List, Optional

SOURCE_MANUAL = 'manual'
SOURCE_IMPORT = 'import'

STATUS_PENDING = 'pending'
STATUS_OK = 'ok'
STATUS_ERROR = 'error'

CONFLICT_OPEN = 'open'
CONFLICT_RESOLVED = 'resolved'

CONFLICT_POLICY = 'strict-no-overwrite'
DEFAULT_IMPORT_COLOR = '#3B82F6'


@dataclass
class BusyRange:
    """Inclusive range of calendar days during which an apartment is busy."""
    source: str
    source_id: str
    start_date: str
    end_date: str
    note: Optional[str] = None


@dataclass
class ImportSource:
    """External iCal feed configured for an apartment."""
    id: str
    name: str
    url: str
    color: str = DEFAULT_IMPORT_COLOR
    is_active: bool = True
    last_status: str = STATUS_PENDING
    last_sync_at: Optional[str] = None
    last_error: Optional[str] = None


@dataclass
class Conflict:
    """Overlap between a manual block and an imported busy range."""
    id: str
    start_date: str
    end_date: str
    reason: str
    source_ids: List[str]
    status: str = CONFLICT_OPEN


@dataclass
class ApartmentCalendar:
    """Public calendar state embedded in the apartment record."""
    manual_blocks: List[BusyRange] = field(default_factory=list)
    imported_busy_ranges: List[BusyRange] = field(default_factory=list)
    conflicts: List[Conflict] = field(default_factory=list)
    last_auto_sync_at: Optional[str] = None
    last_internal_update_at: Optional[str] = None


@dataclass
class ApartmentCalendarPrivate:
    """Private calendar record holding the export token and import sources."""
    export_token: Optional[str] = None
    imports: List[ImportSource] = field(default_factory=list)
    conflict_policy: str = CONFLICT_POLICY
    updated_at: Optional[str] = None


@dataclass
class Apartment:
    """Apartment as seen by the calendar engine."""
    host_id: str
    slug: str
    calendar: ApartmentCalendar
    has_calendar: bool = True


@dataclass
class SourceSyncOutcome:
    """Result of fetching and parsing a single import source."""
    source_id: str
    ok: bool
    ranges: List[BusyRange] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class SyncResult:
    """Result of one sync cycle for one apartment."""
    imported_busy_ranges: List[BusyRange]
    conflicts: List[Conflict]
    synced_at: str
    source_outcomes: List[SourceSyncOutcome] = field(default_factory=list)


@dataclass
class ApartmentFailure:
    """Apartment that could not be synced during a fleet sweep."""
    host_id: str
    apartment_slug: Optional[str]
    error: str
    error_type: str


@dataclass
class SweepResult:
    """Summary of a fleet sweep."""
    apartments_synced: int = 0
    apartments_failed: int = 0
    apartments_skipped: int = 0
    failures: List[ApartmentFailure] = field(default_factory=list)
