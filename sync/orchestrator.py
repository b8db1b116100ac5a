"""Per-apartment calendar synchronization."""
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, List, Optional

from fetcher.ical_fetcher import FeedFetchError, ICalFeedFetcher
from processor.ics_parser import ICSParser
from processor.models import (
    ApartmentCalendarPrivate,
    ImportSource,
    SourceSyncOutcome,
    SyncResult,
    CONFLICT_POLICY,
    STATUS_ERROR,
    STATUS_OK,
)
from processor.range_processor import ConflictDetector, dedupe_ranges
from storage.calendar_store import CalendarStore, generate_export_token
from sync.errors import NotFoundError

logger = logging.getLogger(__name__)


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


class CalendarSyncOrchestrator:
    """
    Runs one sync cycle for an apartment.

    Each cycle fetches every active import source, merges and dedupes the
    parsed ranges, recomputes conflicts against the host's manual blocks
    and overwrites the derived calendar fields. Derived state is rebuilt
    wholesale, so repeated cycles converge and concurrent cycles for the
    same apartment resolve as last-writer-wins.
    """

    def __init__(
        self,
        store: CalendarStore,
        fetcher: Optional[ICalFeedFetcher] = None,
        parser: Optional[ICSParser] = None,
        detector: Optional[ConflictDetector] = None,
        max_workers: int = 8,
        clock: Callable[[], str] = utc_now_iso
    ):
        """
        Initialize the orchestrator.

        Args:
            store: Calendar document store
            fetcher: Feed fetcher (default: ICalFeedFetcher())
            parser: ICS parser (default: ICSParser())
            detector: Conflict detector (default: ConflictDetector())
            max_workers: Maximum concurrent feed fetches per apartment
            clock: Returns the current timestamp as an ISO string
        """
        self.store = store
        self.fetcher = fetcher or ICalFeedFetcher()
        self.parser = parser or ICSParser()
        self.detector = detector or ConflictDetector()
        self.max_workers = max(1, max_workers)
        self.clock = clock

    def sync_apartment_calendar(self, host_id: str, apartment_slug: str) -> SyncResult:
        """
        Fetch, merge, detect conflicts and persist for one apartment.

        Args:
            host_id: Host identifier
            apartment_slug: Apartment identifier

        Returns:
            SyncResult with the new imported ranges, conflicts and timestamp

        Raises:
            NotFoundError: If the apartment does not exist
        """
        apartment = self.store.load_apartment(host_id, apartment_slug)
        if apartment is None:
            raise NotFoundError('Apartment not found.')

        calendar_private = (
            self.store.load_calendar_private(host_id, apartment_slug)
            or ApartmentCalendarPrivate()
        )

        log_context = {'host_id': host_id, 'apartment_slug': apartment_slug}
        logger.info(
            f"Syncing calendar with {len(calendar_private.imports)} import sources",
            extra=log_context
        )

        outcomes = self.fetch_sources(calendar_private.imports)

        fetched = []
        for outcome in outcomes:
            if outcome.ok:
                fetched.extend(outcome.ranges)
            else:
                logger.warning(
                    f"Import source failed: {outcome.error}",
                    extra=dict(log_context, source_id=outcome.source_id)
                )

        imported_busy_ranges = dedupe_ranges(fetched)
        conflicts = self.detector.detect_conflicts(
            apartment.calendar.manual_blocks,
            imported_busy_ranges
        )

        synced_at = self.clock()
        statuses = {outcome.source_id: outcome for outcome in outcomes}
        calendar_private.imports = [
            self._refresh_source_status(source, statuses.get(source.id), synced_at)
            for source in calendar_private.imports
        ]
        if not calendar_private.export_token:
            calendar_private.export_token = generate_export_token()
            logger.info('Generated export token', extra=log_context)
        calendar_private.conflict_policy = CONFLICT_POLICY
        calendar_private.updated_at = synced_at

        self.store.save_sync_result(
            apartment,
            calendar_private,
            imported_busy_ranges,
            conflicts,
            synced_at
        )

        logger.info(
            f"Calendar sync complete: {len(imported_busy_ranges)} imported ranges, "
            f"{len(conflicts)} conflicts",
            extra=dict(
                log_context,
                imported_count=len(imported_busy_ranges),
                conflict_count=len(conflicts),
                failed_sources=sum(1 for outcome in outcomes if not outcome.ok)
            )
        )

        return SyncResult(
            imported_busy_ranges=imported_busy_ranges,
            conflicts=conflicts,
            synced_at=synced_at,
            source_outcomes=outcomes,
        )

    def fetch_sources(self, sources: List[ImportSource]) -> List[SourceSyncOutcome]:
        """
        Fetch and parse all active sources concurrently.

        Args:
            sources: Import sources of the apartment

        Returns:
            One outcome per active source with a URL, in source order
        """
        active = [source for source in sources if source.is_active and source.url]
        if not active:
            return []

        workers = min(self.max_workers, len(active))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(self._sync_source, source) for source in active]
            return [future.result() for future in futures]

    def _sync_source(self, source: ImportSource) -> SourceSyncOutcome:
        """
        Fetch and parse one source, converting any failure into an outcome.

        Args:
            source: Active import source

        Returns:
            SourceSyncOutcome for the source
        """
        try:
            body = self.fetcher.fetch(source.url)
            ranges = self.parser.parse(body, source.id)
        except FeedFetchError as e:
            return SourceSyncOutcome(source_id=source.id, ok=False, error=e.message)
        except Exception as e:
            logger.error(
                f"Unexpected error syncing import source: {e}",
                extra={'source_id': source.id, 'error_type': type(e).__name__},
                exc_info=True
            )
            return SourceSyncOutcome(
                source_id=source.id,
                ok=False,
                error=str(e) or 'Sync failed'
            )

        return SourceSyncOutcome(source_id=source.id, ok=True, ranges=ranges)

    def _refresh_source_status(
        self,
        source: ImportSource,
        outcome: Optional[SourceSyncOutcome],
        synced_at: str
    ) -> ImportSource:
        """
        Build the updated source record for this cycle.

        Sources that were not attempted keep their previous status.

        Args:
            source: Source as loaded from the store
            outcome: Result of this cycle's attempt, if any
            synced_at: Timestamp of this sync cycle

        Returns:
            New ImportSource with refreshed status fields
        """
        if outcome is None:
            return source

        return ImportSource(
            id=source.id,
            name=source.name,
            url=source.url,
            color=source.color,
            is_active=source.is_active,
            last_status=STATUS_OK if outcome.ok else STATUS_ERROR,
            last_sync_at=synced_at,
            last_error=None if outcome.ok else outcome.error,
        )
