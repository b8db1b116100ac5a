"""Periodic sync sweep across every host and apartment."""
import logging
from typing import Callable, List, Optional, Tuple

from processor.models import ApartmentFailure, SweepResult
from storage.calendar_store import CalendarStore
from sync.orchestrator import CalendarSyncOrchestrator

logger = logging.getLogger(__name__)


class FleetSyncScheduler:
    """Invokes the orchestrator for every apartment, isolating failures."""

    def __init__(
        self,
        store: CalendarStore,
        orchestrator: CalendarSyncOrchestrator,
        time_margin_seconds: float = 60
    ):
        """
        Initialize the scheduler.

        Args:
            store: Calendar document store
            orchestrator: Per-apartment sync orchestrator
            time_margin_seconds: Stop starting new apartments once less than
                this much invocation time is left (default: 60)
        """
        self.store = store
        self.orchestrator = orchestrator
        self.time_margin_ms = time_margin_seconds * 1000

    def run_sweep(self, remaining_time_ms: Optional[Callable[[], int]] = None) -> SweepResult:
        """
        Sync every apartment of every host.

        Apartments are synced least recently synced first. A failing
        apartment (or a host whose apartments cannot be listed) is logged
        and recorded, and the sweep moves on. When the invocation is about
        to run out of time the remaining apartments are skipped; they are
        then the stalest and lead the next sweep.

        Args:
            remaining_time_ms: Returns the invocation time left in
                milliseconds, e.g. context.get_remaining_time_in_millis

        Returns:
            SweepResult with counts and per-apartment failures
        """
        result = SweepResult()
        host_ids = self.store.list_host_ids()
        logger.info(f"Starting calendar sweep over {len(host_ids)} hosts")

        pending = self._pending_apartments(host_ids, result)

        for index, (host_id, apartment_slug) in enumerate(pending):
            if self._out_of_time(remaining_time_ms):
                result.apartments_skipped = len(pending) - index
                logger.warning(
                    f"Sweep time limit reached, skipping {result.apartments_skipped} apartments",
                    extra={'apartments_skipped': result.apartments_skipped}
                )
                break

            try:
                self.orchestrator.sync_apartment_calendar(host_id, apartment_slug)
                result.apartments_synced += 1
            except Exception as e:
                self._record_failure(result, host_id, apartment_slug, e)

        logger.info(
            f"Calendar sweep complete: {result.apartments_synced} synced, "
            f"{result.apartments_failed} failed, {result.apartments_skipped} skipped",
            extra={
                'apartments_synced': result.apartments_synced,
                'apartments_failed': result.apartments_failed,
                'apartments_skipped': result.apartments_skipped
            }
        )
        return result

    def _pending_apartments(
        self,
        host_ids: List[str],
        result: SweepResult
    ) -> List[Tuple[str, str]]:
        """List every apartment, least recently synced first."""
        apartments = []
        for host_id in host_ids:
            try:
                host_apartments = self.store.list_apartments(host_id)
            except Exception as e:
                self._record_failure(result, host_id, None, e)
                continue

            for apartment_slug, last_auto_sync_at in host_apartments:
                apartments.append((last_auto_sync_at or '', host_id, apartment_slug))

        # Stable sort: never-synced apartments first, ties keep listing order
        apartments.sort(key=lambda apartment: apartment[0])
        return [(host_id, apartment_slug) for _, host_id, apartment_slug in apartments]

    def _out_of_time(self, remaining_time_ms: Optional[Callable[[], int]]) -> bool:
        if remaining_time_ms is None:
            return False
        return remaining_time_ms() < self.time_margin_ms

    def _record_failure(
        self,
        result: SweepResult,
        host_id: str,
        apartment_slug: Optional[str],
        error: Exception
    ) -> None:
        logger.error(
            'Calendar sync failed',
            extra={
                'host_id': host_id,
                'apartment_slug': apartment_slug,
                'error': str(error),
                'error_type': type(error).__name__
            },
            exc_info=True
        )
        result.apartments_failed += 1
        result.failures.append(ApartmentFailure(
            host_id=host_id,
            apartment_slug=apartment_slug,
            error=str(error),
            error_type=type(error).__name__,
        ))
