"""Deduplication and conflict detection for busy ranges."""
import hashlib
import logging
from typing import List, Sequence

from processor.models import BusyRange, Conflict, CONFLICT_OPEN

logger = logging.getLogger(__name__)

CONFLICT_REASON = 'Manual block overlaps imported calendar range'


def dedupe_ranges(ranges: Sequence[BusyRange]) -> List[BusyRange]:
    """
    Drop repeated ranges, keeping the first occurrence of each.

    Two ranges are duplicates when source, source id, start and end all
    match; the note is not compared.

    Args:
        ranges: Busy ranges in merge order

    Returns:
        Deduplicated list preserving input order
    """
    seen = set()
    result = []

    for busy_range in ranges or []:
        key = (
            busy_range.source,
            busy_range.source_id,
            busy_range.start_date,
            busy_range.end_date,
        )
        if key in seen:
            continue
        seen.add(key)
        result.append(busy_range)

    removed = len(ranges or []) - len(result)
    if removed:
        logger.info(f"Removed {removed} duplicate busy ranges")
    return result


def ranges_overlap(first: BusyRange, second: BusyRange) -> bool:
    """Inclusive-day interval overlap test."""
    return (
        first.start_date <= second.end_date and
        second.start_date <= first.end_date
    )


class ConflictDetector:
    """
    Surfaces overlaps between host manual blocks and imported ranges.

    Implements the strict-no-overwrite policy: a manual block always wins,
    so detection only reports overlaps and never modifies either input.
    Overlaps between two imported ranges are not conflicts.
    """

    def detect_conflicts(
        self,
        manual_blocks: Sequence[BusyRange],
        imported_ranges: Sequence[BusyRange]
    ) -> List[Conflict]:
        """
        Build one conflict per overlapping (manual block, imported range) pair.

        Args:
            manual_blocks: Host-entered blocks, in stored order
            imported_ranges: Deduplicated imported ranges, in merge order

        Returns:
            Conflicts ordered by manual block, then by imported range
        """
        conflicts = []

        for position, block in enumerate(manual_blocks or []):
            for imported in imported_ranges or []:
                if not ranges_overlap(block, imported):
                    continue

                conflicts.append(Conflict(
                    id=self.generate_conflict_id(position, block, imported),
                    start_date=max(block.start_date, imported.start_date),
                    end_date=min(block.end_date, imported.end_date),
                    reason=CONFLICT_REASON,
                    source_ids=[imported.source_id],
                    status=CONFLICT_OPEN,
                ))

        if conflicts:
            logger.info(f"Detected {len(conflicts)} manual/import conflicts")
        return conflicts

    def generate_conflict_id(
        self,
        position: int,
        block: BusyRange,
        imported: BusyRange
    ) -> str:
        """
        Generate a stable conflict identifier for a manual/import pair.

        Args:
            position: Index of the manual block in the stored list
            block: Manual block
            imported: Imported range overlapping the block

        Returns:
            Identifier derived from a SHA256 hash of the pair
        """
        composite = '|'.join([
            str(position),
            block.source_id,
            block.start_date,
            block.end_date,
            imported.source_id,
            imported.start_date,
            imported.end_date,
        ])
        digest = hashlib.sha256(composite.encode('utf-8')).hexdigest()
        return f"conflict-{digest[:24]}"


def detect_conflicts(
    manual_blocks: Sequence[BusyRange],
    imported_ranges: Sequence[BusyRange]
) -> List[Conflict]:
    """Detect conflicts with a default ConflictDetector."""
    return ConflictDetector().detect_conflicts(manual_blocks, imported_ranges)
