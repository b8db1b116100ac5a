"""DynamoDB-backed document store for apartment calendar state."""
import logging
import secrets
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlencode

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from processor.models import (
    Apartment,
    ApartmentCalendar,
    ApartmentCalendarPrivate,
    BusyRange,
    Conflict,
    ImportSource,
    CONFLICT_OPEN,
    CONFLICT_POLICY,
    DEFAULT_IMPORT_COLOR,
    SOURCE_MANUAL,
    STATUS_PENDING,
)

logger = logging.getLogger(__name__)

HOSTS = 'hosts'
APARTMENTS = 'apartments'
CALENDARS_PRIVATE = 'apartmentCalendarsPrivate'
ROOT_SORT_KEY = '_'
EXPORT_TOKEN_BYTES = 36


def generate_export_token() -> str:
    """Generate an unguessable URL-safe export token."""
    return secrets.token_urlsafe(EXPORT_TOKEN_BYTES)


def build_export_url(base_url: str, host_id: str, apartment_slug: str, export_token: str) -> str:
    """
    Build the public export URL handed to third-party calendars.

    Args:
        base_url: Endpoint of the export handler
        host_id: Host identifier
        apartment_slug: Apartment identifier
        export_token: Apartment export token

    Returns:
        URL with URL-encoded query parameters
    """
    query = urlencode({
        'hostId': host_id,
        'apartmentSlug': apartment_slug,
        'token': export_token,
    })
    return f"{base_url}?{query}"


class CalendarStore:
    """
    Key-path document store on a single DynamoDB table.

    A document path alternates collection and document ids, e.g.
    ("hosts", "h1", "apartments", "loft"). The first pair becomes the
    partition key and the remainder the sort key, so every document of a
    host lives in one partition.
    """

    def __init__(self, table_name: str, region_name: Optional[str] = None):
        """
        Initialize DynamoDB client and table reference.

        Args:
            table_name: Name of the DynamoDB table
            region_name: Optional AWS region override
        """
        self.table_name = table_name
        if region_name:
            self.dynamodb = boto3.resource('dynamodb', region_name=region_name)
        else:
            self.dynamodb = boto3.resource('dynamodb')
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized CalendarStore for table: {table_name}")

    # ------------------------------------------------------------------
    # Generic key-path interface
    # ------------------------------------------------------------------

    def get(self, path: Sequence[str]) -> Optional[Dict[str, Any]]:
        """
        Read a document.

        Args:
            path: Document path

        Returns:
            Document fields, or None if the document does not exist
        """
        try:
            response = self.table.get_item(Key=self._key_for(path))
        except ClientError as e:
            logger.error(f"Error reading document {'/'.join(path)}: {e}")
            raise

        item = response.get('Item')
        if item is None:
            return None
        return {k: v for k, v in item.items() if k not in ('pk', 'sk')}

    def set(self, path: Sequence[str], data: Dict[str, Any]) -> None:
        """
        Replace a document.

        Args:
            path: Document path
            data: Complete document fields
        """
        item = dict(data)
        item.update(self._key_for(path))
        try:
            self.table.put_item(Item=item)
        except ClientError as e:
            logger.error(f"Error writing document {'/'.join(path)}: {e}")
            raise

    def update(self, path: Sequence[str], fields: Dict[str, Any]) -> None:
        """
        Set fields of an existing document in a single atomic write.

        Args:
            path: Document path
            fields: Mapping of dotted field paths (e.g. "calendar.conflicts")
                to new values

        Raises:
            ClientError: If the document does not exist or the write fails
        """
        if not fields:
            return

        update_expression, names, values = _update_expression(fields)
        try:
            self.table.update_item(
                Key=self._key_for(path),
                UpdateExpression=update_expression,
                ConditionExpression='attribute_exists(#pk)',
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
            )
        except ClientError as e:
            logger.error(f"Error updating document {'/'.join(path)}: {e}")
            raise

    def list_host_ids(self) -> List[str]:
        """
        Retrieve every host id using a paginated Scan.

        Returns:
            Host ids in scan order
        """
        scan_kwargs = {
            'FilterExpression': Attr('sk').eq(ROOT_SORT_KEY) & Attr('pk').begins_with(f"{HOSTS}/"),
            'ProjectionExpression': 'pk, sk',
        }
        try:
            response = self.table.scan(**scan_kwargs)
            items = response.get('Items', [])

            while 'LastEvaluatedKey' in response:
                response = self.table.scan(
                    ExclusiveStartKey=response['LastEvaluatedKey'],
                    **scan_kwargs
                )
                items.extend(response.get('Items', []))
        except ClientError as e:
            logger.error(f"Error scanning hosts: {e}")
            raise

        host_ids = [item['pk'].split('/', 1)[1] for item in items]
        logger.info(f"Retrieved {len(host_ids)} hosts")
        return host_ids

    def list_apartments(self, host_id: str) -> List[Tuple[str, Optional[str]]]:
        """
        Retrieve the apartments of a host using a paginated Query.

        Args:
            host_id: Host identifier

        Returns:
            (apartment slug, calendar.lastAutoSyncAt or None) pairs in
            sort-key order
        """
        prefix = f"{APARTMENTS}/"
        query_kwargs = {
            'KeyConditionExpression': (
                Key('pk').eq(f"{HOSTS}/{host_id}") & Key('sk').begins_with(prefix)
            ),
            'ProjectionExpression': '#sk, #calendar.#lastAutoSyncAt',
            'ExpressionAttributeNames': {
                '#sk': 'sk',
                '#calendar': 'calendar',
                '#lastAutoSyncAt': 'lastAutoSyncAt',
            },
        }
        try:
            response = self.table.query(**query_kwargs)
            items = response.get('Items', [])

            while 'LastEvaluatedKey' in response:
                response = self.table.query(
                    ExclusiveStartKey=response['LastEvaluatedKey'],
                    **query_kwargs
                )
                items.extend(response.get('Items', []))
        except ClientError as e:
            logger.error(f"Error querying apartments for host {host_id}: {e}")
            raise

        apartments = []
        for item in items:
            calendar = item.get('calendar')
            last_sync = calendar.get('lastAutoSyncAt') if isinstance(calendar, dict) else None
            apartments.append((item['sk'][len(prefix):], last_sync))
        return apartments

    def list_apartment_slugs(self, host_id: str) -> List[str]:
        """Apartment slugs of a host in sort-key order."""
        return [slug for slug, _ in self.list_apartments(host_id)]

    # ------------------------------------------------------------------
    # Calendar records
    # ------------------------------------------------------------------

    def load_apartment(self, host_id: str, apartment_slug: str) -> Optional[Apartment]:
        """
        Load an apartment and its public calendar.

        Args:
            host_id: Host identifier
            apartment_slug: Apartment identifier

        Returns:
            Apartment, or None if the apartment does not exist
        """
        item = self.get(apartment_path(host_id, apartment_slug))
        if item is None:
            return None

        raw_calendar = item.get('calendar')
        return Apartment(
            host_id=host_id,
            slug=apartment_slug,
            calendar=item_to_calendar(raw_calendar or {}),
            has_calendar=isinstance(raw_calendar, dict),
        )

    def load_calendar_private(
        self,
        host_id: str,
        apartment_slug: str
    ) -> Optional[ApartmentCalendarPrivate]:
        """
        Load the private calendar record of an apartment.

        Args:
            host_id: Host identifier
            apartment_slug: Apartment identifier

        Returns:
            ApartmentCalendarPrivate, or None if no record exists yet
        """
        item = self.get(calendar_private_path(host_id, apartment_slug))
        if item is None:
            return None
        return item_to_calendar_private(item)

    def save_calendar_private(
        self,
        host_id: str,
        apartment_slug: str,
        calendar_private: ApartmentCalendarPrivate
    ) -> None:
        """Replace the private calendar record of an apartment."""
        self.set(
            calendar_private_path(host_id, apartment_slug),
            calendar_private_to_item(calendar_private)
        )

    def save_sync_result(
        self,
        apartment: Apartment,
        calendar_private: ApartmentCalendarPrivate,
        imported_busy_ranges: List[BusyRange],
        conflicts: List[Conflict],
        synced_at: str
    ) -> None:
        """
        Persist one sync cycle in a single DynamoDB transaction.

        The private record is replaced and the derived calendar fields of
        the apartment are overwritten together, so readers never see one
        without the other. Manual blocks are owned by the host and are
        left untouched unless the apartment has no calendar yet. If the
        apartment was deleted in the meantime the whole transaction is
        cancelled and nothing is written.

        Args:
            apartment: Apartment being synced
            calendar_private: Private record with refreshed source statuses
            imported_busy_ranges: Deduplicated imported ranges
            conflicts: Freshly detected conflicts
            synced_at: Timestamp of this sync cycle

        Raises:
            ClientError: If the transaction is cancelled or fails
        """
        derived = {
            'importedBusyRanges': [busy_range_to_item(r) for r in imported_busy_ranges],
            'conflicts': [conflict_to_item(c) for c in conflicts],
            'lastAutoSyncAt': synced_at,
            'lastInternalUpdateAt': synced_at,
        }

        if apartment.has_calendar:
            fields = {f"calendar.{name}": value for name, value in derived.items()}
        else:
            fields = {'calendar': dict(derived, manualBlocks=[])}

        private_item = calendar_private_to_item(calendar_private)
        private_item.update(
            self._key_for(calendar_private_path(apartment.host_id, apartment.slug))
        )
        apartment_key = self._key_for(apartment_path(apartment.host_id, apartment.slug))
        update_expression, names, values = _update_expression(fields)

        try:
            self.dynamodb.meta.client.transact_write_items(
                TransactItems=[
                    {
                        'Put': {
                            'TableName': self.table_name,
                            'Item': private_item,
                        }
                    },
                    {
                        'Update': {
                            'TableName': self.table_name,
                            'Key': apartment_key,
                            'UpdateExpression': update_expression,
                            'ConditionExpression': 'attribute_exists(#pk)',
                            'ExpressionAttributeNames': names,
                            'ExpressionAttributeValues': values,
                        }
                    },
                ]
            )
        except ClientError as e:
            logger.error(
                f"Error saving calendar sync: {e}",
                extra={'host_id': apartment.host_id, 'apartment_slug': apartment.slug}
            )
            raise

        logger.info(
            f"Saved calendar sync: {len(imported_busy_ranges)} ranges, "
            f"{len(conflicts)} conflicts",
            extra={'host_id': apartment.host_id, 'apartment_slug': apartment.slug}
        )

    def rotate_export_token(self, host_id: str, apartment_slug: str, now: str) -> str:
        """
        Issue a new export token, invalidating the previous one.

        Only called on explicit host request; sync cycles never rotate.

        Args:
            host_id: Host identifier
            apartment_slug: Apartment identifier
            now: Timestamp stored as updatedAt

        Returns:
            The new export token
        """
        calendar_private = (
            self.load_calendar_private(host_id, apartment_slug) or ApartmentCalendarPrivate()
        )
        calendar_private.export_token = generate_export_token()
        calendar_private.updated_at = now
        self.save_calendar_private(host_id, apartment_slug, calendar_private)
        logger.info(
            'Rotated export token',
            extra={'host_id': host_id, 'apartment_slug': apartment_slug}
        )
        return calendar_private.export_token

    def _key_for(self, path: Sequence[str]) -> Dict[str, str]:
        if len(path) < 2 or len(path) % 2:
            raise ValueError(f"Invalid document path: {'/'.join(path)}")
        return {
            'pk': f"{path[0]}/{path[1]}",
            'sk': '/'.join(path[2:]) or ROOT_SORT_KEY,
        }


def _update_expression(fields: Dict[str, Any]) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
    """
    Build a SET expression for dotted field paths.

    Every path segment gets its own name placeholder so reserved words
    and dashes are safe. "#pk" is always defined for the existence check.

    Args:
        fields: Mapping of dotted field paths to new values

    Returns:
        Tuple of (UpdateExpression, ExpressionAttributeNames,
        ExpressionAttributeValues)
    """
    names: Dict[str, str] = {'#pk': 'pk'}
    values: Dict[str, Any] = {}
    assignments = []

    for index, (field_path, value) in enumerate(fields.items()):
        placeholders = []
        for depth, segment in enumerate(field_path.split('.')):
            placeholder = f"#f{index}_{depth}"
            names[placeholder] = segment
            placeholders.append(placeholder)
        values[f":v{index}"] = value
        assignments.append(f"{'.'.join(placeholders)} = :v{index}")

    return 'SET ' + ', '.join(assignments), names, values


def host_path(host_id: str) -> tuple:
    return (HOSTS, host_id)


def apartment_path(host_id: str, apartment_slug: str) -> tuple:
    return (HOSTS, host_id, APARTMENTS, apartment_slug)


def calendar_private_path(host_id: str, apartment_slug: str) -> tuple:
    return (HOSTS, host_id, CALENDARS_PRIVATE, apartment_slug)


# ----------------------------------------------------------------------
# Item conversion
# ----------------------------------------------------------------------

def busy_range_to_item(busy_range: BusyRange) -> dict:
    item = {
        'source': busy_range.source,
        'sourceId': busy_range.source_id,
        'startDate': busy_range.start_date,
        'endDate': busy_range.end_date,
    }
    if busy_range.note:
        item['note'] = busy_range.note
    return item


def item_to_busy_range(item: dict) -> BusyRange:
    return BusyRange(
        source=item['source'],
        source_id=item['sourceId'],
        start_date=item['startDate'],
        end_date=item['endDate'],
        note=item.get('note'),
    )


def _valid_date(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    try:
        return datetime.strptime(value.strip(), '%Y-%m-%d').date().isoformat()
    except ValueError:
        return None


def item_to_manual_block(item: dict) -> Optional[BusyRange]:
    """
    Convert a host-entered block {id, startDate, endDate, note}.

    Args:
        item: Stored manual block

    Returns:
        Manual BusyRange, or None when either date is missing or is not a
        YYYY-MM-DD calendar day. An end before the start is clamped.
    """
    start_date = _valid_date(item.get('startDate'))
    end_date = _valid_date(item.get('endDate'))
    if start_date is None or end_date is None:
        return None

    return BusyRange(
        source=SOURCE_MANUAL,
        source_id=str(item.get('id') or item.get('sourceId') or ''),
        start_date=start_date,
        end_date=max(start_date, end_date),
        note=item.get('note'),
    )


def conflict_to_item(conflict: Conflict) -> dict:
    return {
        'id': conflict.id,
        'startDate': conflict.start_date,
        'endDate': conflict.end_date,
        'reason': conflict.reason,
        'sourceIds': list(conflict.source_ids),
        'status': conflict.status,
    }


def item_to_conflict(item: dict) -> Conflict:
    return Conflict(
        id=item['id'],
        start_date=item['startDate'],
        end_date=item['endDate'],
        reason=item.get('reason', ''),
        source_ids=list(item.get('sourceIds', [])),
        status=item.get('status', CONFLICT_OPEN),
    )


def import_source_to_item(source: ImportSource) -> dict:
    item = {
        'id': source.id,
        'name': source.name,
        'url': source.url,
        'color': source.color,
        'isActive': source.is_active,
        'lastStatus': source.last_status,
    }
    if source.last_sync_at:
        item['lastSyncAt'] = source.last_sync_at
    if source.last_error:
        item['lastError'] = source.last_error
    return item


def item_to_import_source(item: dict) -> ImportSource:
    return ImportSource(
        id=str(item['id']),
        name=item.get('name', ''),
        url=item.get('url', ''),
        color=item.get('color') or DEFAULT_IMPORT_COLOR,
        is_active=bool(item.get('isActive', False)),
        last_status=item.get('lastStatus', STATUS_PENDING),
        last_sync_at=item.get('lastSyncAt'),
        last_error=item.get('lastError') or None,
    )


def item_to_calendar(item: dict) -> ApartmentCalendar:
    """Convert a stored calendar map, skipping malformed manual blocks."""
    manual_blocks = []
    for raw_block in item.get('manualBlocks', []):
        block = item_to_manual_block(raw_block) if isinstance(raw_block, dict) else None
        if block is None:
            block_id = raw_block.get('id') if isinstance(raw_block, dict) else None
            logger.warning(f"Skipping malformed manual block: {block_id}")
            continue
        manual_blocks.append(block)

    return ApartmentCalendar(
        manual_blocks=manual_blocks,
        imported_busy_ranges=[
            item_to_busy_range(i) for i in item.get('importedBusyRanges', [])
        ],
        conflicts=[item_to_conflict(i) for i in item.get('conflicts', [])],
        last_auto_sync_at=item.get('lastAutoSyncAt'),
        last_internal_update_at=item.get('lastInternalUpdateAt'),
    )


def calendar_private_to_item(calendar_private: ApartmentCalendarPrivate) -> dict:
    item = {
        'imports': [import_source_to_item(s) for s in calendar_private.imports],
        'conflictPolicy': CONFLICT_POLICY,
    }
    if calendar_private.export_token:
        item['exportToken'] = calendar_private.export_token
    if calendar_private.updated_at:
        item['updatedAt'] = calendar_private.updated_at
    return item


def item_to_calendar_private(item: dict) -> ApartmentCalendarPrivate:
    return ApartmentCalendarPrivate(
        export_token=item.get('exportToken') or None,
        imports=[item_to_import_source(i) for i in item.get('imports', [])],
        conflict_policy=CONFLICT_POLICY,
        updated_at=item.get('updatedAt'),
    )
