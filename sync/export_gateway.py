"""Token-gated access to an apartment's merged calendar feed."""
import hmac
import logging
from dataclasses import dataclass, field
from typing import Dict

from processor.ics_exporter import ICSExporter
from storage.calendar_store import CalendarStore
from sync.errors import NotFoundError, PermissionDeniedError, ValidationError

logger = logging.getLogger(__name__)

CONTENT_TYPE = 'text/calendar; charset=utf-8'


@dataclass
class ExportResponse:
    """Calendar body plus response headers."""
    body: str
    headers: Dict[str, str] = field(default_factory=dict)


class ExportGateway:
    """
    Validates export tokens and serves the merged calendar.

    The token is the only access control on the export endpoint: it is
    never logged, and a missing stored token is rejected exactly like a
    wrong one.
    """

    def __init__(
        self,
        store: CalendarStore,
        exporter: ICSExporter = None,
        cache_max_age: int = 60
    ):
        self.store = store
        self.exporter = exporter or ICSExporter()
        self.cache_max_age = cache_max_age

    def export_ics(self, host_id: str, apartment_slug: str, token: str) -> ExportResponse:
        """
        Return the calendar document if the token matches.

        Args:
            host_id: Host identifier
            apartment_slug: Apartment identifier
            token: Export token presented by the caller

        Returns:
            ExportResponse with the iCal body and caching headers

        Raises:
            ValidationError: If any parameter is empty
            NotFoundError: If the apartment does not exist
            PermissionDeniedError: If the token is missing or wrong
        """
        if not host_id or not apartment_slug or not token:
            raise ValidationError('Missing hostId, apartmentSlug, or token.')

        apartment = self.store.load_apartment(host_id, apartment_slug)
        if apartment is None:
            raise NotFoundError('Apartment not found.')

        calendar_private = self.store.load_calendar_private(host_id, apartment_slug)
        stored_token = calendar_private.export_token if calendar_private else None
        if not self._token_matches(stored_token, token):
            logger.warning(
                'Rejected calendar export request',
                extra={'host_id': host_id, 'apartment_slug': apartment_slug}
            )
            raise PermissionDeniedError('Invalid export token.')

        body = self.exporter.build_ics(apartment)
        return ExportResponse(
            body=body,
            headers={
                'Content-Type': CONTENT_TYPE,
                'Cache-Control': f'private, max-age={self.cache_max_age}',
            }
        )

    def _token_matches(self, stored_token: str, supplied_token: str) -> bool:
        if not stored_token:
            return False
        return hmac.compare_digest(
            stored_token.encode('utf-8'),
            supplied_token.encode('utf-8')
        )
