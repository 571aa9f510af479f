"""Apple (iCloud) calendar adapter.

Items use iCalendar property names in JSON form. Times may be ISO-8601 or
iCalendar basic format (``20240101T100000Z`` or date-only ``20240101``).
"""

from typing import Any, Dict, Optional

from ..models import CanonicalEvent, EventSource
from ..timeutils import format_iso, parse_datetime, parse_epoch_ms
from .base import ProviderAdapter


class AppleAdapter(ProviderAdapter):
    tag = 'apple'
    source = EventSource.APPLE
    default_endpoint = 'https://caldav.icloud.com'
    items_key = 'items'
    update_method = 'PUT'

    def to_canonical(self, item: Dict[str, Any]) -> CanonicalEvent:
        # The UID is shared across CalDAV clients so it doubles as canonical id
        uid = self._require(item, 'uid')
        return CanonicalEvent(
            id=uid,
            title=item.get('summary') or '',
            start_time=parse_datetime(self._require(item, 'dtstart'), item.get('tzid')),
            end_time=parse_datetime(self._require(item, 'dtend'), item.get('tzid')),
            description=item.get('description'),
            source_calendar=self.source,
            timestamp=parse_epoch_ms(self._require(item, 'lastModified')),
            remote_id=item.get('href') or uid,
        )

    def extract_remote_id(self, payload: Any) -> Optional[str]:
        if isinstance(payload, dict):
            return payload.get('href') or payload.get('uid')
        return None

    def denormalize(self, event: CanonicalEvent) -> Dict[str, Any]:
        apple_event = {
            'uid': event.id,
            'summary': self._sanitize_text(event.title),
            'dtstart': format_iso(event.start_time),
            'dtend': format_iso(event.end_time),
        }
        if event.description is not None:
            apple_event['description'] = self._sanitize_text(event.description)
        return apple_event
