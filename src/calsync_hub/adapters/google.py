"""Google Calendar adapter."""

from typing import Any, Dict

from ..errors import MalformedEventError
from ..models import CanonicalEvent, EventSource
from ..timeutils import format_iso, parse_datetime, parse_epoch_ms
from .base import CANONICAL_ID_KEY, ProviderAdapter


class GoogleAdapter(ProviderAdapter):
    """Google Calendar v3 events resource."""

    tag = 'google'
    source = EventSource.GOOGLE
    default_endpoint = 'https://www.googleapis.com/calendar/v3/calendars/primary/events'
    items_key = 'items'
    update_method = 'PUT'

    def to_canonical(self, item: Dict[str, Any]) -> CanonicalEvent:
        remote_id = self._require(item, 'id')
        private = (item.get('extendedProperties') or {}).get('private') or {}
        canonical_id = private.get(CANONICAL_ID_KEY) or remote_id

        return CanonicalEvent(
            id=canonical_id,
            title=item.get('summary') or '',
            start_time=self._parse_when(item, 'start'),
            end_time=self._parse_when(item, 'end'),
            description=item.get('description'),
            source_calendar=self.source,
            timestamp=parse_epoch_ms(self._require(item, 'updated')),
            remote_id=remote_id,
        )

    def _parse_when(self, item: Dict[str, Any], key: str):
        """Timed events carry dateTime, all-day events carry date."""
        when = item.get(key)
        if not isinstance(when, dict):
            raise MalformedEventError(f"missing '{key}' object")
        value = when.get('dateTime') or when.get('date')
        if not value:
            raise MalformedEventError(f"'{key}' has neither dateTime nor date")
        return parse_datetime(value, when.get('timeZone'))

    def denormalize(self, event: CanonicalEvent) -> Dict[str, Any]:
        google_event = {
            'summary': self._sanitize_text(event.title, 1024),  # Google Calendar limit
            'start': {'dateTime': format_iso(event.start_time), 'timeZone': 'UTC'},
            'end': {'dateTime': format_iso(event.end_time), 'timeZone': 'UTC'},
            'extendedProperties': {'private': {CANONICAL_ID_KEY: event.id}},
        }
        if event.description is not None:
            google_event['description'] = self._sanitize_text(event.description, 8192)
        return google_event
