"""Microsoft Graph (Outlook) calendar adapter."""

from typing import Any, Dict, List

from ..errors import MalformedEventError
from ..models import CanonicalEvent, EventSource
from ..timeutils import ensure_utc, parse_datetime, parse_epoch_ms
from .base import ProviderAdapter

# Graph requires extended property ids in this exact form
CANONICAL_ID_PROPERTY = 'String {66f5a359-4659-4830-9070-00047ec6ac6e} Name canonicalId'


class OutlookAdapter(ProviderAdapter):
    """Graph ``/me/calendar/events``.

    Graph returns ``dateTime`` without an offset next to a separate
    ``timeZone``; requests ask for UTC via the Prefer header but the zone
    field is still honoured when present.
    """

    tag = 'outlook'
    source = EventSource.OUTLOOK
    default_endpoint = 'https://graph.microsoft.com/v1.0/me/calendar/events'
    items_key = 'value'
    update_method = 'PATCH'

    def request_headers(self, access_token: str) -> Dict[str, str]:
        headers = super().request_headers(access_token)
        headers['Prefer'] = 'outlook.timezone="UTC"'
        return headers

    def to_canonical(self, item: Dict[str, Any]) -> CanonicalEvent:
        remote_id = self._require(item, 'id')
        canonical_id = self._find_canonical_id(item.get('singleValueExtendedProperties') or []) or remote_id

        body = item.get('body') or {}
        description = body.get('content')
        if description is None:
            description = item.get('bodyPreview')

        return CanonicalEvent(
            id=canonical_id,
            title=item.get('subject') or '',
            start_time=self._parse_when(item, 'start'),
            end_time=self._parse_when(item, 'end'),
            description=description,
            source_calendar=self.source,
            timestamp=parse_epoch_ms(self._require(item, 'lastModifiedDateTime')),
            remote_id=remote_id,
        )

    def _parse_when(self, item: Dict[str, Any], key: str):
        when = item.get(key)
        if not isinstance(when, dict) or not when.get('dateTime'):
            raise MalformedEventError(f"missing '{key}.dateTime'")
        return parse_datetime(when['dateTime'], when.get('timeZone'))

    @staticmethod
    def _find_canonical_id(properties: List[Dict[str, Any]]):
        for prop in properties:
            if isinstance(prop, dict) and prop.get('id') == CANONICAL_ID_PROPERTY:
                return prop.get('value')
        return None

    @staticmethod
    def _format_when(dt) -> Dict[str, str]:
        return {
            'dateTime': ensure_utc(dt).strftime('%Y-%m-%dT%H:%M:%S.%f'),
            'timeZone': 'UTC',
        }

    def denormalize(self, event: CanonicalEvent) -> Dict[str, Any]:
        outlook_event = {
            'subject': self._sanitize_text(event.title, 255),
            'start': self._format_when(event.start_time),
            'end': self._format_when(event.end_time),
            'singleValueExtendedProperties': [
                {'id': CANONICAL_ID_PROPERTY, 'value': event.id},
            ],
        }
        if event.description is not None:
            outlook_event['body'] = {'contentType': 'text', 'content': event.description}
        return outlook_event
