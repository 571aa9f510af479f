"""Base provider adapter interface."""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from ..errors import MalformedEventError
from ..models import CanonicalEvent, EventSource, NormalizedBatch, SkippedItem, SyncConfig

logger = logging.getLogger(__name__)

# Key under which denormalized payloads carry the canonical id
CANONICAL_ID_KEY = 'canonicalId'


class ProviderAdapter(ABC):
    """Translates between one provider's event schema and CanonicalEvent.

    Subclasses hard-code their provider's field names. ``normalize`` never
    raises for a single bad item: the item is logged and skipped.
    """

    #: Provider tag this adapter is registered under
    tag: str = ''
    #: Source stamped on normalized events
    source: EventSource = EventSource.NATIVE
    #: Fixed API endpoint, None when the endpoint comes from configuration
    default_endpoint: Optional[str] = None
    #: Key holding the item list in a provider response
    items_key: str = 'items'
    #: HTTP verb for updating an existing remote event
    update_method: str = 'PUT'

    def __init__(self):
        self.logger = logger.getChild(self.tag or 'adapter')

    def endpoint(self, config: SyncConfig) -> str:
        """Resolve the collection URL for a provider configuration."""
        url = self.default_endpoint or config.api_endpoint
        if not url:
            raise MalformedEventError(f"No endpoint known for provider {config.provider}")
        return url.rstrip('/')

    def request_headers(self, access_token: str) -> Dict[str, str]:
        """Headers sent with every request to the provider."""
        return {
            'Authorization': f'Bearer {access_token}',
            'Content-Type': 'application/json',
        }

    def push_target(self, config: SyncConfig, remote_id: Optional[str] = None) -> Tuple[str, str]:
        """HTTP method and URL for writing an event to the provider.

        Events the provider already knows are addressed by their remote id;
        everything else is created on the collection.
        """
        base = self.endpoint(config)
        if remote_id:
            return self.update_method, f"{base}/{remote_id}"
        return 'POST', base

    def delete_target(
        self,
        config: SyncConfig,
        event_id: str,
        remote_id: Optional[str] = None
    ) -> Tuple[str, str]:
        return 'DELETE', f"{self.endpoint(config)}/{remote_id or event_id}"

    def owns(self, event: CanonicalEvent) -> bool:
        """Whether ``event.remote_id`` was assigned by this provider."""
        return bool(event.remote_id) and event.source_calendar == self.source

    def extract_remote_id(self, payload: Any) -> Optional[str]:
        """Provider id from the response to a create request."""
        if isinstance(payload, dict):
            remote_id = payload.get('id')
            return str(remote_id) if remote_id else None
        return None

    def extract_items(self, payload: Any) -> Optional[List[Any]]:
        """Pull the item list out of a provider response body."""
        if isinstance(payload, list):
            return payload
        if isinstance(payload, dict):
            for key in (self.items_key, 'items', 'value'):
                items = payload.get(key)
                if isinstance(items, list):
                    return items
            return []
        return None

    def normalize(self, payload: Any) -> List[CanonicalEvent]:
        """Convert a provider response into canonical events.

        Args:
            payload: Decoded JSON body of a provider list response

        Returns:
            Canonical events for every well-formed item
        """
        return self.normalize_batch(payload).events

    def normalize_batch(self, payload: Any) -> NormalizedBatch:
        """Like ``normalize`` but also reports the skipped items."""
        items = self.extract_items(payload)
        if items is None:
            self.logger.warning(
                f"Unexpected payload type {type(payload).__name__}, expected list or object"
            )
            return NormalizedBatch(events=[], skipped=[])

        events: List[CanonicalEvent] = []
        skipped: List[SkippedItem] = []
        for index, item in enumerate(items):
            try:
                if not isinstance(item, dict):
                    raise MalformedEventError(f"item is {type(item).__name__}, not an object")
                events.append(self.to_canonical(item))
            except (MalformedEventError, KeyError, TypeError, ValueError) as e:
                reason = f"{type(e).__name__}: {e}"
                self.logger.warning(f"Skipping malformed {self.tag} item #{index}: {reason}")
                skipped.append(SkippedItem(index=index, reason=reason, item=item))

        if skipped:
            self.logger.info(f"Normalized {len(events)} events, skipped {len(skipped)}")
        return NormalizedBatch(events=events, skipped=skipped)

    @abstractmethod
    def to_canonical(self, item: Dict[str, Any]) -> CanonicalEvent:
        """Map a single provider item.

        Raises:
            MalformedEventError, KeyError, ValueError: If the item is unusable
        """
        pass

    @abstractmethod
    def denormalize(self, event: CanonicalEvent) -> Dict[str, Any]:
        """Build the provider payload for ``event``."""
        pass

    @staticmethod
    def _require(item: Dict[str, Any], key: str) -> Any:
        value = item.get(key)
        if value is None or value == '':
            raise MalformedEventError(f"missing required field '{key}'")
        return value

    @staticmethod
    def _sanitize_text(text: Optional[str], max_length: Optional[int] = None) -> str:
        if not text:
            return ''
        # Null bytes are rejected by every provider API
        sanitized = str(text).replace('\x00', '').strip()
        if max_length and len(sanitized) > max_length:
            sanitized = sanitized[:max_length - 3] + '...'
        return sanitized
