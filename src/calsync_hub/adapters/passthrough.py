"""Adapter for providers without a registered schema."""

from typing import Any, Dict

from ..models import CanonicalEvent, EventSource
from .base import ProviderAdapter


class PassthroughAdapter(ProviderAdapter):
    """No transformation: items are expected to already be canonical events.

    Bound to the custom endpoint from the provider configuration.
    """

    source = EventSource.NATIVE

    def __init__(self, tag: str):
        self.tag = tag
        super().__init__()

    def to_canonical(self, item: Dict[str, Any]) -> CanonicalEvent:
        return CanonicalEvent.model_validate(item)

    def denormalize(self, event: CanonicalEvent) -> Dict[str, Any]:
        return event.to_wire()
